"""Durable execution of sync workflows.

A workflow is an async function ``fn(ctx, **args)`` whose side effects all go
through ``ctx.activity(...)``. Every activity outcome is journalled in
``workflow_activities`` under a per-run sequence number. When an interrupted
run is resumed, the workflow function starts again from the top and completed
activities are answered from the journal instead of being executed, so
control flow returns to where it stopped without repeating committed work.
Workflow code must therefore be deterministic apart from its activities.
"""

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import aiosqlite
from pydantic import TypeAdapter
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from calmirror.config import Settings, get_settings
from calmirror.database import transaction
from calmirror.sync.errors import is_retryable
from calmirror.utils.timeutil import from_db_timestamp, to_db_timestamp, utcnow

logger = logging.getLogger(__name__)

OPEN_STATUSES = ("queued", "running")
FINISHED_STATUSES = ("completed", "failed", "timed_out")


class ActivityError(Exception):
    """An activity failed for good (non-retryable, or out of attempts).

    Replayed failures raise the same type, so workflow code that catches it
    behaves identically on first execution and on resume.
    """

    def __init__(self, activity: str, message: str, error_type: str = "Exception"):
        super().__init__(f"{activity}: {message}")
        self.activity = activity
        self.message = message
        self.error_type = error_type


class NonDeterministicWorkflowError(RuntimeError):
    """The journal does not match the activities the workflow asks for."""


@dataclass
class RetryPolicy:
    maximum_attempts: int = 3
    initial_interval: float = 1.0
    backoff_coefficient: float = 2.0
    maximum_interval: float = 100.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            maximum_attempts=settings.activity_max_attempts,
            initial_interval=settings.activity_retry_initial_interval_seconds,
            backoff_coefficient=settings.activity_retry_backoff_coefficient,
            maximum_interval=settings.activity_retry_max_interval_seconds,
        )

    def retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.maximum_attempts),
            wait=wait_exponential(
                multiplier=self.initial_interval,
                exp_base=self.backoff_coefficient,
                max=self.maximum_interval,
            ),
            retry=retry_if_exception(is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )


class WorkflowContext:
    """Handle a running workflow uses to call activities."""

    def __init__(self, runner: "WorkflowRunner", run_id: str, workflow_id: str):
        self.runner = runner
        self.run_id = run_id
        self.workflow_id = workflow_id
        self.activities = runner.activities
        self._seq = 0

    async def activity(
        self,
        fn: Callable[..., Awaitable[Any]],
        *args,
        result_type: Any = None,
        **kwargs,
    ) -> Any:
        """
        Run (or replay) one activity.

        ``result_type`` is needed when the result is not plain JSON, so it can
        be serialized into the journal and rebuilt on replay.
        """
        name = getattr(fn, "__name__", repr(fn))
        seq = self._seq
        self._seq += 1
        adapter = TypeAdapter(result_type) if result_type is not None else None

        recorded = await self.runner._load_journal_entry(self.run_id, seq)
        if recorded is not None:
            if recorded["name"] != name:
                raise NonDeterministicWorkflowError(
                    f"Run {self.run_id} step {seq}: journal has {recorded['name']}, workflow asked for {name}"
                )
            if recorded["status"] == "completed":
                value = json.loads(recorded["result"]) if recorded["result"] is not None else None
                return adapter.validate_python(value) if adapter else value
            raise ActivityError(name, recorded["error"] or "failed", recorded["error_type"] or "Exception")

        try:
            result = await self.runner._execute_activity(name, fn, args, kwargs)
        except ActivityError as e:
            await self.runner._record_journal_entry(
                self.run_id, seq, name, "failed", error=e.message, error_type=e.error_type
            )
            raise

        payload = adapter.dump_python(result, mode="json") if adapter else result
        await self.runner._record_journal_entry(self.run_id, seq, name, "completed", result=payload)
        return result

    async def now(self):
        """Current time, journalled so a resumed run sees the original value."""
        async def workflow_now() -> str:
            return to_db_timestamp(utcnow())

        return from_db_timestamp(await self.activity(workflow_now))


WorkflowFn = Callable[..., Awaitable[Any]]


class WorkflowRunner:
    """Starts, tracks and resumes workflow runs stored in the database.

    At most one run per workflow id executes at a time. ``start_workflow`` is
    idempotent while a run for the id is open; with ``queue=True`` a single
    follow-up run is queued behind the open one instead.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        activities: Any = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.activities = activities
        self.settings = settings or get_settings()
        self.retry_policy = RetryPolicy.from_settings(self.settings)
        self._workflows: dict[str, WorkflowFn] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._start_guard = asyncio.Lock()

    def register(self, workflow_type: str, fn: WorkflowFn) -> None:
        self._workflows[workflow_type] = fn

    async def start_workflow(
        self,
        workflow_type: str,
        workflow_id: str,
        args: dict,
        queue: bool = False,
    ) -> str:
        """Start a run and return its run id without waiting for it."""
        if workflow_type not in self._workflows:
            raise ValueError(f"Unknown workflow type {workflow_type!r}")

        async with self._start_guard:
            cursor = await self.db.execute(
                """SELECT run_id, status FROM workflow_runs
                   WHERE workflow_id = ? AND status IN ('queued', 'running')
                   ORDER BY created_at""",
                (workflow_id,)
            )
            open_runs = [dict(row) for row in await cursor.fetchall()]

            if open_runs and not queue:
                logger.info(f"Workflow {workflow_id} already running as {open_runs[0]['run_id']}")
                return open_runs[0]["run_id"]

            if queue:
                # A queued run has not fetched anything yet, so it also covers
                # notifications that arrive while it waits.
                queued = [run for run in open_runs if run["status"] == "queued"]
                if queued:
                    return queued[-1]["run_id"]

            run_id = uuid.uuid4().hex
            async with transaction(self.db):
                await self.db.execute(
                    """INSERT INTO workflow_runs
                       (run_id, workflow_id, workflow_type, args, status, created_at)
                       VALUES (?, ?, ?, ?, 'queued', ?)""",
                    (run_id, workflow_id, workflow_type, json.dumps(args), to_db_timestamp(utcnow()))
                )

        self._spawn(run_id, workflow_type, workflow_id, args)
        logger.info(f"Started workflow {workflow_type} id={workflow_id} run={run_id}")
        return run_id

    def _spawn(self, run_id: str, workflow_type: str, workflow_id: str, args: dict) -> None:
        task = asyncio.create_task(self._execute_run(run_id, workflow_type, workflow_id, args))
        self._tasks[run_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(run_id, None))

    @asynccontextmanager
    async def _exclusive(self, workflow_id: str):
        """Hold the per-id lock; the lock is dropped once no run holds or awaits it."""
        if workflow_id not in self._locks:
            self._locks[workflow_id] = asyncio.Lock()
        lock = self._locks[workflow_id]
        self._lock_users[workflow_id] = self._lock_users.get(workflow_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[workflow_id] -= 1
            if not self._lock_users[workflow_id]:
                del self._lock_users[workflow_id]
                del self._locks[workflow_id]

    async def _execute_run(self, run_id: str, workflow_type: str, workflow_id: str, args: dict) -> None:
        fn = self._workflows[workflow_type]

        async with self._exclusive(workflow_id):
            async with transaction(self.db):
                await self.db.execute(
                    "UPDATE workflow_runs SET status = 'running', started_at = COALESCE(started_at, ?) WHERE run_id = ?",
                    (to_db_timestamp(utcnow()), run_id)
                )

            ctx = WorkflowContext(self, run_id, workflow_id)
            try:
                result = await asyncio.wait_for(fn(ctx, **args), timeout=self.settings.workflow_timeout_seconds)
            except asyncio.TimeoutError:
                logger.error(f"Workflow run {run_id} ({workflow_id}) timed out")
                await self._finish(run_id, "timed_out", error="Workflow timed out")
            except Exception as e:
                logger.exception(f"Workflow run {run_id} ({workflow_id}) failed: {e}")
                await self._finish(run_id, "failed", error=str(e))
            else:
                await self._finish(run_id, "completed", result=result)
                logger.info(f"Workflow run {run_id} ({workflow_id}) completed")

    async def _finish(self, run_id: str, status: str, result: Any = None, error: Optional[str] = None) -> None:
        async with transaction(self.db):
            await self.db.execute(
                """UPDATE workflow_runs SET status = ?, result = ?, error = ?, finished_at = ?
                   WHERE run_id = ?""",
                (
                    status,
                    json.dumps(result) if result is not None else None,
                    error,
                    to_db_timestamp(utcnow()),
                    run_id,
                )
            )

    async def _execute_activity(self, name: str, fn, args: tuple, kwargs: dict) -> Any:
        timeout = self.settings.activity_timeout_seconds
        try:
            async for attempt in self.retry_policy.retrying():
                with attempt:
                    return await asyncio.wait_for(fn(*args, **kwargs), timeout=timeout)
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                message = f"timed out after {timeout}s"
            else:
                message = str(e) or type(e).__name__
            logger.warning(f"Activity {name} failed: {message}")
            raise ActivityError(name, message, type(e).__name__) from e

    async def _load_journal_entry(self, run_id: str, seq: int) -> Optional[dict]:
        cursor = await self.db.execute(
            "SELECT * FROM workflow_activities WHERE run_id = ? AND seq = ?",
            (run_id, seq)
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def _record_journal_entry(
        self,
        run_id: str,
        seq: int,
        name: str,
        status: str,
        result: Any = None,
        error: Optional[str] = None,
        error_type: Optional[str] = None,
    ) -> None:
        async with transaction(self.db):
            await self.db.execute(
                """INSERT OR REPLACE INTO workflow_activities
                   (run_id, seq, name, status, result, error, error_type, completed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    run_id,
                    seq,
                    name,
                    status,
                    json.dumps(result) if status == "completed" else None,
                    error,
                    error_type,
                    to_db_timestamp(utcnow()),
                )
            )

    async def describe(self, run_id: str) -> Optional[dict]:
        """Status and result of a run."""
        cursor = await self.db.execute("SELECT * FROM workflow_runs WHERE run_id = ?", (run_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        return {
            "run_id": row["run_id"],
            "workflow_id": row["workflow_id"],
            "workflow_type": row["workflow_type"],
            "status": row["status"],
            "result": json.loads(row["result"]) if row["result"] else None,
            "error": row["error"],
            "created_at": row["created_at"],
            "started_at": row["started_at"],
            "finished_at": row["finished_at"],
        }

    async def is_running(self, workflow_id: str) -> bool:
        cursor = await self.db.execute(
            "SELECT 1 FROM workflow_runs WHERE workflow_id = ? AND status IN ('queued', 'running') LIMIT 1",
            (workflow_id,)
        )
        return await cursor.fetchone() is not None

    async def has_open_runs(self, workflow_id_prefix: str) -> bool:
        """Whether any run whose workflow id starts with the prefix is queued or running."""
        escaped = workflow_id_prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        cursor = await self.db.execute(
            """SELECT 1 FROM workflow_runs
               WHERE workflow_id LIKE ? ESCAPE '\\' AND status IN ('queued', 'running') LIMIT 1""",
            (escaped + "%",)
        )
        return await cursor.fetchone() is not None

    async def wait(self, run_id: str) -> Optional[dict]:
        """Wait for a run started by this runner to finish and describe it."""
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.shield(task)
        return await self.describe(run_id)

    async def resume_incomplete(self) -> list[str]:
        """Restart runs left open by a previous process, oldest first."""
        cursor = await self.db.execute(
            """SELECT run_id, workflow_id, workflow_type, args FROM workflow_runs
               WHERE status IN ('queued', 'running')
               ORDER BY created_at"""
        )
        rows = await cursor.fetchall()

        resumed = []
        for row in rows:
            if row["run_id"] in self._tasks:
                continue
            if row["workflow_type"] not in self._workflows:
                logger.warning(f"Cannot resume run {row['run_id']}: unknown workflow {row['workflow_type']}")
                continue
            self._spawn(row["run_id"], row["workflow_type"], row["workflow_id"], json.loads(row["args"]))
            resumed.append(row["run_id"])

        if resumed:
            logger.info(f"Resumed {len(resumed)} incomplete workflow runs")
        return resumed

    async def shutdown(self) -> None:
        """Cancel in-flight runs; they stay open in the database and resume on next start."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
