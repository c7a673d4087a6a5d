"""Tests for durable workflow execution."""

import asyncio
import json
from types import SimpleNamespace

import pytest

from calmirror.config import get_settings
from calmirror.sync.errors import ProviderError, TransientProviderError
from calmirror.utils.timeutil import to_db_timestamp, utcnow
from calmirror.workflows.runner import ActivityError, WorkflowRunner


def _runner(db, **overrides) -> WorkflowRunner:
    settings = get_settings().model_copy(update=overrides)
    return WorkflowRunner(db, activities=SimpleNamespace(), settings=settings)


async def _insert_run(db, run_id, workflow_id, workflow_type, args, status="running"):
    await db.execute(
        """INSERT INTO workflow_runs (run_id, workflow_id, workflow_type, args, status, created_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (run_id, workflow_id, workflow_type, json.dumps(args), status, to_db_timestamp(utcnow()))
    )
    await db.commit()


async def _journal(db, run_id):
    cursor = await db.execute(
        "SELECT seq, name, status FROM workflow_activities WHERE run_id = ? ORDER BY seq", (run_id,)
    )
    return [tuple(row) for row in await cursor.fetchall()]


@pytest.mark.asyncio
async def test_workflow_runs_and_journals_activities(test_db):
    runner = _runner(test_db)

    async def add(a, b):
        return a + b

    async def workflow(ctx, x):
        first = await ctx.activity(add, x, 1)
        second = await ctx.activity(add, first, 1)
        return {"value": second}

    runner.register("adder", workflow)
    run_id = await runner.start_workflow("adder", "adder-1", {"x": 1})
    run = await runner.wait(run_id)

    assert run["status"] == "completed"
    assert run["result"] == {"value": 3}
    assert await _journal(test_db, run_id) == [(0, "add", "completed"), (1, "add", "completed")]


@pytest.mark.asyncio
async def test_transient_failures_are_retried(test_db):
    runner = _runner(test_db)
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise TransientProviderError("rate limited", status=429)
        return "ok"

    async def workflow(ctx):
        return await ctx.activity(flaky)

    runner.register("flaky", workflow)
    run = await runner.wait(await runner.start_workflow("flaky", "flaky-1", {}))

    assert run["status"] == "completed"
    assert run["result"] == "ok"
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_retries_are_bounded(test_db):
    runner = _runner(test_db)
    attempts = []

    async def always_down():
        attempts.append(1)
        raise TransientProviderError("unavailable", status=503)

    async def workflow(ctx):
        try:
            await ctx.activity(always_down)
        except ActivityError as e:
            return {"error_type": e.error_type}

    runner.register("down", workflow)
    run = await runner.wait(await runner.start_workflow("down", "down-1", {}))

    assert len(attempts) == get_settings().activity_max_attempts
    assert run["result"] == {"error_type": "TransientProviderError"}


@pytest.mark.asyncio
async def test_non_retryable_failure_is_not_retried(test_db):
    runner = _runner(test_db)
    attempts = []

    async def forbidden():
        attempts.append(1)
        raise ProviderError("forbidden", status=403)

    async def workflow(ctx):
        await ctx.activity(forbidden)

    runner.register("forbidden", workflow)
    run = await runner.wait(await runner.start_workflow("forbidden", "forbidden-1", {}))

    assert len(attempts) == 1
    assert run["status"] == "failed"
    assert "forbidden" in run["error"]


@pytest.mark.asyncio
async def test_resumed_run_replays_completed_activities(test_db):
    calls = []

    async def step_one():
        calls.append("one")
        return 41

    async def step_two(value):
        calls.append("two")
        return value + 1

    async def workflow(ctx):
        first = await ctx.activity(step_one)
        second = await ctx.activity(step_two, first)
        return {"first": first, "second": second}

    await _insert_run(test_db, "run-1", "resume-1", "two_steps", {})
    await test_db.execute(
        """INSERT INTO workflow_activities (run_id, seq, name, status, result, completed_at)
           VALUES ('run-1', 0, 'step_one', 'completed', '41', ?)""",
        (to_db_timestamp(utcnow()),)
    )
    await test_db.commit()

    runner = _runner(test_db)
    runner.register("two_steps", workflow)
    assert await runner.resume_incomplete() == ["run-1"]
    run = await runner.wait("run-1")

    assert calls == ["two"]
    assert run["status"] == "completed"
    assert run["result"] == {"first": 41, "second": 42}


@pytest.mark.asyncio
async def test_replayed_failure_raises_activity_error_again(test_db):
    calls = []

    async def fragile():
        calls.append(1)

    async def workflow(ctx):
        try:
            await ctx.activity(fragile)
        except ActivityError as e:
            return {"replayed": e.message}

    await _insert_run(test_db, "run-2", "resume-2", "fragile", {})
    await test_db.execute(
        """INSERT INTO workflow_activities (run_id, seq, name, status, error, error_type, completed_at)
           VALUES ('run-2', 0, 'fragile', 'failed', 'boom', 'ProviderError', ?)""",
        (to_db_timestamp(utcnow()),)
    )
    await test_db.commit()

    runner = _runner(test_db)
    runner.register("fragile", workflow)
    await runner.resume_incomplete()
    run = await runner.wait("run-2")

    assert calls == []
    assert run["result"] == {"replayed": "boom"}


@pytest.mark.asyncio
async def test_journal_mismatch_fails_the_run(test_db):
    async def something_else():
        return 1

    async def workflow(ctx):
        return await ctx.activity(something_else)

    await _insert_run(test_db, "run-3", "resume-3", "changed", {})
    await test_db.execute(
        """INSERT INTO workflow_activities (run_id, seq, name, status, result, completed_at)
           VALUES ('run-3', 0, 'original_step', 'completed', '1', ?)""",
        (to_db_timestamp(utcnow()),)
    )
    await test_db.commit()

    runner = _runner(test_db)
    runner.register("changed", workflow)
    await runner.resume_incomplete()
    run = await runner.wait("run-3")

    assert run["status"] == "failed"
    assert "original_step" in run["error"]


@pytest.mark.asyncio
async def test_same_workflow_id_reuses_open_run_and_queues_one_follow_up(test_db):
    runner = _runner(test_db)
    started = asyncio.Event()
    release = asyncio.Event()
    executions = []

    async def blocker(ctx, tag):
        executions.append(tag)
        started.set()
        await release.wait()
        return tag

    runner.register("blocker", blocker)

    first = await runner.start_workflow("blocker", "acct-sync", {"tag": "first"})
    await started.wait()

    assert await runner.start_workflow("blocker", "acct-sync", {"tag": "again"}) == first
    assert await runner.is_running("acct-sync")

    queued = await runner.start_workflow("blocker", "acct-sync", {"tag": "queued"}, queue=True)
    assert queued != first
    assert await runner.start_workflow("blocker", "acct-sync", {"tag": "coalesced"}, queue=True) == queued
    assert (await runner.describe(queued))["status"] == "queued"

    release.set()
    assert (await runner.wait(first))["status"] == "completed"
    assert (await runner.wait(queued))["result"] == "queued"

    assert executions == ["first", "queued"]
    assert not await runner.is_running("acct-sync")


@pytest.mark.asyncio
async def test_workflow_timeout(test_db):
    runner = _runner(test_db, workflow_timeout_seconds=0.05)

    async def slow(ctx):
        await asyncio.sleep(5)

    runner.register("slow", slow)
    run = await runner.wait(await runner.start_workflow("slow", "slow-1", {}))

    assert run["status"] == "timed_out"


@pytest.mark.asyncio
async def test_activity_timeout_surfaces_as_activity_error(test_db):
    runner = _runner(test_db, activity_timeout_seconds=0.05, activity_max_attempts=1)

    async def hangs():
        await asyncio.sleep(5)

    async def workflow(ctx):
        try:
            await ctx.activity(hangs)
        except ActivityError as e:
            return e.message

    runner.register("hangs", workflow)
    run = await runner.wait(await runner.start_workflow("hangs", "hangs-1", {}))

    assert "timed out" in run["result"]


@pytest.mark.asyncio
async def test_unknown_workflow_type_is_rejected(test_db):
    runner = _runner(test_db)

    with pytest.raises(ValueError):
        await runner.start_workflow("nope", "nope-1", {})


@pytest.mark.asyncio
async def test_has_open_runs_matches_prefix_literally(test_db):
    runner = _runner(test_db)
    await _insert_run(test_db, "r1", "sync-incremental:a_b:google:7", "x", {}, status="queued")

    assert await runner.has_open_runs("sync-incremental:a_b:google:")
    assert not await runner.has_open_runs("sync-incremental:aXb:google:")


@pytest.mark.asyncio
async def test_per_id_locks_are_dropped_when_idle(test_db):
    runner = _runner(test_db)
    release = asyncio.Event()

    async def blocker(ctx, tag):
        await release.wait()
        return tag

    runner.register("blocker", blocker)

    running = await runner.start_workflow("blocker", "cal-1", {"tag": "running"})
    queued = await runner.start_workflow("blocker", "cal-1", {"tag": "queued"}, queue=True)
    other = await runner.start_workflow("blocker", "cal-2", {"tag": "other"})
    await asyncio.sleep(0)
    assert set(runner._locks) == {"cal-1", "cal-2"}

    release.set()
    for run_id in (running, queued, other):
        assert (await runner.wait(run_id))["status"] == "completed"

    assert runner._locks == {}
    assert runner._lock_users == {}
