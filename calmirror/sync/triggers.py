"""Entry points for starting and observing sync runs."""

import logging
from typing import Optional
from urllib.parse import quote

import aiosqlite

from calmirror.config import Settings, get_settings
from calmirror.sync.activities import ClientFactory, SyncActivities
from calmirror.sync.engine import (
    SYNC_ACCOUNT_WORKFLOW,
    SYNC_CALENDAR_WORKFLOW,
    sync_account_workflow,
    sync_calendar_workflow,
)
from calmirror.workflows.runner import WorkflowRunner

logger = logging.getLogger(__name__)


def sync_workflow_id(account_id: str, provider_type: str) -> str:
    return f"sync-{account_id}-{provider_type}"


def incremental_workflow_prefix(account_id: str, provider_type: str) -> str:
    """Prefix shared by every per-calendar run of one account.

    Both parts are percent-encoded so ``:`` only ever appears as a separator
    and no other account's prefix can match.
    """
    return f"sync-incremental:{quote(account_id, safe='')}:{quote(provider_type, safe='')}:"


def incremental_workflow_id(account_id: str, provider_type: str, calendar_id: int) -> str:
    return f"{incremental_workflow_prefix(account_id, provider_type)}{calendar_id}"


def build_runner(
    db: aiosqlite.Connection,
    client_factory: ClientFactory,
    settings: Optional[Settings] = None,
) -> WorkflowRunner:
    """Create a runner with the sync workflows registered."""
    settings = settings or get_settings()
    runner = WorkflowRunner(db, SyncActivities(db, client_factory, settings), settings)
    runner.register(SYNC_ACCOUNT_WORKFLOW, sync_account_workflow)
    runner.register(SYNC_CALENDAR_WORKFLOW, sync_calendar_workflow)
    return runner


async def start_sync(
    runner: WorkflowRunner,
    account_id: str,
    provider_type: str = "google",
    force_full_sync: bool = False,
) -> str:
    """
    Start a full account sync and return its run id.

    While a run for the account is still open its run id is returned
    instead of starting a second one.
    """
    return await runner.start_workflow(
        SYNC_ACCOUNT_WORKFLOW,
        sync_workflow_id(account_id, provider_type),
        {
            "account_id": account_id,
            "provider_type": provider_type,
            "force_full_sync": force_full_sync,
        },
    )


async def start_incremental_sync(
    runner: WorkflowRunner,
    account_id: str,
    provider_type: str,
    calendar_id: int,
) -> str:
    """Queue an incremental sync of one calendar behind any open run for it."""
    return await runner.start_workflow(
        SYNC_CALENDAR_WORKFLOW,
        incremental_workflow_id(account_id, provider_type, calendar_id),
        {"account_id": account_id, "calendar_id": calendar_id},
        queue=True,
    )


async def get_sync_status(runner: WorkflowRunner, run_id: str) -> Optional[dict]:
    run = await runner.describe(run_id)
    if run is None:
        return None
    return {"run_id": run_id, "status": run["status"], "result": run["result"], "error": run["error"]}


async def is_sync_running(runner: WorkflowRunner, account_id: str, provider_type: str = "google") -> bool:
    """Check both the account-wide sync and any per-calendar incremental sync."""
    if await runner.is_running(sync_workflow_id(account_id, provider_type)):
        return True
    return await runner.has_open_runs(incremental_workflow_prefix(account_id, provider_type))
