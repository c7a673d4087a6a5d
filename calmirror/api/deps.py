"""Request dependencies resolving the objects owned by the application lifespan."""

import aiosqlite
from fastapi import Header, HTTPException, Request, status

from calmirror.workflows.runner import WorkflowRunner


def get_db(request: Request) -> aiosqlite.Connection:
    return request.app.state.db


def get_runner(request: Request) -> WorkflowRunner:
    return request.app.state.runner


def get_client_factory(request: Request):
    return request.app.state.client_factory


def get_account_id(x_account_id: str = Header(None, alias="X-Account-ID")) -> str:
    """Account the request acts for, asserted by the calling system."""
    if not x_account_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Account-ID header"
        )
    return x_account_id
