"""Google OAuth token storage and refresh."""

import logging
from datetime import timedelta
from typing import Optional

import aiosqlite
import httpx

from calmirror.config import get_settings
from calmirror.database import transaction
from calmirror.sync.errors import ProviderError, TransientProviderError
from calmirror.sync.google_calendar import GoogleCalendarClient
from calmirror.utils.timeutil import from_db_timestamp, to_db_timestamp, utcnow

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Refresh this long before the provider-reported expiry
REFRESH_MARGIN = timedelta(minutes=5)


async def store_oauth_tokens(
    db: aiosqlite.Connection,
    account_id: str,
    access_token: str,
    refresh_token: Optional[str] = None,
    expires_in: Optional[int] = None,
) -> None:
    """Store OAuth tokens for an account, keeping the old refresh token if none is given."""
    now = utcnow()

    expiry = None
    if expires_in:
        expiry = to_db_timestamp(now + timedelta(seconds=expires_in))

    async with transaction(db):
        await db.execute(
            """INSERT INTO oauth_tokens (account_id, access_token, refresh_token, token_expiry, updated_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(account_id) DO UPDATE SET
               access_token = excluded.access_token,
               refresh_token = COALESCE(excluded.refresh_token, oauth_tokens.refresh_token),
               token_expiry = excluded.token_expiry,
               updated_at = excluded.updated_at""",
            (account_id, access_token, refresh_token, expiry, to_db_timestamp(now))
        )


async def get_oauth_token(db: aiosqlite.Connection, account_id: str) -> Optional[dict]:
    """Get OAuth token row for an account."""
    cursor = await db.execute("SELECT * FROM oauth_tokens WHERE account_id = ?", (account_id,))
    row = await cursor.fetchone()
    if row:
        return dict(row)
    return None


async def refresh_access_token(refresh_token: str) -> dict:
    """Refresh an access token."""
    settings = get_settings()
    if not settings.google_client_id or not settings.google_client_secret:
        raise ProviderError("Google OAuth client is not configured")

    async with httpx.AsyncClient() as client:
        response = await client.post(
            GOOGLE_TOKEN_URL,
            data={
                "refresh_token": refresh_token,
                "client_id": settings.google_client_id,
                "client_secret": settings.google_client_secret,
                "grant_type": "refresh_token",
            },
        )

    if response.status_code != 200:
        logger.error(f"Token refresh failed: {response.text}")
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientProviderError(f"Token refresh failed: {response.text}", status=response.status_code)
        # invalid_grant and friends need the user to reconnect
        raise ProviderError(f"Token refresh failed: {response.text}", status=response.status_code)

    return response.json()


async def get_valid_access_token(db: aiosqlite.Connection, account_id: str) -> str:
    """Get a valid access token, refreshing if needed."""
    token_data = await get_oauth_token(db, account_id)
    if not token_data:
        raise ProviderError(f"No OAuth token stored for account {account_id}")

    access_token = token_data["access_token"]
    expiry = token_data.get("token_expiry")
    if not expiry or utcnow() < from_db_timestamp(expiry) - REFRESH_MARGIN:
        return access_token

    if not token_data.get("refresh_token"):
        raise ProviderError(f"Access token for account {account_id} expired and no refresh token is stored")

    logger.info(f"Refreshing access token for account {account_id}")
    new_tokens = await refresh_access_token(token_data["refresh_token"])
    access_token = new_tokens["access_token"]
    await store_oauth_tokens(
        db,
        account_id,
        access_token=access_token,
        refresh_token=new_tokens.get("refresh_token"),
        expires_in=new_tokens.get("expires_in"),
    )
    return access_token


def google_client_factory(db: aiosqlite.Connection):
    """Build the per-account client factory the sync activities use."""
    async def create_client(account_id: str) -> GoogleCalendarClient:
        access_token = await get_valid_access_token(db, account_id)
        return GoogleCalendarClient(access_token)

    return create_client
