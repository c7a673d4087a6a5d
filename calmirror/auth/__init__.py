"""OAuth token handling for linked provider accounts."""

from calmirror.auth.google import (
    get_valid_access_token,
    google_client_factory,
    store_oauth_tokens,
)

__all__ = [
    "get_valid_access_token",
    "google_client_factory",
    "store_oauth_tokens",
]
