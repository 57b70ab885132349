"""Authentication package."""

from coachbilling.auth.dependencies import (
    CurrentUser,
    get_bearer_token_data,
    get_current_user,
)
from coachbilling.auth.jwt import decode_access_token

__all__ = [
    "decode_access_token",
    "get_bearer_token_data",
    "get_current_user",
    "CurrentUser",
]
