"""FastAPI dependencies for authentication."""

from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from coachbilling.auth.jwt import decode_access_token
from coachbilling.errors import CallableError
from coachbilling.models import TokenData

# Security scheme
bearer_scheme = HTTPBearer(auto_error=False)


async def get_bearer_token_data(
    bearer: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> TokenData | None:
    """Extract and validate bearer token."""
    if not bearer:
        return None

    return decode_access_token(bearer.credentials)


async def get_current_user(
    bearer_data: TokenData | None = Depends(get_bearer_token_data),
) -> TokenData:
    """
    Get the authenticated caller.

    The user id used for billing always comes from here, never from the
    request body.
    """
    if bearer_data:
        return bearer_data

    raise CallableError("unauthenticated", "The function must be called while authenticated.")


# Type alias for cleaner dependency injection
CurrentUser = Annotated[TokenData, Depends(get_current_user)]
