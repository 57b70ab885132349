"""Bearer token validation.

Tokens are minted by the account service, which signs them with the shared
``SECRET_KEY``. ``create_access_token`` issues the same format for local
development and tests; the billing service itself never issues tokens.
"""

from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt

from coachbilling.config import get_settings
from coachbilling.models import TokenData


def create_access_token(
    data: dict,
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        data: Token payload data (``sub`` is the internal user id)
        expires_delta: Token expiration time

    Returns:
        Encoded JWT token
    """
    settings = get_settings()

    to_encode = data.copy()
    expire = datetime.now(UTC) + (
        expires_delta
        or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode.update({"exp": expire})

    return jwt.encode(
        to_encode,
        settings.secret_key.get_secret_value(),
        algorithm=settings.algorithm,
    )


def decode_access_token(token: str) -> TokenData | None:
    """
    Decode and validate a JWT access token.

    Args:
        token: JWT token string

    Returns:
        TokenData if valid, None if invalid or expired
    """
    settings = get_settings()

    try:
        payload = jwt.decode(
            token,
            settings.secret_key.get_secret_value(),
            algorithms=[settings.algorithm],
        )
    except JWTError:
        return None

    user_id = payload.get("sub")
    if not user_id:
        return None

    return TokenData(sub=user_id, email=payload.get("email"))
