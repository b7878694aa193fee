from fastapi import Request, HTTPException, status
from typing import Optional
from pydantic import ValidationError
import logging
from auth import decode_access_token
from models import SessionUser

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[SessionUser]:
    """Extract and validate the session user from the Bearer token.

    The token payload carries `id`, `type` (guest|regular|pro) and `email`.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    payload = decode_access_token(token)

    if not payload or not payload.get("id"):
        return None

    try:
        return SessionUser.model_validate(payload)
    except ValidationError as e:
        logger.warning(f"Rejected session payload: {e}")
        return None

async def require_auth(request: Request) -> SessionUser:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

async def require_registered_user(request: Request) -> SessionUser:
    """Require a registered (non-guest) account; guests must sign up before paying."""
    user = await require_auth(request)
    if user.is_guest:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Create an account to upgrade to Pro"
        )
    return user
