"""
Caller identity.

Authentication happens upstream; the gateway in front of this service
forwards the verified user id in the X-User-Id header.
"""
import logging
from typing import Optional

from fastapi import Header, HTTPException, Request

logger = logging.getLogger("paybridge")


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Verified user id set by the auth layer"),
) -> str:
    """
    Extract current user ID from request headers.

    Raises:
        HTTPException 401: Missing user id
    """
    if not x_user_id or not x_user_id.strip():
        logger.debug("auth.missing_user_id", extra={"path": request.url.path})
        raise HTTPException(status_code=401, detail="Unauthorized")
    user_id = x_user_id.strip()
    request.state.user_id = user_id
    return user_id
