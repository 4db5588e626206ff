"""
Caller identity.

Authentication is handled upstream; the gateway forwards the account id in
the X-User-Id header.
"""
from typing import Optional

from fastapi import Header, HTTPException, Request


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Account id set by the upstream gateway"),
) -> str:
    if x_user_id and x_user_id.strip():
        request.state.user_id = x_user_id.strip()
        return request.state.user_id
    raise HTTPException(
        status_code=401,
        detail="Missing X-User-Id header",
    )
