"""User identity for API routes.

Authentication happens at the upstream gateway, which forwards the verified
user id in a header. With auth disabled every request acts as the local user.
"""

from fastapi import HTTPException, Request

from scribeline.config import settings


async def get_current_user_id(request: Request) -> str:
    user_id = (request.headers.get(settings.auth_user_header) or "").strip()
    if user_id:
        return user_id
    if settings.auth_enabled:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return settings.local_user_id
