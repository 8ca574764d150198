"""Supabase JWT validation dependency for FastAPI.

The browser's Supabase access token is both the proof of identity here and
the bearer credential forwarded to the job-processing API.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Header, HTTPException
from supabase import create_client
from visionm.config import settings

logger = logging.getLogger(__name__)


@dataclass
class AuthContext:
    token: str
    user: Optional[Any] = None

    @property
    def user_id(self) -> Optional[str]:
        return getattr(self.user, "id", None) if self.user is not None else None


def _get_user(token: str) -> Any:
    client = create_client(settings.supabase_url, settings.supabase_anon_key)
    return client.auth.get_user(token).user


async def verify_jwt(authorization: str = Header(None)) -> AuthContext:
    """Validate the Supabase JWT from the Authorization header.

    Without Supabase settings (local development) the token is passed
    through unvalidated.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid token")

    token = authorization[len("Bearer "):].strip()
    if not settings.supabase_url or not settings.supabase_anon_key:
        return AuthContext(token=token)

    loop = asyncio.get_running_loop()
    try:
        user = await loop.run_in_executor(None, _get_user, token)
    except Exception as exc:
        logger.info("Rejected token: %s", exc)
        raise HTTPException(status_code=401, detail="Invalid token")
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return AuthContext(token=token, user=user)
