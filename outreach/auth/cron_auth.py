"""
cron_auth.py
------------
Purpose:
    Shared-secret check for scheduler calls to the /cron endpoints.

Notes:
    - The scheduler sends `Authorization: Bearer <CRON_SECRET>`.
    - This authenticates the scheduler, not dashboard users.
"""

import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from outreach.config import settings

_security = HTTPBearer(auto_error=False)


def verify_cron_secret(token: str | None) -> bool:
    expected = settings.CRON_SECRET
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="CRON_SECRET not configured",
        )
    return token is not None and hmac.compare_digest(token.encode(), expected.encode())


def cron_auth_dependency(
    credentials: HTTPAuthorizationCredentials | None = Depends(_security),
) -> None:
    token = credentials.credentials if credentials else None
    if not verify_cron_secret(token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
