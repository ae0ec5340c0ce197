"""
Authentication dependencies for FastAPI.

Every endpoint that touches the job table needs either a signed bearer
token or the scheduler's shared secret. Requests with neither are rejected.
"""
import hmac

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

from hookrelay.config import settings
from hookrelay.services.jwt_service import JWTService


# auto_error=False so the scheduler secret can stand in for a token
security = HTTPBearer(auto_error=False)


class Caller(BaseModel):
    """Authenticated caller."""
    subject: str
    kind: str  # token or scheduler


def _scheduler_secret_matches(provided: str | None) -> bool:
    expected = settings.SCHEDULER_SECRET
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


async def require_caller(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_scheduler_secret: str | None = Header(default=None),
) -> Caller:
    """
    Dependency that requires a valid JWT or the scheduler secret.

    Usage:
        @router.get("/process")
        async def process(caller: Caller = Depends(require_caller)):
            ...
    """
    if _scheduler_secret_matches(x_scheduler_secret):
        return Caller(subject="scheduler", kind="scheduler")

    if credentials is not None:
        payload = JWTService().verify_token(credentials.credentials)
        if payload and payload.get("sub"):
            return Caller(subject=str(payload["sub"]), kind="token")

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Missing or invalid credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
