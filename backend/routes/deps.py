from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.concurrency import run_in_threadpool

from app.container import Services
from models import UserProfile
from services.errors import UnauthorizedError

_bearer = HTTPBearer(auto_error=False)


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
    services: Services = Depends(get_services),
) -> UserProfile:
    """Resolve the bearer token to a profile, creating it on first contact."""
    if credentials is None or not credentials.credentials:
        raise UnauthorizedError("Missing bearer token")
    return await run_in_threadpool(services.identity.authenticate, credentials.credentials)
