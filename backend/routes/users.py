from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.container import Services
from models import UserProfile
from routes.deps import get_current_user, get_services

router = APIRouter(tags=["users"])


class ProfileResponse(BaseModel):
    id: str
    username: str
    display_name: str | None = None
    avatar_url: str | None = None
    is_online: bool


class OnlineUsersResponse(BaseModel):
    user_ids: list[str]
    count: int


@router.get("/me", response_model=ProfileResponse)
async def get_me(user: UserProfile = Depends(get_current_user)) -> ProfileResponse:
    return ProfileResponse(
        id=user.id,
        username=user.username,
        display_name=user.display_name,
        avatar_url=user.avatar_url,
        is_online=bool(user.is_online),
    )


@router.get("/users/online", response_model=OnlineUsersResponse)
async def list_online_users(
    user: UserProfile = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> OnlineUsersResponse:
    user_ids = await services.presence.list_online()
    return OnlineUsersResponse(user_ids=user_ids, count=len(user_ids))
