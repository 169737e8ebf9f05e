"""Session REST API. All routes are mounted under /api and require a bearer token."""

import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.container import Services
from models import ParticipantRole, UserProfile, VideoQuality
from routes.deps import get_current_user, get_services
from services.chat_log import message_view
from services.errors import ForbiddenError
from services.session_registry import SessionOptions, session_view

router = APIRouter(tags=["sessions"])
logger = logging.getLogger(__name__)


class SessionCreateRequest(BaseModel):
    game_id: str
    max_players: int | None = None
    is_private: bool = False
    video_quality: str = VideoQuality.FULL_HD.value
    fps: int = 60
    kind: str | None = Field(default=None, description="single, multiplayer or spectate")


class SessionCreateResponse(BaseModel):
    session_id: str
    join_code: str
    join_url: str


class SessionResponse(BaseModel):
    id: str
    game_id: str
    host_id: str
    join_code: str
    status: str
    kind: str
    is_private: bool
    max_players: int
    current_players: int
    spectator_count: int
    video_quality: str
    fps: int
    started_at: str
    ended_at: str | None = None


class ParticipantResponse(BaseModel):
    user_id: str
    role: str
    is_host: bool
    joined_at: str
    username: str | None = None
    display_name: str | None = None


class SessionDetailResponse(SessionResponse):
    participants: list[ParticipantResponse] = []


class JoinRequest(BaseModel):
    role: str = ParticipantRole.PLAYER.value


class LeaveResponse(BaseModel):
    user_id: str
    role: str
    duration_seconds: int


class MessageResponse(BaseModel):
    id: str
    session_id: str
    user_id: str
    seq: int
    message: str
    type: str
    created_at: str


@router.post("/sessions", response_model=SessionCreateResponse, status_code=201)
async def create_session(
    body: SessionCreateRequest,
    user: UserProfile = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> SessionCreateResponse:
    """Create a session for a game; the caller becomes its host and first player."""
    logger.info("[sessions] POST /api/sessions game=%s user=%s", body.game_id, user.id)
    options = SessionOptions(
        max_players=body.max_players,
        is_private=body.is_private,
        video_quality=body.video_quality,
        fps=body.fps,
        kind=body.kind,
    )
    created = await services.registry.create_session(body.game_id, user.id, options)
    return SessionCreateResponse(
        session_id=created.session_id,
        join_code=created.join_code,
        join_url=f"/play/{created.join_code}",
    )


@router.get("/sessions", response_model=list[SessionResponse])
async def list_sessions(
    game_id: str | None = Query(default=None),
    user: UserProfile = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> list[SessionResponse]:
    """Public sessions that are starting or active, newest first."""
    sessions = await services.registry.list_active_sessions(game_id)
    return [SessionResponse(**session_view(s)) for s in sessions]


@router.get("/sessions/code/{join_code}", response_model=SessionResponse)
async def get_session_by_code(
    join_code: str,
    user: UserProfile = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> SessionResponse:
    session = await services.registry.find_by_code(join_code)
    return SessionResponse(**session_view(session))


@router.get("/sessions/{session_id}", response_model=SessionDetailResponse)
async def get_session(
    session_id: str,
    user: UserProfile = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> SessionDetailResponse:
    session = await services.registry.get_session(session_id)
    participants = await services.registry.list_participants(session_id)
    return SessionDetailResponse(
        **session_view(session),
        participants=[ParticipantResponse(**p) for p in participants],
    )


@router.post("/sessions/{session_id}/join", response_model=ParticipantResponse)
async def join_session(
    session_id: str,
    body: JoinRequest | None = None,
    user: UserProfile = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ParticipantResponse:
    role = body.role if body is not None else ParticipantRole.PLAYER.value
    logger.info("[sessions] POST /api/sessions/%s/join user=%s role=%s", session_id, user.id, role)
    participant = await services.registry.join_session(session_id, user.id, role)
    return ParticipantResponse(**participant)


@router.post("/sessions/{session_id}/leave", response_model=LeaveResponse)
async def leave_session(
    session_id: str,
    user: UserProfile = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> LeaveResponse:
    logger.info("[sessions] POST /api/sessions/%s/leave user=%s", session_id, user.id)
    result = await services.registry.leave_session(session_id, user.id)
    return LeaveResponse(**result)


@router.post("/sessions/{session_id}/end", response_model=SessionResponse)
async def end_session(
    session_id: str,
    user: UserProfile = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> SessionResponse:
    """Host-only. Releases every participant and records session history."""
    logger.info("[sessions] POST /api/sessions/%s/end user=%s", session_id, user.id)
    session = await services.registry.end_session(session_id, user.id)
    return SessionResponse(**session_view(session))


@router.get("/sessions/{session_id}/messages", response_model=list[MessageResponse])
async def list_messages(
    session_id: str,
    after_seq: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=200),
    user: UserProfile = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> list[MessageResponse]:
    """Chat history in sequence order; page forward with after_seq."""
    session = await services.registry.get_session(session_id)
    if session.is_private and not await services.registry.has_participated(session_id, user.id):
        raise ForbiddenError("Private session chat is visible to participants only", session_id=session_id)
    messages = await services.chat_log.history(session_id, after_seq=after_seq, limit=limit)
    return [MessageResponse(**message_view(m)) for m in messages]
