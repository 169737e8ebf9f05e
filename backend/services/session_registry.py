"""
Session lifecycle and participant roster.

Every mutating operation runs in one store transaction that first locks the
session row and re-reads its status, so concurrent join/leave/end requests
serialize per session and a join racing an end sees either the fully active
or the fully ended session. Events are broadcast only after the commit.

    starting -> active -> ending -> ended
    any non-terminal state -> error
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from app.store import Store
from models import (
    LISTED_STATUSES,
    Game,
    GameSession,
    LibraryEntry,
    LibraryStatus,
    Participant,
    ParticipantRole,
    SessionHistory,
    SessionKind,
    SessionStatus,
    UserProfile,
    VideoQuality,
    generate_id,
    utcnow,
)
from services.errors import (
    AlreadyActiveError,
    AlreadyPresentError,
    ConflictError,
    ForbiddenError,
    FullError,
    InvalidError,
    NotActiveError,
    NotFoundError,
    TransientError,
)
from services.fanout import RealtimeFanout, make_event
from services.join_codes import generate_join_code, normalize_join_code
from services.provisioner import LoggingProvisioner, Provisioner, ProvisioningError

logger = logging.getLogger(__name__)

MAX_PLAYERS_LIMIT = 16
FPS_CHOICES = (30, 60)


@dataclass
class SessionOptions:
    max_players: int | None = None
    is_private: bool = False
    video_quality: VideoQuality | str = VideoQuality.FULL_HD
    fps: int = 60
    # None: multiplayer when max_players > 1, else single.
    kind: SessionKind | str | None = None


@dataclass(frozen=True)
class CreatedSession:
    session_id: str
    join_code: str


class SessionRegistry:
    def __init__(
        self,
        store: Store,
        fanout: RealtimeFanout,
        provisioner: Provisioner | None = None,
        *,
        join_code_attempts: int = 8,
        list_limit: int = 50,
        code_generator: Callable[[], str] = generate_join_code,
    ) -> None:
        self._store = store
        self._fanout = fanout
        self._provisioner = provisioner or LoggingProvisioner()
        self._join_code_attempts = join_code_attempts
        self._list_limit = list_limit
        self._code_generator = code_generator

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create_session(
        self,
        game_id: str,
        creator_user_id: str,
        options: SessionOptions | None = None,
    ) -> CreatedSession:
        options = options or SessionOptions()
        session = await asyncio.to_thread(self._create_tx, game_id, creator_user_id, options)
        logger.info(
            "[registry] Session created session=%s game=%s host=%s code=%s",
            session.id,
            game_id,
            creator_user_id,
            session.join_code,
        )
        if not session.is_private:
            await self._fanout.publish_global(make_event("session_created", session.id, session=session_view(session)))
        return CreatedSession(session_id=session.id, join_code=session.join_code)

    async def join_session(
        self,
        session_id: str,
        user_id: str,
        role: ParticipantRole | str = ParticipantRole.PLAYER,
    ) -> dict[str, Any]:
        try:
            role = ParticipantRole(role)
        except ValueError as exc:
            raise InvalidError("Unknown participant role", role=str(role)) from exc
        participant = await asyncio.to_thread(self._join_tx, session_id, user_id, role)
        logger.info("[registry] user_joined session=%s user=%s role=%s", session_id, user_id, role.value)
        await self._fanout.broadcast(session_id, make_event("user_joined", session_id, participant=participant))
        return participant

    async def leave_session(self, session_id: str, user_id: str) -> dict[str, Any]:
        result = await asyncio.to_thread(self._leave_tx, session_id, user_id)
        logger.info(
            "[registry] user_left session=%s user=%s duration=%ss",
            session_id,
            user_id,
            result["duration_seconds"],
        )
        await self._fanout.broadcast(session_id, make_event("user_left", session_id, **result))
        # A departed user must not keep receiving or relaying room traffic.
        await self._fanout.remove_user(session_id, user_id)
        return result

    async def end_session(self, session_id: str, requester_user_id: str) -> GameSession:
        session = await asyncio.to_thread(self._end_tx, session_id, requester_user_id)
        logger.info(
            "[registry] Session %s -> %s (ended by host)", session_id, SessionStatus(session.status).value
        )
        await self._announce_end(session, reason="ended_by_host")
        return session

    async def mark_error(self, session_id: str, reason: str) -> GameSession:
        """Provisioner hook: move a non-terminal session to ERROR and release everyone."""
        session = await asyncio.to_thread(self._error_tx, session_id, reason)
        logger.warning("[registry] Session %s -> error: %s", session_id, reason)
        await self._announce_end(session, reason="error")
        return session

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_active_sessions(self, game_id: str | None = None) -> list[GameSession]:
        return await asyncio.to_thread(self._list_active, game_id)

    async def get_session(self, session_id: str) -> GameSession:
        return await asyncio.to_thread(self._get, session_id)

    async def find_by_code(self, join_code: str) -> GameSession:
        code = normalize_join_code(join_code)
        if code is None:
            raise NotFoundError("Session not found", join_code=join_code)
        return await asyncio.to_thread(self._find_by_code, code)

    async def list_participants(self, session_id: str) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._participants, session_id)

    async def is_present(self, session_id: str, user_id: str) -> bool:
        return await asyncio.to_thread(self._is_present, session_id, user_id)

    async def has_participated(self, session_id: str, user_id: str) -> bool:
        """True if the user is, or ever was, a participant of the session."""
        return await asyncio.to_thread(self._has_participated, session_id, user_id)

    async def count_active(self) -> int:
        return await asyncio.to_thread(self._count_active)

    # ------------------------------------------------------------------
    # Transactions (run in worker threads)
    # ------------------------------------------------------------------

    def _create_tx(self, game_id: str, creator_user_id: str, options: SessionOptions) -> GameSession:
        with self._store.transaction() as db:
            creator = db.get(UserProfile, creator_user_id, with_for_update=True)
            if creator is None:
                raise NotFoundError("User not found", user_id=creator_user_id)
            game = db.get(Game, game_id, with_for_update=True)
            if game is None or not game.is_active:
                raise NotFoundError("Game not found", game_id=game_id)

            owned = db.execute(
                select(GameSession.id)
                .where(
                    GameSession.created_by == creator_user_id,
                    GameSession.status.in_(LISTED_STATUSES),
                )
                .limit(1)
            ).scalar_one_or_none()
            if owned is not None:
                raise AlreadyActiveError("You already host an active session", session_id=owned)

            kind, max_players, video_quality = _validate_options(options, game)
            now = utcnow()
            session = GameSession(
                id=generate_id(),
                game_id=game.id,
                created_by=creator_user_id,
                status=SessionStatus.STARTING,
                kind=kind,
                is_private=bool(options.is_private),
                max_players=max_players,
                current_players=1,
                spectator_count=0,
                video_quality=video_quality,
                fps=options.fps,
                started_at=now,
                last_activity_at=now,
            )
            self._insert_with_join_code(db, session)
            db.add(
                Participant(
                    session_id=session.id,
                    user_id=creator_user_id,
                    role=ParticipantRole.PLAYER,
                    is_host=True,
                    joined_at=now,
                )
            )

            try:
                self._provisioner.notify_provision_start(session.id, game.id)
            except ProvisioningError as exc:
                raise TransientError("Could not provision the session", game_id=game.id) from exc
            _transition(session, SessionStatus.ACTIVE)
            game.play_count = (game.play_count or 0) + 1
        return session

    def _insert_with_join_code(self, db, session: GameSession) -> None:
        for attempt in range(1, self._join_code_attempts + 1):
            code = self._code_generator()
            taken = db.execute(select(GameSession.id).where(GameSession.join_code == code)).first()
            if taken is not None:
                logger.debug("[registry] Join code %s taken (attempt %d)", code, attempt)
                continue
            session.join_code = code
            try:
                with db.begin_nested():
                    db.add(session)
                    db.flush()
            except IntegrityError:
                # Lost a race with a concurrent creator for the same code.
                logger.info("[registry] Join code %s collided on insert (attempt %d)", code, attempt)
                continue
            return
        raise ConflictError("Could not allocate a unique join code", attempts=self._join_code_attempts)

    def _join_tx(self, session_id: str, user_id: str, role: ParticipantRole) -> dict[str, Any]:
        with self._store.transaction() as db:
            session = _lock_session(db, session_id)
            if session.status != SessionStatus.ACTIVE:
                raise NotActiveError("Session is not active", session_id=session_id, status=SessionStatus(session.status).value)
            user = db.get(UserProfile, user_id)
            if user is None:
                raise NotFoundError("User not found", user_id=user_id)

            participant = db.get(Participant, (session_id, user_id))
            if participant is not None and participant.is_present:
                raise AlreadyPresentError("Already in this session", session_id=session_id)
            if role is ParticipantRole.PLAYER and session.current_players >= session.max_players:
                raise FullError("Session is full", session_id=session_id, max_players=session.max_players)

            now = utcnow()
            if participant is None:
                participant = Participant(
                    session_id=session_id,
                    user_id=user_id,
                    role=role,
                    is_host=user_id == session.created_by,
                    joined_at=now,
                    total_duration_seconds=0,
                )
                db.add(participant)
            else:
                # Re-join: same storage key, new presence window.
                participant.role = role
                participant.joined_at = now
                participant.left_at = None
            _adjust_counters(session, role, +1)
            session.last_activity_at = now
            view = participant_view(participant, user)
        return view

    def _leave_tx(self, session_id: str, user_id: str) -> dict[str, Any]:
        with self._store.transaction() as db:
            session = _lock_session(db, session_id)
            if session.is_terminal:
                raise NotActiveError("Session already finished", session_id=session_id, status=SessionStatus(session.status).value)
            participant = db.get(Participant, (session_id, user_id))
            if participant is None or not participant.is_present:
                raise NotFoundError("Not in this session", session_id=session_id, user_id=user_id)

            now = utcnow()
            elapsed = participant.finalize(now)
            role = ParticipantRole(participant.role)
            _adjust_counters(session, role, -1)
            session.last_activity_at = now
            _credit_library(db, user_id, session.game_id, elapsed, now)
        return {"user_id": user_id, "role": role.value, "duration_seconds": elapsed}

    def _end_tx(self, session_id: str, requester_user_id: str) -> GameSession:
        with self._store.transaction() as db:
            session = _lock_session(db, session_id)
            if session.created_by != requester_user_id:
                raise ForbiddenError("Only the host can end the session", session_id=session_id)
            if session.status != SessionStatus.ACTIVE:
                raise NotActiveError("Session is not active", session_id=session_id, status=SessionStatus(session.status).value)

            _transition(session, SessionStatus.ENDING)
            now = utcnow()
            _finalize_roster(db, session, now)
            try:
                self._provisioner.notify_provision_stop(session.id)
            except ProvisioningError as exc:
                logger.warning("[registry] Provisioner stop failed session=%s: %s", session.id, exc)
                session.error_reason = str(exc)[:255] or "provision_stop_failed"
                _transition(session, SessionStatus.ERROR)
            else:
                _transition(session, SessionStatus.ENDED)
        return session

    def _error_tx(self, session_id: str, reason: str) -> GameSession:
        with self._store.transaction() as db:
            session = _lock_session(db, session_id)
            if session.is_terminal:
                raise NotActiveError("Session already finished", session_id=session_id, status=SessionStatus(session.status).value)
            session.error_reason = (reason or "unknown")[:255]
            _transition(session, SessionStatus.ERROR)
            _finalize_roster(db, session, utcnow())
        return session

    def _list_active(self, game_id: str | None) -> list[GameSession]:
        stmt = select(GameSession).where(
            GameSession.is_private.is_(False),
            GameSession.status.in_(LISTED_STATUSES),
        )
        if game_id:
            stmt = stmt.where(GameSession.game_id == game_id)
        stmt = stmt.order_by(GameSession.started_at.desc()).limit(self._list_limit)
        with self._store.read() as db:
            return list(db.execute(stmt).scalars())

    def _get(self, session_id: str) -> GameSession:
        with self._store.read() as db:
            session = db.get(GameSession, session_id)
        if session is None:
            raise NotFoundError("Session not found", session_id=session_id)
        return session

    def _find_by_code(self, code: str) -> GameSession:
        with self._store.read() as db:
            session = db.execute(select(GameSession).where(GameSession.join_code == code)).scalar_one_or_none()
        if session is None:
            raise NotFoundError("Session not found", join_code=code)
        return session

    def _participants(self, session_id: str) -> list[dict[str, Any]]:
        with self._store.read() as db:
            if db.get(GameSession, session_id) is None:
                raise NotFoundError("Session not found", session_id=session_id)
            rows = db.execute(
                select(Participant, UserProfile)
                .join(UserProfile, UserProfile.id == Participant.user_id)
                .where(Participant.session_id == session_id, Participant.left_at.is_(None))
                .order_by(Participant.joined_at)
            ).all()
            return [participant_view(p, u) for p, u in rows]

    def _is_present(self, session_id: str, user_id: str) -> bool:
        with self._store.read() as db:
            participant = db.get(Participant, (session_id, user_id))
            return participant is not None and participant.is_present

    def _has_participated(self, session_id: str, user_id: str) -> bool:
        with self._store.read() as db:
            return db.get(Participant, (session_id, user_id)) is not None

    def _count_active(self) -> int:
        with self._store.read() as db:
            return db.execute(
                select(func.count()).select_from(GameSession).where(GameSession.status.in_(LISTED_STATUSES))
            ).scalar_one()

    async def _announce_end(self, session: GameSession, *, reason: str) -> None:
        await self._fanout.broadcast(
            session.id,
            make_event("session_ended", session.id, status=SessionStatus(session.status).value, reason=reason),
        )
        await self._fanout.close_group(session.id)


# ----------------------------------------------------------------------
# Helpers shared by the transactions
# ----------------------------------------------------------------------


def _lock_session(db, session_id: str) -> GameSession:
    session = db.get(GameSession, session_id, with_for_update=True)
    if session is None:
        raise NotFoundError("Session not found", session_id=session_id)
    return session


def _transition(session: GameSession, target: SessionStatus) -> None:
    current = SessionStatus(session.status)
    if not session.can_transition(target):
        raise NotActiveError(f"Cannot move session from {current.value} to {target.value}", session_id=session.id)
    session.status = target
    logger.debug("[registry] session=%s %s -> %s", session.id, current.value, target.value)


def _adjust_counters(session: GameSession, role: ParticipantRole, delta: int) -> None:
    # Moderators occupy neither a player seat nor the spectator count.
    if role is ParticipantRole.PLAYER:
        session.current_players = max(0, (session.current_players or 0) + delta)
    elif role is ParticipantRole.SPECTATOR:
        session.spectator_count = max(0, (session.spectator_count or 0) + delta)


def _finalize_roster(db, session: GameSession, now: datetime) -> None:
    """Close every open presence, zero the counters and write the history snapshot."""
    participants = list(
        db.execute(select(Participant).where(Participant.session_id == session.id)).scalars()
    )
    for participant in participants:
        if participant.is_present:
            elapsed = participant.finalize(now)
            _credit_library(db, participant.user_id, session.game_id, elapsed, now)
    session.current_players = 0
    session.spectator_count = 0
    session.ended_at = now
    session.last_activity_at = now
    session.duration_seconds = max(0, int((now - session.started_at).total_seconds()))

    total_players = sum(1 for p in participants if p.role == ParticipantRole.PLAYER)
    for participant in participants:
        db.add(
            SessionHistory(
                session_id=session.id,
                user_id=participant.user_id,
                game_id=session.game_id,
                role=participant.role,
                started_at=session.started_at,
                ended_at=now,
                duration_seconds=participant.total_duration_seconds,
                total_players=max(total_players, 1),
            )
        )


def _credit_library(db, user_id: str, game_id: str, seconds: int, now: datetime) -> None:
    entry = db.get(LibraryEntry, (user_id, game_id))
    if entry is None:
        entry = LibraryEntry(
            user_id=user_id,
            game_id=game_id,
            status=LibraryStatus.PLAYING,
            play_time_seconds=0,
            added_at=now,
        )
        db.add(entry)
    entry.play_time_seconds = (entry.play_time_seconds or 0) + seconds
    entry.last_played_at = now
    if entry.status == LibraryStatus.NOT_PLAYED:
        entry.status = LibraryStatus.PLAYING


def _validate_options(options: SessionOptions, game: Game) -> tuple[SessionKind, int, VideoQuality]:
    try:
        video_quality = VideoQuality(options.video_quality)
    except ValueError as exc:
        raise InvalidError("Unsupported video quality", video_quality=str(options.video_quality)) from exc
    if options.fps not in FPS_CHOICES:
        raise InvalidError("Unsupported frame rate", fps=options.fps, allowed=list(FPS_CHOICES))

    max_players = options.max_players
    if max_players is not None and not 1 <= max_players <= MAX_PLAYERS_LIMIT:
        raise InvalidError("max_players out of range", max_players=max_players, limit=MAX_PLAYERS_LIMIT)

    if options.kind is None:
        kind = SessionKind.MULTIPLAYER if (max_players or 1) > 1 else SessionKind.SINGLE
    else:
        try:
            kind = SessionKind(options.kind)
        except ValueError as exc:
            raise InvalidError("Unknown session kind", kind=str(options.kind)) from exc

    if kind is SessionKind.MULTIPLAYER:
        max_players = max_players or max(game.player_count or 1, 2)
    else:
        # Single and spectate sessions have exactly one player seat: the host's.
        if max_players not in (None, 1):
            raise InvalidError(f"{kind.value} sessions have one player seat", max_players=max_players)
        max_players = 1
    return kind, max_players, video_quality


def participant_view(participant: Participant, user: UserProfile | None = None) -> dict[str, Any]:
    view: dict[str, Any] = {
        "user_id": participant.user_id,
        "role": ParticipantRole(participant.role).value,
        "is_host": bool(participant.is_host),
        "joined_at": participant.joined_at.isoformat() + "Z",
    }
    if user is not None:
        view["username"] = user.username
        view["display_name"] = user.display_name
    return view


def session_view(session: GameSession) -> dict[str, Any]:
    return {
        "id": session.id,
        "game_id": session.game_id,
        "host_id": session.created_by,
        "join_code": session.join_code,
        "status": SessionStatus(session.status).value,
        "kind": SessionKind(session.kind).value,
        "is_private": bool(session.is_private),
        "max_players": session.max_players,
        "current_players": session.current_players,
        "spectator_count": session.spectator_count,
        "video_quality": VideoQuality(session.video_quality).value,
        "fps": session.fps,
        "started_at": session.started_at.isoformat() + "Z",
        "ended_at": session.ended_at.isoformat() + "Z" if session.ended_at else None,
    }
