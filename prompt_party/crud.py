from sqlmodel import Session, select
from sqlalchemy import update as sa_update, delete as sa_delete
from datetime import datetime
from typing import Callable, Optional
import hmac
import hashlib
import os
import uuid

from . import models, errors
from .models import Game, utcnow
from .names import compute_unique_name
from .cache import cache_player_names, get_cached_player_names, invalidate_player_names
from .logging_utils import get_logger

logger = get_logger("prompt_party.crud")

# secret for signing session tokens; override with SESSION_SECRET env var in production
_SECRET = os.environ.get('SESSION_SECRET', 'dev-secret-change-me')

# attempts for a read-compute-write cycle before giving up on a busy game
MAX_WRITE_ATTEMPTS = 3

engine = None


# --- game records -------------------------------------------------------------

def create_game_record(session: Session, game: Game) -> Game:
    now = utcnow()
    rec = models.GameRecord(
        id=game.id,
        creator_id=game.creator_id,
        status=game.status,
        revision=game.revision,
        created_at=game.created_at,
        updated_at=now,
        game_json=game.model_dump_json(),
    )
    session.add(rec)
    session.commit()
    logger.info("game_created", extra={"game_id": game.id, "player_id": game.creator_id})
    return game


def get_game(session: Session, game_id: str) -> Optional[Game]:
    # always hit the database: another client may have written since our last read
    rec = session.exec(
        select(models.GameRecord)
        .where(models.GameRecord.id == game_id)
        .execution_options(populate_existing=True)
    ).first()
    if not rec:
        return None
    return Game.model_validate_json(rec.game_json)


def load_game(session: Session, game_id: str) -> Game:
    game = get_game(session, game_id)
    if game is None:
        raise errors.NotFoundError(f"Game {game_id} not found", game_id=game_id)
    return game


def save_game(session: Session, game: Game) -> Game:
    """Compare-and-swap write.

    `game.revision` must be the revision that was read; the stored row is
    only replaced if it still carries that revision.
    """
    expected = game.revision
    new = game.model_copy(update={"revision": expected + 1})
    result = session.execute(
        sa_update(models.GameRecord)
        .where(models.GameRecord.id == game.id)
        .where(models.GameRecord.revision == expected)
        .values(
            revision=expected + 1,
            status=new.status,
            creator_id=new.creator_id,
            updated_at=utcnow(),
            game_json=new.model_dump_json(),
        )
    )
    if result.rowcount != 1:
        session.rollback()
        raise errors.ConflictError(
            f"Game {game.id} was modified concurrently", game_id=game.id, revision=expected
        )
    session.commit()
    return new


def update_game(session: Session, game_id: str, mutate: Callable[[Game], Optional[Game]],
                attempts: int = MAX_WRITE_ATTEMPTS) -> Optional[Game]:
    """Read the latest game, apply `mutate`, and write it back.

    `mutate` must be pure: it is re-run against a fresh read when another
    writer got there first, so its precondition checks always see the latest
    state. Domain errors raised by `mutate` propagate with nothing written.
    Returning the game unchanged skips the write; returning None deletes it.
    """
    for attempt in range(1, attempts + 1):
        current = load_game(session, game_id)
        updated = mutate(current)
        if updated is current:
            return current
        try:
            if updated is None:
                delete_game(session, game_id, expected_revision=current.revision)
                return None
            return save_game(session, updated)
        except errors.ConflictError:
            logger.info("write_conflict", extra={"game_id": game_id, "attempt": attempt,
                                                 "revision": current.revision})
    raise errors.ConflictError(f"Game {game_id} is busy, please retry", game_id=game_id)


def delete_game(session: Session, game_id: str, expected_revision: Optional[int] = None) -> bool:
    """Delete a game with its player info and sessions."""
    stmt = sa_delete(models.GameRecord).where(models.GameRecord.id == game_id)
    if expected_revision is not None:
        stmt = stmt.where(models.GameRecord.revision == expected_revision)
    result = session.execute(stmt)
    if result.rowcount != 1:
        session.rollback()
        if expected_revision is not None and get_game(session, game_id) is not None:
            raise errors.ConflictError(f"Game {game_id} was modified concurrently", game_id=game_id)
        return False
    session.execute(sa_delete(models.PlayerInfo).where(models.PlayerInfo.game_id == game_id))
    session.execute(sa_delete(models.PlayerSession).where(models.PlayerSession.game_id == game_id))
    session.commit()
    invalidate_player_names(game_id)
    logger.info("game_deleted", extra={"game_id": game_id})
    return True


# --- player info ----------------------------------------------------------------

def list_player_info(session: Session, game_id: str) -> list:
    return list(session.exec(
        select(models.PlayerInfo)
        .where(models.PlayerInfo.game_id == game_id)
        .order_by(models.PlayerInfo.joined_at)
    ).all())


def add_player_info(session: Session, game_id: str, player_id: str, display_name: str) -> models.PlayerInfo:
    """Store a player's display name, made unique within the game."""
    existing = [p.display_name for p in list_player_info(session, game_id) if p.player_id != player_id]
    info = session.get(models.PlayerInfo, (game_id, player_id))
    if info is None:
        info = models.PlayerInfo(game_id=game_id, player_id=player_id, display_name="", joined_at=utcnow())
    info.display_name = compute_unique_name(existing, display_name)
    session.add(info)
    session.commit()
    session.refresh(info)
    invalidate_player_names(game_id)
    return info


def remove_player_info(session: Session, game_id: str, player_id: str) -> bool:
    info = session.get(models.PlayerInfo, (game_id, player_id))
    if not info:
        return False
    session.delete(info)
    session.commit()
    invalidate_player_names(game_id)
    return True


def get_player_names(session: Session, game_id: str) -> dict[str, str]:
    names = get_cached_player_names(game_id)
    if names is None:
        names = {p.player_id: p.display_name for p in list_player_info(session, game_id)}
        cache_player_names(game_id, names)
    return names


# --- player sessions ------------------------------------------------------------

def new_player_id() -> str:
    return f"player-{uuid.uuid4().hex[:12]}"


def create_player_session(session: Session, game_id: str, player_id: str,
                          session_id: Optional[str] = None) -> models.PlayerSession:
    now = utcnow()
    ps = models.PlayerSession(
        game_id=game_id,
        player_id=player_id,
        session_id=session_id or uuid.uuid4().hex,
        joined_at=now,
        last_active=now,
        session_secret=uuid.uuid4().hex,
    )
    session.add(ps)
    session.commit()
    session.refresh(ps)
    return ps


def get_player_session(session: Session, game_id: str, player_id: str, session_id: str):
    if not (game_id and player_id and session_id):
        return None
    return session.get(models.PlayerSession, (game_id, player_id, session_id))


def validate_player_session(session: Session, game_id: str, player_id: str, session_id: str) -> bool:
    return get_player_session(session, game_id, player_id, session_id) is not None


def touch_player_session(session: Session, game_id: str, player_id: str, session_id: str,
                         now: Optional[datetime] = None) -> bool:
    ps = get_player_session(session, game_id, player_id, session_id)
    if not ps:
        return False
    ps.last_active = now or utcnow()
    session.add(ps)
    session.commit()
    return True


def delete_player_sessions(session: Session, game_id: str, player_id: str) -> int:
    result = session.execute(
        sa_delete(models.PlayerSession)
        .where(models.PlayerSession.game_id == game_id)
        .where(models.PlayerSession.player_id == player_id)
    )
    session.commit()
    return result.rowcount or 0


def _token_sig(secret: str, game_id: str, player_id: str, session_id: str) -> str:
    msg = f"{game_id}:{player_id}:{session_id}".encode()
    return hmac.new(secret.encode(), msg, hashlib.sha256).hexdigest()


def sign_session_token(session: Session, game_id: str, player_id: str, session_id: str) -> Optional[str]:
    """Sign a session id with the session's own secret.

    Returns "sid.sig", or None if the session doesn't exist.
    """
    ps = get_player_session(session, game_id, player_id, session_id)
    if not ps:
        return None
    secret = ps.session_secret or _SECRET
    return f"{session_id}.{_token_sig(secret, game_id, player_id, session_id)}"


def verify_session_token(session: Session, game_id: str, player_id: str, token: str) -> Optional[str]:
    """Return the session id when the token is valid for this game and player."""
    try:
        sid, sig = token.rsplit('.', 1)
    except (AttributeError, ValueError):
        return None
    ps = get_player_session(session, game_id, player_id, sid)
    if not ps:
        return None
    expected = _token_sig(ps.session_secret or _SECRET, game_id, player_id, sid)
    if hmac.compare_digest(expected, sig):
        return sid
    return None
