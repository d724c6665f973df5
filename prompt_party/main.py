from fastapi import FastAPI, Depends, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlmodel import SQLModel, Session, create_engine
from pydantic import BaseModel, Field, field_validator
from typing import Literal, Optional
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

import json
import logging
import os
import re
import time
import uuid

from . import actions, crud, errors, realtime_publisher
from . import game as game_logic
from .deps import get_session, get_generator
from .game_config import GameConfig, get_game_config
from .generation import ImageGenerator, is_generation_active
from .images import find_image, get_latest_image_url
from .logging_utils import setup_logging, get_logger, request_id_ctx, game_id_ctx
from .models import Game
from .notifications import label_event, reaction_event, turn_events
from .ratelimit import SlidingWindowLimiter
from .reactions import REACTION_EMOJIS, get_reaction_counts, get_user_reactions


# per-route sliding windows, keyed by client address
_LIMITERS: dict[str, SlidingWindowLimiter] = {
    "create": SlidingWindowLimiter(max_requests=10, window_seconds=60),
    "join": SlidingWindowLimiter(max_requests=20, window_seconds=60),
    "turn": SlidingWindowLimiter(max_requests=20, window_seconds=60),
    "react": SlidingWindowLimiter(max_requests=60, window_seconds=60),
}


def reset_rate_limits() -> None:
    for limiter in _LIMITERS.values():
        limiter.reset()


def rate_limit_dependency(name: str):
    """Create a dependency function that raises HTTP 429 if rate limited"""
    limiter = _LIMITERS[name]

    def dependency(request: Request):
        key = request.client.host if request.client else "unknown"
        if not limiter.check(key):
            retry = limiter.retry_after(key) or limiter.window_seconds
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Maximum {limiter.max_requests} requests per {int(limiter.window_seconds)} seconds.",
                headers={"Retry-After": str(max(1, int(retry)))},
            )
    return dependency


# track websocket connections -> metadata {ws: {'game_id': str, 'player_id': str|None}}
_WS_CONNECTIONS: dict = {}


def game_payload(game: Game) -> dict:
    """Game record plus the derived fields clients render from."""
    data = game.model_dump(mode="json")
    data["current_player"] = game_logic.get_current_player(game)
    data["full_prompt"] = game_logic.build_full_prompt(game.turns)
    data["generating"] = is_generation_active(game)
    data["latest_image_url"] = get_latest_image_url(game) or game.seed_image
    return data


def _prepare_message(e: dict):
    """Serialize event to JSON."""
    try:
        return json.dumps(e, default=str)
    except (TypeError, ValueError):
        return None


async def _send_to_websocket(ws: WebSocket, msg, ev) -> bool:
    """Send one message. Return False if the socket is gone."""
    try:
        if msg is not None:
            await ws.send_text(msg)
        else:
            await ws.send_json(ev)
        return True
    except Exception as send_exc:
        logger.debug("ws_send_error", extra={"error": str(send_exc)})
        return False


async def _send_to_game(game_id: str, event: dict) -> int:
    json_message = _prepare_message(event)
    dead = []
    sent = 0
    # every write is delivered; subscribers render from the latest record
    for ws, meta in list(_WS_CONNECTIONS.items()):
        if meta.get('game_id') != game_id:
            continue
        if await _send_to_websocket(ws, json_message, event):
            sent += 1
        else:
            dead.append(ws)
    for d in dead:
        _WS_CONNECTIONS.pop(d, None)
    return sent


async def broadcast_game(game: Game) -> None:
    """Push the full game record to everyone watching it."""
    payload = game_payload(game)
    sent = await _send_to_game(game.id, {"type": "game", "game": payload})
    logger.debug("broadcast_game", extra={"game_id": game.id, "revision": game.revision, "ws_count": sent})
    await realtime_publisher.publish_game_update(payload)


async def broadcast_deleted(game_id: str) -> None:
    await _send_to_game(game_id, {"type": "game_deleted", "game_id": game_id})
    await realtime_publisher.publish_room_update(f"game-{game_id}", {"id": game_id}, kind="deleted")


async def broadcast_events(session: Session, game_id: str, events: list) -> None:
    """Label notification events with display names and fan them out."""
    if not events:
        return
    names = await run_in_threadpool(crud.get_player_names, session, game_id)
    for ev in events:
        labelled = label_event(ev, names)
        logger.debug("broadcast_event", extra={"game_id": game_id, "event": labelled.get("type")})
        await _send_to_game(game_id, labelled)
        for pid in labelled.get("recipients") or [labelled.get("player_id")]:
            if pid:
                await realtime_publisher.publish_notification(pid, labelled)


setup_logging(logging.INFO)
logger = get_logger("prompt_party")
app = FastAPI(title="Prompt Party")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        # JSON API only: nothing here should ever be framed or sniffed
        response.headers.setdefault('Content-Security-Policy', "default-src 'none'; frame-ancestors 'none'")
        response.headers.setdefault('Referrer-Policy', 'strict-origin-when-cross-origin')
        response.headers.setdefault('X-Content-Type-Options', 'nosniff')
        response.headers.setdefault('X-Frame-Options', 'DENY')
        response.headers.setdefault('Cross-Origin-Opener-Policy', 'same-origin')
        response.headers.setdefault('Strict-Transport-Security', 'max-age=31536000; includeSubDomains')
        return response

app.add_middleware(SecurityHeadersMiddleware)


_GAME_PATH = re.compile(r"^/api/games/([^/]+)")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(rid)
        m = _GAME_PATH.match(request.url.path)
        game_token = game_id_ctx.set(m.group(1) if m else None)
        start = time.time()
        client = request.client.host if request.client else "-"
        ua = request.headers.get("user-agent", "-")
        response = None
        try:
            response = await call_next(request)
            return response
        except Exception:
            logger.exception(
                "request_error",
                extra={"path": str(request.url), "method": request.method},
            )
            raise
        finally:
            duration_ms = int((time.time() - start) * 1000)
            status = getattr(response, "status_code", 500)
            logger.info(
                "request",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": status,
                    "duration_ms": duration_ms,
                    "client": client,
                    "user_agent": ua,
                },
            )
            if response is not None:
                response.headers["X-Request-ID"] = rid
            game_id_ctx.reset(game_token)
            request_id_ctx.reset(token)


app.add_middleware(RequestLoggingMiddleware)

_DEFAULT_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",     # Vite dev server
    "http://127.0.0.1:5173",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("ALLOWED_ORIGINS", "").split(",") if o.strip()] or _DEFAULT_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=[
        "Accept",
        "Accept-Language",
        "Content-Language",
        "Content-Type",
        "Authorization",
        "X-Requested-With",
        "X-Request-ID",
    ],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("validation_error", extra={"method": request.method, "path": request.url.path, "errors": exc.errors()})
    return JSONResponse(
        status_code=422,
        content={
            "detail": json.loads(json.dumps(exc.errors(), default=str)),
            "message": "Input validation failed"
        }
    )


@app.exception_handler(errors.GameError)
async def game_error_handler(request: Request, exc: errors.GameError):
    level = logging.WARNING if exc.status_code >= 500 else logging.INFO
    logger.log(level, "game_error", extra={"path": request.url.path, "status": exc.status_code,
                                           "error": exc.message, "kind": exc.code})
    headers = None
    if isinstance(exc, errors.ExternalServiceError) and exc.retry_after:
        headers = {"Retry-After": str(max(1, int(exc.retry_after)))}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.get("/health", include_in_schema=False)
def health():
    return JSONResponse({"status": "ok"})


@app.get("/api/cache/stats", include_in_schema=False)
def cache_stats():
    """Get cache statistics for monitoring"""
    from .cache import get_cache

    stats = get_cache().get_stats()
    return JSONResponse({
        "cache_stats": stats,
        "rate_limit_keys": {name: lim.tracked_keys() for name, lim in _LIMITERS.items()},
        "ws_connections": len(_WS_CONNECTIONS),
        "status": "ok"
    })


@app.on_event("startup")
def on_startup():
    from .migrations import run_migrations

    db_path = os.getenv("DATABASE_URL", "sqlite:///./prompt_party.db")
    connect_args = {"check_same_thread": False} if db_path.startswith("sqlite") else {}
    if not db_path.startswith("sqlite"):
        # Reasonable defaults for pooled connections in production databases
        engine = create_engine(
            db_path,
            echo=False,
            connect_args=connect_args,
            pool_pre_ping=True,
            pool_size=10,
            max_overflow=20,
            pool_recycle=1800,
        )
    else:
        engine = create_engine(db_path, echo=False, connect_args=connect_args)

    SQLModel.metadata.create_all(engine)

    try:
        run_migrations(engine)
    except Exception as e:
        logger.warning("migrations_failed", extra={"error": str(e)})

    crud.engine = engine


# --- request bodies ---------------------------------------------------------------

def _strip_name(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError('Display name cannot be empty')
    return v


class CreateGameRequest(BaseModel):
    display_name: str = Field(..., min_length=1, max_length=32)
    preset: str = "STANDARD"
    mode: Literal["edit", "prompt"] = "edit"
    turns_per_game: Optional[int] = Field(None, ge=1, le=50)
    min_players: Optional[int] = Field(None, ge=1, le=20)
    max_players: Optional[int] = Field(None, ge=1, le=20)
    max_turn_length: Optional[int] = Field(None, ge=1, le=200)
    auto_start_on_full: Optional[bool] = None
    generate_image_every_turn: Optional[bool] = None
    # URL or data: URL of an uploaded image
    seed_image: Optional[str] = None
    # generate the seed image from this prompt when no image is uploaded
    seed_prompt: Optional[str] = Field(None, max_length=1000)

    @field_validator('display_name')
    @classmethod
    def strip_display_name(cls, v):
        return _strip_name(v)

    def to_config(self) -> GameConfig:
        overrides = self.model_dump(
            include={"turns_per_game", "min_players", "max_players", "max_turn_length",
                     "auto_start_on_full", "generate_image_every_turn"},
            exclude_none=True,
        )
        config = get_game_config(self.preset).model_copy(update={"mode": self.mode, **overrides})
        # keep the warning band meaningful when the turn length shrinks
        if config.warning_threshold >= config.max_turn_length:
            config = config.model_copy(update={"warning_threshold": max(0, config.max_turn_length - 5)})
        return config


class JoinRequest(BaseModel):
    display_name: str = Field(..., min_length=1, max_length=32)

    @field_validator('display_name')
    @classmethod
    def strip_display_name(cls, v):
        return _strip_name(v)


class PlayerRequest(BaseModel):
    player_id: str = Field(..., min_length=1, max_length=64)
    # falls back to the Authorization header, then the session_token cookie
    session_token: Optional[str] = Field(None, max_length=256)


class TurnRequest(PlayerRequest):
    text: str = Field(..., max_length=500)


class SeedRequest(PlayerRequest):
    image: str = Field(..., min_length=1)
    text: str = Field("Uploaded image", max_length=200)


class ReactionRequest(PlayerRequest):
    emoji: str
    action: Literal["add", "remove"] = "add"

    @field_validator('emoji')
    @classmethod
    def validate_emoji(cls, v):
        if v not in REACTION_EMOJIS:
            raise ValueError(f"emoji must be one of {', '.join(REACTION_EMOJIS)}")
        return v


# --- session helpers --------------------------------------------------------------

def _token_from_request(request: Request, body: Optional[PlayerRequest]) -> Optional[str]:
    if body is not None and body.session_token:
        return body.session_token
    auth = request.headers.get('authorization')
    if auth and auth.lower().startswith('bearer '):
        return auth.split(' ', 1)[1].strip()
    return request.cookies.get('session_token')


def _session_id_for(session: Session, request: Request, game_id: str, body: PlayerRequest) -> Optional[str]:
    """Resolve the caller's session id; None lets the action reject it."""
    token = _token_from_request(request, body)
    if not token:
        return None
    return crud.verify_session_token(session, game_id, body.player_id, token)


def _issue_token(session: Session, response: Response, game_id: str, player_id: str, session_id: str) -> Optional[str]:
    token = crud.sign_session_token(session, game_id, player_id, session_id)
    secure_cookie = os.getenv('COOKIE_SECURE', '0') in ('1', 'true', 'True')
    response.set_cookie('session_token', token or '', httponly=True, secure=secure_cookie, samesite='lax')
    return token


# --- routes -----------------------------------------------------------------------

@app.post("/api/games", status_code=201)
async def create_game(
    body: CreateGameRequest,
    response: Response,
    session: Session = Depends(get_session),
    generator: ImageGenerator = Depends(get_generator),
    _: None = Depends(rate_limit_dependency("create")),
):
    config = body.to_config()
    if config.mode == "edit" and not body.seed_image and body.seed_prompt:
        game, info, ps = await actions.create_game_from_prompt(
            session, generator, body.display_name, body.seed_prompt, config)
    else:
        game, info, ps = await run_in_threadpool(
            actions.create_game, session, body.display_name, config,
            seed_image=body.seed_image, seed_prompt=body.seed_prompt)
    token = await run_in_threadpool(_issue_token, session, response, game.id, ps.player_id, ps.session_id)
    return {
        "game": game_payload(game),
        "player_id": ps.player_id,
        "display_name": info.display_name,
        "session_token": token,
    }


@app.get("/api/games/{game_id}")
def get_game(game_id: str, session: Session = Depends(get_session)):
    return {"game": game_payload(crud.load_game(session, game_id))}


@app.get("/api/games/{game_id}/players")
def get_players(game_id: str, session: Session = Depends(get_session)):
    game = crud.load_game(session, game_id)
    names = crud.get_player_names(session, game_id)
    return {
        "players": [
            {"player_id": pid, "display_name": names.get(pid, "Unknown"), "is_creator": pid == game.creator_id}
            for pid in game.players
        ],
        "count": game_logic.get_player_count(game),
    }


def _join(session: Session, game_id: str, display_name: str):
    ps = actions.establish_identity(session, game_id)
    try:
        game = actions.join_game(session, game_id, ps.player_id, ps.session_id, display_name)
    except errors.GameError:
        # nobody joined; drop the session opened for them
        crud.delete_player_sessions(session, game_id, ps.player_id)
        raise
    return ps, game, crud.get_player_names(session, game_id)


@app.post("/api/games/{game_id}/join")
async def join_game(
    game_id: str,
    body: JoinRequest,
    response: Response,
    session: Session = Depends(get_session),
    _: None = Depends(rate_limit_dependency("join")),
):
    ps, game, names = await run_in_threadpool(_join, session, game_id, body.display_name)
    token = await run_in_threadpool(_issue_token, session, response, game_id, ps.player_id, ps.session_id)
    await broadcast_game(game)
    return {
        "game": game_payload(game),
        "player_id": ps.player_id,
        "display_name": names.get(ps.player_id),
        "session_token": token,
    }


@app.post("/api/games/{game_id}/start")
async def start_game(game_id: str, body: PlayerRequest, request: Request, session: Session = Depends(get_session)):
    sid = await run_in_threadpool(_session_id_for, session, request, game_id, body)
    game = await run_in_threadpool(actions.start_game, session, game_id, body.player_id, sid)
    await broadcast_game(game)
    return {"game": game_payload(game)}


@app.post("/api/games/{game_id}/leave")
async def leave_game(game_id: str, body: PlayerRequest, request: Request, response: Response,
                     session: Session = Depends(get_session)):
    sid = await run_in_threadpool(_session_id_for, session, request, game_id, body)
    game = await run_in_threadpool(actions.leave_game, session, game_id, body.player_id, sid)
    response.delete_cookie('session_token')
    if game is None:
        await broadcast_deleted(game_id)
        return {"deleted": True, "game": None}
    await broadcast_game(game)
    return {"deleted": False, "game": game_payload(game)}


@app.post("/api/games/{game_id}/seed")
async def set_seed(game_id: str, body: SeedRequest, request: Request, session: Session = Depends(get_session)):
    sid = await run_in_threadpool(_session_id_for, session, request, game_id, body)
    game = await run_in_threadpool(actions.set_seed_image, session, game_id, body.player_id, sid, body.image, body.text)
    await broadcast_game(game)
    return {"game": game_payload(game)}


@app.post("/api/games/{game_id}/turns")
async def submit_turn(
    game_id: str,
    body: TurnRequest,
    request: Request,
    session: Session = Depends(get_session),
    generator: ImageGenerator = Depends(get_generator),
    _: None = Depends(rate_limit_dependency("turn")),
):
    sid = await run_in_threadpool(_session_id_for, session, request, game_id, body)

    async def announce_turn(before: Game, after: Game) -> None:
        await broadcast_events(session, game_id, turn_events(before, after))

    _, game = await actions.submit_turn(session, generator, game_id, body.player_id, sid, body.text,
                                        notify=broadcast_game, on_turn=announce_turn)
    return {"game": game_payload(game)}


@app.get("/api/games/{game_id}/images/{image_id}/reactions")
def get_reactions(game_id: str, image_id: str, player_id: Optional[str] = None,
                  session: Session = Depends(get_session)):
    record = find_image(crud.load_game(session, game_id), image_id)
    payload = {"image_id": image_id, "counts": get_reaction_counts(record)}
    if player_id:
        payload["mine"] = get_user_reactions(record, player_id)
    return payload


@app.post("/api/games/{game_id}/images/{image_id}/reactions")
async def react(
    game_id: str,
    image_id: str,
    body: ReactionRequest,
    request: Request,
    session: Session = Depends(get_session),
    _: None = Depends(rate_limit_dependency("react")),
):
    sid = await run_in_threadpool(_session_id_for, session, request, game_id, body)
    add = body.action == "add"
    game, changed = await run_in_threadpool(
        actions.react_to_image, session, game_id, body.player_id, sid, image_id, body.emoji, add=add)
    if changed:
        await broadcast_game(game)
        if add:
            ev = reaction_event(game, image_id, body.emoji, body.player_id)
            await broadcast_events(session, game_id, [ev] if ev else [])
    record = find_image(game, image_id)
    return {
        "changed": changed,
        "counts": get_reaction_counts(record),
        "mine": get_user_reactions(record, body.player_id),
    }


def _load_snapshot(game_id: str) -> Optional[Game]:
    with Session(crud.engine) as session:
        return crud.get_game(session, game_id)


@app.websocket("/ws/games/{game_id}")
async def websocket_endpoint(ws: WebSocket, game_id: str):
    game = await run_in_threadpool(_load_snapshot, game_id)
    if game is None:
        await ws.close(code=4404)
        return
    await ws.accept()
    _WS_CONNECTIONS[ws] = {'game_id': game_id, 'player_id': ws.query_params.get('player_id')}
    try:
        # current state first, then every update as it is written
        await ws.send_json({"type": "game", "game": game_payload(game)})
        while True:
            msg = await ws.receive_text()
            if msg == "ping":
                await ws.send_text("pong")
    except WebSocketDisconnect:
        pass
    finally:
        _WS_CONNECTIONS.pop(ws, None)
