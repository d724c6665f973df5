"""
Session-checked game actions.

Every mutating action first proves that the caller's session may act as the
player it claims to be, then runs the pure game logic inside a
compare-and-swap update. Session checks and turn ownership are separate
gates: a valid session does not make it your turn.
"""
from functools import partial
from typing import Awaitable, Callable, Optional

from anyio import CancelScope, to_thread
from sqlmodel import Session

from . import crud, errors
from . import game as game_logic
from .game_config import GameConfig, get_game_config, validate_game_config
from .generation import ImageGenerator, begin_generation, end_generation
from .images import append_image, find_image, resolve_source_image
from .logging_utils import get_logger
from .models import Game, PlayerInfo, PlayerSession
from .reactions import REACTION_EMOJIS, add_reaction, remove_reaction

logger = get_logger("prompt_party.actions")

Notify = Callable[[Game], Awaitable[None]]
OnTurn = Callable[[Game, Game], Awaitable[None]]


def require_session(db: Session, game_id: str, player_id: str, session_id: Optional[str]) -> None:
    if not session_id or not crud.validate_player_session(db, game_id, player_id, session_id):
        logger.warning("session_rejected", extra={"game_id": game_id, "player_id": player_id})
        raise errors.AuthorizationError(f"Unauthorized: Invalid session for player {player_id}")
    crud.touch_player_session(db, game_id, player_id, session_id)


def _clean_display_name(display_name: str) -> str:
    name = (display_name or "").strip()
    if not name:
        raise errors.ValidationError("Display name cannot be empty")
    if len(name) > 32:
        raise errors.ValidationError("Display name too long (max 32 characters)")
    return name


# --- creation and identity ------------------------------------------------------

def create_game(db: Session, display_name: str, config: Optional[GameConfig] = None,
                seed_image: Optional[str] = None, seed_prompt: Optional[str] = None
                ) -> tuple[Game, PlayerInfo, PlayerSession]:
    """Create a game, its creator and the creator's first session."""
    name = _clean_display_name(display_name)
    cfg = config or get_game_config("STANDARD")
    problems = validate_game_config(cfg)
    if problems:
        raise errors.ValidationError("Invalid game configuration", errors=problems)
    if cfg.mode == "edit" and not seed_image:
        raise errors.ValidationError("Edit games need a seed image or a seed prompt")

    creator_id = crud.new_player_id()
    game = game_logic.create_game(creator_id, cfg)
    if seed_image:
        game = game_logic.attach_seed(game, creator_id, seed_image, seed_prompt or "Uploaded image")
    crud.create_game_record(db, game)
    info = crud.add_player_info(db, game.id, creator_id, name)
    ps = crud.create_player_session(db, game.id, creator_id)
    return game, info, ps


async def create_game_from_prompt(db: Session, generator: ImageGenerator, display_name: str,
                                  seed_prompt: str, config: Optional[GameConfig] = None
                                  ) -> tuple[Game, PlayerInfo, PlayerSession]:
    """Generate the seed image first; nothing is stored if generation fails."""
    _clean_display_name(display_name)
    result = await generator.generate(seed_prompt)
    return await to_thread.run_sync(partial(
        create_game, db, display_name, config, seed_image=result.image_url, seed_prompt=result.prompt))


def establish_identity(db: Session, game_id: str, player_id: Optional[str] = None) -> PlayerSession:
    """Open a session for a (possibly new) player id in an existing game."""
    crud.load_game(db, game_id)
    return crud.create_player_session(db, game_id, player_id or crud.new_player_id())


# --- lobby ----------------------------------------------------------------------

def join_game(db: Session, game_id: str, player_id: str, session_id: Optional[str],
              display_name: str) -> Game:
    name = _clean_display_name(display_name)
    require_session(db, game_id, player_id, session_id)

    def mutate(g: Game) -> Game:
        joined = game_logic.add_player(g, player_id)
        if joined.config.auto_start_on_full and len(joined.players) >= joined.max_players:
            joined = game_logic.start_game(joined)
        return joined

    game = crud.update_game(db, game_id, mutate)
    crud.add_player_info(db, game_id, player_id, name)
    logger.info("player_joined", extra={"game_id": game_id, "player_id": player_id,
                                        "game_status": game.status})
    return game


def start_game(db: Session, game_id: str, player_id: str, session_id: Optional[str]) -> Game:
    require_session(db, game_id, player_id, session_id)

    def mutate(g: Game) -> Game:
        if g.creator_id != player_id:
            raise errors.AuthorizationError("Only the creator can start the game")
        return game_logic.start_game(g)

    game = crud.update_game(db, game_id, mutate)
    logger.info("game_started", extra={"game_id": game_id, "player_id": player_id})
    return game


def leave_game(db: Session, game_id: str, player_id: str, session_id: Optional[str]) -> Optional[Game]:
    """Remove a player from a waiting game. Returns None if the game was deleted."""
    require_session(db, game_id, player_id, session_id)
    game = crud.update_game(db, game_id, lambda g: game_logic.remove_player(g, player_id))
    if game is None:
        return None
    crud.remove_player_info(db, game_id, player_id)
    crud.delete_player_sessions(db, game_id, player_id)
    logger.info("player_left", extra={"game_id": game_id, "player_id": player_id})
    return game


def set_seed_image(db: Session, game_id: str, player_id: str, session_id: Optional[str],
                   image: str, text: str = "Uploaded image") -> Game:
    require_session(db, game_id, player_id, session_id)
    return crud.update_game(db, game_id, lambda g: game_logic.attach_seed(g, player_id, image, text))


# --- turns and generation ---------------------------------------------------------

def record_turn(db: Session, game_id: str, player_id: str, session_id: Optional[str],
                text: str) -> tuple[Game, Game]:
    """Append a turn. Returns the game as read right before the write, and after it."""
    require_session(db, game_id, player_id, session_id)
    seen: dict[str, Game] = {}

    def mutate(g: Game) -> Game:
        seen["before"] = g
        return game_logic.add_turn(g, player_id, text)

    after = crud.update_game(db, game_id, mutate)
    logger.info("turn_added", extra={"game_id": game_id, "player_id": player_id,
                                     "turns": len(after.turns), "game_status": after.status})
    return seen["before"], after


def should_generate(game: Game) -> bool:
    return game.config.generate_image_every_turn or game.status == "completed"


def generation_request(game: Game) -> tuple[str, Optional[str]]:
    """(prompt, source image) for the image that follows the latest turn."""
    if game.config.mode == "edit":
        return game.turns[-1].text, resolve_source_image(game)
    return game_logic.build_full_prompt(game.turns), None


async def generate_for_latest_turn(db: Session, generator: ImageGenerator, game: Game,
                                   notify: Optional[Notify] = None) -> Game:
    """Bracket one external generation call with the generating flag.

    The flag is cleared however the call ends, cancellation included; a
    failure is re-raised untouched. `notify` is awaited after each write so
    subscribers see the flag flip.
    """
    prompt, source = generation_request(game)
    author = game.turns[-1].user_id
    generating = await to_thread.run_sync(crud.update_game, db, game.id, begin_generation)
    if notify:
        await notify(generating)
    updated: Optional[Game] = None
    try:
        result = await generator.generate(prompt, source)
        updated = await to_thread.run_sync(
            crud.update_game, db, game.id,
            lambda g: end_generation(append_image(g, result, author_id=author, source_image_url=source)),
        )
    except Exception as exc:
        kind = exc.kind.value if isinstance(exc, errors.ExternalServiceError) else None
        logger.warning("generation_failed", extra={"game_id": game.id, "error": str(exc), "kind": kind})
        raise
    finally:
        if updated is None:
            with CancelScope(shield=True):
                cleared = await to_thread.run_sync(crud.update_game, db, game.id, end_generation)
                if notify:
                    await notify(cleared)
    logger.info("image_appended", extra={"game_id": game.id, "image_id": updated.image_history[-1].id})
    if notify:
        await notify(updated)
    return updated


async def submit_turn(db: Session, generator: ImageGenerator, game_id: str, player_id: str,
                      session_id: Optional[str], text: str,
                      notify: Optional[Notify] = None,
                      on_turn: Optional[OnTurn] = None) -> tuple[Game, Game]:
    """Record a turn, then generate its image when the game's rules call for one.

    `on_turn(before, after)` runs once the turn is stored, before generation.
    The turn stays recorded even if generation fails; resubmitting is up to
    the caller.
    """
    before, game = await to_thread.run_sync(record_turn, db, game_id, player_id, session_id, text)
    if notify:
        await notify(game)
    if on_turn:
        await on_turn(before, game)
    if should_generate(game):
        game = await generate_for_latest_turn(db, generator, game, notify)
    return before, game


# --- reactions --------------------------------------------------------------------

def react_to_image(db: Session, game_id: str, player_id: str, session_id: Optional[str],
                   image_id: str, emoji: str, add: bool = True) -> tuple[Game, bool]:
    """Add or remove one reaction. Returns the game and whether anything changed."""
    if emoji not in REACTION_EMOJIS:
        raise errors.ValidationError(f"Unsupported reaction {emoji!r}", allowed=list(REACTION_EMOJIS))
    require_session(db, game_id, player_id, session_id)
    changed = {"value": False}

    def mutate(g: Game) -> Game:
        copy = g.model_copy(deep=True)
        record = find_image(copy, image_id)
        op = add_reaction if add else remove_reaction
        changed["value"] = op(record, emoji, player_id)
        return copy if changed["value"] else g

    game = crud.update_game(db, game_id, mutate)
    return game, changed["value"]
