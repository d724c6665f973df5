import uuid
from datetime import datetime
from typing import Optional

from . import errors
from .game_config import GameConfig, get_game_config
from .models import EditTurn, Game, PromptTurn, SeedTurn, utcnow


def new_game_id() -> str:
    return f"game-{uuid.uuid4().hex[:12]}"


def create_game(creator_id: str, config: Optional[GameConfig] = None, game_id: str = "") -> Game:
    cfg = config or get_game_config("STANDARD")
    return Game(
        id=game_id or new_game_id(),
        creator_id=creator_id,
        players=[creator_id],
        turns=[],
        created_at=utcnow(),
        status="waiting",
        current_player_index=0,
        image_history=[],
        min_players=cfg.min_players,
        max_players=cfg.max_players,
        config=cfg,
    )


def add_player(game: Game, player_id: str) -> Game:
    if game.status != "waiting":
        raise errors.StateError("Cannot add player to game that has already started")
    if player_id in game.players:
        raise errors.ValidationError("Player already in game (duplicate)", reason="duplicate")
    if len(game.players) >= game.max_players:
        raise errors.ValidationError(
            f"Game is full (maximum {game.max_players} players)", reason="full"
        )
    return game.model_copy(update={"players": [*game.players, player_id]})


def start_game(game: Game) -> Game:
    if game.status != "waiting":
        raise errors.StateError("Game has already started")
    if len(game.players) < game.min_players:
        raise errors.ValidationError(f"Need at least {game.min_players} players to start")
    # in edit mode the creator already contributed the seed, so the second seat opens
    starting_index = 1 if game.config.mode == "edit" else 0
    return game.model_copy(update={
        "status": "in_progress",
        "current_player_index": starting_index % len(game.players),
    })


def build_full_prompt(turns) -> str:
    return " ".join(turn.text for turn in turns)


def get_total_prompt_length(game: Game) -> int:
    return len(build_full_prompt(game.turns))


def _check_turn_text(game: Game, text: str) -> str:
    trimmed = (text or "").strip()
    if not trimmed:
        raise errors.ValidationError("Turn text cannot be empty")
    if len(trimmed) > game.config.max_turn_length:
        raise errors.ValidationError(
            f"Turn text exceeds {game.config.max_turn_length} character limit"
        )
    # +1 for the joining space
    if get_total_prompt_length(game) + len(trimmed) + 1 > game.config.max_total_length:
        raise errors.ValidationError(
            f"Total prompt would exceed {game.config.max_total_length} character limit"
        )
    return trimmed


def add_turn(game: Game, player_id: str, text: str, now: Optional[datetime] = None) -> Game:
    if game.status != "in_progress":
        raise errors.StateError("Game is not in progress")
    if player_id not in game.players:
        raise errors.ValidationError("Player not in game")
    current = game.players[game.current_player_index]
    if player_id != current:
        raise errors.AuthorizationError(f"Not {player_id}'s turn", current_player=current)
    trimmed = _check_turn_text(game, text)

    turn_cls = EditTurn if game.config.mode == "edit" else PromptTurn
    turn = turn_cls(
        user_id=player_id,
        text=trimmed,
        timestamp=now or utcnow(),
        character_count=len(trimmed),
    )
    turns = [*game.turns, turn]
    # completion is by raw turn count, not by a full rotation of the seats
    completed = len(turns) >= game.config.turns_per_game
    return game.model_copy(update={
        "turns": turns,
        "current_player_index": (game.current_player_index + 1) % len(game.players),
        "status": "completed" if completed else "in_progress",
    })


def get_current_player(game: Game) -> Optional[str]:
    if game.status != "in_progress":
        return None
    return game.players[game.current_player_index]


def remove_player(game: Game, player_id: str) -> Optional[Game]:
    """Drop a player from a waiting game.

    Returns None when nobody is left, meaning the whole game should be deleted.
    """
    if game.status != "waiting":
        raise errors.StateError("Cannot leave game that has already started")
    if player_id not in game.players:
        raise errors.ValidationError("Player not in game")
    players = [p for p in game.players if p != player_id]
    creator_id = game.creator_id
    if creator_id == player_id:
        if not players:
            return None
        creator_id = players[0]
    return game.model_copy(update={"players": players, "creator_id": creator_id})


def attach_seed(game: Game, player_id: str, image: str, text: str = "Uploaded image",
                now: Optional[datetime] = None) -> Game:
    if game.status != "waiting":
        raise errors.StateError("Seed image can only be set before the game starts")
    if player_id != game.creator_id:
        raise errors.AuthorizationError("Only the creator can set the seed image")
    if not image:
        raise errors.ValidationError("Seed image cannot be empty")
    label = (text or "").strip() or "Uploaded image"
    seed = SeedTurn(
        user_id=player_id,
        text=label,
        timestamp=now or utcnow(),
        character_count=len(label),
        image=image,
    )
    return game.model_copy(update={"seed": seed})


def is_game_complete(game: Game) -> bool:
    return game.status == "completed"


def can_start_game(game: Game) -> bool:
    return game.status == "waiting" and len(game.players) >= game.min_players


def get_player_count(game: Game) -> dict:
    return {"current": len(game.players), "min": game.min_players, "max": game.max_players}


def get_character_count_status(count: int, config: GameConfig) -> str:
    """One of safe, warning, danger, exceeded for live input feedback."""
    if count > config.max_turn_length:
        return "exceeded"
    if count >= config.max_turn_length:
        return "danger"
    if count >= config.warning_threshold:
        return "warning"
    return "safe"


def can_add_turn(game: Game, text: str) -> tuple[bool, Optional[str]]:
    try:
        _check_turn_text(game, text)
    except errors.ValidationError as exc:
        return False, exc.message
    return True, None
