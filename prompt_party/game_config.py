"""
Game rule configuration and presets.

A GameConfig is a plain value stored inside every Game record, so changing
a preset never affects games that are already running.
"""
import math
from typing import Literal

from pydantic import BaseModel

GameMode = Literal["edit", "prompt"]


class GameConfig(BaseModel):
    # turn management
    turns_per_game: int = 6
    min_players: int = 2
    max_players: int = 6

    # character limits
    max_turn_length: int = 25
    max_total_length: int = 1000
    warning_threshold: int = 20

    # flow
    auto_start_on_full: bool = False
    generate_image_every_turn: bool = True
    mode: GameMode = "prompt"


GAME_PRESETS: dict[str, GameConfig] = {
    # fast-paced, fewer turns
    "QUICK": GameConfig(turns_per_game=4, max_turn_length=20, auto_start_on_full=True),
    "STANDARD": GameConfig(),
    "EXTENDED": GameConfig(turns_per_game=10, max_turn_length=30, max_total_length=1500),
    "EXPERIMENTAL": GameConfig(
        turns_per_game=8,
        max_turn_length=35,
        max_total_length=2000,
        generate_image_every_turn=False,
    ),
}


def get_game_config(preset: str = "STANDARD") -> GameConfig:
    """Return a fresh copy of a preset; unknown names fall back to STANDARD."""
    return GAME_PRESETS.get(preset.upper(), GAME_PRESETS["STANDARD"]).model_copy()


def create_custom_game_config(base: str = "STANDARD", **overrides) -> GameConfig:
    return get_game_config(base).model_copy(update=overrides)


def validate_game_config(config: GameConfig) -> list[str]:
    """Return a list of problems; an empty list means the config is usable."""
    errors: list[str] = []
    if config.turns_per_game < 1:
        errors.append("turns_per_game must be at least 1")
    if config.min_players < 1:
        errors.append("min_players must be at least 1")
    if config.max_players < config.min_players:
        errors.append("max_players must be greater than or equal to min_players")
    if config.max_turn_length < 1:
        errors.append("max_turn_length must be at least 1")
    if config.max_total_length < config.max_turn_length:
        errors.append("max_total_length must be greater than or equal to max_turn_length")
    if config.warning_threshold >= config.max_turn_length:
        errors.append("warning_threshold must be less than max_turn_length")
    return errors


def config_summary(config: GameConfig) -> str:
    return (
        f"{config.turns_per_game} turns, {config.min_players}-{config.max_players} players, "
        f"{config.max_turn_length} chars/turn"
    )


def calculate_turns_per_player(config: GameConfig, player_count: int) -> int:
    # upper bound; with uneven splits the earlier seats get the extra turn
    return math.ceil(config.turns_per_game / player_count)


def is_experimental_config(config: GameConfig) -> bool:
    return (
        not config.generate_image_every_turn
        or config.turns_per_game > 10
        or config.max_turn_length > 30
        or config.max_total_length > 1500
    )
