"""
Read-only notification observer.

Derives "your turn", "game complete" and "someone reacted" events by
comparing game records. Nothing here writes to the game; delivery is left
to whoever subscribes to the published events.
"""
from typing import Any, Optional

from .game import get_current_player
from .models import Game


def turn_events(before: Optional[Game], after: Game) -> list[dict[str, Any]]:
    if before is None or len(after.turns) <= len(before.turns):
        return []
    last = after.turns[-1]
    if after.status == "completed":
        return [{
            "type": "game_complete",
            "game_id": after.id,
            "recipients": list(after.players),
            "turns": len(after.turns),
        }]
    next_player = get_current_player(after)
    if next_player is None:
        return []
    return [{
        "type": "turn",
        "game_id": after.id,
        "player_id": next_player,
        "previous_player_id": last.user_id,
        "text": last.text,
    }]


def reaction_event(game: Game, image_id: str, emoji: str, reactor_id: str) -> Optional[dict[str, Any]]:
    """Alert for the player whose turn produced the image, unless they reacted themselves."""
    record = next((r for r in game.image_history if r.id == image_id), None)
    if record is None or not record.author_id or record.author_id == reactor_id:
        return None
    return {
        "type": "reaction",
        "game_id": game.id,
        "player_id": record.author_id,
        "reactor_id": reactor_id,
        "image_id": image_id,
        "emoji": emoji,
    }


def label_event(event: dict[str, Any], names: dict[str, str]) -> dict[str, Any]:
    """Attach display names for the player ids an event mentions."""
    labelled = dict(event)
    for key in ("player_id", "previous_player_id", "reactor_id"):
        pid = event.get(key)
        if pid:
            labelled[key.replace("_id", "_name")] = names.get(pid, "Someone")
    return labelled
