"""
Realtime publisher: pushes game records and notification events to NATS so
out-of-process gateways can fan them out. If NATS_URL is not configured,
every function here is a safe no-op.
"""
from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any

from .logging_utils import get_logger

logger = get_logger("prompt_party.realtime")

_nc = None  # type: ignore

try:
    import nats
except Exception:  # pragma: no cover - optional dep
    nats = None  # type: ignore


async def _connect_once() -> None:
    global _nc
    if _nc or not nats:
        return
    url = os.getenv("NATS_URL")
    if not url:
        return
    try:
        _nc = await nats.connect(url, name="prompt-party")
    except Exception as exc:
        logger.warning("nats_connect_failed", extra={"url": url, "error": str(exc)})
        _nc = None


def _envelope(room: str, kind: str, payload: dict[str, Any]) -> bytes:
    env = {
        "v": 1,
        "type": kind,
        "room": room,
        "id": payload.get("event_id") or os.urandom(8).hex(),
        "ts": datetime.now(timezone.utc).isoformat(),
        "payload": payload,
    }
    return json.dumps(env, default=str).encode("utf-8")


async def publish_room_update(room: str, payload: dict[str, Any], kind: str = "update") -> None:
    """Publish to subject room.<room>.<kind>."""
    await _connect_once()
    if not _nc:
        return
    try:
        await _nc.publish(f"room.{room}.{kind}", _envelope(room, kind, payload))
    except Exception as exc:
        logger.debug("nats_publish_failed", extra={"error": str(exc)})


async def publish_game_update(game_payload: dict[str, Any]) -> None:
    """Full game record, for subscribers of room.game-<id>.update."""
    await publish_room_update(f"game-{game_payload.get('id')}", game_payload)


async def publish_notification(player_id: str, event: dict[str, Any]) -> None:
    """Turn/reaction alert addressed to one player."""
    await publish_room_update(f"player-{player_id}", event, kind="notify")
