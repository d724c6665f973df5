import anyio
import json

from prompt_party import game
from prompt_party.main import _prepare_message, _send_to_websocket, broadcast_game, broadcast_events, _WS_CONNECTIONS


class DummyWS:
    def __init__(self):
        self.sent = []

    async def send_text(self, msg: str):
        self.sent.append(("text", msg))

    async def send_json(self, obj):
        self.sent.append(("json", obj))


class BrokenWS:
    async def send_text(self, msg: str):
        raise RuntimeError("closed")

    async def send_json(self, obj):
        raise RuntimeError("closed")


def test_prepare_message_fallback_on_unserializable():
    assert isinstance(_prepare_message({"ok": True}), str)

    # sets are not JSON serializable, but default=str covers them
    assert isinstance(_prepare_message({"s": {1}}), str)

    # circular references still fail
    e_bad = {}
    e_bad["self"] = e_bad
    assert _prepare_message(e_bad) is None


def test_send_to_websocket_uses_json_fallback():
    ws = DummyWS()
    assert anyio.run(_send_to_websocket, ws, None, {"a": 1}) is True
    assert ws.sent == [("json", {"a": 1})]
    assert anyio.run(_send_to_websocket, BrokenWS(), "{}", {}) is False


def test_broadcast_game_reaches_only_its_watchers():
    g = game.add_player(game.create_game("alice", game_id="game-a"), "bob")
    watcher, other, broken = DummyWS(), DummyWS(), BrokenWS()
    _WS_CONNECTIONS[watcher] = {"game_id": "game-a"}
    _WS_CONNECTIONS[other] = {"game_id": "game-b"}
    _WS_CONNECTIONS[broken] = {"game_id": "game-a"}

    anyio.run(broadcast_game, g)
    # every write is delivered, even back to back
    anyio.run(broadcast_game, game.start_game(g))

    assert len(watcher.sent) == 2
    assert other.sent == []
    assert broken not in _WS_CONNECTIONS
    first = json.loads(watcher.sent[0][1])
    assert first["type"] == "game"
    assert first["game"]["id"] == "game-a"
    last = json.loads(watcher.sent[1][1])
    assert last["game"]["status"] == "in_progress"
    assert last["game"]["current_player"] == "alice"


def test_broadcast_events_labels_names(monkeypatch):
    from prompt_party import crud
    monkeypatch.setattr(crud, "get_player_names", lambda session, game_id: {"bob": "Bob", "alice": "Alice"})
    ws = DummyWS()
    _WS_CONNECTIONS[ws] = {"game_id": "game-a"}
    event = {"type": "turn", "game_id": "game-a", "player_id": "bob", "previous_player_id": "alice", "text": "hi"}

    anyio.run(broadcast_events, None, "game-a", [event])

    sent = json.loads(ws.sent[0][1])
    assert sent["player_name"] == "Bob"
    assert sent["previous_player_name"] == "Alice"
