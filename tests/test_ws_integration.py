import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from prompt_party.main import app
from prompt_party.deps import get_generator
from prompt_party.generation import PlaceholderImageGenerator


@pytest.fixture
def client(tmp_path, monkeypatch):
    # the startup hook builds the engine and runs migrations against this file
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'ws.db'}")
    app.dependency_overrides[get_generator] = lambda: PlaceholderImageGenerator()
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.pop(get_generator, None)


def test_ws_receives_snapshot_and_every_update(client):
    created = client.post('/api/games', json={"display_name": "Alice", "mode": "prompt"}).json()
    game_id = created['game']['id']
    alice = {"player_id": created['player_id'], "session_token": created['session_token']}

    with client.websocket_connect(f'/ws/games/{game_id}') as ws:
        snap = ws.receive_json()
        assert snap['type'] == 'game'
        assert snap['game']['status'] == 'waiting'

        ws.send_text('ping')
        assert ws.receive_text() == 'pong'

        joined = client.post(f'/api/games/{game_id}/join', json={"display_name": "Bob"}).json()
        msg = ws.receive_json()
        assert msg['game']['players'] == [alice['player_id'], joined['player_id']]

        client.post(f'/api/games/{game_id}/start', json=alice)
        assert ws.receive_json()['game']['status'] == 'in_progress'

        client.post(f'/api/games/{game_id}/turns', json={**alice, "text": "a cat"})
        turn = ws.receive_json()
        assert turn['game']['turns'][-1]['text'] == 'a cat'
        note = ws.receive_json()
        assert note['type'] == 'turn'
        assert note['player_id'] == joined['player_id']
        assert note['player_name'] == 'Bob'
        assert ws.receive_json()['game']['generating'] is True
        done = ws.receive_json()['game']
        assert done['generating'] is False
        assert len(done['image_history']) == 1


def test_ws_unknown_game_is_refused(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect('/ws/games/game-missing') as ws:
            ws.receive_json()
