from sqlmodel import SQLModel, Session, create_engine

from prompt_party import crud, game


def setup_db(tmp_path):
    db = tmp_path / 'sessions.db'
    engine = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    crud.engine = engine
    return engine


def test_session_lifecycle(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        g = crud.create_game_record(s, game.create_game("alice", game_id="game-1"))
        ps = crud.create_player_session(s, g.id, "alice")
        assert crud.validate_player_session(s, g.id, "alice", ps.session_id)
        assert not crud.validate_player_session(s, g.id, "bob", ps.session_id)
        assert not crud.validate_player_session(s, g.id, "alice", "")

        # a second tab gets its own session for the same player
        other = crud.create_player_session(s, g.id, "alice")
        assert other.session_id != ps.session_id
        assert crud.delete_player_sessions(s, g.id, "alice") == 2
        assert not crud.validate_player_session(s, g.id, "alice", ps.session_id)


def test_touch_updates_last_active(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        ps = crud.create_player_session(s, "game-1", "alice")
        before = ps.last_active
        assert crud.touch_player_session(s, "game-1", "alice", ps.session_id)
        refreshed = crud.get_player_session(s, "game-1", "alice", ps.session_id)
        assert refreshed.last_active >= before
        assert not crud.touch_player_session(s, "game-1", "alice", "nope")


def test_token_sign_and_verify(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        ps = crud.create_player_session(s, "game-1", "alice")
        token = crud.sign_session_token(s, "game-1", "alice", ps.session_id)
        assert token.startswith(ps.session_id + ".")
        assert crud.verify_session_token(s, "game-1", "alice", token) == ps.session_id

        # bound to game and player
        assert crud.verify_session_token(s, "game-2", "alice", token) is None
        assert crud.verify_session_token(s, "game-1", "bob", token) is None

        sid, sig = token.rsplit('.', 1)
        tampered = f"{sid}.{'0' * len(sig)}"
        assert crud.verify_session_token(s, "game-1", "alice", tampered) is None
        assert crud.verify_session_token(s, "game-1", "alice", "garbage") is None
        assert crud.verify_session_token(s, "game-1", "alice", None) is None
        assert crud.sign_session_token(s, "game-1", "alice", "missing") is None


def test_player_info_names_are_unique_and_cached(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        a = crud.add_player_info(s, "game-1", "p1", "Alice")
        b = crud.add_player_info(s, "game-1", "p2", "Alice")
        assert a.display_name == "Alice"
        assert b.display_name == "Alice (2)"
        assert crud.get_player_names(s, "game-1") == {"p1": "Alice", "p2": "Alice (2)"}

        # leaving frees the name; the cache is invalidated on every change
        assert crud.remove_player_info(s, "game-1", "p1")
        c = crud.add_player_info(s, "game-1", "p3", "Alice")
        assert c.display_name == "Alice"
        assert crud.get_player_names(s, "game-1") == {"p2": "Alice (2)", "p3": "Alice"}

        # same name in another game is fine
        assert crud.add_player_info(s, "game-2", "p9", "Alice").display_name == "Alice"
