import pytest
from sqlmodel import SQLModel, Session, create_engine

from prompt_party import crud, errors, game, models


def setup_db(tmp_path):
    db = tmp_path / 'cas.db'
    engine = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    crud.engine = engine
    return engine


def _seed(s):
    g = game.add_player(game.create_game("alice", game_id="game-1"), "bob")
    return crud.create_game_record(s, g)


def test_save_bumps_revision(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        g = _seed(s)
        saved = crud.save_game(s, game.start_game(g))
        assert saved.revision == 1
        loaded = crud.load_game(s, "game-1")
        assert loaded.revision == 1
        assert loaded.status == "in_progress"
        rec = s.get(models.GameRecord, "game-1")
        assert rec.status == "in_progress" and rec.revision == 1


def test_stale_save_is_rejected(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        stale = _seed(s)
        crud.save_game(s, game.start_game(stale))
        with pytest.raises(errors.ConflictError):
            crud.save_game(s, game.remove_player(stale, "bob"))
        assert crud.load_game(s, "game-1").players == ["alice", "bob"]


def test_update_game_retries_on_conflict(tmp_path):
    engine = setup_db(tmp_path)
    calls = []
    with Session(engine) as s, Session(engine) as other:
        _seed(s)

        def mutate(g):
            calls.append(g.revision)
            if len(calls) == 1:
                # another writer lands between our read and our write
                crud.save_game(other, game.start_game(crud.load_game(other, "game-1")))
            return g.model_copy(update={"is_generating": True})

        updated = crud.update_game(s, "game-1", mutate)
        assert calls == [0, 1]
        assert updated.revision == 2
        assert updated.status == "in_progress" and updated.is_generating


def test_update_game_gives_up(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s, Session(engine) as other:
        _seed(s)

        def always_raced(g):
            current = crud.load_game(other, "game-1")
            crud.save_game(other, current.model_copy(update={"is_generating": not current.is_generating}))
            return g.model_copy(update={"current_player_index": 1})

        with pytest.raises(errors.ConflictError):
            crud.update_game(s, "game-1", always_raced, attempts=2)


def test_domain_errors_write_nothing(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        _seed(s)
        with pytest.raises(errors.ValidationError):
            crud.update_game(s, "game-1", lambda g: game.add_player(g, "bob"))
        assert crud.load_game(s, "game-1").revision == 0


def test_unchanged_result_skips_write(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        _seed(s)
        same = crud.update_game(s, "game-1", lambda g: g)
        assert same.revision == 0


def test_none_result_deletes_game(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        crud.create_game_record(s, game.create_game("alice", game_id="game-1"))
        crud.add_player_info(s, "game-1", "alice", "Alice")
        crud.create_player_session(s, "game-1", "alice")
        assert crud.update_game(s, "game-1", lambda g: game.remove_player(g, "alice")) is None
        assert crud.get_game(s, "game-1") is None
        assert crud.list_player_info(s, "game-1") == []
        with pytest.raises(errors.NotFoundError):
            crud.load_game(s, "game-1")


def test_delete_missing_game(tmp_path):
    engine = setup_db(tmp_path)
    with Session(engine) as s:
        assert crud.delete_game(s, "game-nope") is False
