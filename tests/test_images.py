import pytest

from prompt_party import errors, game
from prompt_party.generation import GenerationResult
from prompt_party.images import (
    append_image,
    find_image,
    get_image_count,
    get_latest_image_url,
    resolve_source_image,
)


def test_source_resolution_prefers_latest_image():
    g = game.create_game("alice")
    assert resolve_source_image(g) is None
    g = game.attach_seed(g, "alice", "https://img/seed.png")
    assert resolve_source_image(g) == "https://img/seed.png"
    assert get_latest_image_url(g) is None

    g = append_image(g, GenerationResult(image_url="https://img/1.png", prompt="a cat"), author_id="alice")
    g = append_image(g, GenerationResult(image_url="https://img/2.png", prompt="a hat"),
                     author_id="alice", source_image_url="https://img/1.png")
    assert resolve_source_image(g) == "https://img/2.png"
    assert get_latest_image_url(g) == "https://img/2.png"
    assert get_image_count(g) == 2


def test_append_is_pure_and_ids_are_unique():
    g = game.create_game("alice")
    first = append_image(g, GenerationResult(image_url="https://img/1.png", prompt="p"))
    second = append_image(first, GenerationResult(image_url="https://img/1.png", prompt="p"))
    assert g.image_history == []
    assert len(second.image_history) == 2
    a, b = second.image_history
    assert a.id != b.id and a.id.startswith("img_")
    assert a.reactions == {} and a.reaction_users == {}


def test_find_image():
    g = append_image(game.create_game("alice"), GenerationResult(image_url="u", prompt="p"))
    rec = g.image_history[0]
    assert find_image(g, rec.id) is rec
    with pytest.raises(errors.NotFoundError):
        find_image(g, "img_missing")
