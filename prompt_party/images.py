"""
Image version chain: the append-only history of generated images.

Records are only ever appended; after that, only their reaction maps change.
"""
import uuid
from typing import Optional

from . import errors
from .models import Game, ImageRecord


def new_image_id() -> str:
    return f"img_{uuid.uuid4().hex[:16]}"


def append_image(game: Game, result, author_id: Optional[str] = None,
                 source_image_url: Optional[str] = None) -> Game:
    """Append a generation result (anything with image_url, prompt, created_at)."""
    record = ImageRecord(
        id=new_image_id(),
        image_url=result.image_url,
        prompt=result.prompt,
        created_at=result.created_at,
        author_id=author_id,
        source_image_url=source_image_url,
        reactions={},
        reaction_users={},
    )
    return game.model_copy(update={"image_history": [*game.image_history, record]})


def resolve_source_image(game: Game) -> Optional[str]:
    """Image the next edit builds on: the newest generated one, else the seed."""
    if game.image_history:
        return game.image_history[-1].image_url
    return game.seed_image


def get_latest_image_url(game: Game) -> Optional[str]:
    if not game.image_history:
        return None
    return game.image_history[-1].image_url


def get_image_count(game: Game) -> int:
    return len(game.image_history)


def find_image(game: Game, image_id: str) -> ImageRecord:
    for record in game.image_history:
        if record.id == image_id:
            return record
    raise errors.NotFoundError(f"Image {image_id} not found in game {game.id}", image_id=image_id)
