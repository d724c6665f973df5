from typing import Optional

from sqlmodel import Session

from . import crud
from .generation import ImageGenerator, get_image_generator

_generator: Optional[ImageGenerator] = None


def get_session():
    # simple dependency that yields a session
    with Session(crud.engine) as session:
        yield session


def get_generator() -> ImageGenerator:
    # built once, on first use, from IMAGE_API_URL / IMAGE_API_KEY
    global _generator
    if _generator is None:
        _generator = get_image_generator()
    return _generator
