import os

from sqlmodel import create_engine, SQLModel
from . import models  # noqa: F401  registers the tables
from .logging_utils import get_logger

logger = get_logger("prompt_party.init_db")


def init_db(path=None):
    path = path or os.getenv("DATABASE_URL", "sqlite:///./prompt_party.db")
    connect_args = {"check_same_thread": False} if path.startswith("sqlite") else {}
    engine = create_engine(path, connect_args=connect_args)
    SQLModel.metadata.create_all(engine)
    logger.info("db_initialized", extra={"url": path})
    return engine


if __name__ == '__main__':
    init_db()
