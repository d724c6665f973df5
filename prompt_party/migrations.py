"""
Database migration system for Prompt Party.
Handles schema changes and index creation.
"""

from sqlmodel import SQLModel, Field, create_engine, text, Session, select
from typing import Optional
from datetime import datetime, timezone
import os
import logging

logger = logging.getLogger(__name__)


class Migration(SQLModel, table=True):
    """Track applied migrations"""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    applied_at: datetime


MIGRATIONS = [
    # game listing and lookups by lifecycle state
    ("001_game_indexes", """
    CREATE INDEX IF NOT EXISTS idx_gamerecord_status ON gamerecord(status);
    CREATE INDEX IF NOT EXISTS idx_gamerecord_updated ON gamerecord(updated_at)
    """),
    # per-game player and session scans (names, cascade deletes)
    ("002_player_indexes", """
    CREATE INDEX IF NOT EXISTS idx_playerinfo_game ON playerinfo(game_id, joined_at);
    CREATE INDEX IF NOT EXISTS idx_playersession_game_player ON playersession(game_id, player_id);
    CREATE INDEX IF NOT EXISTS idx_playersession_last_active ON playersession(last_active)
    """),
]


def get_engine():
    """Get database engine"""
    db_path = os.getenv("DATABASE_URL", "sqlite:///./prompt_party.db")
    connect_args = {"check_same_thread": False} if db_path.startswith("sqlite") else {}
    return create_engine(db_path, echo=False, connect_args=connect_args)


def ensure_migration_table(engine):
    """Ensure the migration tracking table exists"""
    Migration.metadata.create_all(engine, tables=[Migration.__table__])


def has_migration_been_applied(engine, migration_name: str) -> bool:
    ensure_migration_table(engine)

    with Session(engine) as session:
        result = session.exec(
            select(Migration).where(Migration.name == migration_name)
        ).first()
        return result is not None


def apply_migration(engine, migration_name: str, migration_sql: str) -> bool:
    """Apply a migration and record it. Returns False if it was already applied."""
    if has_migration_been_applied(engine, migration_name):
        logger.info(f"Migration {migration_name} already applied, skipping")
        return False

    logger.info(f"Applying migration: {migration_name}")

    with Session(engine) as session:
        try:
            for statement in migration_sql.strip().split(';'):
                statement = statement.strip()
                if statement:
                    session.execute(text(statement))

            session.add(Migration(name=migration_name, applied_at=datetime.now(timezone.utc)))
            session.commit()

            logger.info(f"Migration {migration_name} applied successfully")
            return True

        except Exception as e:
            session.rollback()
            logger.error(f"Failed to apply migration {migration_name}: {e}")
            raise


def run_migrations(engine=None) -> list[str]:
    """Run all pending migrations; returns the names that were applied."""
    engine = engine or get_engine()
    applied = [name for name, sql in MIGRATIONS if apply_migration(engine, name, sql)]
    logger.info("All migrations completed")
    return applied


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_migrations()
