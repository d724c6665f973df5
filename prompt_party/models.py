from typing import Annotated, Literal, Optional, Union
from sqlmodel import SQLModel, Field
from pydantic import BaseModel, ConfigDict, Field as PydanticField
from datetime import datetime, timezone

from .game_config import GameConfig


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- persisted rows ---------------------------------------------------------

class GameRecord(SQLModel, table=True):
    id: str = Field(primary_key=True)
    creator_id: str = ""
    status: str = "waiting"
    revision: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    game_json: str = ""


class PlayerInfo(SQLModel, table=True):
    game_id: str = Field(primary_key=True)
    player_id: str = Field(primary_key=True)
    display_name: str
    joined_at: Optional[datetime] = None


class PlayerSession(SQLModel, table=True):
    game_id: str = Field(primary_key=True)
    player_id: str = Field(primary_key=True)
    session_id: str = Field(primary_key=True)
    joined_at: Optional[datetime] = None
    last_active: Optional[datetime] = None
    session_secret: Optional[str] = None


# --- game aggregate (serialized into GameRecord.game_json) ------------------

GameStatus = Literal["waiting", "in_progress", "completed"]


class _TurnBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    text: str
    timestamp: datetime
    character_count: int


class PromptTurn(_TurnBase):
    """Extends the collaborative prompt."""
    kind: Literal["prompt"] = "prompt"


class EditTurn(_TurnBase):
    """An edit command applied to the latest image."""
    kind: Literal["edit"] = "edit"


class SeedTurn(_TurnBase):
    """The creator's starting artifact: an uploaded or generated image."""
    kind: Literal["seed"] = "seed"
    image: str


PlayTurn = Annotated[Union[PromptTurn, EditTurn], PydanticField(discriminator="kind")]
Turn = Annotated[Union[PromptTurn, EditTurn, SeedTurn], PydanticField(discriminator="kind")]


class ImageRecord(BaseModel):
    id: str
    image_url: str
    prompt: str
    created_at: datetime
    author_id: Optional[str] = None
    source_image_url: Optional[str] = None
    reactions: dict[str, int] = PydanticField(default_factory=dict)
    # authoritative source for the counts above
    reaction_users: dict[str, list[str]] = PydanticField(default_factory=dict)


class Game(BaseModel):
    id: str
    creator_id: str
    players: list[str]
    turns: list[PlayTurn] = PydanticField(default_factory=list)
    created_at: datetime = PydanticField(default_factory=utcnow)
    status: GameStatus = "waiting"
    current_player_index: int = 0
    image_history: list[ImageRecord] = PydanticField(default_factory=list)
    min_players: int = 2
    max_players: int = 6
    config: GameConfig = PydanticField(default_factory=GameConfig)
    seed: Optional[SeedTurn] = None
    is_generating: bool = False
    generation_expires_at: Optional[datetime] = None
    revision: int = 0

    @property
    def seed_image(self) -> Optional[str]:
        return self.seed.image if self.seed else None
