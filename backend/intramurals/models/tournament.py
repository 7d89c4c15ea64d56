import os
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from sqlalchemy import JSON, String
from sqlmodel import Column, Field, Relationship, SQLModel

if TYPE_CHECKING:
    from intramurals.models.match import Match
    from intramurals.models.team import Team


class BracketType(str, Enum):
    single_elimination = "single_elimination"
    double_elimination = "double_elimination"


def default_max_random_attempts() -> int:
    """Randomize limit for tournaments created without an explicit one."""
    return int(os.getenv("BRACKET_MAX_RANDOM_ATTEMPTS", "5"))


class Tournament(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    category: str  # sport / division, e.g. "basketball-men"
    bracket_type: BracketType = Field(sa_column=Column(String, nullable=False))

    # Seeding lock state (randomize_count <= max_random_attempts)
    randomize_locked: bool = Field(default=False)
    randomize_count: int = Field(default=0)
    max_random_attempts: int = Field(default_factory=default_max_random_attempts)

    # Bracket options
    third_place_match: bool = Field(default=False)  # single elimination only
    grand_final_reset: bool = Field(default=True)  # double elimination only

    # Serialized BracketTemplate (see services.bracket_template)
    bracket_template: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), sa_column_kwargs={"onupdate": lambda: datetime.now(timezone.utc)})

    # Relationships
    teams: List["Team"] = Relationship(back_populates="tournament")
    matches: List["Match"] = Relationship(back_populates="tournament")
