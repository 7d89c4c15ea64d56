from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from sqlalchemy import UniqueConstraint as SAUniqueConstraint
from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from intramurals.models.tournament import Tournament


class Team(SQLModel, table=True):
    __table_args__ = (
        # Seeds are unique within a tournament (where seed is not null)
        SAUniqueConstraint("tournament_id", "seed", name="uq_tournament_seed"),
        SAUniqueConstraint("tournament_id", "name", name="uq_tournament_team_name"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tournament_id: int = Field(foreign_key="tournament.id", index=True)
    name: str
    seed: Optional[int] = Field(default=None)  # 1-based seed (1=highest)
    color: Optional[str] = Field(default=None)  # display color, e.g. "#191970"
    logo_url: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # Relationships
    tournament: "Tournament" = Relationship(back_populates="teams")
