from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional
from uuid import uuid4

from sqlalchemy import UniqueConstraint as SAUniqueConstraint
from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from intramurals.models.tournament import Tournament


class MatchStatus(str, Enum):
    pending = "pending"
    scheduled = "scheduled"
    completed = "completed"
    cancelled = "cancelled"


class BracketStage(str, Enum):
    winners = "winners"
    losers = "losers"
    final = "final"
    grand_final = "grand_final"


def new_match_id() -> str:
    return uuid4().hex


class Match(SQLModel, table=True):
    __table_args__ = (SAUniqueConstraint("tournament_id", "template_key", name="uq_match_tournament_template_key"),)

    # String ids are assigned at instantiation so advancement links exist before rows are persisted
    id: str = Field(default_factory=new_match_id, primary_key=True)
    tournament_id: Optional[int] = Field(default=None, foreign_key="tournament.id", index=True)
    template_key: str  # 1:1 with a BracketTemplate node
    round: int  # stage offset + stage_round (winners 0, losers 100, final 200, grand_final 300)
    match_number: int
    bracket_stage: str = Field(default=BracketStage.winners.value)
    stage_round: int = Field(default=1)
    display_label: Optional[str] = Field(default=None)

    # Team slots (nullable until seeded or advanced into)
    team1_id: Optional[int] = Field(default=None, foreign_key="team.id")
    team2_id: Optional[int] = Field(default=None, foreign_key="team.id")
    winner_id: Optional[int] = Field(default=None, foreign_key="team.id")
    team1_score: Optional[int] = Field(default=None)
    team2_score: Optional[int] = Field(default=None)

    status: str = Field(default=MatchStatus.pending.value)  # pending | scheduled | completed | cancelled
    is_bye: bool = Field(default=False)
    is_third_place: bool = Field(default=False)

    # Advancement edges (position is 1 or 2 in the target match); no FK so a
    # bracket can be inserted in any order
    next_match_id: Optional[str] = Field(default=None, index=True)
    next_match_position: Optional[int] = Field(default=None)
    loser_next_match_id: Optional[str] = Field(default=None, index=True)
    loser_next_match_position: Optional[int] = Field(default=None)

    completed_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # Relationships
    tournament: Optional["Tournament"] = Relationship(back_populates="matches")

    def team_at(self, position: int) -> Optional[int]:
        return self.team1_id if position == 1 else self.team2_id

    def loser_id(self) -> Optional[int]:
        if self.winner_id is None or self.team1_id is None or self.team2_id is None:
            return None
        return self.team2_id if self.winner_id == self.team1_id else self.team1_id
