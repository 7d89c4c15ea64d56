from intramurals.models.match import BracketStage, Match, MatchStatus
from intramurals.models.team import Team
from intramurals.models.tournament import BracketType, Tournament

__all__ = [
    "Tournament",
    "BracketType",
    "Team",
    "Match",
    "MatchStatus",
    "BracketStage",
]
