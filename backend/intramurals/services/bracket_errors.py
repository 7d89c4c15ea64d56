"""
Bracket engine error taxonomy.

Every rejected operation raises a BracketError subclass carrying a stable
machine-readable code. The engine never partially mutates state before
raising; callers turn these into user-facing messages.
"""


class BracketError(Exception):
    """Base class for all recoverable bracket engine errors."""

    code = "BRACKET_ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class InvalidTeamCount(BracketError):
    code = "INVALID_TEAM_COUNT"


class SeedingError(BracketError):
    """Team list does not fit the template's seed slots."""

    code = "SEEDING_ERROR"


class LockedError(BracketError):
    """Randomize or re-seed attempted after the bracket was locked."""

    code = "BRACKET_LOCKED"


class AttemptsExhaustedError(BracketError):
    code = "RANDOMIZE_ATTEMPTS_EXHAUSTED"


class AlreadyLockedError(BracketError):
    code = "BRACKET_ALREADY_LOCKED"


class StaleTournamentState(BracketError):
    """A compare-and-swap on the tournament's randomize counters lost a race."""

    code = "STALE_TOURNAMENT_STATE"


class TournamentNotFound(BracketError):
    code = "TOURNAMENT_NOT_FOUND"


class BracketAlreadyExists(BracketError):
    code = "BRACKET_ALREADY_EXISTS"


class ValidationError(BracketError):
    """Result entry rejected."""

    code = "VALIDATION_ERROR"


class MatchNotFound(ValidationError):
    code = "MATCH_NOT_FOUND"


class TeamNotInMatch(ValidationError):
    code = "TEAM_NOT_IN_MATCH"


class BracketNotLocked(ValidationError):
    code = "BRACKET_NOT_LOCKED"


class MatchNotReady(ValidationError):
    """Match is cancelled or still waiting for a team."""

    code = "MATCH_NOT_READY"


class CorrectionBlockedError(ValidationError):
    """Winner change after a downstream match already completed."""

    code = "CORRECTION_BLOCKED"


class InvalidTemplate(BracketError):
    """Template graph violates a structural invariant."""

    code = "INVALID_TEMPLATE"


class BracketNotBuilt(BracketError):
    code = "BRACKET_NOT_BUILT"
