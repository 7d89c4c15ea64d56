"""
Match Progression: record a result and advance teams along the bracket edges.

When a match is completed its winner is written into next_match_id's slot and,
in double elimination, its loser into loser_next_match_id's slot. Bye nodes
complete themselves the moment their single team arrives and keep cascading.

Guarantees:
    - All-or-nothing: writes are staged and only applied once the whole
      cascade succeeded
    - Idempotent: re-recording the same winner produces no advancement effects
    - Status is derived from slots (derive_status), never set by callers
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from intramurals.models.match import BracketStage, Match, MatchStatus
from intramurals.models.tournament import BracketType, Tournament
from intramurals.services.bracket_errors import (
    BracketNotLocked,
    CorrectionBlockedError,
    MatchNotFound,
    MatchNotReady,
    TeamNotInMatch,
)
from intramurals.services.bracket_template import (
    FINAL_KEY,
    GRAND_FINAL_KEY,
    THIRD_PLACE_KEY,
    BracketTemplate,
    load_template,
)

logger = logging.getLogger(__name__)


def derive_status(match: Match) -> str:
    """
    Status projection from slots.

    cancelled stays cancelled; a winner means completed; two teams (or one
    team facing a permanent bye) means scheduled; anything else is pending.
    """
    if match.status == MatchStatus.cancelled.value:
        return MatchStatus.cancelled.value
    if match.winner_id is not None:
        return MatchStatus.completed.value
    if match.team1_id is not None and match.team2_id is not None:
        return MatchStatus.scheduled.value
    if match.is_bye and (match.team1_id is not None or match.team2_id is not None):
        return MatchStatus.scheduled.value
    return MatchStatus.pending.value


@dataclass
class AdvancementEffects:
    """Matches touched by one operation, for persistence and view invalidation."""

    changed: List[Match] = field(default_factory=list)
    created: List[Match] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.changed and not self.created

    def all_matches(self) -> List[Match]:
        return self.changed + self.created


@dataclass
class Rankings:
    champion_id: Optional[int] = None
    runner_up_id: Optional[int] = None
    third_place_id: Optional[int] = None


class _Changeset:
    """Pending field writes keyed by match id; nothing touches a Match until apply()."""

    def __init__(self, matches: Dict[str, Match]):
        self.matches = matches
        self.writes: Dict[str, Dict[str, Any]] = {}
        self.touched: List[str] = []
        self.created: List[Match] = []

    def lookup(self, match_id: str) -> Match:
        match = self.matches.get(match_id)
        if match is None:
            for candidate in self.created:
                if candidate.id == match_id:
                    return candidate
            raise MatchNotFound(f"Match {match_id} not found")
        return match

    def get(self, match: Match, name: str) -> Any:
        staged = self.writes.get(match.id, {})
        if name in staged:
            return staged[name]
        return getattr(match, name)

    def set(self, match: Match, name: str, value: Any) -> None:
        if self.get(match, name) == value:
            return
        self.writes.setdefault(match.id, {})[name] = value
        if match.id not in self.touched:
            self.touched.append(match.id)

    def create(self, match: Match) -> None:
        self.created.append(match)

    def apply(self) -> AdvancementEffects:
        effects = AdvancementEffects()
        created_ids = {m.id for m in self.created}
        for match in self.created:
            for name, value in self.writes.pop(match.id, {}).items():
                setattr(match, name, value)
            match.status = derive_status(match)
            self.matches[match.id] = match
            effects.created.append(match)
        for match_id in self.touched:
            if match_id in created_ids:
                continue
            match = self.matches[match_id]
            for name, value in self.writes.get(match_id, {}).items():
                setattr(match, name, value)
            match.status = derive_status(match)
            effects.changed.append(match)
        return effects


class ProgressionEngine:
    """
    Result entry over one tournament's match set.

    The engine mutates the Match objects it was given (and returns them in
    AdvancementEffects); persisting them is the caller's concern.
    """

    def __init__(
        self,
        tournament: Optional[Tournament],
        matches: Iterable[Match],
        template: Optional[BracketTemplate] = None,
    ):
        self.tournament = tournament
        self._matches: Dict[str, Match] = {m.id: m for m in matches}
        self._template = template

    @property
    def matches(self) -> List[Match]:
        return sorted(self._matches.values(), key=lambda m: (m.round, m.match_number))

    @property
    def template(self) -> BracketTemplate:
        if self._template is None:
            self._template = load_template(self.tournament)
        return self._template

    def by_template_key(self, template_key: str) -> Optional[Match]:
        for match in self._matches.values():
            if match.template_key == template_key:
                return match
        return None

    # ------------------------------------------------------------------
    # Result entry
    # ------------------------------------------------------------------

    def record_result(
        self,
        match_id: str,
        winner_id: int,
        team1_score: Optional[int] = None,
        team2_score: Optional[int] = None,
    ) -> AdvancementEffects:
        """
        Complete a match and propagate its winner (and loser) downstream.

        Raises:
            MatchNotFound: unknown match_id
            BracketNotLocked: tournament not locked yet
            MatchNotReady: match cancelled or still missing a team
            TeamNotInMatch: winner_id is neither team1_id nor team2_id
            CorrectionBlockedError: winner change after downstream play
        """
        match = self._matches.get(match_id)
        if match is None:
            logger.warning("Result rejected: match %s not found", match_id)
            raise MatchNotFound(f"Match {match_id} not found")
        if not self.tournament.randomize_locked:
            logger.warning("Result rejected: tournament %s is not locked", self.tournament.id)
            raise BracketNotLocked("Results can only be entered once the bracket is locked")
        if match.status == MatchStatus.cancelled.value:
            raise MatchNotReady(f"Match {match.template_key} is cancelled")
        if match.team1_id is None or match.team2_id is None:
            raise MatchNotReady(f"Match {match.template_key} is still waiting for a team")
        if winner_id not in (match.team1_id, match.team2_id):
            logger.warning("Result rejected: team %s not in match %s", winner_id, match.template_key)
            raise TeamNotInMatch(f"Team {winner_id} is not playing in match {match.template_key}")

        changes = _Changeset(self._matches)

        if match.status == MatchStatus.completed.value and match.winner_id == winner_id:
            # same winner: scores only, no re-propagation
            changes.set(match, "team1_score", team1_score)
            changes.set(match, "team2_score", team2_score)
            effects = changes.apply()
            logger.debug("Result for %s re-recorded, %d match(es) changed", match.template_key, len(effects.changed))
            return effects

        if match.status == MatchStatus.completed.value:
            self._check_correction_allowed(match)
            logger.info("Correcting %s: winner %s -> %s", match.template_key, match.winner_id, winner_id)

        loser_id = match.team2_id if winner_id == match.team1_id else match.team1_id
        changes.set(match, "winner_id", winner_id)
        changes.set(match, "team1_score", team1_score)
        changes.set(match, "team2_score", team2_score)
        changes.set(match, "completed_at", datetime.now(timezone.utc))
        self._advance(changes, match, winner_id, loser_id)
        self._maybe_materialize_reset(changes, match, winner_id, loser_id)

        effects = changes.apply()
        logger.info(
            "Recorded %s: winner %s, %d changed, %d created",
            match.template_key,
            winner_id,
            len(effects.changed),
            len(effects.created),
        )
        return effects

    def resolve_byes(self) -> AdvancementEffects:
        """Complete every bye match holding its single team and cascade the winners."""
        changes = _Changeset(self._matches)
        for match in self.matches:
            if not match.is_bye or changes.get(match, "winner_id") is not None:
                continue
            team1 = changes.get(match, "team1_id")
            team2 = changes.get(match, "team2_id")
            present = team1 if team1 is not None else team2
            if present is None or (team1 is not None and team2 is not None):
                continue
            logger.debug("Resolving bye %s for team %s", match.template_key, present)
            changes.set(match, "winner_id", present)
            changes.set(match, "completed_at", datetime.now(timezone.utc))
            self._advance(changes, match, present, None)
        return changes.apply()

    # ------------------------------------------------------------------
    # Propagation
    # ------------------------------------------------------------------

    def _advance(self, changes: _Changeset, match: Match, winner_id: int, loser_id: Optional[int]) -> None:
        next_id = changes.get(match, "next_match_id")
        if next_id is not None:
            self._place(changes, next_id, changes.get(match, "next_match_position"), winner_id)
        loser_next_id = changes.get(match, "loser_next_match_id")
        if loser_id is not None and loser_next_id is not None:
            self._place(changes, loser_next_id, changes.get(match, "loser_next_match_position"), loser_id)

    def _place(self, changes: _Changeset, target_id: str, position: int, team_id: int) -> None:
        target = changes.lookup(target_id)
        changes.set(target, f"team{position}_id", team_id)
        logger.debug("Advanced team %s into %s slot %d", team_id, target.template_key, position)
        if target.is_bye:
            # the other slot never fills: the arriving team walks through
            changes.set(target, "winner_id", team_id)
            changes.set(target, "completed_at", datetime.now(timezone.utc))
            self._advance(changes, target, team_id, None)

    def _downstream(self, match: Match) -> List[Match]:
        """Matches fed by this one, looking through bye nodes."""
        found: List[Match] = []
        for target_id in (match.next_match_id, match.loser_next_match_id):
            target = self._matches.get(target_id) if target_id else None
            if target is None:
                continue
            found.append(target)
            if target.is_bye:
                found.extend(self._downstream(target))
        return found

    def _check_correction_allowed(self, match: Match) -> None:
        for target in self._downstream(match):
            if target.is_bye:
                continue
            if target.template_key == GRAND_FINAL_KEY:
                logger.warning("Correction of %s blocked: grand-final reset already scheduled", match.template_key)
                raise CorrectionBlockedError(
                    f"Cannot change the winner of {match.template_key}: the grand-final reset already exists"
                )
            if target.status == MatchStatus.completed.value:
                logger.warning(
                    "Correction of %s blocked: downstream %s already completed",
                    match.template_key,
                    target.template_key,
                )
                raise CorrectionBlockedError(
                    f"Cannot change the winner of {match.template_key}: {target.template_key} is already completed"
                )

    # ------------------------------------------------------------------
    # Grand-final reset
    # ------------------------------------------------------------------

    def _maybe_materialize_reset(self, changes: _Changeset, match: Match, winner_id: int, loser_id: int) -> None:
        if match.template_key != FINAL_KEY:
            return
        if self.tournament.bracket_type != BracketType.double_elimination.value:
            return
        if not self.tournament.grand_final_reset:
            return
        if winner_id != match.team2_id:
            return
        if self.by_template_key(GRAND_FINAL_KEY) is not None:
            return

        node = self.template.reset_node()
        if node is None:
            return
        reset = Match(
            tournament_id=match.tournament_id,
            template_key=node.template_key,
            round=node.round,
            match_number=node.match_number,
            bracket_stage=node.bracket_stage,
            stage_round=node.stage_round,
            display_label=node.display_label,
            team1_id=winner_id,
            team2_id=loser_id,
        )
        reset.status = derive_status(reset)
        changes.create(reset)
        changes.set(match, "next_match_id", reset.id)
        changes.set(match, "next_match_position", 1)
        changes.set(match, "loser_next_match_id", reset.id)
        changes.set(match, "loser_next_match_position", 2)
        logger.info("Losers-bracket champion %s won the final; grand-final reset scheduled", winner_id)


def record_result(
    tournament: Tournament,
    matches: Iterable[Match],
    match_id: str,
    winner_id: int,
    team1_score: Optional[int] = None,
    team2_score: Optional[int] = None,
    template: Optional[BracketTemplate] = None,
) -> AdvancementEffects:
    """Functional entry point over ProgressionEngine.record_result."""
    engine = ProgressionEngine(tournament, matches, template)
    return engine.record_result(match_id, winner_id, team1_score, team2_score)


def compute_rankings(matches: Iterable[Match]) -> Rankings:
    """
    Champion, runner-up and third place from the completed matches.

    Single elimination: final winner/loser, third-place match winner.
    Double elimination: the grand-final reset decides when it was played;
    third place is the loser of the losers-bracket final.
    """
    by_key = {m.template_key: m for m in matches}
    rankings = Rankings()
    final = by_key.get(FINAL_KEY)
    if final is None or final.winner_id is None:
        return rankings

    reset = by_key.get(GRAND_FINAL_KEY)
    if reset is not None:
        if reset.winner_id is not None:
            rankings.champion_id = reset.winner_id
            rankings.runner_up_id = reset.loser_id()
    elif final.next_match_id is None:
        rankings.champion_id = final.winner_id
        rankings.runner_up_id = final.loser_id()

    third_place = by_key.get(THIRD_PLACE_KEY)
    if third_place is not None:
        rankings.third_place_id = third_place.winner_id
    else:
        for match in by_key.values():
            if (
                match.bracket_stage == BracketStage.losers.value
                and match.next_match_id == final.id
                and match.next_match_position == 2
            ):
                rankings.third_place_id = match.loser_id()
    return rankings


def resolve_byes(matches: Iterable[Match]) -> AdvancementEffects:
    """Complete seeded bye matches; used right after seeding."""
    return ProgressionEngine(None, matches).resolve_byes()
