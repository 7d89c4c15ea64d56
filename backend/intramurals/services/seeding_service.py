"""
Seeding & Lock Controller.

Binds teams to round-1 template slots in seed order, supports a bounded number
of re-randomizations, and an irreversible lock that freezes round-1 placement
before result entry opens.
"""

import logging
import random
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from intramurals.models.match import Match, MatchStatus
from intramurals.models.team import Team
from intramurals.models.tournament import Tournament
from intramurals.services.bracket_errors import (
    AlreadyLockedError,
    AttemptsExhaustedError,
    LockedError,
    SeedingError,
)
from intramurals.services.bracket_template import BracketTemplate, Seed, build_template
from intramurals.services.progression_service import derive_status, resolve_byes

logger = logging.getLogger(__name__)


def order_teams(teams: Sequence[Team]) -> List[Team]:
    """
    Teams in deterministic seeding order.

    Order:
    1. seed ascending (non-null first)
    2. id ascending
    """

    def sort_key(team: Team):
        return (
            (team.seed is None, team.seed if team.seed is not None else 0),
            team.id if team.id is not None else 0,
        )

    return sorted(teams, key=sort_key)


def instantiate_matches(template: BracketTemplate, tournament_id: Optional[int] = None) -> List[Match]:
    """One pending Match per template node, with advancement edges resolved to match ids."""
    matches: Dict[str, Match] = {}
    for key, node in template.nodes.items():
        matches[key] = Match(
            tournament_id=tournament_id,
            template_key=key,
            round=node.round,
            match_number=node.match_number,
            bracket_stage=node.bracket_stage,
            stage_round=node.stage_round,
            display_label=node.display_label,
            is_bye=node.is_bye,
            is_third_place=node.is_third_place,
            status=MatchStatus.pending.value,
        )

    for key, node in template.nodes.items():
        match = matches[key]
        if node.next_template_key is not None:
            match.next_match_id = matches[node.next_template_key].id
            match.next_match_position = node.next_match_position
        if node.loser_next_template_key is not None:
            match.loser_next_match_id = matches[node.loser_next_template_key].id
            match.loser_next_match_position = node.loser_next_match_position

    return list(matches.values())


def reset_matches(matches: Sequence[Match]) -> None:
    """Clear every team slot and result, back to a freshly instantiated bracket."""
    for match in matches:
        match.team1_id = None
        match.team2_id = None
        match.winner_id = None
        match.team1_score = None
        match.team2_score = None
        match.completed_at = None
        match.status = MatchStatus.pending.value


def assign_seeds(
    template: BracketTemplate,
    ordered_team_ids: Sequence[int],
    matches: Optional[List[Match]] = None,
    tournament: Optional[Tournament] = None,
) -> List[Match]:
    """
    Bind teams to round-1 slots: ordered_team_ids[i] takes seed i + 1.

    Bye matches are resolved immediately and their teams advanced.

    Args:
        template: Bracket template the matches mirror
        ordered_team_ids: Team ids in seed order (len == template.team_count)
        matches: Existing (reset) match set; instantiated from the template when None
        tournament: When given, rejected if already locked

    Returns:
        All matches of the bracket

    Raises:
        LockedError: tournament is locked
        SeedingError: team count mismatch or duplicate team ids
    """
    if tournament is not None and tournament.randomize_locked:
        logger.warning("Seeding rejected: tournament %s is locked", tournament.id)
        raise LockedError("Bracket is locked and cannot be re-seeded")
    if len(ordered_team_ids) != template.team_count:
        raise SeedingError(
            f"Template expects {template.team_count} teams, got {len(ordered_team_ids)}"
        )
    if len(set(ordered_team_ids)) != len(ordered_team_ids):
        raise SeedingError("Duplicate team ids in seeding order")

    if matches is None:
        matches = instantiate_matches(template, tournament.id if tournament is not None else None)

    by_key = {m.template_key: m for m in matches}
    for node in template.round_one_nodes():
        match = by_key[node.template_key]
        for position in (1, 2):
            slot = node.slot(position)
            if isinstance(slot, Seed):
                setattr(match, f"team{position}_id", ordered_team_ids[slot.number - 1])

    for match in matches:
        match.status = derive_status(match)

    effects = resolve_byes(matches)
    logger.info(
        "Assigned %d seeds (%d match(es) resolved by byes)",
        len(ordered_team_ids),
        len(effects.changed),
    )
    return matches


def can_randomize(tournament: Tournament) -> bool:
    return not tournament.randomize_locked and tournament.randomize_count < tournament.max_random_attempts


def randomize(
    tournament: Tournament,
    template: BracketTemplate,
    matches: List[Match],
    team_ids: Sequence[int],
    rng: Optional[random.Random] = None,
) -> List[Match]:
    """
    Reseed the bracket with a uniformly random permutation of team_ids.

    Bye positions stay where the template put them; only the team behind
    each seed changes. Increments tournament.randomize_count.

    Raises:
        LockedError: tournament is locked
        AttemptsExhaustedError: randomize_count reached max_random_attempts
    """
    if tournament.randomize_locked:
        logger.warning("Randomize rejected: tournament %s is locked", tournament.id)
        raise LockedError("Bracket is locked and cannot be randomized")
    if tournament.randomize_count >= tournament.max_random_attempts:
        logger.warning(
            "Randomize rejected: tournament %s used %d/%d attempts",
            tournament.id,
            tournament.randomize_count,
            tournament.max_random_attempts,
        )
        raise AttemptsExhaustedError(
            f"Maximum randomize attempts ({tournament.max_random_attempts}) reached"
        )
    if len(team_ids) != template.team_count:
        raise SeedingError(f"Template expects {template.team_count} teams, got {len(team_ids)}")

    shuffled = list(team_ids)
    (rng or random.Random()).shuffle(shuffled)

    reset_matches(matches)
    assign_seeds(template, shuffled, matches)
    tournament.randomize_count += 1
    tournament.updated_at = datetime.now(timezone.utc)
    logger.info(
        "Randomized tournament %s (%d/%d)",
        tournament.id,
        tournament.randomize_count,
        tournament.max_random_attempts,
    )
    return matches


def lock(tournament: Tournament) -> None:
    """Freeze round-1 placement. Irreversible."""
    if tournament.randomize_locked:
        logger.warning("Lock rejected: tournament %s is already locked", tournament.id)
        raise AlreadyLockedError("Bracket is already locked")
    tournament.randomize_locked = True
    tournament.updated_at = datetime.now(timezone.utc)
    logger.info("Locked tournament %s after %d randomize(s)", tournament.id, tournament.randomize_count)


def create_bracket(tournament: Tournament, teams: Sequence[Team]) -> Tuple[BracketTemplate, List[Match]]:
    """
    Build the tournament's template and seed it in team order.

    The serialized template is stored on tournament.bracket_template.
    """
    template = build_template(
        len(teams),
        tournament.bracket_type,
        third_place_match=tournament.third_place_match,
        grand_final_reset=tournament.grand_final_reset,
    )
    ordered = order_teams(teams)
    matches = assign_seeds(template, [t.id for t in ordered], tournament=tournament)
    tournament.bracket_template = template.to_dict()
    return template, matches
