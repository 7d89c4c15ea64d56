"""Seeding & lock controller: instantiation, seed binding, bounded randomize, lock."""
import random

import pytest

from intramurals.models.match import MatchStatus
from intramurals.models.team import Team
from intramurals.models.tournament import BracketType
from intramurals.services.bracket_errors import (
    AlreadyLockedError,
    AttemptsExhaustedError,
    LockedError,
    SeedingError,
)
from intramurals.services.bracket_template import build_template
from intramurals.services.seeding_service import (
    assign_seeds,
    can_randomize,
    create_bracket,
    instantiate_matches,
    lock,
    order_teams,
    randomize,
)

from tests.bracket_helpers import by_key, make_tournament, seeded_bracket, team_ids


def round_one_teams(matches):
    teams = set()
    for m in matches:
        if m.round == 1:
            teams.update(t for t in (m.team1_id, m.team2_id) if t is not None)
    return teams


def test_instantiate_matches_mirrors_template_edges():
    template = build_template(4, BracketType.double_elimination)
    matches = instantiate_matches(template, tournament_id=7)
    m = by_key(matches)

    assert set(m) == set(template.nodes)
    assert all(match.tournament_id == 7 for match in matches)
    assert all(match.status == MatchStatus.pending.value for match in matches)
    assert m["W1-M1"].next_match_id == m["W2-M1"].id
    assert m["W1-M1"].loser_next_match_id == m["L1-M1"].id
    assert m["W1-M2"].loser_next_match_position == 2
    assert m["F-M1"].round == 201
    assert m["F-M1"].next_match_id is None


def test_assign_seeds_rejects_wrong_team_count():
    template = build_template(4, BracketType.single_elimination)
    with pytest.raises(SeedingError):
        assign_seeds(template, [1, 2, 3])


def test_assign_seeds_rejects_duplicate_teams():
    template = build_template(4, BracketType.single_elimination)
    with pytest.raises(SeedingError):
        assign_seeds(template, [1, 2, 2, 3])


def test_assign_seeds_rejected_after_lock():
    template = build_template(4, BracketType.single_elimination)
    tournament = make_tournament(locked=True)
    with pytest.raises(LockedError):
        assign_seeds(template, team_ids(4), tournament=tournament)


def test_randomize_is_bounded():
    tournament, template, matches = seeded_bracket(8, make_tournament(max_random_attempts=3))
    rng = random.Random(1234)

    for attempt in range(1, 4):
        randomize(tournament, template, matches, team_ids(8), rng=rng)
        assert tournament.randomize_count == attempt

    assert not can_randomize(tournament)
    with pytest.raises(AttemptsExhaustedError):
        randomize(tournament, template, matches, team_ids(8), rng=rng)
    assert tournament.randomize_count == 3


def test_randomize_permutes_round_one_teams():
    tournament, template, matches = seeded_bracket(8)

    randomize(tournament, template, matches, team_ids(8), rng=random.Random(7))

    assert round_one_teams(matches) == set(team_ids(8))
    assert all(m.team1_id is None for m in matches if m.round > 1)


def test_randomize_is_reproducible_with_seeded_rng():
    a_tournament, a_template, a_matches = seeded_bracket(8)
    b_tournament, b_template, b_matches = seeded_bracket(8)

    randomize(a_tournament, a_template, a_matches, team_ids(8), rng=random.Random(99))
    randomize(b_tournament, b_template, b_matches, team_ids(8), rng=random.Random(99))

    a, b = by_key(a_matches), by_key(b_matches)
    assert [(a[k].team1_id, a[k].team2_id) for k in sorted(a)] == [(b[k].team1_id, b[k].team2_id) for k in sorted(b)]


def test_randomize_keeps_byes_in_place():
    tournament, template, matches = seeded_bracket(5)

    randomize(tournament, template, matches, team_ids(5), rng=random.Random(3))
    m = by_key(matches)

    for key in ("W1-M1", "W1-M3", "W1-M4"):
        assert m[key].is_bye
        assert m[key].status == MatchStatus.completed.value
        assert m[key].winner_id == m[key].team1_id
        assert m[key].team2_id is None
    assert m["W2-M2"].status == MatchStatus.scheduled.value
    assert round_one_teams(matches) == set(team_ids(5))


def test_lock_blocks_randomize_and_is_irreversible():
    tournament, template, matches = seeded_bracket(4)
    before = {m.template_key: (m.team1_id, m.team2_id) for m in matches}

    lock(tournament)
    assert tournament.randomize_locked
    assert tournament.updated_at.tzinfo is not None
    assert not can_randomize(tournament)

    with pytest.raises(LockedError):
        randomize(tournament, template, matches, team_ids(4))
    assert {m.template_key: (m.team1_id, m.team2_id) for m in matches} == before
    assert tournament.randomize_count == 0

    with pytest.raises(AlreadyLockedError):
        lock(tournament)
    assert tournament.randomize_locked


def test_order_teams_by_seed_then_id():
    teams = [
        Team(id=3, tournament_id=1, name="Owls", seed=None),
        Team(id=1, tournament_id=1, name="Bears", seed=2),
        Team(id=2, tournament_id=1, name="Aces", seed=None),
        Team(id=4, tournament_id=1, name="Cats", seed=1),
    ]
    assert [t.name for t in order_teams(teams)] == ["Cats", "Bears", "Aces", "Owls"]


def test_create_bracket_stores_template_on_tournament():
    tournament = make_tournament(BracketType.double_elimination)
    teams = [Team(id=10 + i, tournament_id=1, name=f"Team {i}", seed=i) for i in range(1, 7)]

    template, matches = create_bracket(tournament, teams)

    assert tournament.bracket_template == template.to_dict()
    assert len(matches) == len(template.nodes)
    assert by_key(matches)["W1-M2"].team1_id == 14
