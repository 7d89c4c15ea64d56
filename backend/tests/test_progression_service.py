"""
Match progression: result entry, bye cascade, idempotence, corrections, grand-final reset.
Pure engine tests over in-memory Match objects.
"""

import pytest

from intramurals.models.match import Match, MatchStatus
from intramurals.models.tournament import BracketType
from intramurals.services.bracket_errors import (
    BracketNotLocked,
    CorrectionBlockedError,
    MatchNotFound,
    MatchNotReady,
    TeamNotInMatch,
)
from intramurals.services.bracket_template import GRAND_FINAL_KEY
from intramurals.services.progression_service import (
    ProgressionEngine,
    compute_rankings,
    derive_status,
    record_result,
)

from tests.bracket_helpers import by_key, make_tournament, seeded_bracket


def locked_engine(team_count, **tournament_kwargs):
    tournament = make_tournament(locked=True, **tournament_kwargs)
    tournament, template, matches = seeded_bracket(team_count, tournament)
    return ProgressionEngine(tournament, matches, template)


def play(engine, key, winner_position, score=(21, 15)):
    match = engine.by_template_key(key)
    winner = match.team_at(winner_position)
    s1, s2 = score if winner_position == 1 else tuple(reversed(score))
    return engine.record_result(match.id, winner, s1, s2)


# -----------------------------------------------------------------------------
# derive_status
# -----------------------------------------------------------------------------


def test_derive_status_projection():
    match = Match(template_key="W1-M1", round=1, match_number=1)
    assert derive_status(match) == MatchStatus.pending.value

    match.team1_id = 1
    assert derive_status(match) == MatchStatus.pending.value

    match.is_bye = True
    assert derive_status(match) == MatchStatus.scheduled.value

    match.is_bye = False
    match.team2_id = 2
    assert derive_status(match) == MatchStatus.scheduled.value

    match.winner_id = 2
    assert derive_status(match) == MatchStatus.completed.value

    match.status = MatchStatus.cancelled.value
    assert derive_status(match) == MatchStatus.cancelled.value


# -----------------------------------------------------------------------------
# Seeding + byes
# -----------------------------------------------------------------------------


def test_four_team_seeding_schedules_round_one_only():
    _, _, matches = seeded_bracket(4)
    m = by_key(matches)

    assert (m["W1-M1"].team1_id, m["W1-M1"].team2_id) == (101, 104)
    assert (m["W1-M2"].team1_id, m["W1-M2"].team2_id) == (102, 103)
    assert m["W1-M1"].status == MatchStatus.scheduled.value
    assert m["F-M1"].status == MatchStatus.pending.value


def test_byes_prefill_second_round():
    _, _, matches = seeded_bracket(5)
    m = by_key(matches)

    for key, team in (("W1-M1", 101), ("W1-M3", 102), ("W1-M4", 103)):
        assert m[key].status == MatchStatus.completed.value
        assert m[key].winner_id == team

    # seed 1 waits for the 4/5 winner, seeds 2 and 3 are already paired
    assert m["W2-M1"].team1_id == 101
    assert m["W2-M1"].team2_id is None
    assert m["W2-M1"].status == MatchStatus.pending.value
    assert (m["W2-M2"].team1_id, m["W2-M2"].team2_id) == (102, 103)
    assert m["W2-M2"].status == MatchStatus.scheduled.value


def test_single_bye_final_scheduled_after_opening_result():
    engine = locked_engine(3)
    final = engine.by_template_key("F-M1")
    assert final.team1_id == 101
    assert final.status == MatchStatus.pending.value

    effects = play(engine, "W1-M2", 2)

    assert (final.team1_id, final.team2_id) == (101, 103)
    assert final.status == MatchStatus.scheduled.value
    assert final in effects.changed


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------


def test_result_rejected_before_lock():
    tournament, template, matches = seeded_bracket(4)
    match = by_key(matches)["W1-M1"]

    with pytest.raises(BracketNotLocked):
        record_result(tournament, matches, match.id, 101, 2, 1, template)
    assert match.winner_id is None
    assert match.status == MatchStatus.scheduled.value


def test_unknown_match():
    engine = locked_engine(4)
    with pytest.raises(MatchNotFound):
        engine.record_result("nope", 101)


def test_winner_must_play_in_match():
    engine = locked_engine(4)
    match = engine.by_template_key("W1-M1")

    with pytest.raises(TeamNotInMatch):
        engine.record_result(match.id, 102)
    assert match.status == MatchStatus.scheduled.value


def test_match_waiting_for_a_team_is_not_ready():
    engine = locked_engine(4)
    final = engine.by_template_key("F-M1")

    with pytest.raises(MatchNotReady):
        engine.record_result(final.id, 101)


def test_cancelled_match_is_not_ready():
    engine = locked_engine(4)
    match = engine.by_template_key("W1-M2")
    match.status = MatchStatus.cancelled.value

    with pytest.raises(MatchNotReady):
        engine.record_result(match.id, 102)


# -----------------------------------------------------------------------------
# Advancement
# -----------------------------------------------------------------------------


def test_winner_advances_and_final_becomes_scheduled():
    engine = locked_engine(4)

    effects = play(engine, "W1-M1", 1)
    final = engine.by_template_key("F-M1")
    assert final.team1_id == 101
    assert final.status == MatchStatus.pending.value
    assert {m.template_key for m in effects.changed} == {"W1-M1", "F-M1"}

    play(engine, "W1-M2", 2)
    assert final.team2_id == 103
    assert final.status == MatchStatus.scheduled.value


def test_full_single_elimination_rankings_with_third_place():
    engine = locked_engine(4, third_place_match=True)

    play(engine, "W1-M1", 1)
    play(engine, "W1-M2", 1)
    third = engine.by_template_key("TP-M1")
    assert (third.team1_id, third.team2_id) == (104, 103)
    assert third.status == MatchStatus.scheduled.value

    play(engine, "TP-M1", 2)
    play(engine, "F-M1", 2)

    rankings = compute_rankings(engine.matches)
    assert rankings.champion_id == 102
    assert rankings.runner_up_id == 101
    assert rankings.third_place_id == 103


def test_same_result_twice_has_no_effects():
    engine = locked_engine(4)
    match = engine.by_template_key("W1-M1")

    first = engine.record_result(match.id, 101, 21, 10)
    second = engine.record_result(match.id, 101, 21, 10)

    assert not first.is_empty
    assert second.is_empty
    assert engine.by_template_key("F-M1").team1_id == 101


def test_same_winner_new_score_only_touches_the_match():
    engine = locked_engine(4)
    match = engine.by_template_key("W1-M1")
    engine.record_result(match.id, 101, 21, 10)

    effects = engine.record_result(match.id, 101, 21, 19)

    assert [m.template_key for m in effects.changed] == ["W1-M1"]
    assert match.team2_score == 19


def test_loser_drops_through_bye_node_in_losers_bracket():
    engine = locked_engine(5, bracket_type=BracketType.double_elimination)

    play(engine, "W1-M2", 1)  # 104 beats 105

    # L1-M1 only ever receives the W1-M2 loser, so 105 walks on to L2-M1
    l1 = engine.by_template_key("L1-M1")
    assert l1.team2_id == 105
    assert l1.winner_id == 105
    assert l1.status == MatchStatus.completed.value
    assert engine.by_template_key("L2-M1").team2_id == 105


# -----------------------------------------------------------------------------
# Corrections
# -----------------------------------------------------------------------------


def test_correction_rewrites_downstream_slots():
    engine = locked_engine(4, bracket_type=BracketType.double_elimination)
    play(engine, "W1-M1", 1)
    match = engine.by_template_key("W1-M1")

    effects = engine.record_result(match.id, 104, 18, 21)

    assert match.winner_id == 104
    assert engine.by_template_key("W2-M1").team1_id == 104
    assert engine.by_template_key("L1-M1").team1_id == 101
    assert {m.template_key for m in effects.changed} == {"W1-M1", "W2-M1", "L1-M1"}


def test_correction_blocked_after_downstream_completed():
    engine = locked_engine(4)
    play(engine, "W1-M1", 1)
    play(engine, "W1-M2", 1)
    play(engine, "F-M1", 1)
    match = engine.by_template_key("W1-M1")

    with pytest.raises(CorrectionBlockedError):
        engine.record_result(match.id, 104)

    assert match.winner_id == 101
    assert engine.by_template_key("F-M1").team1_id == 101


# -----------------------------------------------------------------------------
# All-or-nothing
# -----------------------------------------------------------------------------


def test_failed_cascade_leaves_no_partial_writes():
    engine = locked_engine(4)
    match = engine.by_template_key("W1-M1")
    match.next_match_id = "missing-match"

    with pytest.raises(MatchNotFound):
        engine.record_result(match.id, 101, 21, 3)

    assert match.winner_id is None
    assert match.team1_score is None
    assert match.status == MatchStatus.scheduled.value


# -----------------------------------------------------------------------------
# Double elimination finals
# -----------------------------------------------------------------------------


def play_to_final(engine):
    play(engine, "W1-M1", 1)  # 101 beats 104
    play(engine, "W1-M2", 2)  # 103 beats 102
    play(engine, "W2-M1", 1)  # 101 beats 103
    play(engine, "L1-M1", 2)  # 102 beats 104
    play(engine, "L2-M1", 2)  # 102 beats 103


def test_winners_champion_wins_final_without_reset():
    engine = locked_engine(4, bracket_type=BracketType.double_elimination)
    play_to_final(engine)

    effects = play(engine, "F-M1", 1)

    assert effects.created == []
    assert engine.by_template_key(GRAND_FINAL_KEY) is None
    rankings = compute_rankings(engine.matches)
    assert rankings.champion_id == 101
    assert rankings.runner_up_id == 102
    assert rankings.third_place_id == 103


def test_losers_champion_win_materializes_grand_final():
    engine = locked_engine(4, bracket_type=BracketType.double_elimination)
    play_to_final(engine)
    final = engine.by_template_key("F-M1")
    assert (final.team1_id, final.team2_id) == (101, 102)

    effects = play(engine, "F-M1", 2)

    assert len(effects.created) == 1
    reset = effects.created[0]
    assert reset.template_key == GRAND_FINAL_KEY
    assert reset.round == 301
    assert (reset.team1_id, reset.team2_id) == (102, 101)
    assert reset.status == MatchStatus.scheduled.value
    assert final.next_match_id == reset.id
    assert compute_rankings(engine.matches).champion_id is None

    play(engine, GRAND_FINAL_KEY, 2)
    rankings = compute_rankings(engine.matches)
    assert rankings.champion_id == 101
    assert rankings.runner_up_id == 102


def test_final_correction_blocked_once_reset_exists():
    engine = locked_engine(4, bracket_type=BracketType.double_elimination)
    play_to_final(engine)
    play(engine, "F-M1", 2)
    final = engine.by_template_key("F-M1")

    with pytest.raises(CorrectionBlockedError):
        engine.record_result(final.id, 101)
    assert final.winner_id == 102


def test_no_reset_when_flag_off():
    engine = locked_engine(4, bracket_type=BracketType.double_elimination, grand_final_reset=False)
    play_to_final(engine)

    effects = play(engine, "F-M1", 2)

    assert effects.created == []
    assert compute_rankings(engine.matches).champion_id == 102
