"""
Intramurals bracket endpoints: build, randomize, lock, record results, read.

Thin HTTP layer over the bracket services; engine errors map to
HTTPException with a "CODE: message" detail.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session

from intramurals.database import get_session
from intramurals.models.match import MatchStatus
from intramurals.services.bracket_errors import (
    BracketAlreadyExists,
    BracketError,
    BracketNotBuilt,
    MatchNotFound,
    StaleTournamentState,
    TournamentNotFound,
)
from intramurals.services.bracket_layout import project
from intramurals.services.bracket_store import BracketStore
from intramurals.services.bracket_template import load_template
from intramurals.services.progression_service import ProgressionEngine, compute_rankings
from intramurals.services.seeding_service import can_randomize, create_bracket, lock, order_teams, randomize

router = APIRouter()

_NOT_FOUND = (TournamentNotFound, MatchNotFound, BracketNotBuilt)


def _http_error(exc: BracketError) -> HTTPException:
    if isinstance(exc, _NOT_FOUND):
        status_code = 404
    elif isinstance(exc, (StaleTournamentState, BracketAlreadyExists)):
        status_code = 409
    else:
        status_code = 400
    return HTTPException(status_code=status_code, detail=str(exc))


class MatchState(BaseModel):
    id: str
    tournament_id: int
    template_key: str
    round: int
    match_number: int
    bracket_stage: str
    stage_round: int
    display_label: Optional[str] = None
    team1_id: Optional[int] = None
    team2_id: Optional[int] = None
    winner_id: Optional[int] = None
    team1_score: Optional[int] = None
    team2_score: Optional[int] = None
    status: str
    is_bye: bool
    is_third_place: bool
    next_match_id: Optional[str] = None
    next_match_position: Optional[int] = None
    loser_next_match_id: Optional[str] = None
    loser_next_match_position: Optional[int] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SeedingState(BaseModel):
    tournament_id: int
    randomize_locked: bool
    randomize_count: int
    max_random_attempts: int
    can_randomize: bool


class RankingsState(BaseModel):
    champion_id: Optional[int] = None
    runner_up_id: Optional[int] = None
    third_place_id: Optional[int] = None


class BracketResponse(BaseModel):
    seeding: SeedingState
    matches: List[MatchState]
    layout: Dict[str, Any]
    rankings: RankingsState


class MatchResultUpdate(BaseModel):
    winner_id: int
    team1_score: Optional[int] = None
    team2_score: Optional[int] = None


class MatchResultResponse(BaseModel):
    match: MatchState
    changed: List[MatchState]
    created: List[MatchState]


def _seeding_state(tournament) -> SeedingState:
    return SeedingState(
        tournament_id=tournament.id,
        randomize_locked=tournament.randomize_locked,
        randomize_count=tournament.randomize_count,
        max_random_attempts=tournament.max_random_attempts,
        can_randomize=can_randomize(tournament),
    )


def _bracket_response(store: BracketStore, tournament_id: int) -> BracketResponse:
    tournament = store.get_tournament(tournament_id)
    template = load_template(tournament)
    matches = store.load_matches(tournament_id)
    rankings = compute_rankings(matches)
    return BracketResponse(
        seeding=_seeding_state(tournament),
        matches=[MatchState.model_validate(m) for m in matches],
        layout=project(template, matches).to_dict(),
        rankings=RankingsState(
            champion_id=rankings.champion_id,
            runner_up_id=rankings.runner_up_id,
            third_place_id=rankings.third_place_id,
        ),
    )


@router.post("/intramurals/tournaments/{tournament_id}/bracket", response_model=BracketResponse)
def build_bracket(tournament_id: int, session: Session = Depends(get_session)) -> BracketResponse:
    """Build the tournament's template and seed its teams in seed order."""
    store = BracketStore(session)
    try:
        tournament = store.get_tournament(tournament_id)
        if tournament.bracket_template:
            raise BracketAlreadyExists(f"Tournament {tournament_id} already has a bracket")
        _, matches = create_bracket(tournament, store.get_teams(tournament_id))
        session.add(tournament)
        store.replace_matches(tournament_id, matches)
        return _bracket_response(store, tournament_id)
    except BracketError as exc:
        session.rollback()
        raise _http_error(exc)


@router.post("/intramurals/tournaments/{tournament_id}/randomize", response_model=BracketResponse)
def randomize_bracket(tournament_id: int, session: Session = Depends(get_session)) -> BracketResponse:
    """Reshuffle round-1 placement. Bounded by max_random_attempts; rejected after lock."""
    store = BracketStore(session)
    try:
        tournament = store.get_tournament(tournament_id)
        expected_count = tournament.randomize_count
        expected_locked = tournament.randomize_locked
        template = load_template(tournament)
        matches = store.load_matches(tournament_id)
        if any(m.status == MatchStatus.completed.value and not m.is_bye for m in matches):
            raise HTTPException(status_code=400, detail="RESULTS_ENTERED: Cannot randomize after results were entered")

        team_ids = [t.id for t in order_teams(store.get_teams(tournament_id))]
        randomize(tournament, template, matches, team_ids)
        store.compare_and_swap_counters(
            tournament,
            expected_count=expected_count,
            expected_locked=expected_locked,
            new_count=tournament.randomize_count,
            new_locked=tournament.randomize_locked,
        )
        store.save_matches(matches)
        return _bracket_response(store, tournament_id)
    except BracketError as exc:
        session.rollback()
        raise _http_error(exc)


@router.post("/intramurals/tournaments/{tournament_id}/lock", response_model=SeedingState)
def lock_bracket(tournament_id: int, session: Session = Depends(get_session)) -> SeedingState:
    """Freeze round-1 placement and open result entry. Irreversible."""
    store = BracketStore(session)
    try:
        tournament = store.get_tournament(tournament_id)
        expected_locked = tournament.randomize_locked
        lock(tournament)
        store.compare_and_swap_counters(
            tournament,
            expected_count=tournament.randomize_count,
            expected_locked=expected_locked,
            new_count=tournament.randomize_count,
            new_locked=True,
        )
        session.add(tournament)
        session.commit()
        session.refresh(tournament)
        return _seeding_state(tournament)
    except BracketError as exc:
        session.rollback()
        raise _http_error(exc)


@router.put("/intramurals/matches/{match_id}", response_model=MatchResultResponse)
def record_match_result(
    match_id: str,
    payload: MatchResultUpdate,
    session: Session = Depends(get_session),
) -> MatchResultResponse:
    """Record (or correct) a result; downstream slots fill automatically."""
    store = BracketStore(session)
    try:
        match = store.get_match(match_id)
        if not match:
            raise MatchNotFound(f"Match {match_id} not found")
        tournament = store.get_tournament(match.tournament_id)
        engine = ProgressionEngine(tournament, store.load_matches(tournament.id))
        effects = engine.record_result(match_id, payload.winner_id, payload.team1_score, payload.team2_score)
        store.save_matches(effects.all_matches())
        for m in effects.all_matches():
            session.refresh(m)
        session.refresh(match)
        return MatchResultResponse(
            match=MatchState.model_validate(match),
            changed=[MatchState.model_validate(m) for m in effects.changed],
            created=[MatchState.model_validate(m) for m in effects.created],
        )
    except BracketError as exc:
        session.rollback()
        raise _http_error(exc)


@router.get("/intramurals/tournaments/{tournament_id}/bracket", response_model=BracketResponse)
def get_bracket(tournament_id: int, session: Session = Depends(get_session)) -> BracketResponse:
    """Matches, layout and rankings for rendering."""
    try:
        return _bracket_response(BracketStore(session), tournament_id)
    except BracketError as exc:
        raise _http_error(exc)
