"""
SQLModel persistence for the bracket engine.

The engine works on plain Match/Tournament objects; BracketStore loads and
saves them and serializes the tournament's randomize/lock counters with a
compare-and-swap so two admins cannot race past max_random_attempts.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, List

from sqlalchemy import update
from sqlmodel import Session, select

from intramurals.models.match import Match
from intramurals.models.team import Team
from intramurals.models.tournament import Tournament
from intramurals.services.bracket_errors import StaleTournamentState, TournamentNotFound
from intramurals.services.progression_service import derive_status

logger = logging.getLogger(__name__)


class BracketStore:
    def __init__(self, session: Session):
        self.session = session

    def get_tournament(self, tournament_id: int) -> Tournament:
        tournament = self.session.get(Tournament, tournament_id)
        if not tournament:
            raise TournamentNotFound(f"Tournament {tournament_id} not found")
        return tournament

    def get_teams(self, tournament_id: int) -> List[Team]:
        """Teams in seed order (unseeded last), then id."""
        return list(
            self.session.exec(
                select(Team)
                .where(Team.tournament_id == tournament_id)
                .order_by(Team.seed.is_(None), Team.seed, Team.id)
            ).all()
        )

    def load_matches(self, tournament_id: int) -> List[Match]:
        """Matches in (round, match_number) order, status re-derived from slots."""
        matches = list(
            self.session.exec(
                select(Match)
                .where(Match.tournament_id == tournament_id)
                .order_by(Match.round, Match.match_number)
            ).all()
        )
        for match in matches:
            match.status = derive_status(match)
        return matches

    def get_match(self, match_id: str) -> Match:
        return self.session.get(Match, match_id)

    def save_matches(self, matches: Iterable[Match]) -> None:
        """
        Commit the matches, then re-derive status from the committed rows.

        Two writers filling different slots of the same match each commit only
        their own slot, so the status each computed may be stale.
        """
        saved = list(matches)
        for match in saved:
            self.session.add(match)
        self.session.commit()

        stale = 0
        for match in saved:
            self.session.refresh(match)
            status = derive_status(match)
            if match.status != status:
                match.status = status
                stale += 1
        if stale:
            self.session.commit()
        logger.debug("Saved %d match(es), %d status re-derived", len(saved), stale)

    def replace_matches(self, tournament_id: int, matches: Iterable[Match]) -> None:
        """Drop the tournament's match rows and insert a new set, in one commit."""
        for existing in self.load_matches(tournament_id):
            self.session.delete(existing)
        self.session.flush()
        for match in matches:
            match.tournament_id = tournament_id
            self.session.add(match)
        self.session.commit()

    def compare_and_swap_counters(
        self,
        tournament: Tournament,
        expected_count: int,
        expected_locked: bool,
        new_count: int,
        new_locked: bool,
    ) -> None:
        """
        Write randomize_count/randomize_locked only if the stored row still holds
        the expected values. Runs in the session's current transaction; the
        caller commits.

        Raises:
            StaleTournamentState: another writer changed the counters first
        """
        with self.session.no_autoflush:
            result = self.session.execute(
                update(Tournament)
                .where(
                    Tournament.id == tournament.id,
                    Tournament.randomize_count == expected_count,
                    Tournament.randomize_locked == expected_locked,
                )
                .values(
                    randomize_count=new_count,
                    randomize_locked=new_locked,
                    updated_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
        if result.rowcount == 0:
            logger.warning(
                "Stale counters for tournament %s (expected count=%d locked=%s)",
                tournament.id,
                expected_count,
                expected_locked,
            )
            self.session.rollback()
            raise StaleTournamentState(f"Tournament {tournament.id} was modified concurrently; reload and retry")
