import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from intramurals.database import get_session
from intramurals.main import app
from intramurals.models.team import Team
from intramurals.models.tournament import BracketType, Tournament

TEST_DATABASE_URL = "sqlite:///:memory:"

# ============================================================================
# Test Database Setup with StaticPool
# ============================================================================
# 1. sqlite:///:memory: with StaticPool so ALL sessions share the same DB
# 2. check_same_thread=False required for TestClient/threaded access
# 3. All models MUST be imported before create_all() (see session_fixture)
# 4. App dependency overridden to use test_engine (see client_fixture)
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


def override_get_session():
    """Override session to use test engine"""
    with Session(test_engine) as session:
        yield session


@pytest.fixture(name="session", scope="function")
def session_fixture():
    """Provide a test database session on a fresh schema"""
    from intramurals.models.match import Match  # noqa: F401
    from intramurals.models.team import Team  # noqa: F401
    from intramurals.models.tournament import Tournament  # noqa: F401

    SQLModel.metadata.create_all(test_engine)

    with Session(test_engine) as session:
        yield session

    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture(name="client")
def client_fixture(session: Session):
    """Provide a test client with overridden database session

    Override MUST be set BEFORE TestClient() and stay in place for the
    entire duration so the app never uses its own engine.
    """
    app.dependency_overrides[get_session] = override_get_session

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def db_tournament(session: Session):
    """Persisted tournament factory: (team_count, bracket_type) -> Tournament with teams."""

    def _create(
        team_count: int,
        bracket_type: BracketType = BracketType.single_elimination,
        max_random_attempts: int = 5,
    ) -> Tournament:
        tournament = Tournament(
            name=f"{bracket_type.value} {team_count}",
            category="volleyball",
            bracket_type=bracket_type.value,
            max_random_attempts=max_random_attempts,
        )
        session.add(tournament)
        session.commit()
        session.refresh(tournament)
        for seed in range(1, team_count + 1):
            session.add(Team(tournament_id=tournament.id, name=f"Team {seed}", seed=seed))
        session.commit()
        return tournament

    return _create
