# Force SQLModel table registration at test discovery time
# This ensures all models are registered before any test database creation
from intramurals.models.match import Match  # noqa: F401
from intramurals.models.team import Team  # noqa: F401
from intramurals.models.tournament import Tournament  # noqa: F401
