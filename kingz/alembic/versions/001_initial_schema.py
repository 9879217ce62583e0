"""001_initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-18 12:00:00.000000

Creates all tables from the current models:
- users, player_stats
- venues, active_players (one presence record per user)
- matches, match_analysis_jobs (one analysis job per match)
"""
from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables from scratch."""
    from kingz.database.db import Base
    from kingz.database import models  # noqa: F401

    bind = op.get_bind()
    Base.metadata.create_all(bind=bind, checkfirst=True)


def downgrade() -> None:
    """Drop all tables."""
    from kingz.database.db import Base
    from kingz.database import models  # noqa: F401

    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind, checkfirst=True)
