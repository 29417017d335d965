"""initial schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
from sqlalchemy import inspect

from app.bizops.models import Base


# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create every table of the current models that does not exist yet."""
    bind = op.get_bind()
    existing_tables = set(inspect(bind).get_table_names())
    missing = [t for t in Base.metadata.sorted_tables if t.name not in existing_tables]
    Base.metadata.create_all(bind=bind, tables=missing)


def downgrade() -> None:
    """Downgrade schema."""
    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind)
