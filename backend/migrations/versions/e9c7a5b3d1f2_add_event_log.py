"""add_event_log

Revision ID: e9c7a5b3d1f2
Revises: b4d2f6a8c1e3
Create Date: 2026-09-30 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "e9c7a5b3d1f2"
down_revision: Union[str, Sequence[str], None] = "b4d2f6a8c1e3"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "event_log",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("actor_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=True),
        sa.Column("entity_id", sa.String(), nullable=True),
        sa.Column("payload_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("idx_event_log_type_created", "event_log", ["event_type", "created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_event_log_type_created", table_name="event_log")
    op.drop_table("event_log")
