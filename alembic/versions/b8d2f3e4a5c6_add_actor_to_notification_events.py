"""add actor_id to notification_events

Revision ID: b8d2f3e4a5c6
Revises: a7c1e2d3f4b5
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'b8d2f3e4a5c6'
down_revision: Union[str, None] = 'a7c1e2d3f4b5'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column('notification_events', sa.Column('actor_id', sa.String(length=36), nullable=True))
    op.create_index(
        'ix_notification_events_pending',
        'notification_events',
        ['delivered_at', 'created_at'],
    )


def downgrade() -> None:
    op.drop_index('ix_notification_events_pending', table_name='notification_events')
    op.drop_column('notification_events', 'actor_id')
