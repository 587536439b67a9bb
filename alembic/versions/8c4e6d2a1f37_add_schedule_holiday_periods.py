"""add_schedule_holiday_periods

Revision ID: 8c4e6d2a1f37
Revises: 3f1c2a7b9d10
Create Date: 2025-10-20 09:30:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '8c4e6d2a1f37'
down_revision: Union[str, None] = '3f1c2a7b9d10'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Closures given at creation time, reused when the sessions are regenerated
    op.add_column('schedules', sa.Column('holiday_periods', sa.JSON(), nullable=True))


def downgrade() -> None:
    op.drop_column('schedules', 'holiday_periods')
