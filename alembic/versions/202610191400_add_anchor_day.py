"""add anchor_day to income events and payments

Revision ID: 202610191400
Revises: 202610190900
Create Date: 2026-10-19 14:00:00.000000

"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610191400"
down_revision = "202610190900"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("income_events") as batch_op:
        batch_op.add_column(sa.Column("anchor_day", sa.Integer(), nullable=True))
    with op.batch_alter_table("payments") as batch_op:
        batch_op.add_column(sa.Column("anchor_day", sa.Integer(), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("payments") as batch_op:
        batch_op.drop_column("anchor_day")
    with op.batch_alter_table("income_events") as batch_op:
        batch_op.drop_column("anchor_day")
