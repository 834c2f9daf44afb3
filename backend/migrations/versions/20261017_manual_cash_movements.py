"""Manual cash movements: nullable sale_id, movement reason

Revision ID: 20261017_manual_cash_mvmt
Revises: 20261017_sync_core
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261017_manual_cash_mvmt"
down_revision = "20261017_sync_core"
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table("cash_movements", schema=None) as batch_op:
        batch_op.alter_column("sale_id", existing_type=sa.String(length=36), nullable=True)
        batch_op.add_column(sa.Column("reason", sa.String(length=120), nullable=True))


def downgrade():
    op.execute("DELETE FROM cash_movements WHERE sale_id IS NULL")
    with op.batch_alter_table("cash_movements", schema=None) as batch_op:
        batch_op.drop_column("reason")
        batch_op.alter_column("sale_id", existing_type=sa.String(length=36), nullable=False)
