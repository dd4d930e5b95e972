"""account_tombstones_and_dedup_lease

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-18 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0002'
down_revision = '0001'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'deleted_accounts',
        # sha256 hex of the deleted user id
        sa.Column('user_id_hash', sa.TEXT(), primary_key=True),
        sa.Column('deleted_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('now()')),
    )

    # Claims now carry their lease start in last_seen_at
    op.execute(
        "UPDATE webhook_dedup_events SET last_seen_at = first_seen_at WHERE last_seen_at IS NULL"
    )


def downgrade() -> None:
    op.drop_table('deleted_accounts')
