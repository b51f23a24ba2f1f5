"""add refund lock and payout columns to participant

Revision ID: 9d7f3b21e6a8
Revises: 5c2e9a17d0b4
Create Date: 2026-09-29 16:40:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '9d7f3b21e6a8'
down_revision = '5c2e9a17d0b4'
branch_labels = None
depends_on = None

NEW_COLUMNS = [
    ('refund_lock_id', lambda: sa.Column('refund_lock_id', sa.String(length=64), nullable=True)),
    ('refund_lock_expires_at', lambda: sa.Column('refund_lock_expires_at', sa.Float(), nullable=True)),
    ('payout_tx_hash', lambda: sa.Column('payout_tx_hash', sa.String(length=66), nullable=True)),
    ('payout_address', lambda: sa.Column('payout_address', sa.String(length=42), nullable=True)),
    ('payout_amount', lambda: sa.Column('payout_amount', sa.BigInteger(), nullable=True)),
    ('paid_out_at', lambda: sa.Column('paid_out_at', sa.DateTime(timezone=True), nullable=True)),
]


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    if 'participant' not in set(insp.get_table_names()):
        return

    existing = {c['name'] for c in insp.get_columns('participant')}
    for name, make_column in NEW_COLUMNS:
        if name not in existing:
            op.add_column('participant', make_column())


def downgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing = {c['name'] for c in insp.get_columns('participant')}
    for name, _ in reversed(NEW_COLUMNS):
        if name in existing:
            op.drop_column('participant', name)
