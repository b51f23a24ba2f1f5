"""add settle lock columns to game

Revision ID: 3a8c61f0b2d9
Revises: 9d7f3b21e6a8
Create Date: 2026-10-19 11:05:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3a8c61f0b2d9'
down_revision = '9d7f3b21e6a8'
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    if 'game' not in set(insp.get_table_names()):
        return

    existing = {c['name'] for c in insp.get_columns('game')}
    if 'settle_lock_id' not in existing:
        op.add_column('game', sa.Column('settle_lock_id', sa.String(length=64), nullable=True))
    if 'settle_lock_expires_at' not in existing:
        op.add_column('game', sa.Column('settle_lock_expires_at', sa.Float(), nullable=True))


def downgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing = {c['name'] for c in insp.get_columns('game')}
    for name in ('settle_lock_expires_at', 'settle_lock_id'):
        if name in existing:
            op.drop_column('game', name)
