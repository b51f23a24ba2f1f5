"""create game and participant tables

Revision ID: 5c2e9a17d0b4
Revises: 
Create Date: 2026-09-14 10:12:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5c2e9a17d0b4'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'game',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('entry_fee_amount', sa.Numeric(precision=18, scale=6), nullable=True),
        sa.Column('entry_fee_currency', sa.String(length=16), nullable=True),
        sa.Column('onchain_game_id', sa.String(length=128), nullable=True),
        sa.Column('payout_bps', sa.Text(), nullable=True),
        sa.Column('settle_tx_hash', sa.String(length=66), nullable=True),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_table(
        'participant',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('game_id', sa.Integer(), nullable=False),
        sa.Column('player_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('payment_tx_hash', sa.String(length=66), nullable=True),
        sa.Column('joined_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refund_tx_hash', sa.String(length=66), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['game_id'], ['game.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('game_id', 'player_id', name='uq_participant_game_player'),
    )
    op.create_index('ix_participant_game_id', 'participant', ['game_id'], unique=False)


def downgrade():
    op.drop_index('ix_participant_game_id', table_name='participant')
    op.drop_table('participant')
    op.drop_table('game')
