from potsettle import db
from datetime import datetime, timezone
from decimal import Decimal
import enum
import json


def utcnow():
    return datetime.now(timezone.utc)


class GameStatus(str, enum.Enum):
    OPEN = 'open'
    IN_PROGRESS = 'in_progress'
    CANCELLED = 'cancelled'
    SETTLED = 'settled'
    COMPLETED = 'completed'


class ParticipantStatus(str, enum.Enum):
    JOINED = 'joined'
    PAID = 'paid'
    REFUNDED = 'refunded'
    SETTLED = 'settled'


def _status_column(enum_cls, default):
    return db.Column(
        db.Enum(enum_cls, native_enum=False, length=32, values_callable=lambda members: [m.value for m in members]),
        nullable=False,
        default=default,
    )


# Participants whose entry fee is still held by the escrow
OWED_STATUSES = (ParticipantStatus.JOINED, ParticipantStatus.PAID)


class Game(db.Model):
    __tablename__ = 'game'
    id = db.Column(db.Integer, primary_key=True)
    status = _status_column(GameStatus, GameStatus.OPEN)
    entry_fee_amount = db.Column(db.Numeric(18, 6), nullable=True)
    entry_fee_currency = db.Column(db.String(16), nullable=True)
    onchain_game_id = db.Column(db.String(128), nullable=True)
    payout_bps = db.Column(db.Text, nullable=True)  # JSON-encoded list of basis points
    settle_tx_hash = db.Column(db.String(66), nullable=True)
    # Held from just before settleGame is sent until its hash is recorded
    settle_lock_id = db.Column(db.String(64), nullable=True)
    settle_lock_expires_at = db.Column(db.Float, nullable=True)  # epoch seconds
    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    participants = db.relationship('Participant', back_populates='game', order_by='Participant.id')

    @property
    def contract_game_id(self):
        return self.onchain_game_id or str(self.id)

    @property
    def payout_schedule(self):
        if not self.payout_bps:
            return None
        return json.loads(self.payout_bps)

    @payout_schedule.setter
    def payout_schedule(self, value):
        self.payout_bps = json.dumps(list(value)) if value is not None else None

    @property
    def is_paid(self):
        return self.entry_fee_amount is not None and Decimal(self.entry_fee_amount) > 0

    def to_dict(self, include_participants=True):
        data = {
            'id': self.id,
            'status': self.status.value,
            'entry_fee_amount': str(self.entry_fee_amount) if self.entry_fee_amount is not None else None,
            'entry_fee_currency': self.entry_fee_currency,
            'onchain_game_id': self.contract_game_id,
            'payout_bps': self.payout_schedule,
            'settle_tx_hash': self.settle_tx_hash,
            'settle_locked': self.settle_lock_id is not None,
            'settled_at': self.settled_at.isoformat() if self.settled_at else None,
            'cancelled_at': self.cancelled_at.isoformat() if self.cancelled_at else None,
        }
        if include_participants:
            data['participants'] = [p.to_dict() for p in self.participants]
        return data


class Participant(db.Model):
    __tablename__ = 'participant'
    __table_args__ = (db.UniqueConstraint('game_id', 'player_id', name='uq_participant_game_player'),)
    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.Integer, db.ForeignKey('game.id'), nullable=False, index=True)
    player_id = db.Column(db.Integer, nullable=False)
    status = _status_column(ParticipantStatus, ParticipantStatus.JOINED)
    payment_tx_hash = db.Column(db.String(66), nullable=True)
    joined_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    # Refund bookkeeping. A lock and a recorded refund hash never coexist.
    refund_tx_hash = db.Column(db.String(66), nullable=True)
    refund_lock_id = db.Column(db.String(64), nullable=True)
    refund_lock_expires_at = db.Column(db.Float, nullable=True)  # epoch seconds
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    # Settlement bookkeeping
    payout_tx_hash = db.Column(db.String(66), nullable=True)
    payout_address = db.Column(db.String(42), nullable=True)
    payout_amount = db.Column(db.BigInteger, nullable=True)  # token base units
    paid_out_at = db.Column(db.DateTime(timezone=True), nullable=True)
    game = db.relationship('Game', back_populates='participants')

    @property
    def has_payment(self):
        return bool(self.payment_tx_hash and self.payment_tx_hash.strip())

    @property
    def is_paid(self):
        """Paid means the entry fee reached the escrow."""
        if self.status == ParticipantStatus.PAID:
            return True
        if self.status == ParticipantStatus.JOINED:
            return self.has_payment
        if self.status in (ParticipantStatus.REFUNDED, ParticipantStatus.SETTLED):
            return False
        raise ValueError(f'unhandled participant status {self.status!r}')

    def to_dict(self):
        return {
            'id': self.id,
            'game_id': self.game_id,
            'player_id': self.player_id,
            'status': self.status.value,
            'payment_tx_hash': self.payment_tx_hash,
            'refund_tx_hash': self.refund_tx_hash,
            'refund_locked': self.refund_lock_id is not None,
            'refunded_at': self.refunded_at.isoformat() if self.refunded_at else None,
            'payout_tx_hash': self.payout_tx_hash,
            'payout_address': self.payout_address,
            'payout_amount': str(self.payout_amount) if self.payout_amount is not None else None,
            'paid_out_at': self.paid_out_at.isoformat() if self.paid_out_at else None,
        }
