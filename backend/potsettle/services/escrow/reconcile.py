"""Resolve refunds that were broadcast by an earlier invocation.

A refund with a stored hash but a non-refunded participant is in one of three
states: confirmed (finish it), reverted (forget it so it can be retried), or
still unknown (leave it alone). Running the sweep again never changes an
already-resolved row.
"""

import enum
from dataclasses import dataclass
from typing import Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from potsettle import db
from potsettle.errors import ChainError
from potsettle.models import Participant, ParticipantStatus
from potsettle.services.escrow import audit, locks


class OutcomeStatus(str, enum.Enum):
    SUCCEEDED = 'succeeded'
    PENDING = 'pending'
    FAILED = 'failed'
    SKIPPED = 'skipped'


@dataclass
class RefundOutcome:
    participant_id: int
    player_id: int
    status: OutcomeStatus
    phase: str
    kind: Optional[str] = None
    reason: Optional[str] = None
    refund_tx_hash: Optional[str] = None
    payer_address: Optional[str] = None
    verification: Optional[dict] = None

    def to_dict(self):
        return {
            'participant_id': self.participant_id,
            'player_id': self.player_id,
            'status': self.status.value,
            'phase': self.phase,
            'kind': self.kind,
            'reason': self.reason,
            'refund_tx_hash': self.refund_tx_hash,
            'payer_address': self.payer_address,
            'verification': self.verification,
        }


def reconcile_pending_refunds(chain, game, actor_id=None):
    pending = (
        Participant.query.filter(
            Participant.game_id == game.id,
            Participant.refund_tx_hash.isnot(None),
            Participant.status != ParticipantStatus.REFUNDED,
        )
        .order_by(Participant.id)
        .all()
    )
    outcomes = []
    for participant in pending:
        outcomes.append(_reconcile_one(chain, game, participant, actor_id))
    if outcomes:
        summary = ', '.join(f"{o.player_id}:{o.status.value}" for o in outcomes)
        current_app.logger.info(f"[reconcile] game={game.id} resolved {summary}")
    return outcomes


def _reconcile_one(chain, game, participant, actor_id):
    tx_hash = participant.refund_tx_hash
    outcome = RefundOutcome(
        participant_id=participant.id,
        player_id=participant.player_id,
        status=OutcomeStatus.PENDING,
        phase='reconcile',
        refund_tx_hash=tx_hash,
    )
    try:
        receipt = chain.get_receipt(tx_hash)
    except ChainError as e:
        outcome.kind = 'ChainError'
        outcome.reason = f'Receipt lookup failed: {e}'
        return outcome

    if receipt is None:
        outcome.reason = 'Refund broadcast earlier; no receipt yet'
        return outcome

    if receipt.status not in (0, 1):
        outcome.reason = f'Unexpected receipt status {receipt.status!r}'
        return outcome

    try:
        if receipt.status == 1:
            finalized = locks.mark_refunded(participant.id, tx_hash)
        else:
            locks.clear_reverted_refund(participant.id, tx_hash)
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(
            f"[reconcile] game={game.id} player={outcome.player_id} tx={tx_hash} persist error: {e}"
        )
        outcome.kind = 'PostBroadcastPersistenceFailure'
        outcome.reason = f'Refund {tx_hash} mined with status {receipt.status} but could not be recorded'
        return outcome

    if receipt.status == 1:
        if finalized:
            audit.log_refund_event(game, participant, tx_hash, game.entry_fee_amount, actor_id=actor_id)
            outcome.status = OutcomeStatus.SUCCEEDED
            outcome.reason = 'Earlier refund confirmed'
        else:
            outcome.status = OutcomeStatus.SKIPPED
            outcome.reason = 'Refund already finalized by another invocation'
        return outcome

    current_app.logger.warning(
        f"[reconcile] game={game.id} player={outcome.player_id} refund reverted tx={tx_hash}"
    )
    outcome.status = OutcomeStatus.FAILED
    outcome.kind = 'OnchainRevert'
    outcome.reason = 'Earlier refund reverted; participant is eligible again'
    return outcome
