"""Cancel a game and refund every entry still held by the escrow.

Refunds go out one participant at a time: verify the entry payment, take the
participant's refund lock, broadcast, record the hash, then wait for the
receipt. A participant whose refund cannot be finished in this call is left
in a state the next call (or ``flask reconcile-refunds``) can pick up.
"""

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import List, Optional

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from potsettle import db
from potsettle.chain import get_chain
from potsettle.errors import (
    ChainError,
    ContractStateUnavailable,
    GameNotFound,
    InvariantViolation,
    ReceiptTimeout,
)
from potsettle.models import OWED_STATUSES, Game, GameStatus, Participant, ParticipantStatus, utcnow
from potsettle.services.escrow import audit, locks
from potsettle.services.escrow.contract_state import read_contract_state
from potsettle.services.escrow.reconcile import OutcomeStatus, RefundOutcome, reconcile_pending_refunds
from potsettle.services.escrow.verifier import escrow_settings, verify_participant_payment


@dataclass
class CancelReport:
    game_id: int
    participants_considered: int = 0
    eligible_for_refund: int = 0
    already_refunded: int = 0
    refunds_attempted: int = 0
    refunds_succeeded: int = 0
    refunds_pending: int = 0
    refunds_failed: int = 0
    refunds_skipped: int = 0
    broadcasts: int = 0
    contract_state: Optional[dict] = None
    message: str = ''
    ok: bool = True
    details: List[RefundOutcome] = field(default_factory=list)

    def to_dict(self):
        return {
            'ok': self.ok,
            'game_id': self.game_id,
            'message': self.message,
            'participants_considered': self.participants_considered,
            'eligible_for_refund': self.eligible_for_refund,
            'already_refunded': self.already_refunded,
            'refunds_attempted': self.refunds_attempted,
            'refunds_succeeded': self.refunds_succeeded,
            'refunds_pending': self.refunds_pending,
            'refunds_failed': self.refunds_failed,
            'refunds_skipped': self.refunds_skipped,
            'broadcasts': self.broadcasts,
            'contract_state': self.contract_state,
            'details': [o.to_dict() for o in self.details],
        }


def _mark_cancelled(game):
    if game.status in (GameStatus.SETTLED, GameStatus.COMPLETED):
        raise InvariantViolation(
            f'Game {game.id} is already {game.status.value} and cannot be cancelled',
            game_status=game.status.value,
        )
    elif game.status == GameStatus.CANCELLED:
        return
    elif game.status in (GameStatus.OPEN, GameStatus.IN_PROGRESS):
        now = time.time()
        settling = game.settle_lock_id is not None and not (
            game.settle_lock_expires_at is not None and game.settle_lock_expires_at <= now
        )
        if game.settle_tx_hash or settling:
            raise InvariantViolation(
                f'Game {game.id} has a settlement in flight and cannot be cancelled',
                settle_tx_hash=game.settle_tx_hash,
                settle_locked=settling,
            )
        updated = Game.query.filter(
            Game.id == game.id,
            Game.status.in_((GameStatus.OPEN, GameStatus.IN_PROGRESS)),
            Game.settle_tx_hash.is_(None),
            or_(Game.settle_lock_id.is_(None), Game.settle_lock_expires_at <= now),
        ).update(
            {Game.status: GameStatus.CANCELLED, Game.cancelled_at: utcnow()},
            synchronize_session=False,
        )
        db.session.commit()
        if not updated:
            # Lost a race; decide again on the fresh row
            db.session.refresh(game)
            _mark_cancelled(game)
            return
        current_app.logger.info(f"[cancel] game={game.id} marked cancelled")
    else:
        raise ValueError(f'unhandled game status {game.status!r}')


def _eligible_participants(game_id):
    rows = (
        Participant.query.filter(
            Participant.game_id == game_id,
            Participant.status.in_(OWED_STATUSES),
            Participant.payment_tx_hash.isnot(None),
            Participant.refund_tx_hash.is_(None),
        )
        .order_by(Participant.id)
        .all()
    )
    return [p for p in rows if p.has_payment]


def cancel_game(game_id, actor_id=None):
    chain = get_chain()
    game = db.session.get(Game, game_id)
    if game is None:
        raise GameNotFound(f'Game {game_id} not found', game_id=game_id)

    _mark_cancelled(game)
    report = CancelReport(game_id=game.id)
    participants = Participant.query.filter_by(game_id=game.id).all()
    report.participants_considered = len(participants)
    report.already_refunded = sum(1 for p in participants if p.status == ParticipantStatus.REFUNDED)

    if not game.is_paid:
        report.message = 'Game cancelled. Free game, no refunds needed.'
        current_app.logger.info(f"[cancel] game={game.id} free game, nothing to refund")
        return report

    settings = escrow_settings()
    report.eligible_for_refund = sum(1 for p in participants if p.status in OWED_STATUSES and p.has_payment)

    outcomes = reconcile_pending_refunds(chain, game, actor_id=actor_id)

    eligible = _eligible_participants(game.id)
    contract_state = None
    contract_problem = None
    if eligible:
        try:
            contract_state = read_contract_state(chain, game.contract_game_id)
            report.contract_state = contract_state.to_dict()
            if contract_state.is_settled:
                contract_problem = ('InvariantViolation', 'Game is already settled on-chain; escrow holds no entries')
        except ContractStateUnavailable as e:
            contract_problem = ('ContractStateUnavailable', e.message)

    for participant in eligible:
        if contract_problem is not None:
            kind, reason = contract_problem
            outcomes.append(RefundOutcome(
                participant_id=participant.id,
                player_id=participant.player_id,
                status=OutcomeStatus.FAILED,
                phase='refund',
                kind=kind,
                reason=reason,
            ))
            continue
        outcome, broadcast = _refund_one(chain, game, participant, settings, actor_id)
        if broadcast:
            report.broadcasts += 1
        outcomes.append(outcome)

    _summarize(report, outcomes)
    current_app.logger.info(
        f"[cancel] game={game.id} eligible={report.eligible_for_refund} succeeded={report.refunds_succeeded} "
        f"pending={report.refunds_pending} failed={report.refunds_failed} skipped={report.refunds_skipped} "
        f"broadcasts={report.broadcasts}"
    )
    return report


def _summarize(report, outcomes):
    report.details = outcomes
    final = {}
    for outcome in outcomes:
        final[outcome.participant_id] = outcome
    counts = Counter(o.status for o in final.values())
    report.refunds_attempted = sum(1 for o in final.values() if _attempted(o))
    report.refunds_succeeded = counts[OutcomeStatus.SUCCEEDED]
    report.refunds_pending = counts[OutcomeStatus.PENDING]
    report.refunds_failed = counts[OutcomeStatus.FAILED]
    report.refunds_skipped = counts[OutcomeStatus.SKIPPED]
    if report.eligible_for_refund and final and report.refunds_failed == len(final):
        report.ok = False
    report.message = (
        f'Game cancelled. {report.refunds_succeeded} refunded, {report.refunds_pending} pending, '
        f'{report.refunds_failed} failed, {report.refunds_skipped} skipped.'
    )


def _attempted(outcome):
    """A refund was sent for this participant, or an earlier one was resolved."""
    if outcome.kind == 'LockContention':
        return False
    if outcome.phase == 'reconcile':
        return True
    return outcome.refund_tx_hash is not None or outcome.kind == 'BroadcastError'


def _refund_one(chain, game, participant, settings, actor_id):
    outcome = RefundOutcome(
        participant_id=participant.id,
        player_id=participant.player_id,
        status=OutcomeStatus.FAILED,
        phase='refund',
    )
    log_ctx = f"game={game.id} player={participant.player_id}"

    # Another invocation may have finished this one while we worked on earlier rows
    db.session.refresh(participant)
    if participant.status not in OWED_STATUSES or participant.refund_tx_hash:
        outcome.status = OutcomeStatus.SKIPPED
        outcome.kind = 'LockContention'
        outcome.reason = 'Refund already handled by another invocation'
        outcome.refund_tx_hash = participant.refund_tx_hash
        return outcome, False

    verification = verify_participant_payment(chain, game, participant)
    outcome.verification = verification.to_dict()
    if not verification.ok:
        outcome.kind = 'VerificationError'
        outcome.reason = verification.error
        current_app.logger.warning(f"[refund] {log_ctx} verification failed code={verification.error_code}")
        return outcome, False
    payer = verification.payer_address
    outcome.payer_address = payer

    lock_id = locks.try_acquire_refund_lock(game.id, participant.player_id, settings.lock_ttl)
    if lock_id is None:
        outcome.status = OutcomeStatus.SKIPPED
        outcome.kind = 'LockContention'
        outcome.reason = 'Refund already in flight'
        current_app.logger.info(f"[refund] {log_ctx} skipped, lock held elsewhere")
        return outcome, False

    try:
        tx_hash = chain.refund_player(game.contract_game_id, payer)
    except ChainError as e:
        locks.release_refund_lock(participant.id, lock_id)
        outcome.kind = 'BroadcastError'
        outcome.reason = str(e)
        current_app.logger.warning(f"[refund] {log_ctx} broadcast rejected: {e}")
        return outcome, False
    except Exception:
        locks.release_refund_lock(participant.id, lock_id)
        raise
    outcome.refund_tx_hash = tx_hash
    current_app.logger.info(f"[refund] {log_ctx} broadcast tx={tx_hash} to={payer}")

    # Phase 1: the hash must be on record before we wait on anything
    try:
        recorded = locks.record_refund_broadcast(participant.id, lock_id, tx_hash)
    except SQLAlchemyError as e:
        db.session.rollback()
        recorded = False
        current_app.logger.error(f"[refund] {log_ctx} tx={tx_hash} persist error: {e}")
    if not recorded:
        outcome.kind = 'PostBroadcastPersistenceFailure'
        outcome.reason = f'Refund broadcast as {tx_hash} but the hash could not be recorded'
        current_app.logger.error(f"[refund] {log_ctx} tx={tx_hash} NOT RECORDED, reconcile manually")
        return outcome, True

    # Phase 2
    try:
        receipt = chain.wait_for_receipt(tx_hash, settings.receipt_timeout)
    except ReceiptTimeout as e:
        outcome.status = OutcomeStatus.PENDING
        outcome.kind = 'ReceiptTimeout'
        outcome.reason = str(e)
        return outcome, True
    except ChainError as e:
        outcome.status = OutcomeStatus.PENDING
        outcome.kind = 'ChainError'
        outcome.reason = str(e)
        return outcome, True

    if receipt.status not in (0, 1):
        outcome.status = OutcomeStatus.PENDING
        outcome.reason = f'Unexpected receipt status {receipt.status!r}'
        return outcome, True

    # The hash is already on record, so a failed write here is finished by the next sweep
    try:
        if receipt.status == 1:
            finalized = locks.mark_refunded(participant.id, tx_hash)
        else:
            locks.clear_reverted_refund(participant.id, tx_hash)
    except SQLAlchemyError as e:
        db.session.rollback()
        outcome.status = OutcomeStatus.PENDING
        outcome.kind = 'PostBroadcastPersistenceFailure'
        outcome.reason = f'Refund {tx_hash} mined with status {receipt.status} but could not be recorded'
        current_app.logger.error(f"[refund] {log_ctx} tx={tx_hash} persist error after receipt: {e}")
        return outcome, True

    if receipt.status == 1:
        if finalized:
            audit.log_refund_event(game, participant, tx_hash, game.entry_fee_amount, actor_id=actor_id)
            outcome.status = OutcomeStatus.SUCCEEDED
            outcome.kind = None
            outcome.reason = None
            current_app.logger.info(f"[refund] {log_ctx} confirmed tx={tx_hash}")
        else:
            outcome.status = OutcomeStatus.SKIPPED
            outcome.reason = 'Refund confirmed and finalized by another invocation'
        return outcome, True

    outcome.kind = 'OnchainRevert'
    outcome.reason = f'Refund {tx_hash} reverted; participant is eligible again'
    current_app.logger.warning(f"[refund] {log_ctx} reverted tx={tx_hash}")
    return outcome, True
