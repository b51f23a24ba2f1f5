"""Pay the winners of a game from the escrow in a single settleGame call.

Every check that can be made locally runs before the chain is touched. Just
before sending, the game's settle lock is taken with a conditional UPDATE;
cancellation refuses a game while that lock is live. The settle hash replaces
the lock right after broadcast, so a repeated call checks that transaction
instead of sending a second one.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import List, Optional

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from potsettle import db
from potsettle.chain import get_chain
from potsettle.errors import (
    ChainError,
    ContractGameInactive,
    GameNotFound,
    InvariantViolation,
    PostBroadcastPersistenceFailure,
    SettlementInProgress,
    SettlementPending,
    SettlementRejected,
    VerificationError,
)
from potsettle.models import Game, GameStatus, Participant, ParticipantStatus, utcnow
from potsettle.services.escrow import audit
from potsettle.services.escrow.contract_state import (
    DIRECT_TRANSFER_HINTS,
    INACTIVE_HINTS,
    payment_diagnostics,
    read_contract_state,
)
from potsettle.services.escrow.verifier import escrow_settings, verify_participant_payment

TOTAL_BPS = 10000
WINNER_TAKE_ALL = [TOTAL_BPS]


@dataclass
class SettlementResult:
    game_id: int
    settle_tx_hash: Optional[str] = None
    recipients: List[str] = field(default_factory=list)
    amounts: List[int] = field(default_factory=list)
    payout_bps: List[int] = field(default_factory=list)
    winners: List[dict] = field(default_factory=list)
    contract_state: Optional[dict] = None
    post_contract_state: Optional[dict] = None
    already_settled: bool = False

    def to_dict(self):
        return {
            'ok': True,
            'game_id': self.game_id,
            'settle_tx_hash': self.settle_tx_hash,
            'recipients': self.recipients,
            'amounts': [str(a) for a in self.amounts],
            'payout_bps': self.payout_bps,
            'winners': self.winners,
            'contract_state': self.contract_state,
            'post_contract_state': self.post_contract_state,
            'already_settled': self.already_settled,
        }


def validate_payout_schedule(bps, winner_count):
    if not isinstance(bps, (list, tuple)) or not bps:
        raise InvariantViolation('Payout schedule must be a non-empty list', payout_bps=bps)
    for entry in bps:
        if isinstance(entry, bool) or not isinstance(entry, int):
            raise InvariantViolation('Payout schedule entries must be integers', payout_bps=list(bps))
        if entry < 0:
            raise InvariantViolation('Payout schedule entries must be non-negative', payout_bps=list(bps))
    if sum(bps) != TOTAL_BPS:
        raise InvariantViolation(
            f'Payout schedule must sum to {TOTAL_BPS}, got {sum(bps)}', payout_bps=list(bps)
        )
    if len(bps) != winner_count:
        raise InvariantViolation(
            f'Payout schedule has {len(bps)} entries for {winner_count} winner(s)',
            payout_bps=list(bps),
            winner_count=winner_count,
        )
    return list(bps)


def compute_payouts(total, bps):
    """Split ``total`` base units by basis points; rounding dust goes to the first share."""
    shares = [total * b // TOTAL_BPS for b in bps]
    shares[0] += total - sum(shares)
    return shares


def _validate_winner_ids(winner_ids):
    if not isinstance(winner_ids, (list, tuple)) or not winner_ids:
        raise InvariantViolation('winner_ids must be a non-empty list')
    for wid in winner_ids:
        if isinstance(wid, bool) or not isinstance(wid, int):
            raise InvariantViolation('winner_ids must be integers', winner_ids=list(winner_ids))
    if len(set(winner_ids)) != len(winner_ids):
        raise InvariantViolation('winner_ids contains duplicates', winner_ids=list(winner_ids))
    return list(winner_ids)


def _winner_rows(game_id, winner_ids):
    rows = Participant.query.filter(
        Participant.game_id == game_id, Participant.player_id.in_(winner_ids)
    ).all()
    by_player = {p.player_id: p for p in rows}
    return [by_player.get(wid) for wid in winner_ids]


def _already_settled(game):
    winners = (
        Participant.query.filter(Participant.game_id == game.id, Participant.payout_tx_hash.isnot(None))
        .order_by(Participant.id)
        .all()
    )
    return SettlementResult(
        game_id=game.id,
        settle_tx_hash=game.settle_tx_hash,
        recipients=[w.payout_address for w in winners],
        amounts=[w.payout_amount for w in winners],
        payout_bps=game.payout_schedule or WINNER_TAKE_ALL,
        winners=[_winner_dict(w) for w in winners],
        already_settled=True,
    )


def _winner_dict(participant):
    return {
        'player_id': participant.player_id,
        'address': participant.payout_address,
        'amount': str(participant.payout_amount) if participant.payout_amount is not None else None,
    }


def settle_game(game_id, winner_ids, actor_id=None, allow_unpaid=False):
    winner_ids = _validate_winner_ids(winner_ids)
    chain = get_chain()
    game = db.session.get(Game, game_id)
    if game is None:
        raise GameNotFound(f'Game {game_id} not found', game_id=game_id)

    if game.status in (GameStatus.SETTLED, GameStatus.COMPLETED):
        current_app.logger.info(f"[settle] game={game.id} already {game.status.value}")
        return _already_settled(game)
    elif game.status == GameStatus.CANCELLED:
        raise InvariantViolation(f'Game {game.id} is cancelled and cannot be settled', game_status=game.status.value)
    elif game.status in (GameStatus.OPEN, GameStatus.IN_PROGRESS):
        pass
    else:
        raise ValueError(f'unhandled game status {game.status!r}')

    if not game.is_paid:
        raise InvariantViolation(f'Game {game.id} has no entry fee; nothing to settle')

    settings = escrow_settings()

    if game.settle_tx_hash:
        resumed = _resume_pending(chain, game, actor_id)
        if resumed is not None:
            return resumed

    participants = Participant.query.filter_by(game_id=game.id).order_by(Participant.id).all()
    if not allow_unpaid:
        unpaid = [
            p.player_id for p in participants
            if p.status != ParticipantStatus.REFUNDED and not p.is_paid
        ]
        if unpaid:
            raise InvariantViolation(
                f'{len(unpaid)} participant(s) have not paid', unpaid_player_ids=unpaid
            )

    winners = _winner_rows(game.id, winner_ids)
    missing = [wid for wid, row in zip(winner_ids, winners) if row is None]
    if missing:
        raise InvariantViolation('Winners are not participants of this game', missing_player_ids=missing)
    not_paid = [w.player_id for w in winners if not w.is_paid]
    if not_paid:
        raise InvariantViolation('Winners have not paid their entry', unpaid_winner_ids=not_paid)

    bps = game.payout_schedule or WINNER_TAKE_ALL
    bps = validate_payout_schedule(bps, len(winner_ids))

    state = read_contract_state(chain, game.contract_game_id)
    if not state.is_active:
        hints = list(INACTIVE_HINTS)
        sample = next((p for p in participants if p.is_paid), None)
        diagnostics = payment_diagnostics(
            chain, sample.payment_tx_hash if sample else None, settings.escrow_address, settings.token_address
        )
        if diagnostics and diagnostics['went_to_token_direct']:
            hints.extend(DIRECT_TRANSFER_HINTS)
        current_app.logger.error(f"[settle] game={game.id} not active on-chain state={state.to_dict()}")
        raise ContractGameInactive(
            'Contract has no active game for this game id',
            contract_state=state.to_dict(),
            payment_tx_diagnostics=diagnostics,
            debug_hints=hints,
        )
    if state.is_settled:
        raise InvariantViolation('Game is already settled on-chain', contract_state=state.to_dict())

    amounts = compute_payouts(state.total_collected, bps)

    recipients = []
    for winner in winners:
        verification = verify_participant_payment(chain, game, winner)
        if not verification.ok:
            raise VerificationError(
                f'Entry payment of player {winner.player_id} failed verification: {verification.error}',
                player_id=winner.player_id,
                verification=verification.to_dict(),
                contract_state=state.to_dict(),
            )
        recipients.append(verification.payer_address)

    lock_id = _claim_settlement(game.id, settings.lock_ttl)
    if lock_id is None:
        db.session.refresh(game)
        if game.status in (GameStatus.SETTLED, GameStatus.COMPLETED):
            return _already_settled(game)
        if game.status == GameStatus.CANCELLED:
            raise InvariantViolation(
                f'Game {game.id} is cancelled and cannot be settled', game_status=game.status.value
            )
        if game.settle_tx_hash:
            raise SettlementPending(
                'Settlement broadcast by another invocation', settle_tx_hash=game.settle_tx_hash
            )
        raise SettlementInProgress(f'Game {game.id} is being settled by another invocation')

    current_app.logger.info(
        f"[settle] game={game.id} broadcasting recipients={recipients} amounts={amounts} bps={bps}"
    )
    try:
        tx_hash = chain.settle_game(game.contract_game_id, recipients, amounts)
    except ChainError as e:
        _release_settlement(game.id, lock_id)
        raise SettlementRejected(
            f'settleGame was rejected: {e}',
            contract_error=str(e),
            contract_state=state.to_dict(),
            recipients=recipients,
            amounts=[str(a) for a in amounts],
        ) from e
    except Exception:
        _release_settlement(game.id, lock_id)
        raise

    result = SettlementResult(
        game_id=game.id,
        settle_tx_hash=tx_hash,
        recipients=recipients,
        amounts=amounts,
        payout_bps=bps,
        contract_state=state.to_dict(),
    )
    _record_settle_broadcast(game, lock_id, winners, recipients, amounts, tx_hash)

    try:
        receipt = chain.wait_for_receipt(tx_hash, settings.receipt_timeout)
    except ChainError as e:
        current_app.logger.warning(f"[settle] game={game.id} tx={tx_hash} receipt not available: {e}")
        raise SettlementPending(
            'Settlement broadcast; confirmation pending',
            settle_tx_hash=tx_hash,
            recipients=recipients,
            amounts=[str(a) for a in amounts],
        ) from e

    if receipt.status != 1:
        _clear_settle_broadcast(game.id, tx_hash)
        raise SettlementRejected(
            f'settleGame {tx_hash} reverted',
            settle_tx_hash=tx_hash,
            contract_state=state.to_dict(),
            recipients=recipients,
            amounts=[str(a) for a in amounts],
        )

    _finalize(game, tx_hash, actor_id)
    result.winners = [_winner_dict(w) for w in _winner_rows(game.id, winner_ids)]
    result.post_contract_state = _post_state(chain, game)
    return result


def _resume_pending(chain, game, actor_id):
    """Resolve a settlement broadcast by an earlier call. None means start over."""
    tx_hash = game.settle_tx_hash
    try:
        receipt = chain.get_receipt(tx_hash)
    except ChainError as e:
        raise SettlementPending(
            'Earlier settlement still unconfirmed', settle_tx_hash=tx_hash, reason=str(e)
        ) from e
    if receipt is None:
        raise SettlementPending('Earlier settlement still unconfirmed', settle_tx_hash=tx_hash)
    if receipt.status == 1:
        current_app.logger.info(f"[settle] game={game.id} earlier tx={tx_hash} confirmed, finalizing")
        _finalize(game, tx_hash, actor_id)
        result = _already_settled(game)
        result.already_settled = False
        result.post_contract_state = _post_state(chain, game)
        return result
    current_app.logger.warning(f"[settle] game={game.id} earlier tx={tx_hash} reverted, retrying")
    _clear_settle_broadcast(game.id, tx_hash)
    db.session.refresh(game)
    return None


def _claim_settlement(game_id, ttl, now=None):
    """Take the game's settle lock. Returns a lock id, or None when the game is not claimable."""
    now = time.time() if now is None else now
    lock_id = uuid.uuid4().hex
    claimed = Game.query.filter(
        Game.id == game_id,
        Game.status.in_((GameStatus.OPEN, GameStatus.IN_PROGRESS)),
        Game.settle_tx_hash.is_(None),
        or_(Game.settle_lock_id.is_(None), Game.settle_lock_expires_at <= now),
    ).update(
        {Game.settle_lock_id: lock_id, Game.settle_lock_expires_at: now + ttl},
        synchronize_session=False,
    )
    db.session.commit()
    return lock_id if claimed else None


def _release_settlement(game_id, lock_id):
    Game.query.filter(Game.id == game_id, Game.settle_lock_id == lock_id).update(
        {Game.settle_lock_id: None, Game.settle_lock_expires_at: None}, synchronize_session=False
    )
    db.session.commit()


def _record_settle_broadcast(game, lock_id, winners, recipients, amounts, tx_hash):
    try:
        claimed = Game.query.filter(
            Game.id == game.id,
            Game.settle_lock_id == lock_id,
            Game.settle_tx_hash.is_(None),
            Game.status.in_((GameStatus.OPEN, GameStatus.IN_PROGRESS)),
        ).update(
            {Game.settle_tx_hash: tx_hash, Game.settle_lock_id: None, Game.settle_lock_expires_at: None},
            synchronize_session=False,
        )
        if claimed:
            for winner, address, amount in zip(winners, recipients, amounts):
                winner.payout_tx_hash = tx_hash
                winner.payout_address = address
                winner.payout_amount = amount
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"[settle] game={game.id} tx={tx_hash} persist error: {e}")
        claimed = 0
    if not claimed:
        current_app.logger.error(f"[settle] game={game.id} tx={tx_hash} NOT RECORDED, reconcile manually")
        raise PostBroadcastPersistenceFailure(
            f'Settlement broadcast as {tx_hash} but could not be recorded',
            settle_tx_hash=tx_hash,
            recipients=list(recipients),
            amounts=[str(a) for a in amounts],
        )


def _clear_settle_broadcast(game_id, tx_hash):
    Game.query.filter(Game.id == game_id, Game.settle_tx_hash == tx_hash).update(
        {Game.settle_tx_hash: None}, synchronize_session=False
    )
    Participant.query.filter(Participant.game_id == game_id, Participant.payout_tx_hash == tx_hash).update(
        {Participant.payout_tx_hash: None, Participant.payout_address: None, Participant.payout_amount: None},
        synchronize_session=False,
    )
    db.session.commit()


def _finalize(game, tx_hash, actor_id):
    now = utcnow()
    try:
        updated = Game.query.filter(
            Game.id == game.id,
            Game.settle_tx_hash == tx_hash,
            Game.status.in_((GameStatus.OPEN, GameStatus.IN_PROGRESS)),
        ).update({Game.status: GameStatus.SETTLED, Game.settled_at: now}, synchronize_session=False)
        if updated:
            Participant.query.filter(
                Participant.game_id == game.id, Participant.payout_tx_hash == tx_hash
            ).update({Participant.status: ParticipantStatus.SETTLED, Participant.paid_out_at: now},
                     synchronize_session=False)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"[settle] game={game.id} tx={tx_hash} confirmed but finalize failed: {e}")
        raise PostBroadcastPersistenceFailure(
            f'Settlement {tx_hash} confirmed but could not be recorded', settle_tx_hash=tx_hash
        ) from e
    db.session.refresh(game)
    if not updated:
        if game.status == GameStatus.SETTLED and game.settle_tx_hash == tx_hash:
            current_app.logger.info(f"[settle] game={game.id} tx={tx_hash} already finalized elsewhere")
            return
        current_app.logger.error(
            f"[settle] game={game.id} tx={tx_hash} confirmed but game is {game.status.value}, reconcile manually"
        )
        raise PostBroadcastPersistenceFailure(
            f'Settlement {tx_hash} confirmed but game {game.id} is {game.status.value}',
            settle_tx_hash=tx_hash,
            game_status=game.status.value,
        )
    winners = (
        Participant.query.filter(Participant.game_id == game.id, Participant.payout_tx_hash == tx_hash)
        .order_by(Participant.id)
        .all()
    )
    audit.log_settlement_event(
        game, [w.payout_address for w in winners], [w.payout_amount for w in winners], tx_hash, actor_id=actor_id
    )
    current_app.logger.info(f"[settle] game={game.id} settled tx={tx_hash}")


def _post_state(chain, game):
    try:
        return read_contract_state(chain, game.contract_game_id).to_dict()
    except ChainError as e:
        current_app.logger.warning(f"[settle] game={game.id} post-settle state read failed: {e}")
        return None
