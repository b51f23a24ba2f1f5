"""Refund row transitions.

Every write here is a single conditional UPDATE, committed immediately, whose
row count says whether this caller won. No in-process locking is involved, so
any number of workers may race on the same participant.
"""

import time
import uuid

from flask import current_app

from potsettle import db
from potsettle.models import OWED_STATUSES, Participant, ParticipantStatus, utcnow


def _claim(game_id, player_id, lock_id, expires_at):
    updated = Participant.query.filter(
        Participant.game_id == game_id,
        Participant.player_id == player_id,
        Participant.status.in_(OWED_STATUSES),
        Participant.refund_tx_hash.is_(None),
        Participant.refund_lock_id.is_(None),
    ).update(
        {Participant.refund_lock_id: lock_id, Participant.refund_lock_expires_at: expires_at},
        synchronize_session=False,
    )
    db.session.commit()
    return updated == 1


def try_acquire_refund_lock(game_id, player_id, ttl, now=None):
    """Claim the refund of one participant. Returns a lock id, or None when someone else holds it."""
    now = time.time() if now is None else now
    lock_id = uuid.uuid4().hex
    if _claim(game_id, player_id, lock_id, now + ttl):
        return lock_id

    row = db.session.query(
        Participant.refund_lock_id, Participant.refund_lock_expires_at, Participant.refund_tx_hash
    ).filter(Participant.game_id == game_id, Participant.player_id == player_id).first()
    if row is None or row.refund_tx_hash or row.refund_lock_id is None:
        return None
    if row.refund_lock_expires_at is not None and row.refund_lock_expires_at > now:
        return None

    # Expired holder: clear exactly that lock, then one more attempt
    cleared = Participant.query.filter(
        Participant.game_id == game_id,
        Participant.player_id == player_id,
        Participant.refund_lock_id == row.refund_lock_id,
        Participant.refund_tx_hash.is_(None),
    ).update(
        {Participant.refund_lock_id: None, Participant.refund_lock_expires_at: None},
        synchronize_session=False,
    )
    db.session.commit()
    if cleared:
        current_app.logger.info(
            f"[lock] game={game_id} player={player_id} cleared stale lock={row.refund_lock_id}"
        )
    if _claim(game_id, player_id, lock_id, now + ttl):
        return lock_id
    return None


def record_refund_broadcast(participant_id, lock_id, tx_hash):
    updated = Participant.query.filter(
        Participant.id == participant_id,
        Participant.refund_lock_id == lock_id,
        Participant.refund_tx_hash.is_(None),
    ).update(
        {
            Participant.refund_tx_hash: tx_hash,
            Participant.refund_lock_id: None,
            Participant.refund_lock_expires_at: None,
        },
        synchronize_session=False,
    )
    db.session.commit()
    return updated == 1


def release_refund_lock(participant_id, lock_id):
    updated = Participant.query.filter(
        Participant.id == participant_id,
        Participant.refund_lock_id == lock_id,
    ).update(
        {Participant.refund_lock_id: None, Participant.refund_lock_expires_at: None},
        synchronize_session=False,
    )
    db.session.commit()
    return updated == 1


def mark_refunded(participant_id, tx_hash):
    updated = Participant.query.filter(
        Participant.id == participant_id,
        Participant.refund_tx_hash == tx_hash,
        Participant.status.in_(OWED_STATUSES),
    ).update(
        {
            Participant.status: ParticipantStatus.REFUNDED,
            Participant.refunded_at: utcnow(),
            Participant.refund_lock_id: None,
            Participant.refund_lock_expires_at: None,
        },
        synchronize_session=False,
    )
    db.session.commit()
    return updated == 1


def clear_reverted_refund(participant_id, tx_hash):
    """Forget a refund that reverted so the participant is eligible again."""
    updated = Participant.query.filter(
        Participant.id == participant_id,
        Participant.refund_tx_hash == tx_hash,
        Participant.status != ParticipantStatus.REFUNDED,
    ).update(
        {
            Participant.refund_tx_hash: None,
            Participant.refund_lock_id: None,
            Participant.refund_lock_expires_at: None,
        },
        synchronize_session=False,
    )
    db.session.commit()
    return updated == 1
