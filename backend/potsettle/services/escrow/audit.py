"""Audit trail for money movements.

Each event is one JSON line on the ``potsettle.audit`` logger and, when
AUDIT_WEBHOOK_URL is set, a POST to that webhook. Audit delivery never fails
the operation that produced the event.
"""

import json
import logging

import requests
from flask import current_app

from potsettle.models import utcnow

audit_logger = logging.getLogger('potsettle.audit')


def _send_to_webhook(entry):
    url = current_app.config.get('AUDIT_WEBHOOK_URL')
    if not url:
        return
    timeout = current_app.config.get('AUDIT_WEBHOOK_TIMEOUT_SEC', 5)
    try:
        r = requests.post(url, json=entry, timeout=timeout)
        r.raise_for_status()
    except requests.RequestException as e:
        audit_logger.error(f"[audit][{entry['type'].lower()}] webhook failed: {e}")


def _emit(event_type, **fields):
    entry = {'type': event_type, 'timestamp': utcnow().isoformat()}
    entry.update(fields)
    audit_logger.info(f"[AUDIT][{event_type}] {json.dumps(entry, sort_keys=True)}")
    _send_to_webhook(entry)
    return entry


def log_refund_event(game, participant, tx_hash, amount, actor_id=None):
    return _emit(
        'REFUND',
        game_id=game.id,
        onchain_game_id=game.contract_game_id,
        caller_id=actor_id,
        player_id=participant.player_id,
        amount=str(amount),
        currency=game.entry_fee_currency or current_app.config.get('TOKEN_SYMBOL'),
        tx_hash=tx_hash,
    )


def log_settlement_event(game, recipients, amounts, tx_hash, actor_id=None):
    return _emit(
        'SETTLEMENT',
        game_id=game.id,
        onchain_game_id=game.contract_game_id,
        caller_id=actor_id,
        recipients=list(recipients),
        amounts=[str(a) for a in amounts],
        currency=game.entry_fee_currency or current_app.config.get('TOKEN_SYMBOL'),
        tx_hash=tx_hash,
    )
