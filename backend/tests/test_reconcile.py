from sqlalchemy.exc import OperationalError

from conftest import participant
from potsettle import db
from potsettle.models import GameStatus, ParticipantStatus
from potsettle.services.escrow import locks
from potsettle.services.escrow.reconcile import OutcomeStatus, reconcile_pending_refunds

PENDING_HASH = '0x' + 'cd' * 32


def _with_pending_refund(seed_game, player_id=1):
    game = seed_game(players=(1, 2), status=GameStatus.CANCELLED)
    row = participant(game.id, player_id)
    row.refund_tx_hash = PENDING_HASH
    row.refund_lock_id = 'held-by-crashed-worker'
    row.refund_lock_expires_at = 1.0
    db.session.commit()
    return game


def test_confirmed_refund_is_finalized(seed_game, fake_chain):
    game = _with_pending_refund(seed_game)
    fake_chain.confirm(PENDING_HASH)
    outcomes = reconcile_pending_refunds(fake_chain, game)
    assert [(o.player_id, o.status) for o in outcomes] == [(1, OutcomeStatus.SUCCEEDED)]
    row = participant(game.id, 1)
    assert row.status == ParticipantStatus.REFUNDED
    assert row.refunded_at is not None
    assert row.refund_lock_id is None
    assert fake_chain.writes() == []


def test_sweep_converges(seed_game, fake_chain):
    game = _with_pending_refund(seed_game)
    fake_chain.confirm(PENDING_HASH)
    reconcile_pending_refunds(fake_chain, game)
    assert reconcile_pending_refunds(fake_chain, game) == []


def test_reverted_refund_is_cleared(seed_game, fake_chain):
    game = _with_pending_refund(seed_game)
    fake_chain.confirm(PENDING_HASH, status=0)
    outcomes = reconcile_pending_refunds(fake_chain, game)
    assert outcomes[0].status == OutcomeStatus.FAILED
    assert outcomes[0].kind == 'OnchainRevert'
    row = participant(game.id, 1)
    assert row.refund_tx_hash is None
    assert row.refund_lock_id is None
    assert row.status == ParticipantStatus.PAID


def test_unmined_refund_is_left_alone(seed_game, fake_chain):
    game = _with_pending_refund(seed_game)
    outcomes = reconcile_pending_refunds(fake_chain, game)
    assert outcomes[0].status == OutcomeStatus.PENDING
    assert outcomes[0].phase == 'reconcile'
    row = participant(game.id, 1)
    assert row.refund_tx_hash == PENDING_HASH
    assert row.status == ParticipantStatus.PAID


def test_rpc_failure_keeps_refund_pending(seed_game, fake_chain):
    game = _with_pending_refund(seed_game)
    fake_chain.receipt_error = True
    outcomes = reconcile_pending_refunds(fake_chain, game)
    assert outcomes[0].status == OutcomeStatus.PENDING
    assert outcomes[0].kind == 'ChainError'
    assert participant(game.id, 1).refund_tx_hash == PENDING_HASH


def test_unexpected_receipt_status_is_pending(seed_game, fake_chain):
    game = _with_pending_refund(seed_game)
    fake_chain.confirm(PENDING_HASH, status=None)
    outcomes = reconcile_pending_refunds(fake_chain, game)
    assert outcomes[0].status == OutcomeStatus.PENDING
    assert participant(game.id, 1).refund_tx_hash == PENDING_HASH


def test_write_error_leaves_refund_for_next_sweep(seed_game, fake_chain, monkeypatch):
    game = _with_pending_refund(seed_game)
    fake_chain.confirm(PENDING_HASH, status=0)

    def db_down(participant_id, tx_hash):
        raise OperationalError('UPDATE participant', {}, Exception('db down'))

    monkeypatch.setattr(locks, 'clear_reverted_refund', db_down)
    outcomes = reconcile_pending_refunds(fake_chain, game)
    assert outcomes[0].status == OutcomeStatus.PENDING
    assert outcomes[0].kind == 'PostBroadcastPersistenceFailure'
    assert outcomes[0].refund_tx_hash == PENDING_HASH
    assert participant(game.id, 1).refund_tx_hash == PENDING_HASH

    monkeypatch.undo()
    outcomes = reconcile_pending_refunds(fake_chain, game)
    assert outcomes[0].kind == 'OnchainRevert'
    assert participant(game.id, 1).refund_tx_hash is None


def test_cli_reconcile_refunds(flask_app, seed_game, fake_chain):
    game = _with_pending_refund(seed_game)
    fake_chain.confirm(PENDING_HASH)
    runner = flask_app.test_cli_runner()
    result = runner.invoke(args=['reconcile-refunds', str(game.id)])
    assert result.exit_code == 0, result.output
    assert 'player=1 status=succeeded' in result.output
    assert '1 pending refund(s) checked' in result.output
    assert participant(game.id, 1).status == ParticipantStatus.REFUNDED


def test_cli_reconcile_unknown_game(flask_app):
    result = flask_app.test_cli_runner().invoke(args=['reconcile-refunds', '4242'])
    assert result.exit_code != 0
    assert 'Game 4242 not found' in result.output
