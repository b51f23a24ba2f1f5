from conftest import ADMIN, OWNER, PLAYER, participant, player_address
from potsettle import db
from potsettle.models import Participant, ParticipantStatus
from potsettle.services.escrow.settlement import _claim_settlement


def test_index(client):
    res = client.get('/')
    assert res.status_code == 200
    assert res.get_json()['service'] == 'potsettle'


def test_game_requires_caller(client, seed_game):
    game = seed_game(players=(1,))
    assert client.get(f'/api/games/{game.id}').status_code == 401
    res = client.get(f'/api/games/{game.id}', headers=PLAYER)
    assert res.status_code == 200
    data = res.get_json()
    assert data['status'] == 'in_progress'
    assert data['entry_fee_amount'] == '10.000000'
    assert [p['player_id'] for p in data['participants']] == [1]


def test_unknown_game_is_404(client):
    res = client.get('/api/games/999', headers=PLAYER)
    assert res.status_code == 404
    assert res.get_json()['kind'] == 'GameNotFound'


def test_cancel_requires_owner_or_admin(client, seed_game, fake_chain):
    game = seed_game(players=(1,))
    assert client.post(f'/api/games/{game.id}/cancel').status_code == 401
    assert client.post(f'/api/games/{game.id}/cancel', headers=PLAYER).status_code == 403
    assert fake_chain.calls == []


def test_cancel_returns_report(client, seed_game, fake_chain):
    game = seed_game(players=(1, 2))
    res = client.post(f'/api/games/{game.id}/cancel', headers=OWNER)
    assert res.status_code == 200
    data = res.get_json()
    assert data['ok'] is True
    assert data['refunds_succeeded'] == 2
    assert data['contract_state']['total_collected'] == '20000000'
    assert {d['phase'] for d in data['details']} == {'refund'}
    assert participant(game.id, 1).status == ParticipantStatus.REFUNDED


def test_cancel_without_progress_is_502(client, seed_game, fake_chain):
    game = seed_game(players=(1,))
    fake_chain.refund_outcome = 'reject'
    res = client.post(f'/api/games/{game.id}/cancel', headers=ADMIN)
    assert res.status_code == 502
    assert res.get_json()['refunds_failed'] == 1


def test_cancel_settled_game_is_400(client, seed_game, fake_chain):
    game = seed_game(players=(1,))
    assert client.post(f'/api/games/{game.id}/settle', json={'winner_ids': [1]}, headers=OWNER).status_code == 200
    res = client.post(f'/api/games/{game.id}/cancel', headers=OWNER)
    assert res.status_code == 400
    assert res.get_json()['kind'] == 'InvariantViolation'


def test_settle_via_api(client, seed_game, fake_chain):
    game = seed_game(players=(1, 2, 3), payout_bps=[5000, 3000, 2000])
    res = client.post(f'/api/games/{game.id}/settle', json={'winner_ids': [2, 3, 1]}, headers=OWNER)
    assert res.status_code == 200
    data = res.get_json()
    assert data['ok'] is True
    assert data['amounts'] == ['15000000', '9000000', '6000000']
    assert data['recipients'] == [player_address(2), player_address(3), player_address(1)]

    again = client.post(f'/api/games/{game.id}/settle', json={'winner_ids': [2, 3, 1]}, headers=OWNER)
    assert again.get_json()['already_settled'] is True
    assert len(fake_chain.settle_calls) == 1


def test_settle_bad_body_is_400(client, seed_game, fake_chain):
    game = seed_game(players=(1,))
    res = client.post(f'/api/games/{game.id}/settle', json={}, headers=OWNER)
    assert res.status_code == 400
    assert fake_chain.calls == []


def test_allow_unpaid_is_admin_only(client, seed_game, fake_chain):
    game = seed_game(players=(1,))
    db.session.add(Participant(game_id=game.id, player_id=2, status=ParticipantStatus.JOINED))
    db.session.commit()
    body = {'winner_ids': [1], 'allow_unpaid': True}
    assert client.post(f'/api/games/{game.id}/settle', json=body, headers=OWNER).status_code == 403
    assert client.post(f'/api/games/{game.id}/settle', json={'winner_ids': [1]}, headers=OWNER).status_code == 400
    assert client.post(f'/api/games/{game.id}/settle', json=body, headers=ADMIN).status_code == 200


def test_pending_settlement_is_202(client, seed_game, fake_chain):
    game = seed_game(players=(1,))
    fake_chain.settle_outcome = 'timeout'
    res = client.post(f'/api/games/{game.id}/settle', json={'winner_ids': [1]}, headers=OWNER)
    assert res.status_code == 202
    data = res.get_json()
    assert data['kind'] == 'SettlementPending'
    assert data['settle_tx_hash']


def test_settle_in_progress_is_409(client, seed_game, fake_chain):
    game = seed_game(players=(1,))
    _claim_settlement(game.id, 300)
    res = client.post(f'/api/games/{game.id}/settle', json={'winner_ids': [1]}, headers=OWNER)
    assert res.status_code == 409
    assert res.get_json()['kind'] == 'SettlementInProgress'
    assert client.post(f'/api/games/{game.id}/cancel', headers=OWNER).status_code == 400
    assert fake_chain.writes() == []


def test_inactive_contract_is_409(client, seed_game, fake_chain):
    game = seed_game(players=(1,), active=False)
    res = client.post(f'/api/games/{game.id}/settle', json={'winner_ids': [1]}, headers=OWNER)
    assert res.status_code == 409
    assert res.get_json()['debug_hints']


def test_contract_state_route(client, seed_game, fake_chain):
    game = seed_game(players=(1, 2))
    res = client.get(f'/api/games/{game.id}/contract-state', headers=OWNER)
    assert res.status_code == 200
    assert res.get_json()['contract_state']['is_active'] is True

    fake_chain.games.clear()
    res = client.get(f'/api/games/{game.id}/contract-state', headers=OWNER)
    assert res.status_code == 409
    assert res.get_json()['kind'] == 'ContractStateUnavailable'


def test_payment_status_route(client, seed_game, fake_chain):
    game = seed_game(players=(5,))
    res = client.get(f'/api/games/{game.id}/participants/5/payment-status', headers=PLAYER)
    assert res.status_code == 200
    data = res.get_json()
    assert data['ok'] is True
    assert data['verification']['payer_address'] == player_address(5)
    assert data['verification']['expected_amount_raw'] == '10000000'

    assert client.get(f'/api/games/{game.id}/participants/6/payment-status', headers=PLAYER).status_code == 404


def test_db_reset_command(flask_app, seed_game):
    seed_game(players=(1,))
    result = flask_app.test_cli_runner().invoke(args=['db-reset'])
    assert result.exit_code == 0, result.output
    assert 'Database has been reset!' in result.output
    db.session.expire_all()
    assert Participant.query.count() == 0
