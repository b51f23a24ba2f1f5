from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user
from potsettle import db, socketio
from potsettle.auth import roles_required
from potsettle.chain import get_chain
from potsettle.errors import EscrowError, GameNotFound
from potsettle.models import Game, Participant
from potsettle.services.escrow.contract_state import read_contract_state
from potsettle.services.escrow.refunds import cancel_game
from potsettle.services.escrow.settlement import settle_game
from potsettle.services.escrow.verifier import verify_participant_payment


games = Blueprint('games', __name__)


@games.errorhandler(EscrowError)
def handle_escrow_error(err):
    current_app.logger.warning(f"[api] {request.method} {request.path} -> {type(err).__name__}: {err.message}")
    return jsonify(err.to_dict()), err.status_code


def _get_game_or_404(game_id):
    game = db.session.get(Game, game_id)
    if game is None:
        raise GameNotFound(f'Game {game_id} not found', game_id=game_id)
    return game


def _emit_state(game_id, event):
    socketio.emit('state_update', {'game_id': game_id, 'event': event}, to=f"game:{game_id}", namespace='/ws')


@games.route('/<int:game_id>', methods=['GET'])
@login_required
def get_game(game_id):
    game = _get_game_or_404(game_id)
    return jsonify(game.to_dict())


@games.route('/<int:game_id>/cancel', methods=['POST'])
@roles_required('owner', 'admin')
def cancel(game_id):
    report = cancel_game(game_id, actor_id=current_user.player_id)
    _emit_state(game_id, 'cancelled')
    return jsonify(report.to_dict()), (200 if report.ok else 502)


@games.route('/<int:game_id>/settle', methods=['POST'])
@roles_required('owner', 'admin')
def settle(game_id):
    data = request.get_json(silent=True) or {}
    allow_unpaid = bool(data.get('allow_unpaid'))
    if allow_unpaid and not current_user.is_admin:
        return jsonify({'ok': False, 'error': 'Only an admin may settle with unpaid participants'}), 403
    result = settle_game(
        game_id,
        data.get('winner_ids'),
        actor_id=current_user.player_id,
        allow_unpaid=allow_unpaid,
    )
    if not result.already_settled:
        _emit_state(game_id, 'settled')
    return jsonify(result.to_dict()), 200


@games.route('/<int:game_id>/contract-state', methods=['GET'])
@roles_required('owner', 'admin')
def contract_state(game_id):
    game = _get_game_or_404(game_id)
    state = read_contract_state(get_chain(), game.contract_game_id)
    return jsonify({'ok': True, 'game_id': game.id, 'contract_state': state.to_dict()})


@games.route('/<int:game_id>/participants/<int:player_id>/payment-status', methods=['GET'])
@login_required
def payment_status(game_id, player_id):
    game = _get_game_or_404(game_id)
    participant = Participant.query.filter_by(game_id=game.id, player_id=player_id).first_or_404()
    if not game.is_paid:
        return jsonify({'ok': True, 'player_id': player_id, 'free_game': True, 'verification': None})
    verification = verify_participant_payment(get_chain(), game, participant)
    return jsonify({
        'ok': verification.ok,
        'player_id': player_id,
        'status': participant.status.value,
        'verification': verification.to_dict(),
    })
