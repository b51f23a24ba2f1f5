from flask import Blueprint, jsonify, current_app

main = Blueprint('main', __name__)

@main.route('/')
def index():
    return jsonify({
        'service': 'potsettle',
        'chain_id': current_app.config.get('CHAIN_ID'),
        'token': current_app.config.get('TOKEN_SYMBOL'),
    })
