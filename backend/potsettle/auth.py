"""Caller identity.

Authentication happens upstream; requests arrive with the verified player id
and role in headers. Flask-Login turns them into ``current_user``.
"""

from functools import wraps

from flask import jsonify, request
from flask_login import UserMixin, current_user

from potsettle import login_manager

PLAYER_ID_HEADER = 'X-Player-Id'
PLAYER_ROLE_HEADER = 'X-Player-Role'


class Caller(UserMixin):
    def __init__(self, player_id, role='player'):
        self.id = player_id
        self.player_id = player_id
        self.role = role

    @property
    def is_admin(self):
        return self.role == 'admin'


@login_manager.request_loader
def load_caller_from_request(req):
    raw_id = req.headers.get(PLAYER_ID_HEADER)
    if not raw_id:
        return None
    try:
        player_id = int(raw_id)
    except ValueError:
        return None
    role = (req.headers.get(PLAYER_ROLE_HEADER) or 'player').strip().lower()
    return Caller(player_id, role)


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'ok': False, 'error': 'Authentication required'}), 401


def roles_required(*roles):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if not current_user.is_authenticated:
                return login_manager.unauthorized()
            if current_user.role not in roles:
                return jsonify({'ok': False, 'error': f'Requires role: {", ".join(roles)}'}), 403
            return fn(*args, **kwargs)
        return wrapper
    return decorator
