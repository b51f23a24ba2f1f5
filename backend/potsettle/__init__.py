from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
login_manager = LoginManager()
migrate = Migrate()
socketio = SocketIO(async_mode=None)

def create_app(config_class=Config, chain=None):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)
    allowed_origins = flask_app.config.get('CORS_ORIGINS') or []

    db.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    # One chain client per application; tests hand in a fake
    if chain is None:
        from potsettle.chain.client import Web3EscrowClient
        chain = Web3EscrowClient.from_config(flask_app.config)
    flask_app.extensions['escrow_chain'] = chain

    from potsettle.main import main
    flask_app.register_blueprint(main)

    from potsettle.api.games import games
    flask_app.register_blueprint(games, url_prefix='/api/games')

    from potsettle.socketio_events import register_socketio_handlers
    register_socketio_handlers()

    # Caller identity arrives from the upstream auth layer
    from potsettle import auth  # noqa: F401

    @click.command('db-reset')
    def db_reset_command():
        """Drops and recreates the game and participant tables."""
        import potsettle.models  # noqa: F401
        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            print('Database has been reset!')

    @click.command('reconcile-refunds')
    @click.argument('game_id', type=int)
    def reconcile_refunds_command(game_id):
        """Resolve refunds broadcast earlier but never confirmed."""
        from potsettle.models import Game
        from potsettle.services.escrow.reconcile import reconcile_pending_refunds
        with flask_app.app_context():
            game = db.session.get(Game, game_id)
            if game is None:
                raise click.ClickException(f'Game {game_id} not found')
            outcomes = reconcile_pending_refunds(flask_app.extensions['escrow_chain'], game)
            for outcome in outcomes:
                click.echo(
                    f"player={outcome.player_id} status={outcome.status.value} "
                    f"tx={outcome.refund_tx_hash or '-'} {outcome.reason or ''}".rstrip()
                )
            click.echo(f'{len(outcomes)} pending refund(s) checked')

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(reconcile_refunds_command)

    return flask_app
