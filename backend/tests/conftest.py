import os
import sys
from decimal import Decimal

import pytest

# Ensure the backend root (containing the `potsettle` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from potsettle import create_app, db, socketio
from potsettle.chain.client import ContractGameState, LogEntry, Receipt, Transaction
from potsettle.errors import BroadcastError, ChainError, ReceiptTimeout
from potsettle.services.escrow.verifier import TRANSFER_TOPIC

ESCROW = '0x' + 'e5' * 20
TOKEN = '0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913'
RELAYER = '0x' + 'ab' * 20

OWNER = {'X-Player-Id': '900', 'X-Player-Role': 'owner'}
ADMIN = {'X-Player-Id': '901', 'X-Player-Role': 'admin'}
PLAYER = {'X-Player-Id': '1', 'X-Player-Role': 'player'}


def player_address(player_id):
    return '0x' + f'{player_id:040x}'


def _topic(address):
    return '0x' + '0' * 24 + address[2:].lower()


def transfer_log(token, src, dst, value):
    return LogEntry(
        address=token,
        topics=[TRANSFER_TOPIC, _topic(src), _topic(dst)],
        data='0x' + f'{value:064x}',
    )


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    CORS_ORIGINS = []
    RPC_URL = 'http://localhost:8545'
    CHAIN_ID = 8453
    ESCROW_CONTRACT_ADDRESS = ESCROW
    TOKEN_ADDRESS = TOKEN
    TOKEN_SYMBOL = 'USDC'
    TOKEN_DECIMALS = 6
    MASTER_WALLET_PRIVATE_KEY = ''
    MASTER_WALLET_ADDRESS = ''
    REFUND_LOCK_TTL_SEC = 300
    RECEIPT_TIMEOUT_SEC = 0
    AUDIT_WEBHOOK_URL = ''
    AUDIT_WEBHOOK_TIMEOUT_SEC = 1


class FakeChain:
    """In-memory escrow chain. Outcomes: success, revert, timeout, reject."""

    def __init__(self):
        self.transactions = {}
        self.receipts = {}
        self.games = {}
        self.calls = []
        self.refund_calls = []
        self.settle_calls = []
        self.refund_outcome = 'success'
        self.settle_outcome = 'success'
        self.receipt_error = False
        self.on_refund = None
        self.on_settle = None
        self._counter = 0

    def _next_hash(self):
        self._counter += 1
        return '0x' + f'{self._counter:064x}'

    # --- test setup helpers ---

    def add_payment(self, payer, units, relayer=None, to=ESCROW, token=TOKEN, status=1, chain_id=8453):
        tx_hash = self._next_hash()
        self.transactions[tx_hash] = Transaction(tx_hash, relayer or payer, token, chain_id)
        self.receipts[tx_hash] = Receipt(tx_hash, status, 100, [transfer_log(token, payer, to, units)])
        return tx_hash

    def open_game(self, onchain_id, total, entry_fee=0, active=True, settled=False):
        self.games[str(onchain_id)] = ContractGameState(
            game_id=str(onchain_id),
            is_active=active,
            is_settled=settled,
            total_collected=total,
            entry_fee=entry_fee,
            currency=TOKEN,
        )

    def confirm(self, tx_hash, status=1):
        self.receipts[tx_hash] = Receipt(tx_hash, status, 200, [])

    # --- escrow chain interface ---

    def get_transaction(self, tx_hash):
        self.calls.append(('get_transaction', tx_hash))
        return self.transactions.get(tx_hash)

    def get_receipt(self, tx_hash):
        self.calls.append(('get_receipt', tx_hash))
        if self.receipt_error:
            raise ChainError('rpc unavailable', tx_hash=tx_hash)
        return self.receipts.get(tx_hash)

    def wait_for_receipt(self, tx_hash, timeout):
        self.calls.append(('wait_for_receipt', tx_hash))
        receipt = self.receipts.get(tx_hash)
        if receipt is None:
            raise ReceiptTimeout(f'No receipt after {timeout}s', tx_hash=tx_hash)
        return receipt

    def get_game(self, game_id):
        self.calls.append(('get_game', str(game_id)))
        state = self.games.get(str(game_id))
        if state is None:
            raise ChainError('execution reverted: game not found', onchain_game_id=str(game_id))
        return state

    def _mine(self, tx_hash, outcome):
        if outcome == 'success':
            self.receipts[tx_hash] = Receipt(tx_hash, 1, 300, [])
        elif outcome == 'revert':
            self.receipts[tx_hash] = Receipt(tx_hash, 0, 300, [])

    def refund_player(self, game_id, player_address):
        self.calls.append(('refund_player', str(game_id), player_address.lower()))
        if self.refund_outcome == 'reject':
            raise BroadcastError('refundPlayer broadcast failed: nonce too low')
        self.refund_calls.append((str(game_id), player_address.lower()))
        tx_hash = self._next_hash()
        if self.on_refund is not None:
            hook, self.on_refund = self.on_refund, None
            hook(game_id, player_address)
        self._mine(tx_hash, self.refund_outcome)
        return tx_hash

    def settle_game(self, game_id, recipients, amounts):
        self.calls.append(('settle_game', str(game_id)))
        if self.settle_outcome == 'reject':
            raise BroadcastError('settleGame reverted in simulation: execution reverted')
        self.settle_calls.append((str(game_id), [r.lower() for r in recipients], list(amounts)))
        tx_hash = self._next_hash()
        if self.on_settle is not None:
            hook, self.on_settle = self.on_settle, None
            hook(game_id, tx_hash)
        self._mine(tx_hash, self.settle_outcome)
        if self.settle_outcome == 'success':
            state = self.games[str(game_id)]
            state.is_settled = True
            state.is_active = False
        return tx_hash

    def writes(self):
        return [c for c in self.calls if c[0] in ('refund_player', 'settle_game')]


@pytest.fixture()
def fake_chain():
    return FakeChain()


@pytest.fixture()
def flask_app(fake_chain):
    application = create_app(TestConfig, chain=fake_chain)

    # The app context below outlives each test request, so Flask reuses one `g`
    # across requests; drop Flask-Login's cached caller so each request loads its own.
    @application.before_request
    def _reset_cached_caller():
        from flask import g
        g.pop('_login_user', None)

    with application.app_context():
        # Ensure models are imported so tables are created
        import potsettle.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    if test_client.is_connected('/ws'):
        test_client.disconnect(namespace='/ws')


@pytest.fixture()
def seed_game(flask_app, fake_chain):
    """Create a game whose listed players all paid their entry into the escrow."""
    from potsettle.models import Game, GameStatus, Participant, ParticipantStatus
    from potsettle.services.escrow.units import to_base_units

    def _seed(entry_fee='10', players=(1, 2, 3), payout_bps=None, status=GameStatus.IN_PROGRESS,
              onchain=True, active=True, total=None, relayer=None):
        game = Game(
            status=status,
            entry_fee_amount=Decimal(entry_fee) if entry_fee is not None else None,
            entry_fee_currency='USDC',
        )
        if payout_bps is not None:
            game.payout_schedule = payout_bps
        db.session.add(game)
        db.session.commit()

        units = to_base_units(entry_fee, 6) if entry_fee is not None else 0
        for pid in players:
            tx_hash = fake_chain.add_payment(player_address(pid), units, relayer=relayer) if units else None
            db.session.add(Participant(
                game_id=game.id,
                player_id=pid,
                status=ParticipantStatus.PAID if tx_hash else ParticipantStatus.JOINED,
                payment_tx_hash=tx_hash,
            ))
        db.session.commit()
        if onchain and units:
            collected = total if total is not None else units * len(players)
            fake_chain.open_game(game.contract_game_id, collected, entry_fee=units, active=active)
        return game

    return _seed


def participant(game_id, player_id):
    from potsettle.models import Participant
    db.session.expire_all()
    return Participant.query.filter_by(game_id=game_id, player_id=player_id).one()
