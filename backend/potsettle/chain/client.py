"""Web3 client for the escrow contract.

Reads come back as plain dataclasses so the services never touch web3 types;
anything that moves money goes through the master wallet signer.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from eth_account import Account
from eth_utils import to_checksum_address
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception

from potsettle.chain.abi import ESCROW_ABI
from potsettle.errors import BroadcastError, ChainError, ConfigurationError, ReceiptTimeout


@dataclass
class LogEntry:
    address: str
    topics: List[str]
    data: str


@dataclass
class Transaction:
    tx_hash: str
    from_address: Optional[str]
    to_address: Optional[str]
    chain_id: Optional[int] = None


@dataclass
class Receipt:
    tx_hash: str
    status: Optional[int]
    block_number: Optional[int] = None
    logs: List[LogEntry] = field(default_factory=list)


@dataclass
class ContractGameState:
    game_id: str
    is_active: bool
    is_settled: bool
    total_collected: int
    entry_fee: int
    currency: str

    def to_dict(self):
        return {
            'game_id': self.game_id,
            'is_active': self.is_active,
            'is_settled': self.is_settled,
            'total_collected': str(self.total_collected),
            'entry_fee': str(self.entry_fee),
            'currency': self.currency,
        }


def _hex(value):
    if value is None:
        return None
    if isinstance(value, str):
        return value if value.startswith('0x') else '0x' + value
    return Web3.to_hex(value)


def _to_receipt(raw):
    logs = [
        LogEntry(
            address=raw_log['address'],
            topics=[_hex(t) for t in raw_log.get('topics', [])],
            data=_hex(raw_log.get('data')) or '0x',
        )
        for raw_log in raw.get('logs', [])
    ]
    return Receipt(
        tx_hash=_hex(raw.get('transactionHash')),
        status=raw.get('status'),
        block_number=raw.get('blockNumber'),
        logs=logs,
    )


class Web3EscrowClient:
    def __init__(self, rpc_url, escrow_address, chain_id, private_key=None, expected_signer=None, gas=1_500_000):
        self.w3 = Web3(Web3.HTTPProvider(rpc_url))
        self.chain_id = chain_id
        self.escrow_address = to_checksum_address(escrow_address) if escrow_address else None
        self.gas = gas
        self.account = Account.from_key(private_key) if private_key else None
        if self.account is not None and expected_signer:
            if self.account.address.lower() != expected_signer.lower():
                raise ConfigurationError(
                    'Master wallet key does not match MASTER_WALLET_ADDRESS',
                    derived_address=self.account.address,
                    expected_address=expected_signer,
                )

    @classmethod
    def from_config(cls, config):
        return cls(
            rpc_url=config['RPC_URL'],
            escrow_address=config.get('ESCROW_CONTRACT_ADDRESS'),
            chain_id=config.get('CHAIN_ID'),
            private_key=config.get('MASTER_WALLET_PRIVATE_KEY') or None,
            expected_signer=config.get('MASTER_WALLET_ADDRESS') or None,
        )

    def _escrow(self):
        if not self.escrow_address:
            raise ConfigurationError('ESCROW_CONTRACT_ADDRESS is not configured')
        return self.w3.eth.contract(address=self.escrow_address, abi=ESCROW_ABI)

    # --- reads ---------------------------------------------------------

    def get_transaction(self, tx_hash) -> Optional[Transaction]:
        try:
            raw = self.w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return None
        except (Web3Exception, OSError, ValueError) as e:
            raise ChainError(f'get_transaction failed: {e}', tx_hash=tx_hash) from e
        return Transaction(
            tx_hash=_hex(raw.get('hash')) or tx_hash,
            from_address=raw.get('from'),
            to_address=raw.get('to'),
            chain_id=raw.get('chainId'),
        )

    def get_receipt(self, tx_hash) -> Optional[Receipt]:
        try:
            raw = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except (Web3Exception, OSError, ValueError) as e:
            raise ChainError(f'get_transaction_receipt failed: {e}', tx_hash=tx_hash) from e
        return _to_receipt(raw)

    def wait_for_receipt(self, tx_hash, timeout) -> Receipt:
        try:
            raw = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted as e:
            raise ReceiptTimeout(f'No receipt after {timeout}s', tx_hash=tx_hash) from e
        except (Web3Exception, OSError, ValueError) as e:
            raise ReceiptTimeout(f'Receipt wait failed: {e}', tx_hash=tx_hash) from e
        return _to_receipt(raw)

    def get_game(self, game_id) -> ContractGameState:
        try:
            raw = self._escrow().functions.getGame(str(game_id)).call()
        except ConfigurationError:
            raise
        except (Web3Exception, OSError, ValueError) as e:
            raise ChainError(f'getGame failed: {e}', onchain_game_id=str(game_id)) from e
        onchain_id, currency, entry_fee, total_collected, is_active, is_settled = raw
        return ContractGameState(
            game_id=onchain_id,
            is_active=bool(is_active),
            is_settled=bool(is_settled),
            total_collected=int(total_collected),
            entry_fee=int(entry_fee),
            currency=currency,
        )

    # --- writes --------------------------------------------------------

    def _send(self, fn, label):
        if self.account is None:
            raise BroadcastError(f'{label}: MASTER_WALLET_PRIVATE_KEY is not configured')
        try:
            tx = fn.build_transaction(
                {
                    'from': self.account.address,
                    'nonce': self.w3.eth.get_transaction_count(self.account.address, 'pending'),
                    'gas': self.gas,
                    'gasPrice': self.w3.eth.gas_price,
                    'chainId': self.chain_id,
                }
            )
            signed = self.account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except ContractLogicError as e:
            raise BroadcastError(f'{label} reverted in simulation: {e}', contract_error=str(e)) from e
        except (Web3Exception, OSError, ValueError) as e:
            raise BroadcastError(f'{label} broadcast failed: {e}') from e
        return Web3.to_hex(tx_hash)

    def refund_player(self, game_id, player_address) -> str:
        fn = self._escrow().functions.refundPlayer(str(game_id), to_checksum_address(player_address))
        return self._send(fn, 'refundPlayer')

    def settle_game(self, game_id, recipients, amounts) -> str:
        fn = self._escrow().functions.settleGame(
            str(game_id),
            [to_checksum_address(a) for a in recipients],
            [int(a) for a in amounts],
        )
        return self._send(fn, 'settleGame')
