"""Entry payment verification.

The payer of an entry is the source of the ERC-20 transfer into the escrow,
not ``tx.from``: sponsored entries are sent by a relayer or paymaster and the
refund must go back to the wallet that actually paid.
"""

from dataclasses import asdict, dataclass, field
from typing import List, Optional

from eth_utils import encode_hex, keccak
from flask import current_app

from potsettle.errors import ChainError, ConfigurationError
from potsettle.services.escrow.units import to_base_units

TRANSFER_TOPIC = encode_hex(keccak(text='Transfer(address,address,uint256)'))

MAX_REPORTED_TRANSFERS = 10


@dataclass
class PaymentVerification:
    ok: bool
    payer_address: Optional[str] = None
    escrow_address: Optional[str] = None
    value_raw: Optional[int] = None
    receipt_status: Optional[int] = None
    block_number: Optional[int] = None
    tx_from: Optional[str] = None
    tx_to: Optional[str] = None
    matching_transfers: int = 0
    parsed_transfer_count: int = 0
    found_transfers: List[dict] = field(default_factory=list)
    expected_amount_raw: Optional[int] = None
    error_code: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self):
        data = asdict(self)
        for key in ('value_raw', 'expected_amount_raw'):
            if data[key] is not None:
                data[key] = str(data[key])
        return data


@dataclass
class EscrowSettings:
    escrow_address: str
    token_address: str
    token_decimals: int
    chain_id: Optional[int]
    lock_ttl: int
    receipt_timeout: int


def escrow_settings() -> EscrowSettings:
    cfg = current_app.config
    escrow = cfg.get('ESCROW_CONTRACT_ADDRESS')
    token = cfg.get('TOKEN_ADDRESS')
    if not escrow:
        raise ConfigurationError('ESCROW_CONTRACT_ADDRESS is not configured')
    if not token:
        raise ConfigurationError('TOKEN_ADDRESS is not configured')
    return EscrowSettings(
        escrow_address=escrow,
        token_address=token,
        token_decimals=int(cfg.get('TOKEN_DECIMALS', 6)),
        chain_id=cfg.get('CHAIN_ID'),
        lock_ttl=int(cfg.get('REFUND_LOCK_TTL_SEC', 300)),
        receipt_timeout=int(cfg.get('RECEIPT_TIMEOUT_SEC', 120)),
    )


def _topic_address(topic: str) -> str:
    return '0x' + topic[-40:].lower()


def _data_value(data):
    if data in (None, '', '0x'):
        return 0
    try:
        return int(data, 16)
    except (TypeError, ValueError):
        return 0


def parse_transfers(logs, token_address):
    """ERC-20 Transfer events emitted by the token contract, in log order."""
    token = token_address.lower()
    transfers = []
    for entry in logs:
        if (entry.address or '').lower() != token:
            continue
        if len(entry.topics) < 3 or entry.topics[0].lower() != TRANSFER_TOPIC:
            continue
        transfers.append({
            'from': _topic_address(entry.topics[1]),
            'to': _topic_address(entry.topics[2]),
            'value': _data_value(entry.data),
        })
    return transfers


def verify_payment(chain, tx_hash, escrow_address, token_address, expected_amount, token_decimals,
                   chain_id=None) -> PaymentVerification:
    expected_raw = to_base_units(expected_amount, token_decimals)
    result = PaymentVerification(ok=False, escrow_address=escrow_address, expected_amount_raw=expected_raw)

    if not tx_hash:
        result.error_code = 'tx_not_found'
        result.error = 'No payment transaction recorded'
        return result

    try:
        tx = chain.get_transaction(tx_hash)
        if tx is None:
            result.error_code = 'tx_not_found'
            result.error = f'Transaction {tx_hash} not found'
            return result
        result.tx_from = tx.from_address
        result.tx_to = tx.to_address

        receipt = chain.get_receipt(tx_hash)
    except ChainError as e:
        result.error_code = 'rpc_error'
        result.error = str(e)
        return result

    if receipt is None:
        result.error_code = 'receipt_pending'
        result.error = f'Transaction {tx_hash} has no receipt yet'
        return result
    result.receipt_status = receipt.status
    result.block_number = receipt.block_number
    if receipt.status != 1:
        result.error_code = 'receipt_failed'
        result.error = f'Transaction {tx_hash} failed on-chain'
        return result

    if chain_id is not None and tx.chain_id is not None and int(tx.chain_id) != int(chain_id):
        result.error_code = 'chain_mismatch'
        result.error = f'Transaction is on chain {tx.chain_id}, expected {chain_id}'
        return result

    transfers = parse_transfers(receipt.logs, token_address)
    result.parsed_transfer_count = len(transfers)
    result.found_transfers = [
        {'from': t['from'], 'to': t['to'], 'value': str(t['value'])}
        for t in transfers[:MAX_REPORTED_TRANSFERS]
    ]

    escrow = escrow_address.lower()
    to_escrow = [t for t in transfers if t['to'] == escrow]
    matches = [t for t in to_escrow if t['value'] == expected_raw]
    result.matching_transfers = len(matches)
    if matches:
        first = matches[0]
        result.ok = True
        result.payer_address = first['from']
        result.value_raw = first['value']
        return result

    if to_escrow:
        result.value_raw = to_escrow[0]['value']
        result.error_code = 'amount_mismatch'
        result.error = f"Transfer to escrow was {to_escrow[0]['value']}, expected {expected_raw}"
    else:
        result.error_code = 'no_matching_transfer'
        result.error = 'No token transfer to the escrow in this transaction'
    return result


def verify_participant_payment(chain, game, participant) -> PaymentVerification:
    settings = escrow_settings()
    return verify_payment(
        chain,
        participant.payment_tx_hash,
        settings.escrow_address,
        settings.token_address,
        game.entry_fee_amount,
        settings.token_decimals,
        chain_id=settings.chain_id,
    )
