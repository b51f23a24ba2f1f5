from flask import current_app

from potsettle.errors import ChainError, ContractStateUnavailable

UNAVAILABLE_HINTS = [
    'Game may not be initialized on-chain for this game id',
    'Check that game creation called the escrow createGame()',
    'Verify the game id string matches the one used on-chain',
]

INACTIVE_HINTS = [
    'Contract has no active game for this game id',
    'Game id string may differ between the database and the contract',
    'Game may never have been created on-chain',
    'Game may have been cancelled or deactivated on-chain',
]

DIRECT_TRANSFER_HINTS = [
    'Payments were direct token transfers, not escrow joinGame() calls',
    'Settlement requires on-chain game state under this game id',
]


def read_contract_state(chain, onchain_game_id):
    try:
        state = chain.get_game(onchain_game_id)
    except ChainError as e:
        current_app.logger.warning(f"[contract-state] game={onchain_game_id} read failed: {e}")
        raise ContractStateUnavailable(
            f'Failed to fetch contract state for game {onchain_game_id}: {e}',
            onchain_game_id=str(onchain_game_id),
            contract_state=None,
            debug_hints=list(UNAVAILABLE_HINTS),
        ) from e
    current_app.logger.info(
        f"[contract-state] game={onchain_game_id} active={state.is_active} "
        f"settled={state.is_settled} collected={state.total_collected}"
    )
    return state


def payment_diagnostics(chain, tx_hash, escrow_address, token_address):
    """Where a sample entry payment was sent; None when it cannot be fetched."""
    if not tx_hash:
        return None
    try:
        tx = chain.get_transaction(tx_hash)
    except ChainError as e:
        current_app.logger.warning(f"[contract-state] payment diagnostics tx={tx_hash} failed: {e}")
        return None
    if tx is None:
        return None
    to_address = (tx.to_address or '').lower() or None
    return {
        'payment_tx_hash': tx_hash,
        'payment_tx_from': (tx.from_address or '').lower() or None,
        'payment_tx_to': to_address,
        'went_to_escrow': to_address == escrow_address.lower(),
        'went_to_token_direct': to_address == token_address.lower(),
    }
