"""Error taxonomy for escrow refunds and settlement.

Every error carries an HTTP status and a ``details`` mapping that is echoed
back to the caller, so a failed request still explains how far it got
(contract state, computed payouts, transaction hashes).
"""


class EscrowError(Exception):
    status_code = 500

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {'ok': False, 'error': self.message, 'kind': type(self).__name__}
        payload.update(self.details)
        return payload


class ConfigurationError(EscrowError):
    status_code = 500


class GameNotFound(EscrowError):
    status_code = 404


class InvariantViolation(EscrowError):
    """Rejected before any chain write: bad schedule, duplicate winners, wrong status."""
    status_code = 400


class VerificationError(EscrowError):
    """A claimed entry payment does not match the escrow, token or amount."""
    status_code = 400


class ChainError(EscrowError):
    status_code = 502


class BroadcastError(ChainError):
    """The RPC rejected the send; nothing reached the chain."""


class ReceiptTimeout(ChainError):
    """Sent, but no receipt within the wait window. Outcome unknown."""

    def __init__(self, message, tx_hash=None, **details):
        super().__init__(message, tx_hash=tx_hash, **details)
        self.tx_hash = tx_hash


class OnchainRevert(ChainError):
    pass


class ContractStateUnavailable(ChainError):
    status_code = 409


class ContractGameInactive(EscrowError):
    status_code = 409


class SettlementRejected(ChainError):
    pass


class SettlementPending(EscrowError):
    status_code = 202


class SettlementInProgress(EscrowError):
    """Another invocation holds the game's settle lock."""
    status_code = 409


class PostBroadcastPersistenceFailure(EscrowError):
    """The chain moved money but the local write failed.

    The transaction hash is always part of ``details``; the operation must not
    be retried as if nothing happened.
    """
    status_code = 500
