"""
Exceptions for the MultiWallet SDK.

Every public operation either returns its value or raises one of the
``MultiWalletError`` subclasses below.
"""
from typing import Any, Optional


class MultiWalletError(Exception):
    """Base exception for all MultiWallet SDK errors."""
    pass


class ConnectionError(MultiWalletError):
    """Raised when the wallet is unreachable or refuses the connection."""
    pass


class UnsupportedChainError(MultiWalletError):
    """Raised when a chain id is not supported by the active adapter."""

    def __init__(self, message: str, chain_id: Any = None):
        self.chain_id = chain_id
        super().__init__(message)


class UserRejectedError(MultiWalletError):
    """Raised when the user explicitly declines a wallet request."""
    pass


class SigningRejectedError(MultiWalletError):
    """Raised when the wallet refuses to sign a message."""
    pass


class SubmissionError(MultiWalletError):
    """
    Raised when a transaction cannot be submitted or is rejected by the network.

    ``may_have_landed`` is set when the broadcast itself was interrupted, so
    the network may hold the transaction even though no id came back.
    """

    def __init__(self, message: str, may_have_landed: bool = False):
        self.may_have_landed = may_have_landed
        super().__init__(message)


class StaleTokenError(MultiWalletError):
    """Raised when a transaction would be built against an expired or consumed token."""

    def __init__(self, message: str, token: Optional[str] = None):
        self.token = token
        super().__init__(message)


class ConcurrentOperationError(MultiWalletError):
    """Raised when a connect or switch is requested while another is in flight."""
    pass


class NetworkError(MultiWalletError):
    """Raised for transient network failures once retries are exhausted."""
    pass


class TimeoutError(MultiWalletError):
    """Raised when an operation exceeds its timeout."""
    pass


class OperationCancelledError(MultiWalletError):
    """Raised when the caller cancels an operation through a CancellationToken."""
    pass


class StateTransitionError(MultiWalletError):
    """Raised when the connection state machine is asked for an illegal transition."""
    pass


class ProviderRpcError(MultiWalletError):
    """
    Wire-level error returned by a wallet connector or JSON-RPC endpoint.

    Adapters translate these into the typed errors above before they reach
    callers.
    """

    # EIP-1193 provider error codes
    USER_REJECTED = 4001
    UNAUTHORIZED = 4100
    UNSUPPORTED_METHOD = 4200
    DISCONNECTED = 4900
    UNRECOGNIZED_CHAIN = 4902

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.data = data
        super().__init__(f"[{code}] {message}")
