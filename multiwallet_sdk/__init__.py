"""
MultiWallet SDK - Multi-chain wallet connection and transaction confirmation.
"""
from .adapters import (
    ChainAdapter, EvmAdapter, SolanaAdapter, create_adapter, get_adapter_class, register_adapter
)
from .cancellation import CancellationToken, run_guarded
from .config import ChainRegistry, EngineConfig, FamilyConfig
from .connectors import LocalEvmConnector, LocalKeypairConnector, WalletConnector
from .durable import DurableTokenRegistry
from .exceptions import (
    MultiWalletError, ConnectionError, UnsupportedChainError, UserRejectedError,
    SigningRejectedError, SubmissionError, StaleTokenError, ConcurrentOperationError,
    NetworkError, TimeoutError, OperationCancelledError, StateTransitionError, ProviderRpcError
)
from .models import (
    MAX_ACCEPTED_RANK, WINDOW_CAPACITY, Chain, ChainId, Commitment, ConnectionStatus,
    DurableToken, ExpirationEstimate, ExpirationModel, NativeCurrency, PendingTransaction,
    PersistedSession, TransactionHandle, TransactionRequest, TransactionStatus,
    TransactionStatusReport, ValidityToken, WalletSession
)
from .persistence import FileSessionPersistence, MemorySessionPersistence, SessionPersistence
from .state_machine import ConnectionStateMachine
from .store import SessionStore
from .tracker import TransactionTracker
from .transport import JsonRpcTransport, RpcTransport
from .validity import estimate_expiration
from .version import __version__

__all__ = [
    "SessionStore",
    "ConnectionStateMachine",
    "TransactionTracker",
    "DurableTokenRegistry",
    "ChainAdapter",
    "EvmAdapter",
    "SolanaAdapter",
    "create_adapter",
    "get_adapter_class",
    "register_adapter",
    "WalletConnector",
    "LocalEvmConnector",
    "LocalKeypairConnector",
    "RpcTransport",
    "JsonRpcTransport",
    "ChainRegistry",
    "EngineConfig",
    "FamilyConfig",
    "SessionPersistence",
    "FileSessionPersistence",
    "MemorySessionPersistence",
    "CancellationToken",
    "run_guarded",
    "estimate_expiration",
    "Chain",
    "ChainId",
    "NativeCurrency",
    "Commitment",
    "ConnectionStatus",
    "TransactionStatus",
    "ExpirationModel",
    "ValidityToken",
    "DurableToken",
    "TransactionRequest",
    "TransactionHandle",
    "TransactionStatusReport",
    "ExpirationEstimate",
    "PendingTransaction",
    "PersistedSession",
    "WalletSession",
    "WINDOW_CAPACITY",
    "MAX_ACCEPTED_RANK",
    "MultiWalletError",
    "ConnectionError",
    "UnsupportedChainError",
    "UserRejectedError",
    "SigningRejectedError",
    "SubmissionError",
    "StaleTokenError",
    "ConcurrentOperationError",
    "NetworkError",
    "TimeoutError",
    "OperationCancelledError",
    "StateTransitionError",
    "ProviderRpcError",
    "__version__",
]
