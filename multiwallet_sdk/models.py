"""
Data models for the MultiWallet SDK.
"""
from enum import Enum
from typing import Dict, Any, Optional, List, Union

from pydantic import BaseModel, Field

from .exceptions import StateTransitionError

ChainId = Union[int, str]

# The network keeps at most WINDOW_CAPACITY recent validity tokens and accepts
# a token only while its rank (1 = newest) is at most MAX_ACCEPTED_RANK.
WINDOW_CAPACITY = 300
MAX_ACCEPTED_RANK = 151


class ConnectionStatus(str, Enum):
    """States of the connection state machine"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SWITCHING = "switching"
    ERROR = "error"


class TransactionStatus(str, Enum):
    """Lifecycle of a submitted transaction"""
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.SUBMITTED


class Commitment(str, Enum):
    """
    Commitment level used when fetching tokens and reading transaction status.

    PROCESSED gives the longest usable window with a small risk that the token
    belongs to an abandoned fork, FINALIZED carries no fork risk but the
    shortest window, CONFIRMED sits in between.
    """
    PROCESSED = "processed"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"
    RECOMMENDED = "confirmed"

    @property
    def level(self) -> int:
        return _COMMITMENT_ORDER[self.value]

    def satisfies(self, requested: "Commitment") -> bool:
        """True if this commitment is at least as strong as ``requested``"""
        return self.level >= requested.level


_COMMITMENT_ORDER = {"processed": 0, "confirmed": 1, "finalized": 2}


class ExpirationModel(str, Enum):
    """How transactions of a chain family stop being submittable"""
    NONE = "none"
    VALIDITY_WINDOW = "validity_window"


class NativeCurrency(BaseModel):
    """Native currency descriptor of a chain"""
    name: str
    symbol: str
    decimals: int

    class Config:
        frozen = True


class Chain(BaseModel):
    """Immutable chain descriptor loaded from the registry"""
    id: ChainId
    name: str
    family: str
    native_currency: NativeCurrency = Field(..., alias="nativeCurrency")
    rpc_urls: List[str] = Field(..., alias="rpcUrls", min_length=1)
    explorer_url: Optional[str] = Field(None, alias="explorerUrl")

    class Config:
        frozen = True
        populate_by_name = True

    @property
    def primary_rpc_url(self) -> str:
        return self.rpc_urls[0]

    def get_explorer_url(self, tx_id: str) -> Optional[str]:
        """Block explorer URL for a transaction, if the chain has an explorer"""
        if not self.explorer_url:
            return None
        return f"{self.explorer_url.rstrip('/')}/tx/{tx_id}"


class WalletSession(BaseModel):
    """The connected wallet as seen by the session store"""
    address: str
    chain_id: ChainId
    family: str
    connector_id: str
    balance: str = "0"
    status: ConnectionStatus = ConnectionStatus.CONNECTED
    name: Optional[str] = None


class ValidityToken(BaseModel):
    """
    A recent validity token (blockhash) and where it sat in the window.

    ``rank`` was observed when the chain was at ``observed_height``; each
    block-height advance afterwards pushes the token one rank further back.
    """
    value: str
    rank: int = Field(..., ge=1)
    observed_height: int = Field(..., ge=0)
    commitment: Commitment = Commitment.CONFIRMED

    class Config:
        frozen = True

    @property
    def last_valid_height(self) -> int:
        return self.observed_height + MAX_ACCEPTED_RANK - self.rank

    def rank_at(self, height: int) -> int:
        return self.rank + max(0, height - self.observed_height)

    def is_accepted_at(self, height: int) -> bool:
        return self.rank_at(height) <= MAX_ACCEPTED_RANK


class DurableToken(BaseModel):
    """Validity token stored in an on-chain nonce account"""
    nonce_account: str
    value: str
    authority: str

    class Config:
        frozen = True


class TransactionRequest(BaseModel):
    """Chain-neutral transaction payload; adapters bind family-specific fields"""
    to: Optional[str] = None
    value: int = 0
    data: Optional[str] = None
    instructions: List[Dict[str, Any]] = Field(default_factory=list)
    fee_payer: Optional[str] = None
    recent_blockhash: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class TransactionHandle(BaseModel):
    """What a successful submit returns"""
    tx_id: str
    family: str
    chain_id: ChainId
    submitted_height: int = 0


class TransactionStatusReport(BaseModel):
    """A single observation of a transaction by an adapter"""
    found: bool = False
    commitment: Optional[Commitment] = None
    error: Optional[str] = None


class ExpirationEstimate(BaseModel):
    """Remaining validity of a token, as an advance count and a time bound"""
    remaining_advances: int
    earliest_seconds: float
    latest_seconds: float


class PendingTransaction(BaseModel):
    """A submitted transaction followed by the confirmation tracker"""
    tx_id: str
    family: str
    chain_id: ChainId
    commitment: Commitment
    submitted_height: int = 0
    token: Optional[ValidityToken] = None
    durable_token: Optional[DurableToken] = None
    status: TransactionStatus = TransactionStatus.SUBMITTED
    error: Optional[str] = None
    expiration: Optional[ExpirationEstimate] = None
    replaces: Optional[str] = None
    replaced_by: Optional[str] = None
    history: List[TransactionStatus] = Field(default_factory=lambda: [TransactionStatus.SUBMITTED])

    @property
    def is_durable(self) -> bool:
        return self.durable_token is not None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def advance(self, status: TransactionStatus, error: Optional[str] = None) -> None:
        """
        Move to ``status``. Terminal states are final.

        Raises:
            StateTransitionError: If the transaction is already terminal
        """
        if status == self.status:
            return
        if self.is_terminal:
            raise StateTransitionError(
                f"Transaction {self.tx_id} is already {self.status.value}, cannot move to {status.value}"
            )
        if status is TransactionStatus.EXPIRED and self.is_durable:
            raise StateTransitionError(f"Durable transaction {self.tx_id} cannot expire")
        self.status = status
        self.error = error
        self.history.append(status)


class PersistedSession(BaseModel):
    """
    The only session fields written to storage.

    Unknown fields are ignored so older and newer layouts load cleanly.
    """
    chain_family: str = Field(..., alias="chainFamily")
    chain_id: ChainId = Field(..., alias="chainId")

    class Config:
        populate_by_name = True
        extra = "ignore"
