"""
Chain adapter contract.

One ``ChainAdapter`` subclass exists per chain family. Callers only ever see
this interface; the family string stored alongside the session selects the
implementation through the registry in ``multiwallet_sdk.adapters``.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Type, Union

from ..cancellation import CancellationToken, run_guarded
from ..config import EngineConfig
from ..connectors import WalletConnector
from ..exceptions import (
    ConnectionError, MultiWalletError, NetworkError, ProviderRpcError,
    SubmissionError, UnsupportedChainError, UserRejectedError
)
from ..models import (
    Chain, ChainId, Commitment, DurableToken, ExpirationModel, TransactionHandle,
    TransactionRequest, TransactionStatusReport, ValidityToken, WalletSession
)
from ..transport import RpcTransport, TransportFactory, default_transport_factory

logger = logging.getLogger(__name__)

SessionListener = Callable[[str], None]


class ChainAdapter(ABC):
    """
    Abstract base class for chain family adapters.

    Subclasses set ``family`` and ``expiration_model`` and implement the
    abstract operations. Every network-touching operation is a coroutine that
    accepts an optional ``CancellationToken``; an interrupted ``connect`` or
    ``switch_chain`` leaves the adapter exactly as it was before the call.
    """

    family: str = ""
    expiration_model: ExpirationModel = ExpirationModel.NONE

    def __init__(
        self,
        chains: List[Chain],
        transport_factory: Optional[TransportFactory] = None,
        config: Optional[EngineConfig] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the adapter

        Args:
            chains: Chains this adapter may connect to; the first is the default
            transport_factory: Builds an RpcTransport for a chain
            config: Engine configuration (timeouts, confirmation depth)
            logger: Optional logger instance
        """
        if not chains:
            raise ValueError(f"{type(self).__name__} needs at least one chain")
        self.chains = list(chains)
        self.transport_factory = transport_factory or default_transport_factory
        self.config = config or EngineConfig()
        self.logger = logger or logging.getLogger(__name__)

        self.connector: Optional[WalletConnector] = None
        self.address: Optional[str] = None
        self.chain: Chain = self.chains[0]
        self.transport: Optional[RpcTransport] = None
        self._session_listener: Optional[SessionListener] = None
        # Read-only transports for chains the adapter is no longer on
        self._read_transports: Dict[str, RpcTransport] = {}

    # ------------------------------------------------------------------
    # Chain support
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.connector is not None and self.address is not None

    def is_chain_supported(self, chain_id: ChainId) -> bool:
        return self._find_chain(chain_id) is not None

    def get_chain(self, chain_id: ChainId) -> Chain:
        """
        Raises:
            UnsupportedChainError: If the chain is not supported
        """
        chain = self._find_chain(chain_id)
        if chain is None:
            supported = ", ".join(str(c.id) for c in self.chains)
            raise UnsupportedChainError(
                f"Chain '{chain_id}' is not supported by the {self.family} adapter. Supported: {supported}",
                chain_id=chain_id,
            )
        return chain

    def _find_chain(self, chain_id: ChainId) -> Optional[Chain]:
        for chain in self.chains:
            if str(chain.id) == str(chain_id):
                return chain
        return None

    # ------------------------------------------------------------------
    # Session-loss reporting
    # ------------------------------------------------------------------

    def set_session_listener(self, listener: Optional[SessionListener]) -> None:
        """Register the callback invoked when the wallet drops the session out-of-band"""
        self._session_listener = listener

    def _report_session_lost(self, reason: str) -> None:
        if not self.is_connected:
            return
        self.logger.info(f"{self.family} session lost: {reason}")
        self._release()
        if self._session_listener is not None:
            self._session_listener(reason)

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    @abstractmethod
    async def connect(
        self,
        connector: WalletConnector,
        chain_id: Optional[ChainId] = None,
        cancel: Optional[CancellationToken] = None
    ) -> WalletSession:
        """
        Connect to the wallet behind ``connector``.

        Raises:
            ConnectionError: If the wallet is unreachable or refuses
            UserRejectedError: If the user declines the connection
            UnsupportedChainError: If ``chain_id`` is not supported
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Release the wallet session. Safe to call when not connected."""
        pass

    @abstractmethod
    async def switch_chain(self, chain_id: ChainId, cancel: Optional[CancellationToken] = None) -> None:
        """
        Raises:
            UnsupportedChainError: If the chain is not supported
            UserRejectedError: If the user declines the switch
        """
        pass

    @abstractmethod
    async def get_balance(self, address: str, cancel: Optional[CancellationToken] = None) -> str:
        """
        Native balance of ``address`` as a decimal string.

        Raises:
            NetworkError: If the balance cannot be read
        """
        pass

    @abstractmethod
    async def sign_message(self, message: Union[str, bytes], cancel: Optional[CancellationToken] = None) -> str:
        """
        Raises:
            SigningRejectedError: If the wallet refuses to sign
        """
        pass

    @abstractmethod
    async def submit_transaction(
        self,
        tx: TransactionRequest,
        token: Optional[ValidityToken] = None,
        cancel: Optional[CancellationToken] = None
    ) -> TransactionHandle:
        """
        Sign through the wallet and broadcast.

        Raises:
            SubmissionError: If the wallet or network rejects the transaction
            UserRejectedError: If the user declines to sign
        """
        pass

    @abstractmethod
    async def get_transaction_status(
        self,
        tx_id: str,
        cancel: Optional[CancellationToken] = None,
        chain_id: Optional[ChainId] = None
    ) -> TransactionStatusReport:
        """
        Status of ``tx_id`` on ``chain_id`` (the active chain when omitted).

        Raises:
            NetworkError: If the status cannot be read
        """
        pass

    @abstractmethod
    async def get_block_height(
        self,
        commitment: Commitment = Commitment.PROCESSED,
        cancel: Optional[CancellationToken] = None,
        chain_id: Optional[ChainId] = None
    ) -> int:
        pass

    # ------------------------------------------------------------------
    # Validity-window hooks, only meaningful for expiring families
    # ------------------------------------------------------------------

    async def get_validity_token(
        self, commitment: Commitment, cancel: Optional[CancellationToken] = None
    ) -> ValidityToken:
        raise SubmissionError(f"{self.family} transactions do not use validity tokens")

    async def is_token_valid(self, token: ValidityToken, cancel: Optional[CancellationToken] = None) -> bool:
        raise SubmissionError(f"{self.family} transactions do not use validity tokens")

    async def get_durable_token(
        self,
        nonce_account: str,
        commitment: Commitment = Commitment.CONFIRMED,
        cancel: Optional[CancellationToken] = None
    ) -> DurableToken:
        raise SubmissionError(f"{self.family} transactions do not support durable tokens")

    def bind_durable_token(self, tx: TransactionRequest, durable: DurableToken) -> TransactionRequest:
        raise SubmissionError(f"{self.family} transactions do not support durable tokens")

    async def resolve_name(self, address: str, cancel: Optional[CancellationToken] = None) -> Optional[str]:
        """Naming-service alias for ``address``, if the family has one"""
        return None

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _require_connected(self) -> None:
        if not self.is_connected:
            raise ConnectionError(f"{self.family} wallet is not connected")

    async def _wallet_request(
        self,
        connector: WalletConnector,
        method: str,
        params: Optional[Any] = None,
        cancel: Optional[CancellationToken] = None
    ) -> Any:
        return await run_guarded(
            connector.request(method, params), timeout=self.config.request_timeout, cancel=cancel
        )

    async def _rpc(
        self,
        method: str,
        params: Optional[Any] = None,
        cancel: Optional[CancellationToken] = None,
        transport: Optional[RpcTransport] = None
    ) -> Any:
        transport = transport or self.transport
        if transport is None:
            raise ConnectionError(f"{self.family} adapter has no transport")
        return await run_guarded(
            transport.request(method, params), timeout=self.config.request_timeout, cancel=cancel
        )

    async def _read(
        self,
        method: str,
        params: Optional[Any] = None,
        cancel: Optional[CancellationToken] = None,
        transport: Optional[RpcTransport] = None
    ) -> Any:
        """Read-only RPC call; JSON-RPC error objects surface as NetworkError"""
        try:
            return await self._rpc(method, params, cancel=cancel, transport=transport)
        except ProviderRpcError as e:
            raise NetworkError(f"{method} failed: {e}") from e

    def _transport_for(self, chain_id: Optional[ChainId]) -> Optional[RpcTransport]:
        """
        Transport for reads pinned to ``chain_id``.

        None stands for the active transport. Other chains get a read-only
        transport of their own, built once and kept until the adapter is
        released.

        Raises:
            UnsupportedChainError: If the chain is not supported
        """
        if chain_id is None or str(chain_id) == str(self.chain.id):
            return None
        chain = self.get_chain(chain_id)
        key = str(chain.id)
        transport = self._read_transports.get(key)
        if transport is None:
            transport = self.transport_factory(chain)
            self._read_transports[key] = transport
            self.logger.debug(f"Opened read transport for {self.family} chain {chain.id}")
        return transport

    def _map_wallet_error(self, error: ProviderRpcError, default: Type[MultiWalletError]) -> MultiWalletError:
        """Translate a connector error code into the SDK taxonomy"""
        if error.code == ProviderRpcError.USER_REJECTED:
            return UserRejectedError(str(error))
        if error.code == ProviderRpcError.UNRECOGNIZED_CHAIN:
            return UnsupportedChainError(str(error))
        return default(str(error))

    def _release(self) -> None:
        """Drop the connector, listeners and transport"""
        if self.connector is not None:
            self._detach_listeners(self.connector)
        if self.transport is not None:
            self.transport.close()
        for transport in self._read_transports.values():
            transport.close()
        self._read_transports.clear()
        self.connector = None
        self.address = None
        self.transport = None

    def _attach_listeners(self, connector: WalletConnector) -> None:
        pass

    def _detach_listeners(self, connector: WalletConnector) -> None:
        pass
