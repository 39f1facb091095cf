"""
Session store.

The single entry point applications use: it owns one adapter per configured
chain family, routes connects and switches through the connection state
machine, hands transactions to the confirmation tracker and persists the
minimal session record.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Union

from ._rate_limited_log import rate_limited_log
from .adapters import ChainAdapter, create_adapter, get_adapter_class
from .cancellation import CancellationToken, run_guarded
from .config import EngineConfig
from .connectors import WalletConnector
from .durable import DurableTokenRegistry
from .exceptions import ConnectionError, MultiWalletError, OperationCancelledError
from .models import (
    ChainId, Commitment, ConnectionStatus, DurableToken, PendingTransaction, PersistedSession,
    TransactionRequest, ValidityToken, WalletSession
)
from .persistence import MemorySessionPersistence, SessionPersistence
from .state_machine import ConnectionStateMachine
from .tracker import TransactionCallback, TransactionTracker
from .transport import TransportFactory

logger = logging.getLogger(__name__)

SessionCallback = Callable[[Optional[WalletSession], ConnectionStatus], None]


class SessionStore:
    """
    Process-wide wallet session.

    Call ``initialize()`` once at startup and ``teardown()`` on shutdown.
    Every network-touching method accepts a ``timeout`` (defaulting to the
    configured ``request_timeout``) and a ``CancellationToken``.
    """

    def __init__(
        self,
        config: EngineConfig,
        connectors: Dict[str, WalletConnector],
        persistence: Optional[SessionPersistence] = None,
        transport_factory: Optional[TransportFactory] = None,
        adapter_options: Optional[Dict[str, Dict[str, Any]]] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the store

        Args:
            config: Engine configuration with at least one family
            connectors: Connector id to connector handle
            persistence: Session record storage, in-memory by default
            transport_factory: Builds RPC transports for adapters
            adapter_options: Family name to extra adapter keyword arguments
            logger: Optional logger instance

        Raises:
            ValueError: If no family is configured or a family has no adapter
        """
        if not config.families:
            raise ValueError("EngineConfig must configure at least one chain family")
        for family in config.families:
            get_adapter_class(family)

        self.config = config
        self.connectors = dict(connectors)
        self.persistence = persistence or MemorySessionPersistence()
        self.transport_factory = transport_factory
        self.adapter_options = adapter_options or {}
        self.logger = logger or logging.getLogger(__name__)

        self.state_machine = ConnectionStateMachine(config, logger=self.logger)
        self.tracker = TransactionTracker(config, DurableTokenRegistry(), logger=self.logger)
        self.preferred: Optional[PersistedSession] = None

        self._adapters: Dict[str, ChainAdapter] = {}
        self._balance_task: Optional[asyncio.Task] = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionStatus:
        return self.state_machine.state

    @property
    def session(self) -> Optional[WalletSession]:
        return self.state_machine.session

    @property
    def error(self) -> Optional[Exception]:
        return self.state_machine.error

    @property
    def adapter(self) -> Optional[ChainAdapter]:
        return self.state_machine.adapter

    def get_adapter(self, family: str) -> ChainAdapter:
        """
        The adapter for a configured family, created on first use.

        Raises:
            ValueError: If the family is not configured
        """
        if family not in self._adapters:
            family_config = self.config.get_family(family)
            self._adapters[family] = create_adapter(
                family,
                family_config.chains,
                transport_factory=self.transport_factory,
                config=self.config,
                logger=self.logger,
                **self.adapter_options.get(family, {}),
            )
        return self._adapters[family]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> Optional[PersistedSession]:
        """
        Rehydrate the chain family and chain id of the last session.

        Nothing else is restored; the caller still has to ``connect``.

        Returns:
            The persisted record, or None if there was none or it no longer
            matches the configuration
        """
        self._initialized = True
        record = self.persistence.load()
        if record is None:
            return None
        if record.chain_family not in self.config.families:
            self.logger.warning(f"Ignoring persisted session for unconfigured family '{record.chain_family}'")
            return None
        if self.config.get_family(record.chain_family).get_chain(record.chain_id) is None:
            self.logger.warning(
                f"Ignoring persisted session for unsupported chain '{record.chain_id}' "
                f"of family '{record.chain_family}'"
            )
            return None
        self.preferred = record
        self.logger.info(f"Restored preferred chain {record.chain_family}:{record.chain_id}")
        return record

    async def teardown(self) -> None:
        """Cancel everything in flight and release the session"""
        self.state_machine.cancel_inflight()
        self.tracker.cancel_all()
        await self.stop_balance_refresh()
        await self.state_machine.reset()
        self.logger.info("Session store torn down")

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def _resolve_family(self, connector_id: str, family: Optional[str]) -> str:
        if family is not None:
            family_config = self.config.get_family(family)
            if family_config.connectors and connector_id not in family_config.connectors:
                raise ConnectionError(f"Connector '{connector_id}' is not enabled for family '{family}'")
            return family
        for name, family_config in self.config.families.items():
            if connector_id in family_config.connectors:
                return name
        raise ConnectionError(f"Connector '{connector_id}' is not enabled for any configured family")

    async def connect(
        self,
        connector_id: str,
        family: Optional[str] = None,
        chain_id: Optional[ChainId] = None,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None
    ) -> WalletSession:
        """
        Connect through a configured connector.

        An existing session, of any family, is disconnected first.

        Args:
            connector_id: Id of the connector to use
            family: Chain family; looked up from the connector id when omitted
            chain_id: Chain to connect to; the persisted preference or the
                family default when omitted
            timeout: Seconds before giving up
            cancel: Optional cancellation token

        Returns:
            The connected WalletSession
        """
        family = self._resolve_family(connector_id, family)
        connector = self.connectors.get(connector_id)
        if connector is None:
            raise ConnectionError(f"No connector registered under '{connector_id}'")
        adapter = self.get_adapter(family)

        if chain_id is None and self.preferred is not None and self.preferred.chain_family == family:
            chain_id = self.preferred.chain_id

        if self.state_machine.state is ConnectionStatus.CONNECTED:
            self.logger.info(f"Releasing {self.session.family} session before connecting {family}")
            await self.disconnect()

        session = await self.state_machine.connect(adapter, connector, chain_id, timeout=timeout, cancel=cancel)
        self._persist(session)
        return session

    async def disconnect(self) -> None:
        """Release the current session and forget the persisted record"""
        await self.state_machine.disconnect()
        self.persistence.clear()
        self.preferred = None

    async def switch_chain(
        self,
        chain_id: ChainId,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None
    ) -> WalletSession:
        """
        Raises:
            UnsupportedChainError: If the chain is not supported; the session
                stays connected on its current chain
        """
        session = await self.state_machine.switch_chain(chain_id, timeout=timeout, cancel=cancel)
        self._persist(session)
        return session

    def _persist(self, session: WalletSession) -> None:
        record = PersistedSession(chain_family=session.family, chain_id=session.chain_id)
        self.persistence.save(record)
        self.preferred = record

    def subscribe(self, callback: SessionCallback) -> Callable[[], None]:
        """
        Observe session changes as ``callback(session, status)``.

        Returns:
            A function that removes the subscription
        """
        def on_transition(_old: ConnectionStatus, new: ConnectionStatus, _error: Optional[Exception]) -> None:
            callback(self.session, new)
        return self.state_machine.add_listener(on_transition)

    # ------------------------------------------------------------------
    # Wallet operations
    # ------------------------------------------------------------------

    def _require_adapter(self) -> ChainAdapter:
        adapter = self.state_machine.adapter
        if self.state_machine.state is not ConnectionStatus.CONNECTED or adapter is None:
            raise ConnectionError("No wallet connected")
        return adapter

    def _timeout(self, timeout: Optional[float]) -> float:
        return timeout if timeout is not None else self.config.request_timeout

    async def get_balance(
        self, timeout: Optional[float] = None, cancel: Optional[CancellationToken] = None
    ) -> str:
        """Refresh and return the native balance of the connected address"""
        return await self.state_machine.refresh_balance(timeout=timeout, cancel=cancel)

    async def sign_message(
        self,
        message: Union[str, bytes],
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None
    ) -> str:
        adapter = self._require_adapter()
        return await run_guarded(
            adapter.sign_message(message, cancel=cancel), timeout=self._timeout(timeout), cancel=cancel
        )

    async def submit_transaction(
        self,
        tx: TransactionRequest,
        commitment: Commitment,
        token: Optional[ValidityToken] = None,
        durable: Optional[DurableToken] = None,
        durable_account: Optional[str] = None,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None
    ) -> PendingTransaction:
        """
        Submit through the active adapter and start tracking the transaction.

        Args:
            tx: Transaction payload
            commitment: Commitment level the transaction must reach
            token: Validity token to use instead of fetching one
            durable: Durable token to build the transaction with
            durable_account: Nonce account to read a durable token from
            timeout: Seconds before giving up
            cancel: Optional cancellation token
        """
        adapter = self._require_adapter()
        return await run_guarded(
            self.tracker.submit(
                adapter, tx, commitment, token=token, durable=durable,
                durable_account=durable_account, cancel=cancel,
            ),
            timeout=self._timeout(timeout),
            cancel=cancel,
        )

    async def send_transaction(
        self,
        tx: TransactionRequest,
        commitment: Commitment,
        max_resubmits: int = 0,
        durable: Optional[DurableToken] = None,
        durable_account: Optional[str] = None,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None
    ) -> PendingTransaction:
        """Submit and wait for a terminal status, resubmitting expired transactions"""
        adapter = self._require_adapter()
        return await self.tracker.send_and_confirm(
            adapter, tx, commitment, max_resubmits=max_resubmits, durable=durable,
            durable_account=durable_account, timeout=timeout, cancel=cancel,
        )

    async def wait_for_transaction(
        self,
        tx_id: str,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None
    ) -> PendingTransaction:
        """
        Raises:
            KeyError: If the transaction is not tracked
        """
        pending = self.tracker.get(tx_id)
        if pending is None:
            raise KeyError(f"Unknown transaction {tx_id}")
        return await self.tracker.wait_for_outcome(pending, timeout=timeout, cancel=cancel)

    def subscribe_transaction(self, tx_id: str, callback: TransactionCallback) -> Callable[[], None]:
        return self.tracker.subscribe(tx_id, callback)

    # ------------------------------------------------------------------
    # Balance refresh
    # ------------------------------------------------------------------

    def start_balance_refresh(self, interval: Optional[float] = None) -> asyncio.Task:
        """
        Pull the balance every ``interval`` seconds while connected.

        The loop ends by itself once the session is disconnected.
        """
        if self._balance_task is not None and not self._balance_task.done():
            return self._balance_task
        interval = interval if interval is not None else self.config.balance_refresh_interval
        self._balance_task = asyncio.ensure_future(self._balance_loop(interval))
        return self._balance_task

    async def stop_balance_refresh(self) -> None:
        task, self._balance_task = self._balance_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _balance_loop(self, interval: float) -> None:
        while True:
            state = self.state_machine.state
            if state is ConnectionStatus.DISCONNECTED or state is ConnectionStatus.ERROR:
                self.logger.debug("Balance refresh stopped, no session")
                return
            if state is ConnectionStatus.CONNECTED:
                try:
                    await self.state_machine.refresh_balance()
                except OperationCancelledError:
                    return
                except MultiWalletError as e:
                    rate_limited_log(
                        f"Balance refresh failed: {e}", key="balance-refresh", logger_instance=self.logger
                    )
            await asyncio.sleep(interval)
