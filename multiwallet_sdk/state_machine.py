"""
Connection state machine.

Owns the connection status and the active WalletSession. All connects and
chain switches go through here so that exactly one of them is in flight at a
time and every failure leaves the machine in a well-defined state.
"""
import asyncio
import logging
import threading
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from .adapters.base import ChainAdapter
from .cancellation import CancellationToken, run_guarded
from .config import EngineConfig
from .connectors import WalletConnector
from .exceptions import (
    ConcurrentOperationError, ConnectionError, MultiWalletError, OperationCancelledError,
    StateTransitionError, TimeoutError, UnsupportedChainError, UserRejectedError
)
from .models import ChainId, ConnectionStatus, WalletSession

logger = logging.getLogger(__name__)

StateListener = Callable[[ConnectionStatus, ConnectionStatus, Optional[Exception]], None]

TRANSITIONS: Dict[ConnectionStatus, FrozenSet[ConnectionStatus]] = {
    ConnectionStatus.DISCONNECTED: frozenset({ConnectionStatus.CONNECTING}),
    ConnectionStatus.CONNECTING: frozenset({
        ConnectionStatus.CONNECTED, ConnectionStatus.ERROR, ConnectionStatus.DISCONNECTED
    }),
    ConnectionStatus.CONNECTED: frozenset({ConnectionStatus.SWITCHING, ConnectionStatus.DISCONNECTED}),
    ConnectionStatus.SWITCHING: frozenset({
        ConnectionStatus.CONNECTED, ConnectionStatus.ERROR, ConnectionStatus.DISCONNECTED
    }),
    ConnectionStatus.ERROR: frozenset({ConnectionStatus.DISCONNECTED, ConnectionStatus.CONNECTING}),
}

_IN_FLIGHT = (ConnectionStatus.CONNECTING, ConnectionStatus.SWITCHING)


class ConnectionStateMachine:
    """
    Serializes connect / switch / disconnect against a chain adapter.

    ``state`` is always exactly one ConnectionStatus. On ``error`` the
    triggering exception is kept in ``error`` until the next transition.
    """

    def __init__(self, config: Optional[EngineConfig] = None, logger: Optional[logging.Logger] = None):
        self.config = config or EngineConfig()
        self.logger = logger or logging.getLogger(__name__)

        self._lock = threading.RLock()
        self._state = ConnectionStatus.DISCONNECTED
        self._error: Optional[Exception] = None
        self._listeners: List[StateListener] = []
        self._op_cancel: Optional[CancellationToken] = None
        # Bumped whenever an in-flight operation is superseded
        self._generation = 0

        self.adapter: Optional[ChainAdapter] = None
        self.session: Optional[WalletSession] = None

    @property
    def state(self) -> ConnectionStatus:
        return self._state

    @property
    def error(self) -> Optional[Exception]:
        return self._error

    @property
    def busy(self) -> bool:
        return self._state in _IN_FLIGHT

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """
        Observe every transition as ``listener(old, new, error)``.

        Returns:
            A function that removes the listener
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return unsubscribe

    def _transition(self, new_state: ConnectionStatus, error: Optional[Exception] = None) -> None:
        with self._lock:
            old_state = self._state
            if new_state not in TRANSITIONS[old_state]:
                raise StateTransitionError(f"Illegal transition {old_state.value} -> {new_state.value}")
            self._state = new_state
            self._error = error
            if self.session is not None:
                self.session = self.session.model_copy(update={"status": new_state})
            listeners = list(self._listeners)

        if error is not None:
            self.logger.info(f"Connection {old_state.value} -> {new_state.value} ({type(error).__name__}: {error})")
        else:
            self.logger.info(f"Connection {old_state.value} -> {new_state.value}")
        for listener in listeners:
            try:
                listener(old_state, new_state, error)
            except Exception:
                self.logger.exception("Connection state listener failed")

    def _settle(self, generation: int, new_state: ConnectionStatus, error: Optional[Exception] = None) -> bool:
        """Transition only if the operation that started ``generation`` is still current"""
        with self._lock:
            if generation != self._generation:
                return False
            if new_state is not self._state:
                self._transition(new_state, error)
            elif error is not None:
                self._error = error
            return True

    def _begin(self, target: ConnectionStatus, cancel: Optional[CancellationToken]) -> Tuple[int, CancellationToken]:
        self._generation += 1
        self._op_cancel = CancellationToken(parent=cancel)
        self._transition(target)
        return self._generation, self._op_cancel

    def _finish(self, op_cancel: CancellationToken) -> None:
        with self._lock:
            op_cancel.detach()
            if self._op_cancel is op_cancel:
                self._op_cancel = None

    def _timeout(self, timeout: Optional[float]) -> float:
        return timeout if timeout is not None else self.config.request_timeout

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def connect(
        self,
        adapter: ChainAdapter,
        connector: WalletConnector,
        chain_id: Optional[ChainId] = None,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None
    ) -> WalletSession:
        """
        Connect ``adapter`` to the wallet behind ``connector``.

        Args:
            adapter: Adapter of the family to connect
            connector: Wallet connector handle
            chain_id: Chain to connect to; the adapter's default when omitted
            timeout: Seconds before giving up, defaults to ``request_timeout``
            cancel: Optional cancellation token

        Returns:
            The new WalletSession

        Raises:
            ConcurrentOperationError: If a connect or switch is in flight
            ConnectionError: If already connected, or the wallet fails
            TimeoutError: If the timeout elapses; the previous state is restored
            OperationCancelledError: If cancelled; the machine ends disconnected
        """
        with self._lock:
            if self.busy:
                raise ConcurrentOperationError(f"Cannot connect while {self._state.value}")
            if self._state is ConnectionStatus.CONNECTED:
                raise ConnectionError("Already connected, disconnect first")
            previous_state, previous_error = self._state, self._error
            generation, op_cancel = self._begin(ConnectionStatus.CONNECTING, cancel)

        try:
            session = await run_guarded(
                adapter.connect(connector, chain_id=chain_id, cancel=op_cancel),
                timeout=self._timeout(timeout),
                cancel=op_cancel,
            )
            if not adapter.is_connected:
                raise ConnectionError("Wallet dropped the session while connecting")
        except TimeoutError:
            self._settle(generation, previous_state, previous_error)
            raise
        except (OperationCancelledError, asyncio.CancelledError):
            self._settle(generation, ConnectionStatus.DISCONNECTED)
            raise
        except MultiWalletError as e:
            self._settle(generation, ConnectionStatus.ERROR, e)
            raise
        except Exception as e:
            wrapped = ConnectionError(f"Unexpected error while connecting: {e}")
            self._settle(generation, ConnectionStatus.ERROR, wrapped)
            raise wrapped from e
        finally:
            self._finish(op_cancel)

        with self._lock:
            # Torn down while the wallet was answering
            superseded = generation != self._generation
            if not superseded:
                self.adapter = adapter
                self.session = session
                adapter.set_session_listener(self.session_lost)
                self._transition(ConnectionStatus.CONNECTED)
        if superseded:
            await adapter.disconnect()
            raise OperationCancelledError("Connection was torn down before it completed")
        return self.session

    async def switch_chain(
        self,
        chain_id: ChainId,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None
    ) -> WalletSession:
        """
        Switch the connected wallet to another chain of the same family.

        Raises:
            UnsupportedChainError: If the adapter does not support ``chain_id``;
                the machine stays connected
            ConcurrentOperationError: If a connect or switch is in flight
            ConnectionError: If no wallet is connected
            UserRejectedError: If the user declines; the machine returns to connected
            TimeoutError: If the timeout elapses; the machine returns to connected
            OperationCancelledError: If cancelled; the machine returns to connected
        """
        with self._lock:
            if self.busy:
                raise ConcurrentOperationError(f"Cannot switch chain while {self._state.value}")
            if self._state is not ConnectionStatus.CONNECTED or self.adapter is None:
                raise ConnectionError("No wallet connected")
            adapter = self.adapter
            if not adapter.is_chain_supported(chain_id):
                supported = ", ".join(str(c.id) for c in adapter.chains)
                raise UnsupportedChainError(
                    f"Chain '{chain_id}' is not supported by the {adapter.family} adapter. Supported: {supported}",
                    chain_id=chain_id,
                )
            generation, op_cancel = self._begin(ConnectionStatus.SWITCHING, cancel)

        try:
            await run_guarded(
                adapter.switch_chain(chain_id, cancel=op_cancel),
                timeout=self._timeout(timeout),
                cancel=op_cancel,
            )
        except (TimeoutError, OperationCancelledError, UserRejectedError, UnsupportedChainError, asyncio.CancelledError):
            self._settle(generation, ConnectionStatus.CONNECTED)
            raise
        except MultiWalletError as e:
            await self._fail_switch(generation, adapter, e)
            raise
        except Exception as e:
            wrapped = ConnectionError(f"Unexpected error while switching chain: {e}")
            await self._fail_switch(generation, adapter, wrapped)
            raise wrapped from e
        finally:
            self._finish(op_cancel)

        with self._lock:
            if generation != self._generation or not adapter.is_connected:
                raise ConnectionError("Session ended while switching chain")
            self.session = self.session.model_copy(update={"chain_id": adapter.chain.id, "balance": "0"})
            self._transition(ConnectionStatus.CONNECTED)
            return self.session

    async def _fail_switch(self, generation: int, adapter: ChainAdapter, error: Exception) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self.session = None
            self.adapter = None
            self._transition(ConnectionStatus.ERROR, error)
        adapter.set_session_listener(None)
        await adapter.disconnect()

    async def disconnect(self) -> None:
        """
        Release the session. A no-op when already disconnected.

        Raises:
            ConcurrentOperationError: If a connect or switch is in flight
        """
        with self._lock:
            if self._state is ConnectionStatus.DISCONNECTED:
                return
            if self.busy:
                raise ConcurrentOperationError(f"Cannot disconnect while {self._state.value}")
            adapter = self._clear()
            self._transition(ConnectionStatus.DISCONNECTED)
        if adapter is not None:
            await adapter.disconnect()

    def session_lost(self, reason: str = "session lost") -> None:
        """Handle an out-of-band revocation reported by the adapter"""
        with self._lock:
            if self._state not in (ConnectionStatus.CONNECTED, ConnectionStatus.SWITCHING):
                return
            self.logger.warning(f"Wallet session lost: {reason}")
            self._generation += 1
            if self._op_cancel is not None:
                self._op_cancel.cancel()
            self._clear()
            self._transition(ConnectionStatus.DISCONNECTED)

    async def reset(self) -> None:
        """Cancel whatever is in flight and force the machine to disconnected"""
        with self._lock:
            self._generation += 1
            if self._op_cancel is not None:
                self._op_cancel.cancel()
            adapter = self._clear()
            if self._state is not ConnectionStatus.DISCONNECTED:
                self._transition(ConnectionStatus.DISCONNECTED)
        if adapter is not None:
            await adapter.disconnect()

    def cancel_inflight(self) -> bool:
        """
        Cancel the in-flight connect or switch, if any.

        Returns:
            True if an operation was cancelled
        """
        with self._lock:
            if self._op_cancel is None:
                return False
            self._op_cancel.cancel()
            return True

    async def refresh_balance(
        self, timeout: Optional[float] = None, cancel: Optional[CancellationToken] = None
    ) -> str:
        """
        Re-read the native balance of the connected address.

        Raises:
            ConnectionError: If no wallet is connected
            NetworkError: If the balance cannot be read
        """
        with self._lock:
            if self._state is not ConnectionStatus.CONNECTED or self.adapter is None:
                raise ConnectionError("No wallet connected")
            adapter, session = self.adapter, self.session

        balance = await run_guarded(
            adapter.get_balance(session.address, cancel=cancel),
            timeout=self._timeout(timeout),
            cancel=cancel,
        )
        with self._lock:
            current = self.session
            if current is not None and current.address == session.address and current.chain_id == session.chain_id:
                self.session = current.model_copy(update={"balance": balance})
        return balance

    def _clear(self) -> Optional[ChainAdapter]:
        adapter = self.adapter
        if adapter is not None:
            adapter.set_session_listener(None)
        self.adapter = None
        self.session = None
        return adapter
