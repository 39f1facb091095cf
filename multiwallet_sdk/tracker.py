"""
Transaction confirmation tracker.

Acquires validity tokens, submits through the active adapter and decides,
per transaction id, whether it was confirmed, failed or expired before
inclusion. Only expired transactions are ever resubmitted, and always with a
strictly fresher token.
"""
import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set, TypeVar

from cachetools import TTLCache

from ._rate_limited_log import rate_limited_log
from .adapters.base import ChainAdapter
from .cancellation import CancellationToken, run_guarded
from .config import EngineConfig
from .durable import DurableTokenRegistry
from .exceptions import MultiWalletError, NetworkError, StaleTokenError, SubmissionError, TimeoutError
from .models import (
    Commitment, DurableToken, ExpirationModel, PendingTransaction, TransactionRequest,
    TransactionStatus, TransactionStatusReport, ValidityToken
)
from .utils import backoff_delay
from .validity import ensure_accepted, estimate_expiration, is_expired, is_fresher

logger = logging.getLogger(__name__)

T = TypeVar('T')

TransactionCallback = Callable[[PendingTransaction], None]


@dataclass
class _Tracked:
    pending: PendingTransaction
    adapter: ChainAdapter
    request: TransactionRequest
    landed: bool = False


class TransactionTracker:
    """
    Follows submitted transactions to a terminal status.

    Each transaction is tracked on its own; nothing assumes they confirm in
    submission order.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        durable_registry: Optional[DurableTokenRegistry] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Args:
            config: Engine configuration (retries, backoff, poll interval, history TTL)
            durable_registry: Shared registry of consumed durable tokens
            logger: Optional logger instance
        """
        self.config = config or EngineConfig()
        self.durable_registry = durable_registry or DurableTokenRegistry()
        self.logger = logger or logging.getLogger(__name__)

        self._lock = threading.RLock()
        self._active: Dict[str, _Tracked] = {}
        self._history: TTLCache = TTLCache(maxsize=1024, ttl=self.config.history_ttl)
        self._expired_tokens: TTLCache = TTLCache(maxsize=4096, ttl=self.config.history_ttl)
        self._subscribers: Dict[str, List[TransactionCallback]] = {}
        self._resubmitting: Set[str] = set()
        self._root_cancel = CancellationToken()

    # ------------------------------------------------------------------
    # Lookup and subscriptions
    # ------------------------------------------------------------------

    def get(self, tx_id: str) -> Optional[PendingTransaction]:
        """Tracked or recently finished transaction by id"""
        with self._lock:
            tracked = self._active.get(tx_id) or self._history.get(tx_id)
            return tracked.pending if tracked else None

    @property
    def pending(self) -> List[PendingTransaction]:
        with self._lock:
            return [t.pending for t in self._active.values()]

    def subscribe(self, tx_id: str, callback: TransactionCallback) -> Callable[[], None]:
        """
        Call ``callback`` once when the transaction reaches a terminal status.

        Fires immediately if it already has.

        Returns:
            A function that removes the subscription
        """
        with self._lock:
            tracked = self._active.get(tx_id) or self._history.get(tx_id)
            if tracked is None:
                raise KeyError(f"Unknown transaction {tx_id}")
            done = tracked.pending.is_terminal
            if not done:
                self._subscribers.setdefault(tx_id, []).append(callback)
        if done:
            callback(tracked.pending)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(tx_id, [])
                if callback in callbacks:
                    callbacks.remove(callback)
        return unsubscribe

    def _finalize(self, tracked: _Tracked) -> None:
        pending = tracked.pending
        with self._lock:
            self._active.pop(pending.tx_id, None)
            self._history[pending.tx_id] = tracked
            callbacks = self._subscribers.pop(pending.tx_id, [])
        self.logger.info(f"Transaction {pending.tx_id} is {pending.status.value}")
        for callback in callbacks:
            try:
                callback(pending)
            except Exception:
                self.logger.exception(f"Subscriber for transaction {pending.tx_id} failed")

    def _tracked(self, pending: PendingTransaction) -> _Tracked:
        with self._lock:
            tracked = self._active.get(pending.tx_id) or self._history.get(pending.tx_id)
        if tracked is None:
            raise KeyError(f"Transaction {pending.tx_id} is not tracked")
        return tracked

    # ------------------------------------------------------------------
    # Cancellation and retries
    # ------------------------------------------------------------------

    def _link(self, cancel: Optional[CancellationToken]) -> CancellationToken:
        """A token cancelled by either the caller or ``cancel_all``"""
        token = CancellationToken(parent=self._root_cancel)
        if cancel is not None:
            cancel.add_callback(token.cancel)
        return token

    def _unlink(self, token: CancellationToken, cancel: Optional[CancellationToken]) -> None:
        token.detach()
        if cancel is not None:
            cancel.remove_callback(token.cancel)

    def cancel_all(self) -> None:
        """Cancel every wait and poll in progress"""
        with self._lock:
            root, self._root_cancel = self._root_cancel, CancellationToken()
        root.cancel()

    async def _with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str,
        cancel: Optional[CancellationToken] = None
    ) -> T:
        """
        Run ``operation`` retrying NetworkError and TimeoutError with
        exponential backoff, up to ``network_retry_count`` attempts.
        """
        attempts = self.config.network_retry_count
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except (NetworkError, TimeoutError) as e:
                if attempt >= attempts:
                    rate_limited_log(
                        f"{description} failed after {attempts} attempts: {e}",
                        level="error",
                        key=f"giveup:{description}",
                        logger_instance=self.logger,
                    )
                    raise
                delay = backoff_delay(attempt, self.config.backoff_factor)
                rate_limited_log(
                    f"{description} failed ({e}), retrying in {delay:.2f}s",
                    key=f"retry:{description}",
                    logger_instance=self.logger,
                )
                await run_guarded(asyncio.sleep(delay), cancel=cancel)
        raise NetworkError(f"{description} failed")

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def acquire_token(
        self, adapter: ChainAdapter, commitment: Commitment, cancel: Optional[CancellationToken] = None
    ) -> ValidityToken:
        """
        Fetch a fresh validity token at an explicit commitment level.

        Raises:
            NetworkError: If the token cannot be fetched after retries
        """
        return await self._with_retry(
            lambda: adapter.get_validity_token(commitment, cancel=cancel),
            f"{adapter.family} token fetch",
            cancel,
        )

    async def _check_token(
        self, adapter: ChainAdapter, token: ValidityToken, cancel: Optional[CancellationToken]
    ) -> int:
        """
        Refuse tokens that are known to be expired before anything is sent.

        Returns:
            The current block height

        Raises:
            StaleTokenError: If the token is expired or past the accepted ranks
        """
        if token.value in self._expired_tokens:
            raise StaleTokenError(f"Token {token.value} already expired a transaction", token=token.value)
        height = await self._with_retry(
            lambda: adapter.get_block_height(Commitment.PROCESSED, cancel=cancel),
            f"{adapter.family} block height",
            cancel,
        )
        ensure_accepted(token, height)
        valid = await self._with_retry(
            lambda: adapter.is_token_valid(token, cancel=cancel),
            f"{adapter.family} token validity",
            cancel,
        )
        if not valid:
            raise StaleTokenError(f"Network reports token {token.value} as no longer valid", token=token.value)
        return height

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        adapter: ChainAdapter,
        tx: TransactionRequest,
        commitment: Commitment,
        token: Optional[ValidityToken] = None,
        durable: Optional[DurableToken] = None,
        durable_account: Optional[str] = None,
        cancel: Optional[CancellationToken] = None
    ) -> PendingTransaction:
        """
        Submit a transaction and start tracking it.

        Args:
            adapter: Connected adapter to submit through
            tx: Transaction payload
            commitment: Commitment the transaction must reach to count as confirmed
            token: Validity token to use; a fresh one is fetched when omitted
            durable: Durable token to build the transaction with
            durable_account: Nonce account to read a durable token from
            cancel: Optional cancellation token

        Returns:
            The PendingTransaction, status ``submitted``

        Raises:
            StaleTokenError: If the token is expired, past the accepted ranks or
                already consumed
            SubmissionError: If the wallet or network rejects the transaction
            UserRejectedError: If the user declines to sign
        """
        if not isinstance(commitment, Commitment):
            raise TypeError("commitment must be a Commitment")

        if durable is not None or durable_account is not None:
            return await self._submit_durable(adapter, tx, commitment, durable, durable_account, cancel)

        expiration = None
        height = None
        if adapter.expiration_model is ExpirationModel.VALIDITY_WINDOW:
            if token is None:
                token = await self.acquire_token(adapter, commitment, cancel)
            height = await self._check_token(adapter, token, cancel)
            expiration = estimate_expiration(token, height, self.config.advance_interval_range)
        else:
            token = None

        handle = await adapter.submit_transaction(tx, token=token, cancel=cancel)
        pending = PendingTransaction(
            tx_id=handle.tx_id,
            family=handle.family,
            chain_id=handle.chain_id,
            commitment=commitment,
            submitted_height=height if height is not None else handle.submitted_height,
            token=token,
            expiration=expiration,
        )
        self._track(pending, adapter, tx)
        return pending

    async def _submit_durable(
        self,
        adapter: ChainAdapter,
        tx: TransactionRequest,
        commitment: Commitment,
        durable: Optional[DurableToken],
        durable_account: Optional[str],
        cancel: Optional[CancellationToken]
    ) -> PendingTransaction:
        if durable is None:
            durable = await self._with_retry(
                lambda: adapter.get_durable_token(durable_account, commitment, cancel=cancel),
                f"{adapter.family} durable token fetch",
                cancel,
            )
            self.durable_registry.observe(durable)
        self.durable_registry.consume(durable)

        try:
            bound = adapter.bind_durable_token(tx, durable)
            handle = await adapter.submit_transaction(bound, token=None, cancel=cancel)
        except MultiWalletError as e:
            if isinstance(e, SubmissionError) and e.may_have_landed:
                self.logger.warning(
                    f"Durable token {durable.value} stays consumed, the broadcast may have reached the network"
                )
            else:
                self.durable_registry.release(durable)
            raise

        pending = PendingTransaction(
            tx_id=handle.tx_id,
            family=handle.family,
            chain_id=handle.chain_id,
            commitment=commitment,
            submitted_height=handle.submitted_height,
            durable_token=durable,
        )
        self._track(pending, adapter, tx)
        return pending

    def _track(self, pending: PendingTransaction, adapter: ChainAdapter, tx: TransactionRequest) -> None:
        with self._lock:
            self._active[pending.tx_id] = _Tracked(pending=pending, adapter=adapter, request=tx)
        mode = "durable" if pending.is_durable else (f"token {pending.token.value}" if pending.token else "no token")
        self.logger.info(f"Tracking transaction {pending.tx_id} ({mode}, {pending.commitment.value})")

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def poll_once(
        self, pending: PendingTransaction, cancel: Optional[CancellationToken] = None
    ) -> TransactionStatus:
        """
        Check a transaction once and advance its status.

        Returns:
            The status after this check

        Raises:
            NetworkError: If the network cannot be read after retries
        """
        if pending.is_terminal:
            return pending.status
        tracked = self._tracked(pending)
        adapter = tracked.adapter

        report = await self._read_status(adapter, pending, cancel)
        if self._apply_report(tracked, report):
            return pending.status
        if report.found:
            tracked.landed = True

        if (
            adapter.expiration_model is ExpirationModel.VALIDITY_WINDOW
            and not pending.is_durable
            and pending.token is not None
            and not tracked.landed
        ):
            height = await self._with_retry(
                lambda: adapter.get_block_height(Commitment.PROCESSED, cancel=cancel, chain_id=pending.chain_id),
                f"{adapter.family} block height",
                cancel,
            )
            pending.expiration = estimate_expiration(pending.token, height, self.config.advance_interval_range)
            if is_expired(pending.token, height):
                # The status read above may predate inclusion, look once more
                report = await self._read_status(adapter, pending, cancel)
                if self._apply_report(tracked, report):
                    return pending.status
                if report.found:
                    tracked.landed = True
                else:
                    self._expired_tokens[pending.token.value] = True
                    pending.advance(
                        TransactionStatus.EXPIRED,
                        f"Token {pending.token.value} passed last valid height {pending.token.last_valid_height}",
                    )
                    self._finalize(tracked)
        return pending.status

    async def _read_status(
        self, adapter: ChainAdapter, pending: PendingTransaction, cancel: Optional[CancellationToken]
    ) -> TransactionStatusReport:
        return await self._with_retry(
            lambda: adapter.get_transaction_status(pending.tx_id, cancel=cancel, chain_id=pending.chain_id),
            f"{adapter.family} status poll",
            cancel,
        )

    def _apply_report(self, tracked: _Tracked, report: TransactionStatusReport) -> bool:
        """Advance to a terminal status if the report shows one; True if it did"""
        pending = tracked.pending
        if not report.found:
            return False
        if report.error is not None:
            pending.advance(TransactionStatus.FAILED, report.error)
        elif report.commitment is not None and report.commitment.satisfies(pending.commitment):
            pending.advance(TransactionStatus.CONFIRMED)
        else:
            return False
        self._finalize(tracked)
        return True

    async def wait_for_outcome(
        self,
        pending: PendingTransaction,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None
    ) -> PendingTransaction:
        """
        Poll until the transaction is terminal.

        Args:
            pending: Transaction to follow
            timeout: Overall seconds to wait; None waits until terminal
            cancel: Optional cancellation token

        Raises:
            TimeoutError: If ``timeout`` elapses first
            OperationCancelledError: If cancelled
            NetworkError: If polling keeps failing past the retry budget
        """
        token = self._link(cancel)
        try:
            await run_guarded(self._poll_until_terminal(pending, token), timeout=timeout, cancel=token)
        finally:
            self._unlink(token, cancel)
        return pending

    async def _poll_until_terminal(self, pending: PendingTransaction, cancel: CancellationToken) -> None:
        while True:
            status = await self.poll_once(pending, cancel=cancel)
            if status.is_terminal:
                return
            await asyncio.sleep(self.config.poll_interval)

    # ------------------------------------------------------------------
    # Resubmission
    # ------------------------------------------------------------------

    async def resubmit(
        self,
        pending: PendingTransaction,
        commitment: Optional[Commitment] = None,
        cancel: Optional[CancellationToken] = None
    ) -> PendingTransaction:
        """
        Resubmit an expired transaction with a strictly fresher token.

        An expired transaction is replaced at most once, on the chain it was
        submitted to.

        Raises:
            SubmissionError: If the transaction is not expired (failed
                transactions are never retried), was already replaced, or the
                adapter has moved to another chain
            StaleTokenError: If the network hands back a token no fresher than
                the expired one
        """
        if pending.status is TransactionStatus.FAILED:
            raise SubmissionError(f"Transaction {pending.tx_id} failed and will not be retried")
        if pending.status is not TransactionStatus.EXPIRED:
            raise SubmissionError(
                f"Only expired transactions may be resubmitted, {pending.tx_id} is {pending.status.value}"
            )
        tracked = self._tracked(pending)
        adapter = tracked.adapter
        if str(adapter.chain.id) != str(pending.chain_id):
            raise SubmissionError(
                f"Transaction {pending.tx_id} was sent on {pending.chain_id}, "
                f"the {adapter.family} wallet is now on {adapter.chain.id}"
            )

        with self._lock:
            if pending.replaced_by is not None or pending.tx_id in self._resubmitting:
                raise SubmissionError(
                    f"Transaction {pending.tx_id} was already resubmitted"
                    + (f" as {pending.replaced_by}" if pending.replaced_by else "")
                )
            self._resubmitting.add(pending.tx_id)
        try:
            commitment = commitment or pending.commitment
            token = await self.acquire_token(adapter, commitment, cancel)
            if pending.token is not None and not is_fresher(token, pending.token):
                raise StaleTokenError(
                    f"Token {token.value} (last valid {token.last_valid_height}) is not fresher than "
                    f"expired {pending.token.value} (last valid {pending.token.last_valid_height})",
                    token=token.value,
                )

            replacement = await self.submit(adapter, tracked.request, commitment, token=token, cancel=cancel)
            replacement.replaces = pending.tx_id
            pending.replaced_by = replacement.tx_id
        finally:
            with self._lock:
                self._resubmitting.discard(pending.tx_id)

        self.logger.info(f"Resubmitted expired {pending.tx_id} as {replacement.tx_id}")
        return replacement

    async def send_and_confirm(
        self,
        adapter: ChainAdapter,
        tx: TransactionRequest,
        commitment: Commitment,
        max_resubmits: int = 0,
        durable: Optional[DurableToken] = None,
        durable_account: Optional[str] = None,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None
    ) -> PendingTransaction:
        """
        Submit, wait for the outcome and resubmit on expiry up to ``max_resubmits`` times.

        Returns:
            The last PendingTransaction, in a terminal status
        """
        pending = await self.submit(
            adapter, tx, commitment, durable=durable, durable_account=durable_account, cancel=cancel
        )
        attempts = 0
        while True:
            await self.wait_for_outcome(pending, timeout=timeout, cancel=cancel)
            if pending.status is not TransactionStatus.EXPIRED or attempts >= max_resubmits:
                return pending
            attempts += 1
            pending = await self.resubmit(pending, commitment, cancel=cancel)
