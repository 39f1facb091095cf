"""
Explicit cancellation for asynchronous wallet and network operations.

Every adapter call accepts an optional ``CancellationToken``. ``run_guarded``
races an awaitable against the token and a timeout and cancels the inner task
on either, so the callee can roll back its own state.
"""
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, TypeVar

from .exceptions import OperationCancelledError, TimeoutError

logger = logging.getLogger(__name__)

T = TypeVar('T')


class CancellationToken:
    """
    A caller-owned cancellation signal.

    A token created with a ``parent`` is cancelled whenever the parent is.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._cancelled = False
        self._event: Optional[asyncio.Event] = None
        self._callbacks: List[Callable[[], None]] = []
        self._parent = parent
        if parent is not None:
            parent.add_callback(self.cancel)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Cancel the token. Calling it again is a no-op."""
        if self._cancelled:
            return
        self._cancelled = True
        if self._event is not None:
            self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on cancellation, immediately if already cancelled."""
        if self._cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def detach(self) -> None:
        """Stop following the parent token."""
        if self._parent is not None:
            self._parent.remove_callback(self.cancel)
            self._parent = None

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelledError("Operation was cancelled")

    async def wait(self) -> None:
        """Wait until the token is cancelled."""
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()


async def run_guarded(
    awaitable: Awaitable[T],
    timeout: Optional[float] = None,
    cancel: Optional[CancellationToken] = None,
) -> T:
    """
    Await ``awaitable`` under a timeout and a cancellation token.

    Args:
        awaitable: The operation to run
        timeout: Seconds before giving up (None waits forever)
        cancel: Optional caller-supplied cancellation token

    Returns:
        The operation's result

    Raises:
        OperationCancelledError: If ``cancel`` fired first
        TimeoutError: If the timeout elapsed first
    """
    if cancel is not None and cancel.cancelled:
        # Close the coroutine so it is not reported as never awaited
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise OperationCancelledError("Operation was cancelled")

    task = asyncio.ensure_future(awaitable)
    waiters = {task}
    cancel_waiter = None
    if cancel is not None:
        cancel_waiter = asyncio.ensure_future(cancel.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass

    if cancel is not None and cancel.cancelled:
        logger.debug("Guarded operation cancelled by caller")
        raise OperationCancelledError("Operation was cancelled")
    raise TimeoutError(f"Operation timed out after {timeout}s")
