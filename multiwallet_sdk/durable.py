"""
Bookkeeping for durable (nonce-account) tokens.

A durable token is consumed by the first transaction that lands with it; the
nonce account then rotates to a new value and the old one is dead for good.
The registry refuses to hand out a value twice, and refuses values it has
seen the account rotate away from. Entries age out after ``ttl`` seconds.
"""
import logging
import threading
import time
from typing import Callable, Dict

from cachetools import TTLCache

from .exceptions import StaleTokenError
from .models import DurableToken

logger = logging.getLogger(__name__)


class DurableTokenRegistry:
    """Tracks which durable token values have been used per nonce account"""

    def __init__(self, ttl: float = 3600.0, maxsize: int = 4096, timer: Callable[[], float] = time.monotonic):
        """
        Args:
            ttl: Seconds a consumed or retired value is remembered
            maxsize: Upper bound on remembered values
            timer: Clock the TTL is measured with
        """
        self._lock = threading.RLock()
        self._consumed: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)
        self._retired: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)
        self._on_chain: Dict[str, str] = {}

    def observe(self, token: DurableToken) -> None:
        """
        Record the value an on-chain read found in a nonce account.

        Only values read from the chain belong here. When the account moved on
        from the previously read value, that value is retired.
        """
        with self._lock:
            previous = self._on_chain.get(token.nonce_account)
            if previous is not None and previous != token.value:
                logger.debug(f"Nonce account {token.nonce_account} rotated {previous} -> {token.value}")
                self._retired[(token.nonce_account, previous)] = True
            self._on_chain[token.nonce_account] = token.value

    def is_consumed(self, token: DurableToken) -> bool:
        with self._lock:
            return (token.nonce_account, token.value) in self._consumed

    def is_retired(self, token: DurableToken) -> bool:
        with self._lock:
            return (token.nonce_account, token.value) in self._retired

    def ensure_available(self, token: DurableToken) -> None:
        """
        Raises:
            StaleTokenError: If the token was already used for a submission or
                the account has rotated past it
        """
        with self._lock:
            if self.is_consumed(token):
                raise StaleTokenError(
                    f"Durable token {token.value} of {token.nonce_account} was already used; "
                    "wait for the nonce account to advance",
                    token=token.value,
                )
            if self.is_retired(token):
                raise StaleTokenError(
                    f"Nonce account {token.nonce_account} has rotated past {token.value}",
                    token=token.value,
                )

    def consume(self, token: DurableToken) -> None:
        """
        Mark a token as used by a submission.

        Raises:
            StaleTokenError: If the token was already used or retired
        """
        with self._lock:
            self.ensure_available(token)
            self._consumed[(token.nonce_account, token.value)] = True

    def release(self, token: DurableToken) -> None:
        """Undo ``consume`` for a submission that never reached the network"""
        with self._lock:
            self._consumed.pop((token.nonce_account, token.value), None)
