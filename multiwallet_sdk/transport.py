"""
Transport layer for chain RPC access.

Adapters talk to the network only through ``RpcTransport``. The default
``JsonRpcTransport`` posts JSON-RPC 2.0 requests over HTTP and falls back
through a chain's endpoints in order.
"""
import asyncio
import itertools
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import rpc_url_env_var
from .exceptions import NetworkError, ProviderRpcError, TimeoutError
from .models import Chain
from .utils import validate_rpc_url

logger = logging.getLogger(__name__)


class RpcTransport(ABC):
    """
    Abstract base class for RPC transports.

    Implementations raise ``NetworkError`` or ``TimeoutError`` for transport
    failures and ``ProviderRpcError`` for JSON-RPC error objects.
    """

    @abstractmethod
    async def request(self, method: str, params: Optional[Any] = None) -> Any:
        """
        Send one RPC request.

        Args:
            method: RPC method name
            params: Positional parameter list or parameter object

        Returns:
            The ``result`` member of the response
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close any open connections or resources."""
        pass


TransportFactory = Callable[[Chain], RpcTransport]


class JsonRpcTransport(RpcTransport):
    """JSON-RPC 2.0 over HTTP with retries and endpoint fallback"""

    def __init__(
        self,
        endpoints: List[str],
        retry_count: int = 3,
        timeout: float = 30.0,
        backoff_factor: float = 0.5,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the transport

        Args:
            endpoints: RPC URLs, primary first, fallbacks after
            retry_count: Number of HTTP-level retries per endpoint
            timeout: Timeout for HTTP requests in seconds
            backoff_factor: Backoff factor for HTTP-level retries
            logger: Optional logger instance

        Raises:
            ValueError: If no endpoint is given or an endpoint is not https
        """
        if not endpoints:
            raise ValueError("At least one RPC endpoint is required")
        self.endpoints = [validate_rpc_url(url, "endpoint") for url in endpoints]
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)
        self._ids = itertools.count(1)

        self.session = requests.Session()
        retries = Retry(
            total=retry_count,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["POST"],
            raise_on_status=False,
            connect=retry_count,
            read=retry_count,
        )
        self.session.mount("http://", HTTPAdapter(max_retries=retries))
        self.session.mount("https://", HTTPAdapter(max_retries=retries))

    @classmethod
    def for_chain(cls, chain: Chain, **kwargs) -> "JsonRpcTransport":
        return cls(list(chain.rpc_urls), **kwargs)

    async def request(self, method: str, params: Optional[Any] = None) -> Any:
        return await asyncio.to_thread(self._request_sync, method, params)

    def _request_sync(self, method: str, params: Optional[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params if params is not None else [],
        }
        last_error: Exception = NetworkError("No RPC endpoint available")

        for url in self.endpoints:
            self.logger.debug(f"RPC {method} -> {url}")
            try:
                response = self.session.post(url, json=payload, timeout=self.timeout)
            except requests.Timeout as e:
                last_error = TimeoutError(f"RPC {method} timed out at {url}: {e}")
                self.logger.warning(f"RPC endpoint {url} timed out, trying next endpoint")
                continue
            except requests.RequestException as e:
                last_error = NetworkError(f"RPC {method} failed at {url}: {e}")
                self.logger.warning(f"RPC endpoint {url} unreachable, trying next endpoint")
                continue

            if response.status_code == 429 or response.status_code >= 500:
                last_error = NetworkError(f"RPC {method} failed at {url}: HTTP {response.status_code}")
                self.logger.warning(f"RPC endpoint {url} returned {response.status_code}, trying next endpoint")
                continue
            if response.status_code >= 400:
                raise NetworkError(f"RPC {method} rejected by {url}: HTTP {response.status_code}")

            try:
                body = response.json()
            except ValueError as e:
                last_error = NetworkError(f"Invalid JSON from {url}: {e}")
                self.logger.warning(f"RPC endpoint {url} returned invalid JSON, trying next endpoint")
                continue

            if body.get("error"):
                error = body["error"]
                raise ProviderRpcError(
                    error.get("code", -32000),
                    error.get("message", "RPC error"),
                    error.get("data"),
                )
            return body.get("result")

        raise last_error

    def close(self) -> None:
        self.session.close()


def default_transport_factory(chain: Chain) -> RpcTransport:
    """
    Transport factory used when the caller does not supply one.

    ``MULTIWALLET_<FAMILY>_<CHAIN>_RPC_URL`` replaces the catalog endpoints.
    """
    override = os.environ.get(rpc_url_env_var(chain.family, chain.id))
    if override:
        return JsonRpcTransport([override])
    return JsonRpcTransport.for_chain(chain)
