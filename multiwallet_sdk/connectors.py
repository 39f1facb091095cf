"""
Wallet connectors.

A connector is the handle to a wallet (browser extension bridge, hardware
device, remote signer, local key). Adapters speak to it through a single
``request(method, params)`` call in the style of EIP-1193 and listen to its
events. The two local-key connectors here are reference implementations for
development and tests.
"""
import base64
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol

import base58
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from .exceptions import ProviderRpcError
from .transport import RpcTransport
from .utils import parse_quantity

logger = logging.getLogger(__name__)


class WalletConnector(Protocol):
    """Protocol for wallet connector handles"""
    connector_id: str

    async def request(self, method: str, params: Optional[Any] = None) -> Any:
        """Send a wallet request and return its result"""
        ...

    def on(self, event: str, callback: Callable[[Any], None]) -> None:
        """Subscribe to a wallet event"""
        ...

    def remove_listener(self, event: str, callback: Callable[[Any], None]) -> None:
        """Unsubscribe from a wallet event"""
        ...


class _EventEmitter:
    """Minimal event registry shared by the local connectors"""

    def __init__(self):
        self._event_handlers: Dict[str, List[Callable[[Any], None]]] = {}

    def on(self, event: str, callback: Callable[[Any], None]) -> None:
        self._event_handlers.setdefault(event, []).append(callback)

    def remove_listener(self, event: str, callback: Callable[[Any], None]) -> None:
        handlers = self._event_handlers.get(event, [])
        if callback in handlers:
            handlers.remove(callback)

    def emit(self, event: str, data: Any = None) -> None:
        for handler in list(self._event_handlers.get(event, [])):
            handler(data)


class LocalEvmConnector(_EventEmitter):
    """
    Account-model connector backed by a local private key.

    Signs with eth-account; ``eth_sendTransaction`` fills nonce, gas and gas
    price from the transport, signs locally and broadcasts the raw
    transaction.
    """

    def __init__(
        self,
        private_key: str,
        chain_ids: List[int],
        transport: Optional[RpcTransport] = None,
        connector_id: str = "local-evm",
        auto_approve: bool = True,
    ):
        """
        Args:
            private_key: Hex private key
            chain_ids: Chains this wallet knows about; the first is active
            transport: RPC transport used to broadcast transactions
            connector_id: Identifier referenced in configuration
            auto_approve: When False every request is rejected as if by the user
        """
        super().__init__()
        if not chain_ids:
            raise ValueError("LocalEvmConnector needs at least one chain id")
        self.account = Account.from_key(private_key)
        self.chain_ids = list(chain_ids)
        self.chain_id = self.chain_ids[0]
        self.transport = transport
        self.connector_id = connector_id
        self.auto_approve = auto_approve
        self.authorized = False

    @property
    def address(self) -> str:
        return self.account.address

    def _require_approval(self) -> None:
        if not self.auto_approve:
            raise ProviderRpcError(ProviderRpcError.USER_REJECTED, "User rejected the request")

    async def request(self, method: str, params: Optional[Any] = None) -> Any:
        params = params or []
        if method == "eth_requestAccounts":
            self._require_approval()
            self.authorized = True
            return [self.address]
        if method == "eth_accounts":
            return [self.address] if self.authorized else []
        if method == "eth_chainId":
            return hex(self.chain_id)
        if method == "wallet_switchEthereumChain":
            return self._switch_chain(params)
        if method == "personal_sign":
            return self._personal_sign(params)
        if method == "eth_sendTransaction":
            return await self._send_transaction(params)
        raise ProviderRpcError(ProviderRpcError.UNSUPPORTED_METHOD, f"Unsupported method: {method}")

    def _switch_chain(self, params: List[Dict[str, str]]) -> None:
        chain_id = parse_quantity(params[0]["chainId"])
        if chain_id not in self.chain_ids:
            raise ProviderRpcError(ProviderRpcError.UNRECOGNIZED_CHAIN, f"Unrecognized chain id {chain_id}")
        self._require_approval()
        self.chain_id = chain_id
        self.emit("chainChanged", hex(chain_id))
        return None

    def _personal_sign(self, params: List[str]) -> str:
        self._require_approval()
        message_hex = params[0]
        signable = encode_defunct(hexstr=message_hex)
        signed = self.account.sign_message(signable)
        return Web3.to_hex(signed.signature)

    async def _send_transaction(self, params: List[Dict[str, Any]]) -> str:
        if self.transport is None:
            raise ProviderRpcError(ProviderRpcError.UNSUPPORTED_METHOD, "No transport to broadcast transactions")
        self._require_approval()
        tx = dict(params[0])
        tx_dict: Dict[str, Any] = {
            "to": Web3.to_checksum_address(tx["to"]) if tx.get("to") else None,
            "value": parse_quantity(tx.get("value", 0)),
            "data": tx.get("data") or "0x",
            "chainId": self.chain_id,
        }
        if tx_dict["to"] is None:
            del tx_dict["to"]
        tx_dict["nonce"] = parse_quantity(
            tx["nonce"] if "nonce" in tx
            else await self.transport.request("eth_getTransactionCount", [self.address, "pending"])
        )
        tx_dict["gasPrice"] = parse_quantity(
            tx["gasPrice"] if "gasPrice" in tx else await self.transport.request("eth_gasPrice", [])
        )
        tx_dict["gas"] = parse_quantity(
            tx["gas"] if "gas" in tx
            else await self.transport.request("eth_estimateGas", [{**tx, "from": self.address}])
        )
        signed = self.account.sign_transaction(tx_dict)
        raw = getattr(signed, "raw_transaction", None) or signed.rawTransaction
        return await self.transport.request("eth_sendRawTransaction", [Web3.to_hex(raw)])

    def revoke(self) -> None:
        """Simulate the user revoking access from the wallet UI"""
        self.authorized = False
        self.emit("accountsChanged", [])


class LocalKeypairConnector(_EventEmitter):
    """
    Token-expiring-family connector backed by a local Ed25519 keypair.

    Public keys and signatures are base58 encoded. Transactions are signed
    over their canonical JSON serialization.
    """

    def __init__(
        self,
        private_key: Optional[bytes] = None,
        connector_id: str = "local-keypair",
        auto_approve: bool = True,
    ):
        """
        Args:
            private_key: 32-byte Ed25519 seed; a fresh key is generated when omitted
            connector_id: Identifier referenced in configuration
            auto_approve: When False every request is rejected as if by the user
        """
        super().__init__()
        if private_key is None:
            self._private_key = Ed25519PrivateKey.generate()
        else:
            self._private_key = Ed25519PrivateKey.from_private_bytes(private_key)
        public_bytes = self._private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        self.public_key = base58.b58encode(public_bytes).decode("ascii")
        self.connector_id = connector_id
        self.auto_approve = auto_approve
        self.connected = False

    def _require_approval(self) -> None:
        if not self.auto_approve:
            raise ProviderRpcError(ProviderRpcError.USER_REJECTED, "User rejected the request")

    def _require_connected(self) -> None:
        if not self.connected:
            raise ProviderRpcError(ProviderRpcError.UNAUTHORIZED, "Wallet is not connected")

    async def request(self, method: str, params: Optional[Any] = None) -> Any:
        params = params or {}
        if method == "connect":
            self._require_approval()
            self.connected = True
            return {"publicKey": self.public_key}
        if method == "disconnect":
            if self.connected:
                self.connected = False
                self.emit("disconnect")
            return None
        if method == "signMessage":
            self._require_connected()
            self._require_approval()
            message = base58.b58decode(params["message"])
            return {"signature": self._sign(message), "publicKey": self.public_key}
        if method == "signTransaction":
            self._require_connected()
            self._require_approval()
            transaction = dict(params["transaction"])
            signature = self._sign(serialize_transaction(transaction))
            transaction["signatures"] = [signature]
            return {"signature": signature, "transaction": transaction}
        raise ProviderRpcError(ProviderRpcError.UNSUPPORTED_METHOD, f"Unsupported method: {method}")

    def _sign(self, payload: bytes) -> str:
        return base58.b58encode(self._private_key.sign(payload)).decode("ascii")

    def revoke(self) -> None:
        """Simulate the user disconnecting the site from the wallet UI"""
        self.connected = False
        self.emit("disconnect")


def serialize_transaction(transaction: Dict[str, Any]) -> bytes:
    """Canonical bytes a keypair connector signs (signatures excluded)"""
    unsigned = {k: v for k, v in transaction.items() if k != "signatures"}
    return json.dumps(unsigned, sort_keys=True, separators=(",", ":")).encode("utf-8")


def encode_signed_transaction(transaction: Dict[str, Any]) -> str:
    """Base64 wire encoding of a signed keypair-connector transaction"""
    return base64.b64encode(json.dumps(transaction, sort_keys=True).encode("utf-8")).decode("ascii")


def decode_signed_transaction(encoded: str) -> Dict[str, Any]:
    return json.loads(base64.b64decode(encoded))


def verify_keypair_signature(public_key: str, payload: bytes, signature: str) -> bool:
    """Check an Ed25519 signature produced by a keypair connector"""
    verify_key = Ed25519PublicKey.from_public_bytes(base58.b58decode(public_key))
    try:
        verify_key.verify(base58.b58decode(signature), payload)
        return True
    except InvalidSignature:
        return False
