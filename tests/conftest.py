"""
Pytest fixtures for the MultiWallet SDK tests.

Both chain families are simulated in memory: ``FakeEvmNetwork`` answers the
account-model JSON-RPC calls and ``FakeSolanaNetwork`` keeps a real
validity window of recent blockhashes that the tests advance by hand.
"""
import asyncio
import hashlib
from collections import deque
from typing import Any, Callable, Dict, List, Optional

import base58
import pytest
from web3 import Web3

from multiwallet_sdk._rate_limited_log import reset_rate_limits
from multiwallet_sdk.adapters import EvmAdapter, SolanaAdapter
from multiwallet_sdk.config import ChainRegistry, EngineConfig
from multiwallet_sdk.connectors import (
    LocalEvmConnector, LocalKeypairConnector, _EventEmitter, decode_signed_transaction,
    serialize_transaction, verify_keypair_signature
)
from multiwallet_sdk.exceptions import ProviderRpcError
from multiwallet_sdk.models import MAX_ACCEPTED_RANK, WINDOW_CAPACITY, Commitment, ValidityToken
from multiwallet_sdk.transport import RpcTransport

# Well-known development key, never holds real funds
TEST_PRIV_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TEST_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
TEST_RECIPIENT = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
TEST_KEYPAIR_SEED = bytes(range(32))
TEST_BALANCE_WEI = 1_500_000_000_000_000_000  # 1.5 ETH
TEST_BALANCE_LAMPORTS = 2_500_000_000  # 2.5 SOL


class FakeNetwork:
    """Common call recording and failure injection"""

    def __init__(self):
        self.calls: List[tuple] = []
        self._failures: Dict[str, List[Exception]] = {}

    def fail_next(self, method: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls of ``method`` raise ``error``"""
        self._failures.setdefault(method, []).extend([error] * times)

    def handle(self, method: str, params: Any) -> Any:
        self.calls.append((method, params))
        queued = self._failures.get(method)
        if queued:
            raise queued.pop(0)
        handler = getattr(self, f"rpc_{method}", None)
        if handler is None:
            raise ProviderRpcError(-32601, f"Method not found: {method}")
        return handler(params or [])

    def count(self, method: str) -> int:
        return sum(1 for called, _ in self.calls if called == method)


class FakeEvmNetwork(FakeNetwork):
    """In-memory account-model chain"""

    def __init__(self):
        super().__init__()
        self.block_number = 100
        self.finalized: Optional[int] = None
        self.balances: Dict[str, int] = {TEST_ADDRESS: TEST_BALANCE_WEI}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.raw_transactions: Dict[str, str] = {}

    def advance(self, blocks: int = 1) -> None:
        self.block_number += blocks

    def mine(self, tx_hash: str, status: int = 1) -> None:
        """Include a transaction in the next block"""
        self.block_number += 1
        self.receipts[tx_hash] = {
            "transactionHash": tx_hash,
            "blockNumber": hex(self.block_number),
            "status": hex(status),
        }

    def rpc_eth_getBalance(self, params):
        return hex(self.balances.get(Web3.to_checksum_address(params[0]), 0))

    def rpc_eth_blockNumber(self, params):
        return hex(self.block_number)

    def rpc_eth_getTransactionReceipt(self, params):
        return self.receipts.get(params[0])

    def rpc_eth_getBlockByNumber(self, params):
        if params[0] == "finalized":
            if self.finalized is None:
                raise ProviderRpcError(-32000, "finalized block tag not supported")
            return {"number": hex(self.finalized)}
        return {"number": hex(self.block_number)}

    def rpc_eth_getTransactionCount(self, params):
        return hex(len(self.raw_transactions))

    def rpc_eth_gasPrice(self, params):
        return hex(1_000_000_000)

    def rpc_eth_estimateGas(self, params):
        return hex(21000)

    def rpc_eth_sendRawTransaction(self, params):
        raw = params[0]
        tx_hash = Web3.to_hex(Web3.keccak(hexstr=raw))
        self.raw_transactions[tx_hash] = raw
        return tx_hash


def _blockhash(height: int) -> str:
    return base58.b58encode(hashlib.sha256(f"block-{height}".encode()).digest()).decode("ascii")


class FakeSolanaNetwork(FakeNetwork):
    """
    In-memory token-expiring chain.

    ``window`` holds the most recent WINDOW_CAPACITY blockhashes, newest last.
    Submitted transactions never land until ``confirm`` or ``fail`` is called.
    """

    # Ranks behind the newest blockhash returned for each commitment
    COMMITMENT_LAG = {"processed": 0, "confirmed": 1, "finalized": 31}

    def __init__(self, start_height: int = 1000):
        super().__init__()
        self.height = start_height
        self.window: deque = deque(
            (_blockhash(h) for h in range(start_height - WINDOW_CAPACITY + 1, start_height + 1)),
            maxlen=WINDOW_CAPACITY,
        )
        self.balances: Dict[str, int] = {}
        self.statuses: Dict[str, Dict[str, Any]] = {}
        self.sent: Dict[str, Dict[str, Any]] = {}
        self.nonce_accounts: Dict[str, Dict[str, str]] = {}
        self.advance_on_height_query = 0
        self.auto_confirm: Optional[str] = None

    # -- window control ---------------------------------------------------

    def advance(self, blocks: int = 1) -> None:
        for _ in range(blocks):
            self.height += 1
            self.window.append(_blockhash(self.height))

    def rank_of(self, blockhash: str) -> Optional[int]:
        """1-based rank of a blockhash, None once it fell out of the window"""
        for rank, value in enumerate(reversed(self.window), start=1):
            if value == blockhash:
                return rank
        return None

    def token_at_rank(self, rank: int, commitment: Commitment = Commitment.CONFIRMED) -> ValidityToken:
        return ValidityToken(
            value=self.window[-rank], rank=rank, observed_height=self.height, commitment=commitment
        )

    # -- transaction control ----------------------------------------------

    def confirm(self, signature: str, commitment: str = "confirmed") -> None:
        self.statuses[signature] = {"confirmationStatus": commitment, "err": None}

    def fail(self, signature: str, err: Any = None) -> None:
        self.statuses[signature] = {
            "confirmationStatus": "processed",
            "err": err or {"InstructionError": [0, "Custom"]},
        }

    def add_nonce_account(self, account: str, authority: str) -> str:
        value = _blockhash(-len(self.nonce_accounts) - 1)
        self.nonce_accounts[account] = {"blockhash": value, "authority": authority}
        return value

    def rotate_nonce(self, account: str) -> str:
        value = base58.b58encode(hashlib.sha256(self.nonce_accounts[account]["blockhash"].encode()).digest()).decode()
        self.nonce_accounts[account]["blockhash"] = value
        return value

    # -- RPC ----------------------------------------------------------------

    def rpc_getLatestBlockhash(self, params):
        commitment = params[0]["commitment"] if params else "finalized"
        rank = self.COMMITMENT_LAG[commitment] + 1
        return {
            "context": {"slot": self.height},
            "value": {
                "blockhash": self.window[-rank],
                "lastValidBlockHeight": self.height + MAX_ACCEPTED_RANK - rank,
            },
        }

    def rpc_getBlockHeight(self, params):
        height = self.height
        if self.advance_on_height_query:
            self.advance(self.advance_on_height_query)
        return height

    def rpc_isBlockhashValid(self, params):
        rank = self.rank_of(params[0])
        return {"context": {"slot": self.height}, "value": rank is not None and rank <= MAX_ACCEPTED_RANK}

    def rpc_getBalance(self, params):
        return {"context": {"slot": self.height}, "value": self.balances.get(params[0], 0)}

    def rpc_getAccountInfo(self, params):
        account = self.nonce_accounts.get(params[0])
        if account is None:
            return {"context": {"slot": self.height}, "value": None}
        return {
            "context": {"slot": self.height},
            "value": {"data": {"parsed": {"type": "initialized", "info": dict(account)}, "program": "nonce"}},
        }

    def rpc_sendTransaction(self, params):
        tx = decode_signed_transaction(params[0])
        signature = tx["signatures"][0]
        if not verify_keypair_signature(tx["feePayer"], serialize_transaction(tx), signature):
            raise ProviderRpcError(-32003, "Transaction signature verification failure")

        instructions = tx.get("instructions", [])
        if instructions and instructions[0].get("type") == "advanceNonceAccount":
            account = self.nonce_accounts.get(instructions[0]["nonceAccount"])
            if account is None or account["blockhash"] != tx["recentBlockhash"]:
                raise ProviderRpcError(-32002, "Nonce has advanced")
        else:
            rank = self.rank_of(tx["recentBlockhash"])
            if rank is None or rank > MAX_ACCEPTED_RANK:
                raise ProviderRpcError(-32002, "Blockhash not found")

        self.sent[signature] = tx
        if self.auto_confirm:
            self.confirm(signature, self.auto_confirm)
        return signature

    def rpc_getSignatureStatuses(self, params):
        return {"context": {"slot": self.height}, "value": [self.statuses.get(sig) for sig in params[0]]}


class FakeTransport(RpcTransport):
    """RpcTransport answering from a fake network"""

    def __init__(self, network: FakeNetwork, chain_id: Any = None):
        self.network = network
        self.chain_id = chain_id
        self.closed = False

    async def request(self, method: str, params: Optional[Any] = None) -> Any:
        return self.network.handle(method, params)

    def close(self) -> None:
        self.closed = True


class ScriptedConnector(_EventEmitter):
    """
    Connector whose answers are scripted per method.

    A response may be a value, an exception instance (raised) or a callable
    taking ``params``. Methods listed in ``hang`` never answer.
    """

    def __init__(self, connector_id: str = "scripted", responses: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.connector_id = connector_id
        self.responses: Dict[str, Any] = dict(responses or {})
        self.hang: set = set()
        self.requests: List[tuple] = []
        self.cancelled: List[str] = []

    async def request(self, method: str, params: Optional[Any] = None) -> Any:
        self.requests.append((method, params))
        if method in self.hang:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled.append(method)
                raise
        if method not in self.responses:
            raise ProviderRpcError(ProviderRpcError.UNSUPPORTED_METHOD, f"Unsupported method: {method}")
        response = self.responses[method]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(params)
        return response


def evm_wallet(connector_id: str = "scripted", chain_id: int = 1) -> ScriptedConnector:
    """A scripted EIP-1193 wallet that approves everything"""
    return ScriptedConnector(connector_id, {
        "eth_requestAccounts": [TEST_ADDRESS.lower()],
        "eth_chainId": hex(chain_id),
        "wallet_switchEthereumChain": None,
        "personal_sign": "0x" + "ab" * 65,
        "eth_sendTransaction": "0x" + "cd" * 32,
    })


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    reset_rate_limits()
    yield
    reset_rate_limits()


@pytest.fixture
def engine_config():
    """Configuration with both families and no real waiting"""
    return EngineConfig.from_registry(
        {"evm": ["X", "local-evm", "scripted"], "solana": ["local-keypair", "scripted-sol"]},
        request_timeout=5.0,
        network_retry_count=3,
        backoff_factor=0.0,
        poll_interval=0.0,
        balance_refresh_interval=0.01,
    )


@pytest.fixture
def evm_network():
    return FakeEvmNetwork()


@pytest.fixture
def solana_network():
    return FakeSolanaNetwork()


@pytest.fixture
def transports():
    """Every transport built by ``transport_factory``, in order"""
    return []


@pytest.fixture
def transport_factory(evm_network, solana_network, transports) -> Callable:
    def factory(chain):
        network = evm_network if chain.family == "evm" else solana_network
        transport = FakeTransport(network, chain.id)
        transports.append(transport)
        return transport
    return factory


@pytest.fixture
def evm_chains():
    return ChainRegistry.get_chains("evm")


@pytest.fixture
def solana_chains():
    return ChainRegistry.get_chains("solana")


@pytest.fixture
def evm_adapter(evm_chains, transport_factory, engine_config):
    return EvmAdapter(evm_chains, transport_factory=transport_factory, config=engine_config)


@pytest.fixture
def solana_adapter(solana_chains, transport_factory, engine_config):
    return SolanaAdapter(solana_chains, transport_factory=transport_factory, config=engine_config)


@pytest.fixture
def evm_connector(evm_network):
    """Local-key wallet registered as connector "X" """
    return LocalEvmConnector(
        TEST_PRIV_KEY, chain_ids=[1, 137, 11155111], transport=FakeTransport(evm_network), connector_id="X"
    )


@pytest.fixture
def keypair_connector(solana_network):
    connector = LocalKeypairConnector(TEST_KEYPAIR_SEED)
    solana_network.balances[connector.public_key] = TEST_BALANCE_LAMPORTS
    return connector


@pytest.fixture
def recipient_keypair():
    return LocalKeypairConnector(bytes(range(1, 33)))
