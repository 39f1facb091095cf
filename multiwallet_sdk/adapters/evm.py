"""
Account-model (EVM) chain adapter.

Wallet requests follow EIP-1193; chain reads go through the JSON-RPC
transport. Transactions carry no expiring token, so the tracker resolves
them only to confirmed or failed.
"""
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from web3 import Web3

from ..cancellation import CancellationToken
from ..connectors import WalletConnector
from ..exceptions import (
    ConnectionError, MultiWalletError, NetworkError, ProviderRpcError,
    SigningRejectedError, SubmissionError, TimeoutError, UnsupportedChainError
)
from ..models import (
    ChainId, Commitment, ConnectionStatus, ExpirationModel, TransactionHandle,
    TransactionRequest, TransactionStatusReport, ValidityToken, WalletSession
)
from ..transport import RpcTransport
from ..utils import format_units, parse_quantity
from .base import ChainAdapter

NameResolver = Callable[[str], Awaitable[Optional[str]]]


class EvmAdapter(ChainAdapter):
    """Adapter for EVM chains (Ethereum, Polygon, Base, ...)"""

    family = "evm"
    expiration_model = ExpirationModel.NONE

    def __init__(self, *args, name_resolver: Optional[NameResolver] = None, **kwargs):
        """
        Args:
            *args: Passed to ChainAdapter
            name_resolver: Optional coroutine mapping an address to a naming-service alias
            **kwargs: Passed to ChainAdapter
        """
        super().__init__(*args, **kwargs)
        self.name_resolver = name_resolver

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(
        self,
        connector: WalletConnector,
        chain_id: Optional[ChainId] = None,
        cancel: Optional[CancellationToken] = None
    ) -> WalletSession:
        if chain_id is not None and not self.is_chain_supported(chain_id):
            raise UnsupportedChainError(f"Chain '{chain_id}' is not supported by the evm adapter", chain_id=chain_id)

        transport = None
        try:
            accounts = await self._wallet_request(connector, "eth_requestAccounts", cancel=cancel)
            if not accounts:
                raise ConnectionError("Wallet returned no accounts")
            address = Web3.to_checksum_address(accounts[0])

            wallet_chain_id = parse_quantity(await self._wallet_request(connector, "eth_chainId", cancel=cancel))
            if chain_id is not None:
                target = int(chain_id)
            elif self.is_chain_supported(wallet_chain_id):
                target = wallet_chain_id
            else:
                target = int(self.chains[0].id)

            if target != wallet_chain_id:
                await self._request_switch(connector, target, cancel)

            chain = self.get_chain(target)
            transport = self.transport_factory(chain)
            name = await self._lookup_name(address, cancel)
        except BaseException as e:
            # Nothing is committed before this point, closing the transport is the whole rollback
            if transport is not None:
                transport.close()
            if isinstance(e, ProviderRpcError):
                raise self._map_wallet_error(e, ConnectionError) from e
            if isinstance(e, Exception) and not isinstance(e, MultiWalletError):
                raise ConnectionError(f"Failed to connect evm wallet: {e}") from e
            raise

        self.connector = connector
        self.address = address
        self.chain = chain
        self.transport = transport
        self._attach_listeners(connector)
        self.logger.info(f"Connected evm wallet {address} on chain {chain.id}")

        return WalletSession(
            address=address,
            chain_id=chain.id,
            family=self.family,
            connector_id=getattr(connector, "connector_id", "unknown"),
            status=ConnectionStatus.CONNECTED,
            name=name,
        )

    async def disconnect(self) -> None:
        if not self.is_connected:
            return
        self.logger.info(f"Disconnecting evm wallet {self.address}")
        self._release()

    async def switch_chain(self, chain_id: ChainId, cancel: Optional[CancellationToken] = None) -> None:
        self._require_connected()
        chain = self.get_chain(chain_id)
        if str(chain.id) == str(self.chain.id):
            return

        await self._request_switch(self.connector, int(chain.id), cancel)
        transport = self.transport_factory(chain)

        old_transport = self.transport
        self.transport = transport
        self.chain = chain
        if old_transport is not None:
            old_transport.close()
        self.logger.info(f"Switched evm wallet to chain {chain.id}")

    async def _request_switch(
        self, connector: WalletConnector, chain_id: int, cancel: Optional[CancellationToken]
    ) -> None:
        try:
            await self._wallet_request(
                connector, "wallet_switchEthereumChain", [{"chainId": hex(chain_id)}], cancel=cancel
            )
        except ProviderRpcError as e:
            mapped = self._map_wallet_error(e, ConnectionError)
            if isinstance(mapped, UnsupportedChainError):
                mapped.chain_id = chain_id
            raise mapped from e

    async def _lookup_name(self, address: str, cancel: Optional[CancellationToken]) -> Optional[str]:
        try:
            return await self.resolve_name(address, cancel=cancel)
        except MultiWalletError as e:
            self.logger.warning(f"Name resolution failed for {address}: {e}")
            return None

    async def resolve_name(self, address: str, cancel: Optional[CancellationToken] = None) -> Optional[str]:
        if self.name_resolver is None:
            return None
        return await self.name_resolver(address)

    # ------------------------------------------------------------------
    # Wallet events
    # ------------------------------------------------------------------

    def _attach_listeners(self, connector: WalletConnector) -> None:
        connector.on("accountsChanged", self._on_accounts_changed)
        connector.on("disconnect", self._on_disconnect)

    def _detach_listeners(self, connector: WalletConnector) -> None:
        connector.remove_listener("accountsChanged", self._on_accounts_changed)
        connector.remove_listener("disconnect", self._on_disconnect)

    def _on_accounts_changed(self, accounts: List[str]) -> None:
        if not accounts:
            self._report_session_lost("wallet revoked account access")
        elif Web3.to_checksum_address(accounts[0]) != self.address:
            self._report_session_lost("wallet switched to a different account")

    def _on_disconnect(self, _data: Any = None) -> None:
        self._report_session_lost("wallet disconnected")

    # ------------------------------------------------------------------
    # Reads, signing and submission
    # ------------------------------------------------------------------

    async def get_balance(self, address: str, cancel: Optional[CancellationToken] = None) -> str:
        if not Web3.is_address(address):
            raise ValueError(f"Invalid evm address: {address}")
        raw = await self._read("eth_getBalance", [Web3.to_checksum_address(address), "latest"], cancel=cancel)
        try:
            wei = parse_quantity(raw)
        except ValueError as e:
            raise NetworkError(f"Unexpected eth_getBalance result: {raw!r}") from e
        return format_units(wei, self.chain.native_currency.decimals)

    async def sign_message(self, message: Union[str, bytes], cancel: Optional[CancellationToken] = None) -> str:
        self._require_connected()
        payload = message.encode("utf-8") if isinstance(message, str) else message
        try:
            return await self._wallet_request(
                self.connector, "personal_sign", [Web3.to_hex(payload), self.address], cancel=cancel
            )
        except ProviderRpcError as e:
            raise SigningRejectedError(f"Wallet refused to sign: {e}") from e

    async def submit_transaction(
        self,
        tx: TransactionRequest,
        token: Optional[ValidityToken] = None,
        cancel: Optional[CancellationToken] = None
    ) -> TransactionHandle:
        self._require_connected()
        params: Dict[str, Any] = {"from": self.address, "value": hex(tx.value)}
        if tx.to:
            if not Web3.is_address(tx.to):
                raise SubmissionError(f"Invalid recipient address: {tx.to}")
            params["to"] = Web3.to_checksum_address(tx.to)
        if tx.data:
            params["data"] = tx.data
        params.update(tx.extra)

        height = await self.get_block_height(cancel=cancel)
        try:
            tx_hash = await self._wallet_request(self.connector, "eth_sendTransaction", [params], cancel=cancel)
        except ProviderRpcError as e:
            raise self._map_wallet_error(e, SubmissionError) from e
        except TimeoutError as e:
            # The wallet signs and broadcasts in one step, a silent wallet may already have sent
            raise SubmissionError(f"Wallet did not answer eth_sendTransaction: {e}", may_have_landed=True) from e
        if not isinstance(tx_hash, str) or not tx_hash:
            raise SubmissionError(f"Wallet returned no transaction hash: {tx_hash!r}", may_have_landed=True)

        self.logger.info(f"Submitted evm transaction {tx_hash} at block {height}")
        return TransactionHandle(
            tx_id=tx_hash, family=self.family, chain_id=self.chain.id, submitted_height=height
        )

    async def get_transaction_status(
        self,
        tx_id: str,
        cancel: Optional[CancellationToken] = None,
        chain_id: Optional[ChainId] = None
    ) -> TransactionStatusReport:
        transport = self._transport_for(chain_id)
        receipt = await self._read("eth_getTransactionReceipt", [tx_id], cancel=cancel, transport=transport)
        if not receipt:
            return TransactionStatusReport(found=False)
        try:
            reverted = parse_quantity(receipt.get("status", "0x1")) == 0
            block = None if reverted else parse_quantity(receipt["blockNumber"])
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise NetworkError(f"Unexpected receipt for {tx_id}: {receipt!r}") from e
        if reverted:
            return TransactionStatusReport(found=True, commitment=Commitment.PROCESSED, error="Transaction reverted")

        finalized = await self._finalized_block(cancel, transport)
        if finalized is not None and finalized >= block:
            return TransactionStatusReport(found=True, commitment=Commitment.FINALIZED)

        latest = await self._latest_block(cancel, transport)
        if latest - block >= self.config.confirmation_depth:
            return TransactionStatusReport(found=True, commitment=Commitment.CONFIRMED)
        return TransactionStatusReport(found=True, commitment=Commitment.PROCESSED)

    async def get_block_height(
        self,
        commitment: Commitment = Commitment.PROCESSED,
        cancel: Optional[CancellationToken] = None,
        chain_id: Optional[ChainId] = None
    ) -> int:
        transport = self._transport_for(chain_id)
        if commitment is Commitment.FINALIZED:
            finalized = await self._finalized_block(cancel, transport)
            if finalized is not None:
                return finalized
        return await self._latest_block(cancel, transport)

    async def _latest_block(self, cancel: Optional[CancellationToken], transport: Optional[RpcTransport]) -> int:
        raw = await self._read("eth_blockNumber", [], cancel=cancel, transport=transport)
        try:
            return parse_quantity(raw)
        except (TypeError, ValueError) as e:
            raise NetworkError(f"Unexpected eth_blockNumber result: {raw!r}") from e

    async def _finalized_block(
        self, cancel: Optional[CancellationToken], transport: Optional[RpcTransport] = None
    ) -> Optional[int]:
        """Number of the latest finalized block, None on chains without the tag"""
        try:
            block = await self._rpc("eth_getBlockByNumber", ["finalized", False], cancel=cancel, transport=transport)
        except ProviderRpcError:
            return None
        if not block:
            return None
        try:
            return parse_quantity(block["number"])
        except (KeyError, TypeError, ValueError) as e:
            raise NetworkError(f"Unexpected finalized block: {block!r}") from e
