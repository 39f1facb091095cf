"""
Token-expiring (Solana) chain adapter.

Every transaction references a recent blockhash. The network accepts a
blockhash only while it is among the most recent MAX_ACCEPTED_RANK entries
of its window, so the adapter reports each token together with its rank and
the block height it was observed at.
"""
from typing import Any, Dict, List, Optional, Union

import base58

from ..cancellation import CancellationToken
from ..connectors import WalletConnector, encode_signed_transaction
from ..exceptions import (
    ConnectionError, MultiWalletError, NetworkError, ProviderRpcError,
    SigningRejectedError, SubmissionError, TimeoutError
)
from ..models import (
    MAX_ACCEPTED_RANK, ChainId, Commitment, ConnectionStatus, DurableToken, ExpirationModel,
    TransactionHandle, TransactionRequest, TransactionStatusReport, ValidityToken, WalletSession
)
from ..utils import format_units, redact
from .base import ChainAdapter

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"


def is_valid_address(address: str) -> bool:
    """True for a base58 encoded 32-byte public key"""
    if not isinstance(address, str) or not address:
        return False
    try:
        return len(base58.b58decode(address)) == 32
    except ValueError:
        return False


class SolanaAdapter(ChainAdapter):
    """Adapter for Solana clusters"""

    family = "solana"
    expiration_model = ExpirationModel.VALIDITY_WINDOW

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(
        self,
        connector: WalletConnector,
        chain_id: Optional[ChainId] = None,
        cancel: Optional[CancellationToken] = None
    ) -> WalletSession:
        chain = self.get_chain(chain_id) if chain_id is not None else self.chain

        transport = None
        wallet_connected = False
        try:
            result = await self._wallet_request(connector, "connect", cancel=cancel)
            wallet_connected = True
            address = (result or {}).get("publicKey")
            if not is_valid_address(address):
                raise ConnectionError(f"Wallet returned an invalid public key: {address!r}")
            transport = self.transport_factory(chain)
        except BaseException as e:
            if transport is not None:
                transport.close()
            if wallet_connected:
                await self._silent_wallet_disconnect(connector)
            if isinstance(e, ProviderRpcError):
                raise self._map_wallet_error(e, ConnectionError) from e
            if isinstance(e, Exception) and not isinstance(e, MultiWalletError):
                raise ConnectionError(f"Failed to connect solana wallet: {e}") from e
            raise

        self.connector = connector
        self.address = address
        self.chain = chain
        self.transport = transport
        self._attach_listeners(connector)
        self.logger.info(f"Connected solana wallet {address} on cluster {chain.id}")

        return WalletSession(
            address=address,
            chain_id=chain.id,
            family=self.family,
            connector_id=getattr(connector, "connector_id", "unknown"),
            status=ConnectionStatus.CONNECTED,
        )

    async def _silent_wallet_disconnect(self, connector: WalletConnector) -> None:
        """Undo a wallet-side connect during rollback"""
        try:
            await connector.request("disconnect")
        except ProviderRpcError as e:
            self.logger.warning(f"Wallet disconnect during rollback failed: {e}")

    async def disconnect(self) -> None:
        if not self.is_connected:
            return
        connector = self.connector
        self.logger.info(f"Disconnecting solana wallet {self.address}")
        # Listeners go first so our own disconnect is not reported as a lost session
        self._release()
        try:
            await connector.request("disconnect")
        except ProviderRpcError as e:
            self.logger.warning(f"Wallet reported an error on disconnect: {e}")

    async def switch_chain(self, chain_id: ChainId, cancel: Optional[CancellationToken] = None) -> None:
        self._require_connected()
        chain = self.get_chain(chain_id)
        if str(chain.id) == str(self.chain.id):
            return
        if cancel is not None:
            cancel.raise_if_cancelled()

        transport = self.transport_factory(chain)
        old_transport = self.transport
        self.transport = transport
        self.chain = chain
        if old_transport is not None:
            old_transport.close()
        self.logger.info(f"Switched solana wallet to cluster {chain.id}")

    # ------------------------------------------------------------------
    # Wallet events
    # ------------------------------------------------------------------

    def _attach_listeners(self, connector: WalletConnector) -> None:
        connector.on("disconnect", self._on_disconnect)
        connector.on("accountChanged", self._on_account_changed)

    def _detach_listeners(self, connector: WalletConnector) -> None:
        connector.remove_listener("disconnect", self._on_disconnect)
        connector.remove_listener("accountChanged", self._on_account_changed)

    def _on_disconnect(self, _data: Any = None) -> None:
        self._report_session_lost("wallet disconnected")

    def _on_account_changed(self, public_key: Optional[str]) -> None:
        if public_key != self.address:
            self._report_session_lost("wallet switched or revoked its account")

    # ------------------------------------------------------------------
    # Reads and signing
    # ------------------------------------------------------------------

    async def get_balance(self, address: str, cancel: Optional[CancellationToken] = None) -> str:
        if not is_valid_address(address):
            raise ValueError(f"Invalid solana address: {address}")
        result = await self._read("getBalance", [address, {"commitment": "confirmed"}], cancel=cancel)
        try:
            lamports = int(result["value"])
        except (KeyError, TypeError, ValueError) as e:
            raise NetworkError(f"Unexpected getBalance result: {result!r}") from e
        return format_units(lamports, self.chain.native_currency.decimals)

    async def sign_message(self, message: Union[str, bytes], cancel: Optional[CancellationToken] = None) -> str:
        self._require_connected()
        payload = message.encode("utf-8") if isinstance(message, str) else message
        try:
            result = await self._wallet_request(
                self.connector,
                "signMessage",
                {"message": base58.b58encode(payload).decode("ascii")},
                cancel=cancel,
            )
        except ProviderRpcError as e:
            raise SigningRejectedError(f"Wallet refused to sign: {e}") from e
        signature = result.get("signature") if isinstance(result, dict) else None
        if not isinstance(signature, str) or not signature:
            raise SigningRejectedError(f"Wallet returned no signature: {result!r}")
        return signature

    async def get_block_height(
        self,
        commitment: Commitment = Commitment.PROCESSED,
        cancel: Optional[CancellationToken] = None,
        chain_id: Optional[ChainId] = None
    ) -> int:
        result = await self._read(
            "getBlockHeight", [{"commitment": commitment.value}], cancel=cancel,
            transport=self._transport_for(chain_id),
        )
        try:
            return int(result)
        except (TypeError, ValueError) as e:
            raise NetworkError(f"Unexpected getBlockHeight result: {result!r}") from e

    # ------------------------------------------------------------------
    # Validity tokens
    # ------------------------------------------------------------------

    async def get_validity_token(
        self, commitment: Commitment, cancel: Optional[CancellationToken] = None
    ) -> ValidityToken:
        result = await self._read("getLatestBlockhash", [{"commitment": commitment.value}], cancel=cancel)
        height = await self.get_block_height(Commitment.PROCESSED, cancel=cancel)
        try:
            value = result["value"]["blockhash"]
            last_valid = int(result["value"]["lastValidBlockHeight"])
        except (KeyError, TypeError, ValueError) as e:
            raise NetworkError(f"Unexpected getLatestBlockhash result: {result!r}") from e

        # lastValidBlockHeight = observed height + (MAX_ACCEPTED_RANK - rank)
        rank = max(1, MAX_ACCEPTED_RANK - (last_valid - height))
        token = ValidityToken(value=value, rank=rank, observed_height=height, commitment=commitment)
        self.logger.debug(f"Fetched validity token {value} at rank {rank} ({commitment.value})")
        return token

    async def is_token_valid(self, token: ValidityToken, cancel: Optional[CancellationToken] = None) -> bool:
        result = await self._read(
            "isBlockhashValid", [token.value, {"commitment": Commitment.PROCESSED.value}], cancel=cancel
        )
        return bool((result or {}).get("value"))

    async def get_durable_token(
        self,
        nonce_account: str,
        commitment: Commitment = Commitment.CONFIRMED,
        cancel: Optional[CancellationToken] = None
    ) -> DurableToken:
        result = await self._read(
            "getAccountInfo",
            [nonce_account, {"encoding": "jsonParsed", "commitment": commitment.value}],
            cancel=cancel,
        )
        account = (result or {}).get("value")
        if not account:
            raise SubmissionError(f"Nonce account {nonce_account} not found")
        try:
            info = account["data"]["parsed"]["info"]
            return DurableToken(nonce_account=nonce_account, value=info["blockhash"], authority=info["authority"])
        except (KeyError, TypeError) as e:
            raise SubmissionError(f"Account {nonce_account} is not an initialized nonce account") from e

    def bind_durable_token(self, tx: TransactionRequest, durable: DurableToken) -> TransactionRequest:
        advance = {
            "programId": SYSTEM_PROGRAM_ID,
            "type": "advanceNonceAccount",
            "nonceAccount": durable.nonce_account,
            "authority": durable.authority,
        }
        return tx.model_copy(update={
            "instructions": [advance] + list(self._instructions(tx)),
            "recent_blockhash": durable.value,
        })

    # ------------------------------------------------------------------
    # Submission and status
    # ------------------------------------------------------------------

    def _instructions(self, tx: TransactionRequest) -> List[Dict[str, Any]]:
        if tx.instructions:
            return list(tx.instructions)
        if tx.to:
            if not is_valid_address(tx.to):
                raise SubmissionError(f"Invalid recipient address: {tx.to}")
            return [{
                "programId": SYSTEM_PROGRAM_ID,
                "type": "transfer",
                "source": self.address,
                "destination": tx.to,
                "lamports": tx.value,
            }]
        raise SubmissionError("Transaction has no instructions")

    async def submit_transaction(
        self,
        tx: TransactionRequest,
        token: Optional[ValidityToken] = None,
        cancel: Optional[CancellationToken] = None
    ) -> TransactionHandle:
        self._require_connected()
        blockhash = token.value if token is not None else tx.recent_blockhash
        if not blockhash:
            raise SubmissionError("Solana transactions need a validity token or a durable token")

        message: Dict[str, Any] = {
            "feePayer": tx.fee_payer or self.address,
            "recentBlockhash": blockhash,
            "instructions": self._instructions(tx),
        }
        message.update(tx.extra)

        # Read before anything is signed; nothing after the broadcast may fail
        height = token.observed_height if token is not None else await self.get_block_height(cancel=cancel)

        try:
            signed = await self._wallet_request(
                self.connector, "signTransaction", {"transaction": message}, cancel=cancel
            )
        except ProviderRpcError as e:
            raise self._map_wallet_error(e, SubmissionError) from e
        try:
            wire = encode_signed_transaction(signed["transaction"])
        except (KeyError, TypeError, ValueError) as e:
            raise SubmissionError(f"Wallet returned no signed transaction: {signed!r}") from e

        preflight = token.commitment.value if token is not None else Commitment.CONFIRMED.value
        if cancel is not None:
            cancel.raise_if_cancelled()
        # The broadcast itself is not cancellable, only bounded by the request timeout
        try:
            signature = await self._rpc(
                "sendTransaction",
                [wire, {"encoding": "base64", "preflightCommitment": preflight}],
            )
        except ProviderRpcError as e:
            raise SubmissionError(f"Network rejected transaction: {e}") from e
        except (NetworkError, TimeoutError) as e:
            raise SubmissionError(f"Broadcast interrupted: {e}", may_have_landed=True) from e
        if not isinstance(signature, str) or not signature:
            raise SubmissionError(f"Unexpected sendTransaction result: {signature!r}", may_have_landed=True)

        self.logger.info(f"Submitted solana transaction {redact(signature, 16)} with blockhash {blockhash}")
        return TransactionHandle(
            tx_id=signature, family=self.family, chain_id=self.chain.id, submitted_height=height
        )

    async def get_transaction_status(
        self,
        tx_id: str,
        cancel: Optional[CancellationToken] = None,
        chain_id: Optional[ChainId] = None
    ) -> TransactionStatusReport:
        result = await self._read(
            "getSignatureStatuses", [[tx_id], {"searchTransactionHistory": False}], cancel=cancel,
            transport=self._transport_for(chain_id),
        )
        try:
            statuses = (result or {}).get("value") or [None]
            status = statuses[0]
            if status is None:
                return TransactionStatusReport(found=False)
            commitment = Commitment(status.get("confirmationStatus") or Commitment.PROCESSED.value)
        except (AttributeError, IndexError, TypeError, ValueError) as e:
            raise NetworkError(f"Unexpected getSignatureStatuses result: {result!r}") from e

        if status.get("err") is not None:
            return TransactionStatusReport(found=True, commitment=commitment, error=str(status["err"]))
        return TransactionStatusReport(found=True, commitment=commitment)
