"""
Tests for the account-model (EVM) adapter.
"""
import asyncio

import pytest

from multiwallet_sdk.cancellation import CancellationToken
from multiwallet_sdk.exceptions import (
    ConnectionError, NetworkError, OperationCancelledError, ProviderRpcError, SigningRejectedError,
    SubmissionError, TimeoutError, UnsupportedChainError, UserRejectedError
)
from multiwallet_sdk.models import (
    Commitment, ConnectionStatus, ExpirationModel, TransactionRequest
)

from conftest import TEST_ADDRESS, TEST_RECIPIENT, evm_wallet


class TestEvmConnect:

    @pytest.mark.asyncio
    async def test_connect_local_wallet(self, evm_adapter, evm_connector):
        session = await evm_adapter.connect(evm_connector)

        assert session.address == TEST_ADDRESS
        assert session.chain_id == 1
        assert session.family == "evm"
        assert session.connector_id == "X"
        assert session.status is ConnectionStatus.CONNECTED
        assert evm_adapter.is_connected
        assert evm_adapter.expiration_model is ExpirationModel.NONE

    @pytest.mark.asyncio
    async def test_connect_switches_to_requested_chain(self, evm_adapter, evm_connector):
        session = await evm_adapter.connect(evm_connector, chain_id=137)

        assert session.chain_id == 137
        assert evm_connector.chain_id == 137

    @pytest.mark.asyncio
    async def test_wallet_on_unsupported_chain_moves_to_default(self, evm_adapter):
        wallet = evm_wallet(chain_id=56)
        session = await evm_adapter.connect(wallet)

        assert session.chain_id == 1
        assert ("wallet_switchEthereumChain", [{"chainId": "0x1"}]) in wallet.requests

    @pytest.mark.asyncio
    async def test_unsupported_requested_chain(self, evm_adapter, evm_connector):
        with pytest.raises(UnsupportedChainError):
            await evm_adapter.connect(evm_connector, chain_id=56)
        assert not evm_adapter.is_connected
        assert not evm_connector.authorized

    @pytest.mark.asyncio
    async def test_user_rejects(self, evm_adapter):
        wallet = evm_wallet()
        wallet.responses["eth_requestAccounts"] = ProviderRpcError(4001, "User rejected the request")

        with pytest.raises(UserRejectedError):
            await evm_adapter.connect(wallet)
        assert not evm_adapter.is_connected

    @pytest.mark.asyncio
    async def test_no_accounts(self, evm_adapter):
        wallet = evm_wallet()
        wallet.responses["eth_requestAccounts"] = []

        with pytest.raises(ConnectionError):
            await evm_adapter.connect(wallet)

    @pytest.mark.asyncio
    async def test_wallet_does_not_know_chain(self, evm_adapter):
        wallet = evm_wallet(chain_id=1)
        wallet.responses["wallet_switchEthereumChain"] = ProviderRpcError(4902, "Unrecognized chain")

        with pytest.raises(UnsupportedChainError) as excinfo:
            await evm_adapter.connect(wallet, chain_id=137)
        assert excinfo.value.chain_id == 137

    @pytest.mark.asyncio
    async def test_unexpected_error_is_wrapped(self, evm_adapter):
        wallet = evm_wallet()
        wallet.responses["eth_chainId"] = lambda params: "not-a-number"

        with pytest.raises(ConnectionError) as excinfo:
            await evm_adapter.connect(wallet)
        assert isinstance(excinfo.value.__cause__, ValueError)

    @pytest.mark.asyncio
    async def test_timeout_rolls_back(self, evm_adapter, engine_config, transports):
        engine_config.request_timeout = 0.01
        wallet = evm_wallet()
        wallet.hang.add("eth_requestAccounts")

        with pytest.raises(TimeoutError):
            await evm_adapter.connect(wallet)
        assert not evm_adapter.is_connected
        assert wallet.cancelled == ["eth_requestAccounts"]
        assert transports == []

    @pytest.mark.asyncio
    async def test_cancel_rolls_back(self, evm_adapter):
        wallet = evm_wallet()
        wallet.hang.add("eth_chainId")
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)

        with pytest.raises(OperationCancelledError):
            await evm_adapter.connect(wallet, cancel=token)
        assert not evm_adapter.is_connected
        assert evm_adapter.address is None

    @pytest.mark.asyncio
    async def test_name_resolver(self, evm_chains, transport_factory, engine_config, evm_connector):
        from multiwallet_sdk.adapters import EvmAdapter

        async def resolver(address):
            return "alice.eth"

        adapter = EvmAdapter(evm_chains, transport_factory=transport_factory, config=engine_config,
                             name_resolver=resolver)
        session = await adapter.connect(evm_connector)
        assert session.name == "alice.eth"

    @pytest.mark.asyncio
    async def test_name_resolver_failure_is_not_fatal(self, evm_chains, transport_factory, engine_config,
                                                      evm_connector):
        from multiwallet_sdk.adapters import EvmAdapter

        async def resolver(address):
            raise NetworkError("resolver down")

        adapter = EvmAdapter(evm_chains, transport_factory=transport_factory, config=engine_config,
                             name_resolver=resolver)
        session = await adapter.connect(evm_connector)
        assert session.name is None
        assert adapter.is_connected


class TestEvmSession:

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, evm_adapter, evm_connector, transports):
        await evm_adapter.connect(evm_connector)
        await evm_adapter.disconnect()
        await evm_adapter.disconnect()

        assert not evm_adapter.is_connected
        assert transports[0].closed

    @pytest.mark.asyncio
    async def test_switch_chain_rebinds_transport(self, evm_adapter, evm_connector, transports):
        await evm_adapter.connect(evm_connector)
        await evm_adapter.switch_chain(137)

        assert evm_adapter.chain.id == 137
        assert transports[0].closed
        assert transports[1].chain_id == 137
        assert evm_adapter.transport is transports[1]

    @pytest.mark.asyncio
    async def test_switch_to_unsupported_chain(self, evm_adapter, evm_connector):
        await evm_adapter.connect(evm_connector)
        with pytest.raises(UnsupportedChainError):
            await evm_adapter.switch_chain(56)
        assert evm_adapter.chain.id == 1

    @pytest.mark.asyncio
    async def test_switch_rejected(self, evm_adapter):
        wallet = evm_wallet()
        await evm_adapter.connect(wallet)
        wallet.responses["wallet_switchEthereumChain"] = ProviderRpcError(4001, "User rejected")

        with pytest.raises(UserRejectedError):
            await evm_adapter.switch_chain(137)
        assert evm_adapter.chain.id == 1

    @pytest.mark.asyncio
    async def test_revocation_reports_session_lost(self, evm_adapter, evm_connector):
        reasons = []
        evm_adapter.set_session_listener(reasons.append)
        await evm_adapter.connect(evm_connector)

        evm_connector.revoke()

        assert len(reasons) == 1
        assert not evm_adapter.is_connected

    @pytest.mark.asyncio
    async def test_account_switch_reports_session_lost(self, evm_adapter, evm_connector):
        reasons = []
        evm_adapter.set_session_listener(reasons.append)
        await evm_adapter.connect(evm_connector)

        evm_connector.emit("accountsChanged", [TEST_RECIPIENT])
        assert reasons == ["wallet switched to a different account"]

    @pytest.mark.asyncio
    async def test_same_account_event_is_ignored(self, evm_adapter, evm_connector):
        reasons = []
        evm_adapter.set_session_listener(reasons.append)
        await evm_adapter.connect(evm_connector)

        evm_connector.emit("accountsChanged", [TEST_ADDRESS.lower()])
        assert reasons == []
        assert evm_adapter.is_connected


class TestEvmReads:

    @pytest.mark.asyncio
    async def test_get_balance(self, evm_adapter, evm_connector):
        await evm_adapter.connect(evm_connector)
        assert await evm_adapter.get_balance(TEST_ADDRESS) == "1.5"
        assert await evm_adapter.get_balance(TEST_RECIPIENT) == "0"

    @pytest.mark.asyncio
    async def test_get_balance_invalid_address(self, evm_adapter, evm_connector):
        await evm_adapter.connect(evm_connector)
        with pytest.raises(ValueError):
            await evm_adapter.get_balance("0x123")

    @pytest.mark.asyncio
    async def test_balance_rpc_error_is_network_error(self, evm_adapter, evm_connector, evm_network):
        await evm_adapter.connect(evm_connector)
        evm_network.fail_next("eth_getBalance", ProviderRpcError(-32005, "limit exceeded"))
        with pytest.raises(NetworkError):
            await evm_adapter.get_balance(TEST_ADDRESS)

    @pytest.mark.asyncio
    async def test_sign_message(self, evm_adapter, evm_connector):
        await evm_adapter.connect(evm_connector)
        signature = await evm_adapter.sign_message("hello")
        assert signature.startswith("0x") and len(signature) == 132

    @pytest.mark.asyncio
    async def test_sign_message_rejected(self, evm_adapter):
        wallet = evm_wallet()
        await evm_adapter.connect(wallet)
        wallet.responses["personal_sign"] = ProviderRpcError(4001, "User rejected")
        with pytest.raises(SigningRejectedError):
            await evm_adapter.sign_message("hello")

    @pytest.mark.asyncio
    async def test_sign_requires_connection(self, evm_adapter):
        with pytest.raises(ConnectionError):
            await evm_adapter.sign_message("hello")


class TestEvmTransactions:

    @pytest.mark.asyncio
    async def test_submit_and_status_progression(self, evm_adapter, evm_connector, evm_network):
        await evm_adapter.connect(evm_connector)
        handle = await evm_adapter.submit_transaction(TransactionRequest(to=TEST_RECIPIENT, value=10))

        assert handle.family == "evm"
        assert handle.submitted_height == 100
        assert not (await evm_adapter.get_transaction_status(handle.tx_id)).found

        evm_network.mine(handle.tx_id)
        report = await evm_adapter.get_transaction_status(handle.tx_id)
        assert report.found and report.commitment is Commitment.PROCESSED

        evm_network.advance(1)
        report = await evm_adapter.get_transaction_status(handle.tx_id)
        assert report.commitment is Commitment.CONFIRMED

        evm_network.finalized = evm_network.block_number
        report = await evm_adapter.get_transaction_status(handle.tx_id)
        assert report.commitment is Commitment.FINALIZED

    @pytest.mark.asyncio
    async def test_reverted_receipt(self, evm_adapter, evm_connector, evm_network):
        await evm_adapter.connect(evm_connector)
        handle = await evm_adapter.submit_transaction(TransactionRequest(to=TEST_RECIPIENT, value=10))
        evm_network.mine(handle.tx_id, status=0)

        report = await evm_adapter.get_transaction_status(handle.tx_id)
        assert report.error == "Transaction reverted"

    @pytest.mark.asyncio
    async def test_submit_rejected_by_user(self, evm_adapter):
        wallet = evm_wallet()
        await evm_adapter.connect(wallet)
        wallet.responses["eth_sendTransaction"] = ProviderRpcError(4001, "User rejected")
        with pytest.raises(UserRejectedError):
            await evm_adapter.submit_transaction(TransactionRequest(to=TEST_RECIPIENT))

    @pytest.mark.asyncio
    async def test_submit_rejected_by_network(self, evm_adapter):
        wallet = evm_wallet()
        await evm_adapter.connect(wallet)
        wallet.responses["eth_sendTransaction"] = ProviderRpcError(-32000, "insufficient funds")
        with pytest.raises(SubmissionError):
            await evm_adapter.submit_transaction(TransactionRequest(to=TEST_RECIPIENT))

    @pytest.mark.asyncio
    async def test_submit_invalid_recipient(self, evm_adapter, evm_connector):
        await evm_adapter.connect(evm_connector)
        with pytest.raises(SubmissionError):
            await evm_adapter.submit_transaction(TransactionRequest(to="0x1234"))

    @pytest.mark.asyncio
    async def test_no_validity_tokens(self, evm_adapter, evm_connector):
        await evm_adapter.connect(evm_connector)
        with pytest.raises(SubmissionError):
            await evm_adapter.get_validity_token(Commitment.CONFIRMED)


class TestEvmSubmissionBoundary:

    @pytest.mark.asyncio
    async def test_height_read_before_wallet_is_asked(self, evm_adapter, evm_network):
        wallet = evm_wallet()
        await evm_adapter.connect(wallet)
        evm_network.fail_next("eth_blockNumber", ProviderRpcError(-32005, "limit exceeded"))

        with pytest.raises(NetworkError):
            await evm_adapter.submit_transaction(TransactionRequest(to=TEST_RECIPIENT))
        assert "eth_sendTransaction" not in [method for method, _ in wallet.requests]

    @pytest.mark.asyncio
    async def test_silent_wallet_may_have_sent(self, evm_adapter, engine_config):
        wallet = evm_wallet()
        await evm_adapter.connect(wallet)
        wallet.hang.add("eth_sendTransaction")
        engine_config.request_timeout = 0.01

        with pytest.raises(SubmissionError) as excinfo:
            await evm_adapter.submit_transaction(TransactionRequest(to=TEST_RECIPIENT))
        assert excinfo.value.may_have_landed

    @pytest.mark.asyncio
    async def test_rejection_has_not_landed(self, evm_adapter):
        wallet = evm_wallet()
        await evm_adapter.connect(wallet)
        wallet.responses["eth_sendTransaction"] = ProviderRpcError(-32000, "nonce too low")

        with pytest.raises(SubmissionError) as excinfo:
            await evm_adapter.submit_transaction(TransactionRequest(to=TEST_RECIPIENT))
        assert not excinfo.value.may_have_landed


class TestEvmMalformedResponses:

    @pytest.mark.asyncio
    async def test_receipt_without_block_number(self, evm_adapter, evm_connector, evm_network):
        await evm_adapter.connect(evm_connector)
        evm_network.receipts["0xabc"] = {"transactionHash": "0xabc", "status": "0x1"}

        with pytest.raises(NetworkError):
            await evm_adapter.get_transaction_status("0xabc")

    @pytest.mark.asyncio
    async def test_finalized_block_without_number(self, evm_adapter, evm_connector, evm_network):
        await evm_adapter.connect(evm_connector)
        evm_network.rpc_eth_getBlockByNumber = lambda params: {"hash": "0x" + "00" * 32}

        with pytest.raises(NetworkError):
            await evm_adapter.get_block_height(Commitment.FINALIZED)

    @pytest.mark.asyncio
    async def test_garbled_block_number(self, evm_adapter, evm_connector, evm_network):
        await evm_adapter.connect(evm_connector)
        evm_network.rpc_eth_blockNumber = lambda params: "soon"

        with pytest.raises(NetworkError):
            await evm_adapter.get_block_height()


class TestEvmReadsAcrossChains:

    @pytest.mark.asyncio
    async def test_status_read_pinned_to_chain(self, evm_adapter, evm_connector, evm_network, transports):
        await evm_adapter.connect(evm_connector)
        handle = await evm_adapter.submit_transaction(TransactionRequest(to=TEST_RECIPIENT, value=1))
        evm_network.mine(handle.tx_id)
        await evm_adapter.switch_chain(137)

        report = await evm_adapter.get_transaction_status(handle.tx_id, chain_id=1)

        assert report.found
        assert [t.chain_id for t in transports] == [1, 137, 1]
        await evm_adapter.get_block_height(chain_id=1)
        assert len(transports) == 3
