#!/usr/bin/env python3
"""
Simple example of using the MultiWallet SDK with a local EVM key.
"""
import asyncio
import logging
import os

from multiwallet_sdk import (
    EngineConfig, FileSessionPersistence, JsonRpcTransport, LocalEvmConnector, MultiWalletError,
    SessionStore, UnsupportedChainError
)
from multiwallet_sdk.config import ChainRegistry


async def main():
    """
    Demonstrate basic usage of the SessionStore.

    This example shows how to:
    1. Configure the engine from the bundled chain catalog
    2. Connect a wallet and read its balance
    3. Switch chains and sign a message
    """
    logging.basicConfig(level=logging.INFO)

    private_key = os.environ.get("PRIVATE_KEY")
    if not private_key:
        print("ERROR: PRIVATE_KEY environment variable is required")
        return

    sepolia = ChainRegistry.get_chain("evm", 11155111)
    connector = LocalEvmConnector(
        private_key,
        chain_ids=[11155111, 1],
        transport=JsonRpcTransport.for_chain(sepolia),
    )

    config = EngineConfig.from_env({"evm": ["local-evm"]})
    store = SessionStore(config, {"local-evm": connector}, persistence=FileSessionPersistence())

    previous = store.initialize()
    if previous:
        print(f"Last session used {previous.chain_family}:{previous.chain_id}")

    try:
        session = await store.connect("local-evm")
        print(f"Connected {session.address} on chain {session.chain_id}")
        print(f"Balance: {await store.get_balance()} ETH")

        try:
            await store.switch_chain(56)
        except UnsupportedChainError as e:
            print(f"Still connected after refused switch: {e}")

        signature = await store.sign_message("hello from multiwallet")
        print(f"Signature: {signature}")
    except MultiWalletError as e:
        print(f"Wallet error: {e}")
    finally:
        await store.teardown()


if __name__ == "__main__":
    asyncio.run(main())
