#!/usr/bin/env python3
"""
Send a transfer on Solana devnet and follow it to a terminal status.

An expired transfer is resubmitted once with a fresher blockhash.
"""
import asyncio
import logging
import os

import base58

from multiwallet_sdk import (
    Commitment, EngineConfig, LocalKeypairConnector, MultiWalletError, SessionStore, TransactionRequest,
    TransactionStatus
)


async def main():
    logging.basicConfig(level=logging.INFO)

    seed = os.environ.get("SOLANA_SEED")
    recipient = os.environ.get("RECIPIENT")
    if not seed or not recipient:
        print("ERROR: SOLANA_SEED (base58, 32 bytes) and RECIPIENT environment variables are required")
        return

    connector = LocalKeypairConnector(base58.b58decode(seed))
    store = SessionStore(EngineConfig.from_env({"solana": ["local-keypair"]}), {"local-keypair": connector})

    try:
        session = await store.connect("local-keypair", chain_id="devnet")
        print(f"Connected {session.address} on {session.chain_id}")

        pending = await store.send_transaction(
            TransactionRequest(to=recipient, value=1_000_000),
            Commitment.CONFIRMED,
            max_resubmits=1,
            timeout=120,
        )
        if pending.status is TransactionStatus.CONFIRMED:
            print(f"Confirmed: {pending.tx_id}")
        else:
            print(f"Transaction {pending.tx_id} ended {pending.status.value}: {pending.error}")
    except MultiWalletError as e:
        print(f"Wallet error: {e}")
    finally:
        await store.teardown()


if __name__ == "__main__":
    asyncio.run(main())
