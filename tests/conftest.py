"""
Shared fixtures: an in-memory Electrum connection and transaction helpers.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest
from coincurve import PrivateKey

from watchwallet.network import Connection, NetworkConnectionError
from watchwallet.wallet.bip32 import HDKey, mnemonic_to_seed
from watchwallet.wallet.transaction import Transaction, TxInput, TxOutput

ABANDON_MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)

GENESIS_HEADER = (
    "0100000000000000000000000000000000000000000000000000000000000000"
    "000000003ba3edfd7a7b12b27ac72c3e67768f617fc81bc3888a51323a9fb8aa"
    "4b1e5e4a29ab5f49ffff001d1dac2b7c"
)
GENESIS_HASH = "000000000019d6689c085ae165831e934ff763ae46a2a6c172b3f1b60a8ce26f"
GENESIS_TIME = 1231006505


class FakeConnection(Connection):
    """Connection whose peer is the test: sent messages are recorded, replies pushed."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.inbox: asyncio.Queue[bytes | None] = asyncio.Queue()
        self.closed = False

    async def send(self, data: bytes) -> None:
        if self.closed:
            raise NetworkConnectionError("Connection closed")
        self.sent.append(json.loads(data))

    async def receive(self) -> bytes:
        item = await self.inbox.get()
        if item is None:
            self.closed = True
            raise NetworkConnectionError("Connection closed by peer")
        return item

    async def close(self) -> None:
        self.closed = True

    def is_connected(self) -> bool:
        return not self.closed

    def push(self, message: dict[str, Any]) -> None:
        self.inbox.put_nowait(json.dumps(message).encode())

    def push_raw(self, data: bytes) -> None:
        self.inbox.put_nowait(data)

    def reply(self, request: dict[str, Any], result: Any) -> None:
        self.push({"jsonrpc": "2.0", "id": request["id"], "result": result})

    def drop(self) -> None:
        """Simulate the peer closing the socket."""
        self.inbox.put_nowait(None)

    async def next_request(self, count: int = 1, timeout: float = 1.0) -> dict[str, Any]:
        """Wait until `count` messages were sent; return the last one."""
        await wait_for(lambda: len(self.sent) >= count, timeout)
        return self.sent[count - 1]


async def wait_for(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout)


def pubkey(n: int) -> bytes:
    """Deterministic compressed public key."""
    return PrivateKey(n.to_bytes(32, "big")).public_key.format()


def make_tx(
    outputs: list[tuple[int, bytes]],
    spends: list[tuple[str, int]] | None = None,
    script_sig: bytes = b"",
    witness: list[bytes] | None = None,
) -> Transaction:
    spends = spends or [("ab" * 32, 0)]
    inputs = []
    for txid, vout in spends:
        tx_input = TxInput.from_outpoint(txid, vout)
        tx_input.script = script_sig
        tx_input.witness = list(witness or [])
        inputs.append(tx_input)
    return Transaction(
        version=2,
        inputs=inputs,
        outputs=[TxOutput(value=value, script=script) for value, script in outputs],
    )


@pytest.fixture
def connection() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def master_key() -> HDKey:
    return HDKey.from_seed(mnemonic_to_seed(ABANDON_MNEMONIC))


@pytest.fixture
def bip84_account(master_key: HDKey) -> HDKey:
    return master_key.derive("m/84'/0'/0'")


@pytest.fixture
def bip49_testnet_account(master_key: HDKey) -> HDKey:
    return master_key.derive("m/49'/1'/0'")
