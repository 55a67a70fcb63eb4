"""
Typed Electrum queries used by the wallet.

Scripts are addressed on the wire by their Electrum script hash
(SHA256 of the output script, byte-reversed, hex).
"""

from __future__ import annotations

import math
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

from watchwallet.constants import MIN_RELAY_FEE
from watchwallet.electrum.decoding import (
    HeaderDecodeError,
    decode_block_header,
    decode_transaction,
    transaction_to_record,
)
from watchwallet.electrum.transport import ElectrumTransport, TransportClosedError
from watchwallet.models import NetworkType
from watchwallet.protocol import ProtocolError
from watchwallet.wallet.address import electrum_script_hash
from watchwallet.wallet.models import Balance, BlockHeader, HistoryEntry, TransactionRecord
from watchwallet.wallet.transaction import TransactionSigningError

StatusCallback = Callable[[list[HistoryEntry]], Awaitable[None] | None]
HeaderCallback = Callable[[BlockHeader], Awaitable[None] | None]

# Errors a single fetch inside a batch may fail with
FETCH_ERRORS = (ProtocolError, TransportClosedError, TransactionSigningError, HeaderDecodeError)


class BroadcastMismatchError(Exception):
    """The node answered a broadcast with something other than our txid."""

    def __init__(self, returned: Any, expected: str):
        super().__init__(str(returned))
        self.returned = returned
        self.expected = expected


def _height_sort_key(entry: HistoryEntry) -> float:
    # Unconfirmed (0, -1 or missing) sorts before every confirmed height
    if entry.height is None or entry.height <= 0:
        return math.inf
    return entry.height


async def _maybe_await(outcome: Awaitable[None] | None) -> None:
    if outcome is not None:
        await outcome


class ElectrumApi:
    """Chain queries over an ElectrumTransport."""

    def __init__(
        self,
        transport: ElectrumTransport,
        network: NetworkType | str = NetworkType.MAINNET,
    ):
        self.transport = transport
        self.network = NetworkType(network)

    @staticmethod
    def _script_hash(script: bytes | str, is_script_hash: bool = False) -> str:
        if is_script_hash:
            return script if isinstance(script, str) else script.hex()
        return electrum_script_hash(script)

    async def get_balance(self, script: bytes | str, is_script_hash: bool = False) -> Balance:
        result = await self.transport.request(
            "blockchain.scripthash.get_balance", self._script_hash(script, is_script_hash)
        )
        return Balance(
            confirmed=int(result.get("confirmed", 0)),
            unconfirmed=int(result.get("unconfirmed", 0)),
        )

    async def get_receipts(
        self, script: bytes | str, is_script_hash: bool = False
    ) -> list[HistoryEntry]:
        result = await self.transport.request(
            "blockchain.scripthash.get_history", self._script_hash(script, is_script_hash)
        )
        return [
            HistoryEntry(tx_hash=item["tx_hash"], height=item.get("height"), fee=item.get("fee"))
            for item in result or []
        ]

    async def get_history(
        self, script: bytes | str, is_script_hash: bool = False
    ) -> list[TransactionRecord]:
        """
        Full decoded history of a script, newest first.

        A failed header fetch stops header prefetching but the batch goes on
        without block metadata; a failed transaction fetch ends the batch and
        returns what was gathered so far.
        """
        history = await self.get_receipts(script, is_script_hash)
        history.sort(key=_height_sort_key, reverse=True)

        heights = [entry.height for entry in history if entry.is_confirmed]
        headers: dict[int, BlockHeader] = {}

        for height in dict.fromkeys(heights):
            try:
                headers[height] = await self.get_block_header(height)
            except FETCH_ERRORS as e:
                logger.error(f"Header prefetch failed at height {height}: {e}")
                break

        records: list[TransactionRecord] = []
        for entry in history:
            try:
                record = await self.get_transaction(entry.tx_hash)
            except FETCH_ERRORS as e:
                logger.error(f"Transaction fetch failed for {entry.tx_hash}: {e}")
                return records

            header = headers.get(entry.height) if entry.height is not None else None
            if header is not None:
                record.attach_header(header)
            records.append(record)

        logger.debug(f"Fetched {len(records)} transaction(s) of history")
        return records

    async def get_block_header(self, height: int) -> BlockHeader:
        raw = await self.transport.request("blockchain.block.header", height)
        return decode_block_header(raw, height)

    async def get_transaction(self, txid: str, height: int | None = None) -> TransactionRecord:
        raw = await self.transport.request("blockchain.transaction.get", txid)

        header = None
        if height is not None and height > 0:
            try:
                header = await self.get_block_header(height)
            except FETCH_ERRORS as e:
                logger.error(f"Header fetch failed at height {height} for {txid}: {e}")

        return transaction_to_record(raw, self.network, header)

    async def subscribe_status(self, script: bytes | str, callback: StatusCallback) -> Any:
        """
        Follow status changes of a script.

        Every notification re-fetches the complete history list (not a delta)
        and hands it to the callback.
        """

        async def on_status(params: list[Any]) -> None:
            script_hash = params[0]
            receipts = await self.get_receipts(script_hash, is_script_hash=True)
            await _maybe_await(callback(receipts))

        return await self.transport.subscribe(
            "blockchain.scripthash", on_status, self._script_hash(script)
        )

    async def unsubscribe_status(self, script: bytes | str) -> Any:
        return await self.transport.unsubscribe("blockchain.scripthash", self._script_hash(script))

    async def subscribe_headers(self, callback: HeaderCallback) -> Any:
        """Follow the chain tip; each notification yields the full decoded header."""

        async def on_header(params: list[Any]) -> None:
            header_info = params[0]
            header = await self.get_block_header(int(header_info["height"]))
            await _maybe_await(callback(header))

        return await self.transport.subscribe("blockchain.headers", on_header)

    async def broadcast_transaction(self, raw_tx: str) -> TransactionRecord:
        """
        Broadcast a raw transaction.

        Raises:
            BroadcastMismatchError: if the node does not echo our txid (older
                servers report errors as a plain string result)
        """
        record = transaction_to_record(decode_transaction(raw_tx), self.network)
        returned = await self.transport.request("blockchain.transaction.broadcast", raw_tx)
        if returned != record.txid:
            logger.error(f"Broadcast of {record.txid} failed: {returned}")
            raise BroadcastMismatchError(returned, record.txid)

        logger.info(f"Broadcast transaction {record.txid}")
        return record

    async def get_fee_estimate(self, target_blocks: int = 6) -> int:
        """Fee estimate in sat/vbyte for confirmation within target_blocks."""
        btc_per_kb = await self.transport.request("blockchain.estimatefee", target_blocks)
        if btc_per_kb is None or float(btc_per_kb) <= 0:
            logger.debug(f"Server cannot estimate fee for {target_blocks} blocks")
            return MIN_RELAY_FEE
        sats_per_kb = round(float(btc_per_kb) * 100_000_000)
        return max(MIN_RELAY_FEE, -(-sats_per_kb // 1000))

    async def ping(self) -> None:
        await self.transport.request("server.ping")
