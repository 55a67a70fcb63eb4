"""
Wallet data models.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class BlockHeader:
    block_hash: str
    height: int
    timestamp: int
    prev_hash: str
    bits: int
    nonce: int
    version: int
    merkle_root: str
    weight: int


@dataclass
class HistoryEntry:
    """One (tx_hash, height) pair from blockchain.scripthash.get_history."""

    tx_hash: str
    height: int | None = None
    fee: int | None = None

    @property
    def is_confirmed(self) -> bool:
        return self.height is not None and self.height > 0


@dataclass
class Balance:
    confirmed: int = 0
    unconfirmed: int = 0

    @property
    def total(self) -> int:
        return self.confirmed + self.unconfirmed


@dataclass
class TxIn:
    """Input of a decoded transaction; address is best-effort."""

    txid: str
    output_index: int
    index: int
    address: str
    script: bytes = b""
    witness: list[bytes] = field(default_factory=list)
    sequence: int = 0xFFFFFFFF

    @property
    def outpoint(self) -> tuple[str, int]:
        return self.txid, self.output_index


@dataclass
class TxOut:
    value: int
    address: str | None
    script: bytes
    index: int


@dataclass
class TransactionRecord:
    """
    Decoded transaction keyed by txid.

    Confirmation fields stay None while the transaction is unconfirmed.
    """

    txid: str
    inputs: list[TxIn]
    outputs: list[TxOut]
    version: int
    vsize: int
    weight: int
    is_coinbase: bool = False
    fee: int | None = None
    block_height: int | None = None
    block_time: int | None = None
    block_hash: str | None = None
    raw: str = ""

    @property
    def is_confirmed(self) -> bool:
        return self.block_height is not None and self.block_height > 0

    def attach_header(self, header: BlockHeader) -> None:
        self.block_height = header.height
        self.block_time = header.timestamp
        self.block_hash = header.block_hash


@dataclass
class UTXOInfo:
    """Unspent output owned by the wallet (derived, never stored)."""

    txid: str
    vout: int
    value: int
    address: str
    script: bytes
    height: int | None = None

    @property
    def outpoint(self) -> tuple[str, int]:
        return self.txid, self.vout


@dataclass
class CoinSelection:
    """Result of coin selection; an empty utxo list means insufficient funds."""

    utxos: list[UTXOInfo]
    requires_change: bool
    fee: int = 0
    total_value: int = 0
    change_value: int = 0
