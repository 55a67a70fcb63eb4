"""
Transaction ledger and UTXO reconciliation.

The ledger maps txid -> TransactionRecord. The UTXO set is never stored:
an output is unspent iff it pays an owned address and no input anywhere in
the ledger spends its (txid, index).
"""

from __future__ import annotations

import copy
import math
from collections.abc import Iterable

from loguru import logger

from watchwallet.wallet.models import HistoryEntry, TransactionRecord, UTXOInfo


class TransactionLedger:
    def __init__(self) -> None:
        self._records: dict[str, TransactionRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, txid: object) -> bool:
        return txid in self._records

    def get(self, txid: str) -> TransactionRecord | None:
        record = self._records.get(txid)
        return copy.deepcopy(record) if record is not None else None

    def ingest(self, records: Iterable[TransactionRecord]) -> list[str]:
        """
        Merge a batch of records; returns the txids that were stored.

        An unconfirmed copy of an already-confirmed transaction does not
        replace it, so late or stale history never drops block metadata.
        """
        stored: list[str] = []
        for record in records:
            existing = self._records.get(record.txid)
            if existing is not None and existing.is_confirmed and not record.is_confirmed:
                logger.debug(f"Keeping confirmed copy of {record.txid}")
                continue
            self._records[record.txid] = copy.deepcopy(record)
            stored.append(record.txid)
        return stored

    def apply_confirmation(
        self,
        txid: str,
        block_height: int | None,
        block_time: int | None = None,
        block_hash: str | None = None,
    ) -> bool:
        """Update only the confirmation fields of a known record."""
        record = self._records.get(txid)
        if record is None:
            logger.warning(f"Cannot apply confirmation to unknown transaction {txid}")
            return False
        record.block_height = block_height
        record.block_time = block_time
        record.block_hash = block_hash
        return True

    def transactions(self) -> list[TransactionRecord]:
        """All records, unconfirmed first, then newest block time first."""

        def sort_key(record: TransactionRecord) -> float:
            return record.block_time if record.block_time is not None else math.inf

        return [
            copy.deepcopy(r) for r in sorted(self._records.values(), key=sort_key, reverse=True)
        ]

    def spent_outpoints(self) -> set[tuple[str, int]]:
        return {
            inp.outpoint
            for record in self._records.values()
            if not record.is_coinbase
            for inp in record.inputs
        }

    def utxos(self, owned_addresses: Iterable[str]) -> list[UTXOInfo]:
        owned = set(owned_addresses)
        spent = self.spent_outpoints()

        utxos: list[UTXOInfo] = []
        for record in self._records.values():
            for output in record.outputs:
                if output.address is None or output.address not in owned:
                    continue
                if (record.txid, output.index) in spent:
                    continue
                utxos.append(
                    UTXOInfo(
                        txid=record.txid,
                        vout=output.index,
                        value=output.value,
                        address=output.address,
                        script=output.script,
                        height=record.block_height,
                    )
                )
        return utxos

    def balance(self, owned_addresses: Iterable[str]) -> int:
        return sum(utxo.value for utxo in self.utxos(owned_addresses))

    def reconcile_status(
        self, entries: Iterable[HistoryEntry]
    ) -> tuple[list[HistoryEntry], list[HistoryEntry]]:
        """
        Compare a status notification with the ledger.

        Returns:
            (new, changed): entries for unknown txids, and entries for known
            txids whose height differs from the stored block height
        """
        new: list[HistoryEntry] = []
        changed: list[HistoryEntry] = []
        for entry in entries:
            known = self._records.get(entry.tx_hash)
            if known is None:
                new.append(entry)
                continue
            height = entry.height if entry.is_confirmed else None
            if known.block_height != height:
                changed.append(entry)
        return new, changed

    def fill_fees(self) -> int:
        """Compute fees where every prevout value is known; returns how many were set."""
        filled = 0
        for record in self._records.values():
            if record.fee is not None or record.is_coinbase:
                continue
            input_total = 0
            for inp in record.inputs:
                prev = self._records.get(inp.txid)
                if prev is None or inp.output_index >= len(prev.outputs):
                    break
                input_total += prev.outputs[inp.output_index].value
            else:
                record.fee = input_total - sum(out.value for out in record.outputs)
                filled += 1
        return filled
