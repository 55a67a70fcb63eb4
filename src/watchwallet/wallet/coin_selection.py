"""
Coin selection and size/fee estimation.

Selection is largest-first: candidates are ordered by value descending,
ties broken by (txid, vout) ascending, and accumulated until they cover the
amount plus the fee of a transaction spending them. The same inputs always
produce the same selection.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence

from loguru import logger

from watchwallet.constants import (
    DEFAULT_OUTPUT_VSIZE,
    INPUT_VSIZE,
    OUTPUT_VSIZE,
    STANDARD_DUST_LIMIT,
    TX_OVERHEAD_VSIZE,
)
from watchwallet.wallet.address import classify_script
from watchwallet.wallet.models import CoinSelection, UTXOInfo


class InsufficientFundsError(Exception):
    def __init__(self, needed: int, available: int):
        super().__init__(f"Insufficient funds: need {needed}, have {available}")
        self.needed = needed
        self.available = available


def input_vsize(script: bytes) -> int:
    """Estimated vsize of a signed input spending an output with this script."""
    kind = classify_script(script)
    if kind == "p2sh":
        # Wallet P2SH outputs are nested P2WPKH
        return INPUT_VSIZE["p2sh-p2wpkh"]
    return INPUT_VSIZE.get(kind or "", INPUT_VSIZE["p2pkh"])


def output_vsize(script: bytes | None) -> int:
    if script is None:
        return DEFAULT_OUTPUT_VSIZE
    return OUTPUT_VSIZE.get(classify_script(script) or "", DEFAULT_OUTPUT_VSIZE)


def estimate_vsize(input_scripts: Iterable[bytes], output_sizes: Iterable[int]) -> int:
    return (
        TX_OVERHEAD_VSIZE
        + sum(input_vsize(script) for script in input_scripts)
        + sum(output_sizes)
    )


def calculate_fee(vsize: int, fee_per_byte: int | float) -> int:
    # Rounding first keeps float noise (110 * 1.1) from costing an extra sat
    return math.ceil(round(vsize * fee_per_byte, 6))


def _candidate_order(utxo: UTXOInfo) -> tuple[int, str, int]:
    return -utxo.value, utxo.txid, utxo.vout


def select_outputs(
    utxos: Sequence[UTXOInfo],
    amount: int,
    fee_per_byte: int | float,
    destination_vsize: int = DEFAULT_OUTPUT_VSIZE,
    change_vsize: int = DEFAULT_OUTPUT_VSIZE,
    dust_threshold: int = STANDARD_DUST_LIMIT,
) -> CoinSelection:
    """
    Pick UTXOs covering amount + fee.

    Change is required when what is left after paying the fee of a
    transaction *with* a change output exceeds the dust threshold; otherwise
    the leftover goes to the miner.

    Returns:
        CoinSelection; an empty utxo list signals insufficient funds
    """
    if amount <= 0:
        raise ValueError(f"Amount must be positive, got {amount}")
    if fee_per_byte < 0:
        raise ValueError(f"Fee rate must not be negative, got {fee_per_byte}")

    selected: list[UTXOInfo] = []
    total = 0

    for utxo in sorted(utxos, key=_candidate_order):
        selected.append(utxo)
        total += utxo.value

        scripts = [u.script for u in selected]
        fee_without_change = calculate_fee(
            estimate_vsize(scripts, [destination_vsize]), fee_per_byte
        )
        if total < amount + fee_without_change:
            continue

        fee_with_change = calculate_fee(
            estimate_vsize(scripts, [destination_vsize, change_vsize]), fee_per_byte
        )
        change = total - amount - fee_with_change
        if change > dust_threshold:
            return CoinSelection(
                utxos=selected,
                requires_change=True,
                fee=fee_with_change,
                total_value=total,
                change_value=change,
            )
        return CoinSelection(
            utxos=selected,
            requires_change=False,
            fee=total - amount,
            total_value=total,
        )

    logger.debug(f"Cannot cover {amount} sats at {fee_per_byte} sat/vB with {len(utxos)} UTXOs")
    return CoinSelection(utxos=[], requires_change=False)


def require_selection(
    utxos: Sequence[UTXOInfo],
    amount: int,
    fee_per_byte: int | float,
    **kwargs: int,
) -> CoinSelection:
    """select_outputs, raising InsufficientFundsError instead of returning empty."""
    selection = select_outputs(utxos, amount, fee_per_byte, **kwargs)
    if not selection.utxos:
        raise InsufficientFundsError(amount, sum(u.value for u in utxos))
    return selection
