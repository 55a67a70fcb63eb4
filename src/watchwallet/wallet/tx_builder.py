"""
Transaction builder for wallet spends.

Builds an unsigned transaction from a coin selection:
- Inputs: the selected UTXOs, in selection order
- Outputs: destination first, then change (if any)

Each input carries the signing plan (derivation path, pubkey, script code,
value) so an external signer can finalize it without access to the wallet.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field

from loguru import logger

from watchwallet.constants import SIGHASH_ALL, STANDARD_DUST_LIMIT
from watchwallet.models import NetworkType, ScriptType
from watchwallet.wallet.address import address_to_script, push_data
from watchwallet.wallet.coin_selection import output_vsize, require_selection
from watchwallet.wallet.discovery import AddressInfo
from watchwallet.wallet.models import UTXOInfo
from watchwallet.wallet.transaction import (
    Transaction,
    TxInput,
    TxOutput,
    compute_sighash_segwit,
    create_p2wpkh_script_code,
)

# (derivation path relative to the account, sighash digest) -> DER signature
Signer = Callable[[str, bytes], bytes]


class DerivationLookupError(KeyError):
    """No derived key is known for the address owning a selected UTXO."""

    def __init__(self, address: str):
        super().__init__(address)
        self.address = address

    def __str__(self) -> str:
        return f"No derived key for address {self.address}"


@dataclass
class InputSigningInfo:
    """Which key signs an input, and what it commits to."""

    txid: str
    vout: int
    path: str
    pubkey: bytes
    script_type: ScriptType
    value: int
    script_code: bytes
    redeem_script: bytes | None = None


@dataclass
class UnsignedTransaction:
    transaction: Transaction
    inputs: list[InputSigningInfo]
    fee: int
    change_value: int = 0
    change_address: str | None = None
    selected: list[UTXOInfo] = field(default_factory=list)

    @property
    def txid(self) -> str:
        # Final already: scriptSigs are set at build time, witnesses are not hashed
        return self.transaction.txid

    def serialize(self) -> bytes:
        return self.transaction.serialize()

    def to_hex(self) -> str:
        return self.serialize().hex()

    def sign(self, signer: Signer) -> Transaction:
        """
        Finalize every input with the signer; returns a new signed transaction.

        The witness of each input becomes [signature + sighash byte, pubkey].
        """
        signed = copy.deepcopy(self.transaction)

        for index, info in enumerate(self.inputs):
            digest = compute_sighash_segwit(
                signed, index, info.script_code, info.value, SIGHASH_ALL
            )
            signature = signer(info.path, digest) + bytes([SIGHASH_ALL])

            signed.inputs[index].witness = [signature, info.pubkey]

        logger.debug(f"Signed {len(self.inputs)} input(s) of {signed.txid}")
        return signed


def _signing_info(utxo: UTXOInfo, key: AddressInfo) -> InputSigningInfo:
    return InputSigningInfo(
        txid=utxo.txid,
        vout=utxo.vout,
        path=key.path,
        pubkey=key.pubkey,
        script_type=ScriptType.P2SH_P2WPKH if key.redeem_script else ScriptType.P2WPKH,
        value=utxo.value,
        script_code=create_p2wpkh_script_code(key.pubkey),
        redeem_script=key.redeem_script,
    )


def _unsigned_input(info: InputSigningInfo) -> TxInput:
    tx_input = TxInput.from_outpoint(info.txid, info.vout)
    # Nested segwit: scriptSig is just the redeem script push
    if info.redeem_script:
        tx_input.script = push_data(info.redeem_script)
    return tx_input


def make_transaction(
    keys: Mapping[str, AddressInfo],
    utxos: Sequence[UTXOInfo],
    destination: str,
    amount: int,
    change_address: str | None,
    fee_per_byte: int | float,
    network: NetworkType | str = NetworkType.MAINNET,
    dust_threshold: int = STANDARD_DUST_LIMIT,
) -> UnsignedTransaction:
    """
    Build an unsigned spend of `amount` to `destination`.

    Args:
        keys: address -> derived key info, covering every candidate UTXO
        utxos: spendable candidates
        change_address: where change goes; may be None only when the
            selection leaves no change above the dust threshold

    Raises:
        InsufficientFundsError: the candidates cannot cover amount + fee
        DerivationLookupError: a selected UTXO's address has no derived key
        ValueError: an address does not decode for the network, or change
            is needed but no change address was given
    """
    destination_script = address_to_script(destination, network)
    change_script = address_to_script(change_address, network) if change_address else None

    selection = require_selection(
        utxos,
        amount,
        fee_per_byte,
        destination_vsize=output_vsize(destination_script),
        change_vsize=output_vsize(change_script),
        dust_threshold=dust_threshold,
    )
    if selection.requires_change and change_script is None:
        raise ValueError(
            f"Change of {selection.change_value} sats needs a change address"
        )

    signing: list[InputSigningInfo] = []
    for utxo in selection.utxos:
        key = keys.get(utxo.address)
        if key is None:
            raise DerivationLookupError(utxo.address)
        signing.append(_signing_info(utxo, key))

    outputs = [TxOutput(value=amount, script=destination_script)]
    change = 0
    if selection.requires_change:
        change = selection.change_value
        outputs.append(TxOutput(value=change, script=change_script))

    transaction = Transaction(
        version=2,
        inputs=[_unsigned_input(info) for info in signing],
        outputs=outputs,
    )

    logger.info(
        f"Built transaction {transaction.txid}: {len(signing)} input(s), "
        f"amount={amount}, fee={selection.fee}, change={change}"
    )
    return UnsignedTransaction(
        transaction=transaction,
        inputs=signing,
        fee=selection.fee,
        change_value=change,
        change_address=change_address if change else None,
        selected=list(selection.utxos),
    )
