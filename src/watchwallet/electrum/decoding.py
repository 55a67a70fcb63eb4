"""
Decoding of raw Electrum payloads into wallet records.

Input addresses are not part of a raw transaction; they are recovered
heuristically from the scriptSig/witness shape:

    chunks  witness  type
    2       0        P2PKH                  <sig> <pubkey>
    1       2        P2SH-P2WPKH            <redeem> | <sig> <pubkey>
    0       2        P2WPKH                 | <sig> <pubkey>
    >2      0        P2SH(P2MS), m=c-2      OP_0 <sig>... <redeem>
    1       >2       P2SH(P2WSH(P2MS)),m=w-2 <redeem> | "" <sig>... <script>
    0       >2       P2WSH(P2MS), m=w-2     | "" <sig>... <script>

Anything else becomes UNKNOWN_ADDRESS.
"""

from __future__ import annotations

from loguru import logger

from watchwallet.constants import UNKNOWN_ADDRESS
from watchwallet.models import NetworkType
from watchwallet.wallet.address import (
    ScriptDecodeError,
    decompile,
    hash160,
    p2ms_script,
    p2pkh_address,
    p2sh_address,
    p2wpkh_script,
    p2wsh_address,
    p2wsh_script,
    script_to_address,
    sha256,
)
from watchwallet.wallet.models import BlockHeader, TransactionRecord, TxIn, TxOut
from watchwallet.wallet.transaction import (
    Transaction,
    TransactionSigningError,
    TxInput,
    deserialize_transaction,
    hash256,
)

HEADER_SIZE = 80


class AddressDecodeError(ValueError):
    """Input script/witness shape not recognised."""


class HeaderDecodeError(ValueError):
    pass


def decode_block_header(raw: str | bytes, height: int) -> BlockHeader:
    if isinstance(raw, str):
        raw = bytes.fromhex(raw)
    if len(raw) != HEADER_SIZE:
        raise HeaderDecodeError(f"Invalid header length: {len(raw)}")

    return BlockHeader(
        block_hash=hash256(raw)[::-1].hex(),
        height=height,
        timestamp=int.from_bytes(raw[68:72], "little"),
        prev_hash=raw[4:36][::-1].hex(),
        bits=int.from_bytes(raw[72:76], "little"),
        nonce=int.from_bytes(raw[76:80], "little"),
        version=int.from_bytes(raw[0:4], "little", signed=True),
        merkle_root=raw[36:68][::-1].hex(),
        # Header-only block: no transactions, no witness data
        weight=len(raw) * 4,
    )


def decode_transaction(raw: str | bytes) -> Transaction:
    if isinstance(raw, str):
        raw = bytes.fromhex(raw)
    return deserialize_transaction(raw)


def _multisig_pubkeys(script: bytes) -> list[bytes]:
    return [chunk for chunk in decompile(script) if isinstance(chunk, bytes)]


def _address_for_shape(
    chunks: list[int | bytes], witness: list[bytes], network: NetworkType | str
) -> str:
    n_chunks = len(chunks)
    n_witness = len(witness)

    if n_chunks == 2 and n_witness == 0:
        pubkey = chunks[1]
        if not isinstance(pubkey, bytes):
            raise AddressDecodeError("P2PKH pubkey chunk is an opcode")
        return p2pkh_address(pubkey, network)

    if n_chunks == 1 and n_witness == 2:
        return p2sh_address(p2wpkh_script(hash160(witness[1])), network)

    if n_chunks == 0 and n_witness == 2:
        script = p2wpkh_script(hash160(witness[1]))
        address = script_to_address(script, network)
        if address is None:
            raise AddressDecodeError("Cannot render P2WPKH address")
        return address

    if n_chunks > 2 and n_witness == 0:
        redeem = chunks[-1]
        if not isinstance(redeem, bytes):
            raise AddressDecodeError("Multisig redeem script chunk is an opcode")
        m = n_chunks - 2
        return p2sh_address(p2ms_script(m, _multisig_pubkeys(redeem)), network)

    if n_chunks == 1 and n_witness > 2:
        m = n_witness - 2
        witness_script = p2ms_script(m, _multisig_pubkeys(witness[-1]))
        return p2sh_address(p2wsh_script(sha256(witness_script)), network)

    if n_chunks == 0 and n_witness > 2:
        m = n_witness - 2
        return p2wsh_address(p2ms_script(m, _multisig_pubkeys(witness[-1])), network)

    raise AddressDecodeError(f"Unrecognised input shape ({n_chunks} chunks, {n_witness} witness)")


def derive_address_from_input(
    txin: TxInput, network: NetworkType | str = NetworkType.MAINNET
) -> str:
    """
    Best-effort owning address of an input.

    Never raises: unrecognised shapes are logged and yield UNKNOWN_ADDRESS.
    """
    try:
        chunks = decompile(txin.script)
        return _address_for_shape(chunks, txin.witness, network)
    except (AddressDecodeError, ScriptDecodeError, ValueError) as e:
        logger.error(f"Cannot decode address from input {txin.txid}:{txin.vout}: {e}")
        return UNKNOWN_ADDRESS


def transaction_to_record(
    tx: str | bytes | Transaction,
    network: NetworkType | str = NetworkType.MAINNET,
    header: BlockHeader | None = None,
) -> TransactionRecord:
    """
    Decode a raw transaction into a TransactionRecord.

    Raises:
        TransactionSigningError: if the raw bytes do not parse
    """
    if not isinstance(tx, Transaction):
        tx = decode_transaction(tx)

    coinbase = tx.is_coinbase
    inputs = [
        TxIn(
            txid=inp.txid,
            output_index=inp.vout,
            index=index,
            address=UNKNOWN_ADDRESS if coinbase else derive_address_from_input(inp, network),
            script=inp.script,
            witness=list(inp.witness),
            sequence=inp.sequence,
        )
        for index, inp in enumerate(tx.inputs)
    ]
    outputs = [
        TxOut(
            value=out.value,
            address=script_to_address(out.script, network),
            script=out.script,
            index=index,
        )
        for index, out in enumerate(tx.outputs)
    ]

    record = TransactionRecord(
        txid=tx.txid,
        inputs=inputs,
        outputs=outputs,
        version=tx.version,
        vsize=tx.vsize,
        weight=tx.weight,
        is_coinbase=coinbase,
        raw=tx.to_hex(),
    )
    if header is not None:
        record.attach_header(header)
    return record


__all__ = [
    "AddressDecodeError",
    "HeaderDecodeError",
    "TransactionSigningError",
    "decode_block_header",
    "decode_transaction",
    "derive_address_from_input",
    "transaction_to_record",
]
