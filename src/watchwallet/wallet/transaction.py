"""
Bitcoin transaction (de)serialization and BIP143 signature hashing.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field

from watchwallet.constants import SEQUENCE_FINAL, SIGHASH_ALL


class TransactionSigningError(Exception):
    pass


@dataclass
class TxInput:
    txid_le: bytes
    vout: int
    script: bytes
    sequence: int = SEQUENCE_FINAL
    witness: list[bytes] = field(default_factory=list)

    @property
    def txid(self) -> str:
        return self.txid_le[::-1].hex()

    @classmethod
    def from_outpoint(cls, txid: str, vout: int, sequence: int = SEQUENCE_FINAL) -> TxInput:
        return cls(txid_le=bytes.fromhex(txid)[::-1], vout=vout, script=b"", sequence=sequence)


@dataclass
class TxOutput:
    value: int
    script: bytes


@dataclass
class Transaction:
    version: int
    inputs: list[TxInput]
    outputs: list[TxOutput]
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        segwit = include_witness and self.has_witness
        result = self.version.to_bytes(4, "little", signed=True)
        if segwit:
            result += bytes([0x00, 0x01])

        result += encode_varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.txid_le + inp.vout.to_bytes(4, "little")
            result += encode_varint(len(inp.script)) + inp.script
            result += inp.sequence.to_bytes(4, "little")

        result += encode_varint(len(self.outputs))
        for out in self.outputs:
            result += out.value.to_bytes(8, "little")
            result += encode_varint(len(out.script)) + out.script

        if segwit:
            for inp in self.inputs:
                result += encode_varint(len(inp.witness))
                for item in inp.witness:
                    result += encode_varint(len(item)) + item

        result += self.locktime.to_bytes(4, "little")
        return result

    @property
    def txid(self) -> str:
        """Double SHA256 of the non-witness serialization, byte-reversed."""
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    @property
    def weight(self) -> int:
        base = len(self.serialize(include_witness=False))
        total = len(self.serialize(include_witness=True))
        return base * 3 + total

    @property
    def vsize(self) -> int:
        return (self.weight + 3) // 4

    @property
    def is_coinbase(self) -> bool:
        return (
            len(self.inputs) == 1
            and self.inputs[0].txid_le == b"\x00" * 32
            and self.inputs[0].vout == 0xFFFFFFFF
        )

    def to_hex(self) -> str:
        return self.serialize().hex()


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    first = data[offset]
    offset += 1

    if first < 0xFD:
        return first, offset
    if first == 0xFD:
        value = int.from_bytes(data[offset : offset + 2], "little")
        return value, offset + 2
    if first == 0xFE:
        value = int.from_bytes(data[offset : offset + 4], "little")
        return value, offset + 4
    value = int.from_bytes(data[offset : offset + 8], "little")
    return value, offset + 8


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def _take(data: bytes, offset: int, size: int) -> tuple[bytes, int]:
    if offset + size > len(data):
        raise ValueError("Unexpected end of data")
    return data[offset : offset + size], offset + size


def deserialize_transaction(tx_bytes: bytes) -> Transaction:
    try:
        offset = 0
        version_bytes, offset = _take(tx_bytes, offset, 4)
        version = int.from_bytes(version_bytes, "little", signed=True)

        marker_flag = False
        if tx_bytes[offset] == 0x00 and tx_bytes[offset + 1] == 0x01:
            marker_flag = True
            offset += 2

        input_count, offset = read_varint(tx_bytes, offset)
        inputs: list[TxInput] = []

        for _ in range(input_count):
            txid_le, offset = _take(tx_bytes, offset, 32)
            vout_bytes, offset = _take(tx_bytes, offset, 4)
            script_len, offset = read_varint(tx_bytes, offset)
            script, offset = _take(tx_bytes, offset, script_len)
            sequence_bytes, offset = _take(tx_bytes, offset, 4)

            inputs.append(
                TxInput(
                    txid_le=txid_le,
                    vout=int.from_bytes(vout_bytes, "little"),
                    script=script,
                    sequence=int.from_bytes(sequence_bytes, "little"),
                )
            )

        output_count, offset = read_varint(tx_bytes, offset)
        outputs: list[TxOutput] = []

        for _ in range(output_count):
            value_bytes, offset = _take(tx_bytes, offset, 8)
            script_len, offset = read_varint(tx_bytes, offset)
            script, offset = _take(tx_bytes, offset, script_len)
            outputs.append(TxOutput(int.from_bytes(value_bytes, "little"), script))

        if marker_flag:
            for inp in inputs:
                stack_count, offset = read_varint(tx_bytes, offset)
                for _ in range(stack_count):
                    item_len, offset = read_varint(tx_bytes, offset)
                    item, offset = _take(tx_bytes, offset, item_len)
                    inp.witness.append(item)

        locktime_bytes, offset = _take(tx_bytes, offset, 4)
        if offset != len(tx_bytes):
            raise ValueError(f"{len(tx_bytes) - offset} trailing bytes")

        return Transaction(version, inputs, outputs, int.from_bytes(locktime_bytes, "little"))

    except (ValueError, IndexError) as e:
        raise TransactionSigningError(f"Failed to parse transaction: {e}") from e


def compute_sighash_segwit(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """BIP143 signature hash for a segwit v0 input."""
    if input_index >= len(tx.inputs):
        raise TransactionSigningError("Input index out of range")

    hash_prevouts = hash256(
        b"".join(inp.txid_le + inp.vout.to_bytes(4, "little") for inp in tx.inputs)
    )
    hash_sequence = hash256(b"".join(inp.sequence.to_bytes(4, "little") for inp in tx.inputs))
    hash_outputs = hash256(
        b"".join(
            out.value.to_bytes(8, "little") + encode_varint(len(out.script)) + out.script
            for out in tx.outputs
        )
    )

    target_input = tx.inputs[input_index]

    preimage = (
        tx.version.to_bytes(4, "little", signed=True)
        + hash_prevouts
        + hash_sequence
        + target_input.txid_le
        + target_input.vout.to_bytes(4, "little")
        + encode_varint(len(script_code))
        + script_code
        + value.to_bytes(8, "little")
        + target_input.sequence.to_bytes(4, "little")
        + hash_outputs
        + tx.locktime.to_bytes(4, "little")
        + sighash_type.to_bytes(4, "little")
    )

    return hash256(preimage)


def create_p2wpkh_script_code(pubkey_bytes: bytes) -> bytes:
    """Create the scriptCode for P2WPKH signing (BIP 143).

    For P2WPKH, the scriptCode is the P2PKH script:
    OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
    """
    pubkey_hash = hashlib.new("ripemd160", hashlib.sha256(pubkey_bytes).digest()).digest()
    return b"\x76\xa9\x14" + pubkey_hash + b"\x88\xac"
