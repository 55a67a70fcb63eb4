"""
Bitcoin script and address utilities.

Covers the output types the wallet meets in practice: P2PKH, P2SH,
P2WPKH and P2WSH. P2TR outputs are recognised but have no address form
here, since the `bech32` package only speaks BIP173 (witness v0).
Base58check goes through `base58`.
"""

from __future__ import annotations

import hashlib

import base58
import bech32

from watchwallet.models import NetworkType, ScriptType, get_network_params

OP_0 = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E
OP_1NEGATE = 0x4F
OP_1 = 0x51
OP_RETURN = 0x6A
OP_DUP = 0x76
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_HASH160 = 0xA9
OP_CHECKSIG = 0xAC
OP_CHECKMULTISIG = 0xAE

ScriptChunk = int | bytes


class ScriptDecodeError(ValueError):
    pass


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def electrum_script_hash(script: bytes | str) -> str:
    """Electrum address key: SHA256 of the output script, byte-reversed, hex."""
    if isinstance(script, str):
        script = bytes.fromhex(script)
    return sha256(script)[::-1].hex()


def push_data(data: bytes) -> bytes:
    """Serialize a minimal data push."""
    length = len(data)
    if length < OP_PUSHDATA1:
        return bytes([length]) + data
    if length <= 0xFF:
        return bytes([OP_PUSHDATA1, length]) + data
    if length <= 0xFFFF:
        return bytes([OP_PUSHDATA2]) + length.to_bytes(2, "little") + data
    return bytes([OP_PUSHDATA4]) + length.to_bytes(4, "little") + data


def _as_minimal_op(data: bytes) -> int | None:
    if len(data) == 0:
        return OP_0
    if len(data) == 1:
        if 1 <= data[0] <= 16:
            return OP_1 + data[0] - 1
        if data[0] == 0x81:
            return OP_1NEGATE
    return None


def decompile(script: bytes) -> list[ScriptChunk]:
    """
    Split a script into chunks: opcodes as ints, data pushes as bytes.

    Pushes that encode a small integer minimally are returned as the
    equivalent opcode, so an empty push shows up as OP_0.

    Raises:
        ScriptDecodeError: if a push runs past the end of the script
    """
    chunks: list[ScriptChunk] = []
    i = 0
    while i < len(script):
        opcode = script[i]
        if OP_0 < opcode <= OP_PUSHDATA4:
            if opcode < OP_PUSHDATA1:
                size, header = opcode, 1
            elif opcode == OP_PUSHDATA1:
                size, header = _read_length(script, i + 1, 1), 2
            elif opcode == OP_PUSHDATA2:
                size, header = _read_length(script, i + 1, 2), 3
            else:
                size, header = _read_length(script, i + 1, 4), 5
            start = i + header
            if start + size > len(script):
                raise ScriptDecodeError("Push past end of script")
            data = script[start : start + size]
            op = _as_minimal_op(data)
            chunks.append(op if op is not None else data)
            i = start + size
        else:
            chunks.append(opcode)
            i += 1
    return chunks


def _read_length(script: bytes, offset: int, width: int) -> int:
    if offset + width > len(script):
        raise ScriptDecodeError("Truncated push length")
    return int.from_bytes(script[offset : offset + width], "little")


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    """OP_DUP OP_HASH160 <20> OP_EQUALVERIFY OP_CHECKSIG"""
    return bytes([OP_DUP, OP_HASH160, 0x14]) + pubkey_hash + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def p2sh_script(script_hash: bytes) -> bytes:
    """OP_HASH160 <20> OP_EQUAL"""
    return bytes([OP_HASH160, 0x14]) + script_hash + bytes([OP_EQUAL])


def p2wpkh_script(pubkey_hash: bytes) -> bytes:
    """OP_0 <20>"""
    return bytes([OP_0, 0x14]) + pubkey_hash


def p2wsh_script(script_hash: bytes) -> bytes:
    """OP_0 <32>"""
    return bytes([OP_0, 0x20]) + script_hash


def p2ms_script(m: int, pubkeys: list[bytes]) -> bytes:
    """OP_m <pubkey>... OP_n OP_CHECKMULTISIG"""
    if not 1 <= m <= len(pubkeys) <= 16:
        raise ValueError(f"Invalid multisig parameters: {m}-of-{len(pubkeys)}")
    script = bytes([OP_1 + m - 1])
    for pubkey in pubkeys:
        script += push_data(pubkey)
    return script + bytes([OP_1 + len(pubkeys) - 1, OP_CHECKMULTISIG])


def _base58_address(version: int, payload: bytes) -> str:
    return base58.b58encode_check(bytes([version]) + payload).decode("ascii")


def _segwit_address(hrp: str, witver: int, witprog: bytes) -> str:
    address = bech32.encode(hrp, witver, witprog)
    if address is None:
        raise ValueError(f"Failed to encode witness program v{witver}: {witprog.hex()}")
    return address


def p2pkh_address(pubkey: bytes, network: NetworkType | str = NetworkType.MAINNET) -> str:
    return _base58_address(get_network_params(network).p2pkh_version, hash160(pubkey))


def p2sh_address(redeem_script: bytes, network: NetworkType | str = NetworkType.MAINNET) -> str:
    return _base58_address(get_network_params(network).p2sh_version, hash160(redeem_script))


def p2wsh_address(
    witness_script: bytes, network: NetworkType | str = NetworkType.MAINNET
) -> str:
    return _segwit_address(get_network_params(network).bech32_hrp, 0, sha256(witness_script))


def script_to_address(
    script: bytes, network: NetworkType | str = NetworkType.MAINNET
) -> str | None:
    """
    Render an output script as an address.

    Returns None for scripts without an address form (OP_RETURN, bare
    multisig, non-standard) and for witness v1+ programs, which need
    bech32m.
    """
    params = get_network_params(network)
    length = len(script)

    if (
        length == 25
        and script[:3] == bytes([OP_DUP, OP_HASH160, 0x14])
        and script[23:] == bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    ):
        return _base58_address(params.p2pkh_version, script[3:23])

    if length == 23 and script[:2] == bytes([OP_HASH160, 0x14]) and script[22] == OP_EQUAL:
        return _base58_address(params.p2sh_version, script[2:22])

    if length in (22, 34) and script[0] == OP_0 and script[1] == length - 2:
        return _segwit_address(params.bech32_hrp, 0, script[2:])

    return None


def address_to_script(address: str, network: NetworkType | str = NetworkType.MAINNET) -> bytes:
    """
    Convert an address to its output script.

    Raises:
        ValueError: if the address is malformed or belongs to another network
    """
    params = get_network_params(network)

    if address.lower().startswith(params.bech32_hrp + "1"):
        witver, witprog = bech32.decode(params.bech32_hrp, address)
        if witver is None or witprog is None:
            # bech32m checksums (witness v1+) fail BIP173 decoding
            if address[len(params.bech32_hrp) + 1 :].lower().startswith("q"):
                raise ValueError(f"Invalid bech32 address: {address}")
            raise ValueError(f"Unsupported witness version in address: {address}")
        if witver != 0:
            raise ValueError(f"Unsupported witness version {witver}: {address}")
        program = bytes(witprog)
        return bytes([OP_0, len(program)]) + program

    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise ValueError(f"Invalid address: {address}") from e

    if len(decoded) != 21:
        raise ValueError(f"Invalid base58 payload length: {len(decoded)}")

    version, payload = decoded[0], decoded[1:]
    if version == params.p2pkh_version:
        return p2pkh_script(payload)
    if version == params.p2sh_version:
        return p2sh_script(payload)

    raise ValueError(f"Address {address} does not belong to network {NetworkType(network).value}")


def wallet_scripts(pubkey: bytes, script_type: ScriptType | str) -> tuple[bytes, bytes | None]:
    """
    Output script for one of the wallet's own keys.

    Returns:
        (scriptpubkey, redeem_script); redeem_script is set for nested segwit
    """
    script_type = ScriptType(script_type)
    witness_program = p2wpkh_script(hash160(pubkey))
    if script_type == ScriptType.P2WPKH:
        return witness_program, None
    return p2sh_script(hash160(witness_program)), witness_program


def pubkey_to_address(
    pubkey: bytes,
    script_type: ScriptType | str,
    network: NetworkType | str = NetworkType.MAINNET,
) -> str:
    scriptpubkey, _ = wallet_scripts(pubkey, script_type)
    address = script_to_address(scriptpubkey, network)
    if address is None:
        raise ValueError(f"Cannot render address for script type {script_type}")
    return address


def classify_script(script: bytes) -> str | None:
    """Short output type tag used for size estimation, or None."""
    length = len(script)
    if length == 25 and script[0] == OP_DUP:
        return "p2pkh"
    if length == 23 and script[0] == OP_HASH160:
        return "p2sh"
    if length == 22 and script[0] == OP_0:
        return "p2wpkh"
    if length == 34 and script[0] == OP_0:
        return "p2wsh"
    if length == 34 and script[0] == OP_1:
        return "p2tr"
    return None
