"""
Electrum protocol and wallet constants.

Virtual sizes follow the usual estimates for signed inputs and outputs:
- P2WPKH input: ~68 vbytes (41 non-witness + 107 witness / 4)
- P2SH-P2WPKH input: ~91 vbytes (extra 23-byte redeem script push)
- P2PKH input: ~148 vbytes
- Overhead: ~11 vbytes (version, locktime, counts, segwit marker)
"""

from __future__ import annotations

# Keepalive ping interval (seconds)
KEEPALIVE_INTERVAL = 30.0

# Request ids are drawn at random from [1, REQUEST_ID_MAX]
REQUEST_ID_MAX = 100_000

# Electrum servers may return large raw transactions on a single line
MAX_MESSAGE_SIZE = 4 * 1024 * 1024

# Placeholder address for inputs whose spending pattern is not recognised
UNKNOWN_ADDRESS = "-unknown-"

DEFAULT_GAP_LIMIT = 20

# Standard P2PKH dust limit in Bitcoin Core
STANDARD_DUST_LIMIT = 546  # satoshis

TX_OVERHEAD_VSIZE = 11

INPUT_VSIZE: dict[str, int] = {
    "p2wpkh": 68,
    "p2sh-p2wpkh": 91,
    "p2pkh": 148,
}

OUTPUT_VSIZE: dict[str, int] = {
    "p2wpkh": 31,
    "p2sh": 32,
    "p2pkh": 34,
    "p2wsh": 43,
    "p2tr": 43,
}

# Used when the output type is not known up front
DEFAULT_OUTPUT_VSIZE = 34

# Fallback relay fee (sat/vbyte) when the server cannot estimate
MIN_RELAY_FEE = 1

SEQUENCE_FINAL = 0xFFFFFFFF
SIGHASH_ALL = 1
