"""
Core enums and network parameters shared across the package.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"


class ScriptType(str, Enum):
    """Script types the wallet derives its own addresses with."""

    P2WPKH = "p2wpkh"
    P2SH_P2WPKH = "p2sh-p2wpkh"


@dataclass(frozen=True)
class NetworkParams:
    bech32_hrp: str
    p2pkh_version: int
    p2sh_version: int
    xpub_versions: tuple[bytes, ...]
    xprv_versions: tuple[bytes, ...]


_MAINNET = NetworkParams(
    bech32_hrp="bc",
    p2pkh_version=0x00,
    p2sh_version=0x05,
    # xpub, ypub, zpub
    xpub_versions=(
        bytes.fromhex("0488b21e"),
        bytes.fromhex("049d7cb2"),
        bytes.fromhex("04b24746"),
    ),
    # xprv, yprv, zprv
    xprv_versions=(
        bytes.fromhex("0488ade4"),
        bytes.fromhex("049d7878"),
        bytes.fromhex("04b2430c"),
    ),
)

_TESTNET_VERSIONS = {
    # tpub, upub, vpub
    "xpub_versions": (
        bytes.fromhex("043587cf"),
        bytes.fromhex("044a5262"),
        bytes.fromhex("045f1cf6"),
    ),
    # tprv, uprv, vprv
    "xprv_versions": (
        bytes.fromhex("04358394"),
        bytes.fromhex("044a4e28"),
        bytes.fromhex("045f18bc"),
    ),
}

NETWORK_PARAMS: dict[NetworkType, NetworkParams] = {
    NetworkType.MAINNET: _MAINNET,
    NetworkType.TESTNET: NetworkParams(
        bech32_hrp="tb", p2pkh_version=0x6F, p2sh_version=0xC4, **_TESTNET_VERSIONS
    ),
    NetworkType.SIGNET: NetworkParams(
        bech32_hrp="tb", p2pkh_version=0x6F, p2sh_version=0xC4, **_TESTNET_VERSIONS
    ),
    NetworkType.REGTEST: NetworkParams(
        bech32_hrp="bcrt", p2pkh_version=0x6F, p2sh_version=0xC4, **_TESTNET_VERSIONS
    ),
}


def get_network_params(network: NetworkType | str) -> NetworkParams:
    return NETWORK_PARAMS[NetworkType(network)]
