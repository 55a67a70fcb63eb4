"""
HD address discovery with gap-limit scanning.

Addresses are derived from an account-level extended public key:

    <account>/{chain}/{index}
    - chain: 0 (external/receive), 1 (internal/change)
    - index: address index, assigned in increasing order per chain

Scanning stops on a chain once `gap_limit` consecutive inactive addresses
trail the list.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import IntEnum

from loguru import logger

from watchwallet.constants import DEFAULT_GAP_LIMIT
from watchwallet.models import NetworkType, ScriptType
from watchwallet.wallet.address import script_to_address, wallet_scripts
from watchwallet.wallet.bip32 import HDKey


class Chain(IntEnum):
    EXTERNAL = 0
    INTERNAL = 1


@dataclass
class AddressInfo:
    chain: Chain
    index: int
    script: bytes
    address: str
    pubkey: bytes
    redeem_script: bytes | None = None
    active: bool = False

    @property
    def path(self) -> str:
        """Derivation path relative to the account key."""
        return f"{int(self.chain)}/{self.index}"

    @property
    def is_internal(self) -> bool:
        return self.chain == Chain.INTERNAL


# Returns the number of transactions in the address's history
ActivityCheck = Callable[[AddressInfo], Awaitable[int]]


class AddressDiscovery:
    """
    Derives and classifies addresses of one account on both chains.

    The activity check is the only way activity is learned; the caller
    decides what else it does (e.g. feed the fetched history into a ledger).
    """

    def __init__(
        self,
        account_key: HDKey | None,
        check_activity: ActivityCheck,
        network: NetworkType | str = NetworkType.MAINNET,
        gap_limit: int = DEFAULT_GAP_LIMIT,
        script_type: ScriptType | str = ScriptType.P2SH_P2WPKH,
    ):
        if gap_limit < 1:
            raise ValueError(f"Gap limit must be positive, got {gap_limit}")
        self.account_key = account_key
        self.check_activity = check_activity
        self.network = NetworkType(network)
        self.gap_limit = gap_limit
        self.script_type = ScriptType(script_type)

        self._chains: dict[Chain, list[AddressInfo]] = {Chain.EXTERNAL: [], Chain.INTERNAL: []}
        self._by_address: dict[str, AddressInfo] = {}
        self._chain_keys: dict[Chain, HDKey] = {}

    def addresses(self, chain: Chain) -> list[AddressInfo]:
        return list(self._chains[chain])

    def all_addresses(self) -> list[AddressInfo]:
        return self._chains[Chain.EXTERNAL] + self._chains[Chain.INTERNAL]

    def owned_addresses(self) -> set[str]:
        return set(self._by_address)

    def lookup(self, address: str) -> AddressInfo | None:
        return self._by_address.get(address)

    def next_unused(self, chain: Chain) -> AddressInfo | None:
        """First inactive address on a chain."""
        for info in self._chains[chain]:
            if not info.active:
                return info
        return None

    def mark_active(self, address: str) -> bool:
        info = self._by_address.get(address)
        if info is None:
            return False
        info.active = True
        return True

    def reset(self, account_key: HDKey | None) -> None:
        """Switch to another account; all derived state is dropped."""
        self.account_key = account_key
        self._chains = {Chain.EXTERNAL: [], Chain.INTERNAL: []}
        self._by_address.clear()
        self._chain_keys.clear()

    def derive(self, chain: Chain, index: int) -> AddressInfo:
        if self.account_key is None:
            raise ValueError("No account key loaded")

        chain_key = self._chain_keys.get(chain)
        if chain_key is None:
            chain_key = self.account_key.derive_child(int(chain))
            self._chain_keys[chain] = chain_key

        pubkey = chain_key.derive_child(index).get_public_key_bytes()
        script, redeem_script = wallet_scripts(pubkey, self.script_type)
        address = script_to_address(script, self.network)
        if address is None:
            raise ValueError(f"Cannot render address for {chain.name}/{index}")

        return AddressInfo(
            chain=chain,
            index=index,
            script=script,
            address=address,
            pubkey=pubkey,
            redeem_script=redeem_script,
        )

    async def _refresh(self, info: AddressInfo) -> None:
        if info.active:
            return
        tx_count = await self.check_activity(info)
        if tx_count > 0:
            info.active = True

    async def scan_chain(self, chain: Chain) -> list[AddressInfo]:
        """
        Extend one chain until gap_limit consecutive inactive addresses trail it.

        Each iteration consumes one existing entry or appends exactly one new
        entry, so the scan terminates.
        """
        if self.account_key is None:
            return []

        entries = self._chains[chain]
        inactive_run = 0

        for info in entries:
            await self._refresh(info)
            inactive_run = 0 if info.active else inactive_run + 1
            if inactive_run >= self.gap_limit:
                break

        while inactive_run < self.gap_limit:
            info = self.derive(chain, len(entries))
            await self._refresh(info)
            entries.append(info)
            self._by_address[info.address] = info
            inactive_run = 0 if info.active else inactive_run + 1

        logger.debug(
            f"Scanned {chain.name.lower()} chain: {len(entries)} address(es), "
            f"{sum(1 for e in entries if e.active)} active"
        )
        return list(entries)

    async def discover(self) -> None:
        """Scan external then internal chain; no-op without an account key."""
        if self.account_key is None:
            logger.debug("No account key loaded, skipping discovery")
            return
        await self.scan_chain(Chain.EXTERNAL)
        await self.scan_chain(Chain.INTERNAL)
