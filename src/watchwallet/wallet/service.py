"""
Watch-only wallet service.

Wires the Electrum facade, address discovery and the ledger together for one
HD account:

    <account>/{chain}/{index}
    - chain: 0 (external/receive), 1 (internal/change)
    - index: address index

The account key is usually an xpub/ypub/zpub; a private account key only adds
a signer for finalizing built transactions.
"""

from __future__ import annotations

import asyncio

from loguru import logger

from watchwallet.config import WalletConfig
from watchwallet.electrum.api import FETCH_ERRORS, ElectrumApi
from watchwallet.electrum.transport import ElectrumTransport, TransportClosedError
from watchwallet.models import NetworkType, ScriptType
from watchwallet.network import NetworkConnectionError
from watchwallet.wallet.bip32 import AccountSigner, HDKey, mnemonic_to_seed
from watchwallet.wallet.discovery import AddressDiscovery, AddressInfo, Chain
from watchwallet.wallet.ledger import TransactionLedger
from watchwallet.wallet.models import BlockHeader, HistoryEntry, TransactionRecord, UTXOInfo
from watchwallet.wallet.transaction import Transaction
from watchwallet.wallet.tx_builder import UnsignedTransaction, make_transaction


def account_path(
    script_type: ScriptType | str, network: NetworkType | str, account: int = 0
) -> str:
    """BIP49/BIP84 account path for the script type."""
    purpose = 84 if ScriptType(script_type) == ScriptType.P2WPKH else 49
    coin_type = 0 if NetworkType(network) == NetworkType.MAINNET else 1
    return f"m/{purpose}'/{coin_type}'/{account}'"


class WalletService:
    """
    Watch-only wallet for one account.

    Everything runs on one event loop; status handling is serialized so
    concurrent notifications never derive the same index twice.
    """

    def __init__(
        self,
        account_key: HDKey | None,
        config: WalletConfig | None = None,
        transport: ElectrumTransport | None = None,
    ):
        self.config = config or WalletConfig()
        self.transport = transport or ElectrumTransport(
            self.config.electrum_host,
            self.config.electrum_port or 0,
            use_ssl=self.config.use_ssl,
            verify_ssl=self.config.verify_ssl,
            keepalive_interval=self.config.keepalive_interval,
            max_message_size=self.config.max_message_size,
            connect_timeout=self.config.connect_timeout,
        )
        self.api = ElectrumApi(self.transport, self.config.network)
        self.ledger = TransactionLedger()

        self.signer: AccountSigner | None = None
        if account_key is not None and account_key.is_private:
            self.signer = AccountSigner(account_key)
            account_key = account_key.neutered()

        self.discovery = AddressDiscovery(
            account_key,
            self._fetch_activity,
            network=self.config.network,
            gap_limit=self.config.gap_limit,
            script_type=self.config.script_type,
        )

        self.tip: BlockHeader | None = None
        self._subscribed: set[str] = set()
        self._status_lock = asyncio.Lock()
        self._closed = asyncio.Event()
        self.transport.on_close(self._closed.set)

        logger.info(
            f"Initialized {self.config.script_type.value} wallet on {self.config.network.value} "
            f"(gap limit {self.config.gap_limit})"
        )

    @classmethod
    def from_extended_key(
        cls,
        encoded: str,
        config: WalletConfig | None = None,
        transport: ElectrumTransport | None = None,
    ) -> WalletService:
        return cls(HDKey.from_extended_key(encoded), config, transport)

    @classmethod
    def from_mnemonic(
        cls,
        mnemonic: str,
        config: WalletConfig | None = None,
        transport: ElectrumTransport | None = None,
        passphrase: str = "",
        account: int = 0,
    ) -> WalletService:
        config = config or WalletConfig()
        master = HDKey.from_seed(mnemonic_to_seed(mnemonic, passphrase))
        path = account_path(config.script_type, config.network, account)
        return cls(master.derive(path), config, transport)

    async def _fetch_activity(self, info: AddressInfo) -> int:
        records = await self.api.get_history(info.script)
        self.ledger.ingest(records)
        return len(records)

    async def connect(self) -> None:
        await self.transport.connect()
        self._closed.clear()

    async def sync(self) -> int:
        """Discover addresses on both chains; returns the ledger size."""
        await self.discovery.discover()
        fees = self.ledger.fill_fees()
        active = sum(1 for info in self.discovery.all_addresses() if info.active)
        logger.info(
            f"Sync complete: {len(self.discovery.all_addresses())} addresses "
            f"({active} active), {len(self.ledger)} transactions, {fees} fees computed"
        )
        return len(self.ledger)

    def owned_addresses(self) -> set[str]:
        return self.discovery.owned_addresses()

    def utxos(self) -> list[UTXOInfo]:
        return self.ledger.utxos(self.owned_addresses())

    def balance(self) -> int:
        return self.ledger.balance(self.owned_addresses())

    def history(self) -> list[TransactionRecord]:
        return self.ledger.transactions()

    def next_receiving_address(self) -> AddressInfo | None:
        return self.discovery.next_unused(Chain.EXTERNAL)

    def next_change_address(self) -> AddressInfo | None:
        return self.discovery.next_unused(Chain.INTERNAL)

    def _mark_outputs_active(self, record: TransactionRecord) -> set[Chain]:
        touched: set[Chain] = set()
        for output in record.outputs:
            if output.address is None:
                continue
            info = self.discovery.lookup(output.address)
            if info is not None and not info.active:
                info.active = True
                touched.add(info.chain)
        return touched

    async def on_status_changed(self, entries: list[HistoryEntry]) -> None:
        """
        Reconcile a full history push for one address with the ledger.

        New transactions are fetched and ingested; known ones whose height
        moved get their confirmation fields updated in place.
        """
        async with self._status_lock:
            new, changed = self.ledger.reconcile_status(entries)
            touched: set[Chain] = set()

            for entry in new:
                try:
                    record = await self.api.get_transaction(entry.tx_hash, entry.height)
                except FETCH_ERRORS as e:
                    logger.error(f"Failed to fetch new transaction {entry.tx_hash}: {e}")
                    continue
                self.ledger.ingest([record])
                touched |= self._mark_outputs_active(record)
                logger.info(f"New transaction {entry.tx_hash} (height {entry.height})")

            for entry in changed:
                if not entry.is_confirmed:
                    self.ledger.apply_confirmation(entry.tx_hash, None)
                    logger.warning(f"Transaction {entry.tx_hash} is unconfirmed again")
                    continue
                try:
                    header = await self.api.get_block_header(entry.height)
                except FETCH_ERRORS as e:
                    logger.error(f"Failed to fetch header {entry.height}: {e}")
                    self.ledger.apply_confirmation(entry.tx_hash, entry.height)
                    continue
                self.ledger.apply_confirmation(
                    entry.tx_hash, header.height, header.timestamp, header.block_hash
                )
                logger.info(f"Transaction {entry.tx_hash} confirmed at {header.height}")

            # New activity may eat into the gap; extend and follow the new tail
            for chain in sorted(touched):
                await self.discovery.scan_chain(chain)
            if new:
                self.ledger.fill_fees()
            if touched and self._subscribed:
                await self.subscribe_addresses()

    async def on_head_changed(self, header: BlockHeader) -> None:
        self.tip = header
        logger.info(f"New chain tip {header.height} ({header.block_hash})")

    async def subscribe_addresses(self) -> int:
        """Subscribe to status changes of every derived address not yet followed."""
        count = 0
        for info in self.discovery.all_addresses():
            if info.address in self._subscribed:
                continue
            self._subscribed.add(info.address)
            await self.api.subscribe_status(info.script, self.on_status_changed)
            count += 1
        if count:
            logger.debug(f"Subscribed to {count} address(es)")
        return count

    async def create_transaction(
        self,
        destination: str,
        amount: int,
        fee_per_byte: int | float | None = None,
    ) -> UnsignedTransaction:
        """
        Build an unsigned payment from the current UTXO set.

        Raises:
            InsufficientFundsError: UTXOs cannot cover amount + fee
            DerivationLookupError: a selected UTXO has no derived key
            ValueError: change is needed but no change address is derived yet
        """
        if fee_per_byte is None:
            fee_per_byte = await self.api.get_fee_estimate(self.config.fee_target_blocks)

        change = self.next_change_address()
        keys = {info.address: info for info in self.discovery.all_addresses()}
        return make_transaction(
            keys,
            self.utxos(),
            destination,
            amount,
            change.address if change is not None else None,
            fee_per_byte,
            network=self.config.network,
            dust_threshold=self.config.dust_threshold,
        )

    def sign(self, unsigned: UnsignedTransaction) -> Transaction:
        if self.signer is None:
            raise ValueError("Watch-only wallet cannot sign; load a private account key")
        return unsigned.sign(self.signer)

    async def broadcast(self, tx: Transaction | str) -> TransactionRecord:
        """Broadcast and record the transaction so its inputs stop counting as UTXOs."""
        raw = tx if isinstance(tx, str) else tx.to_hex()
        record = await self.api.broadcast_transaction(raw)
        self.ledger.ingest([record])
        self._mark_outputs_active(record)
        return record

    async def _follow(self, first: bool) -> None:
        if first:
            await self.sync()
            await self.api.subscribe_headers(self.on_head_changed)
            await self.subscribe_addresses()
        else:
            # Server side state is gone after a reconnect
            await self.transport.resubscribe()

    async def _wait_closed_or(self, stop: asyncio.Event) -> None:
        waiters = [
            asyncio.create_task(stop.wait()),
            asyncio.create_task(self._closed.wait()),
        ]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def watch(self, stop: asyncio.Event | None = None) -> None:
        """
        Follow the chain and every derived address until `stop` is set.

        Reconnects with exponential backoff when the connection drops and
        re-issues all subscriptions afterwards.
        """
        stop = stop or asyncio.Event()
        delay = self.config.reconnect_delay
        first = True

        while not stop.is_set():
            try:
                if not self.transport.is_open():
                    await self.connect()
                await self._follow(first)
                first = False
                delay = self.config.reconnect_delay
                await self._wait_closed_or(stop)
                if not stop.is_set():
                    logger.warning("Connection lost, reconnecting")
            except (NetworkConnectionError, TransportClosedError) as e:
                logger.warning(f"Watch connection failed: {e}; retrying in {delay:.0f}s")
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.config.max_reconnect_delay)

    async def close(self) -> None:
        await self.transport.close()
