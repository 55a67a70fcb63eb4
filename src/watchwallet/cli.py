"""
watchwallet CLI - inspect and spend from a watch-only HD account over Electrum.
"""

from __future__ import annotations

import asyncio
import signal
import sys
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TypeVar

import typer
from loguru import logger

from watchwallet.config import WalletConfig, get_settings
from watchwallet.electrum.api import BroadcastMismatchError
from watchwallet.electrum.transport import TransportClosedError
from watchwallet.models import NetworkType, ScriptType
from watchwallet.network import NetworkConnectionError
from watchwallet.protocol import ProtocolError
from watchwallet.wallet.bip32 import ExtendedKeyError
from watchwallet.wallet.coin_selection import InsufficientFundsError
from watchwallet.wallet.discovery import Chain
from watchwallet.wallet.service import WalletService
from watchwallet.wallet.tx_builder import DerivationLookupError

T = TypeVar("T")

app = typer.Typer(
    name="watchwallet",
    help="Watch-only HD wallet over the Electrum protocol",
    add_completion=False,
)

# Errors reported as a one-line failure instead of a traceback
CLI_ERRORS = (
    NetworkConnectionError,
    TransportClosedError,
    ProtocolError,
    BroadcastMismatchError,
    InsufficientFundsError,
    DerivationLookupError,
    ExtendedKeyError,
    ValueError,
)


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def _load_service(
    xpub: str | None,
    mnemonic: str | None,
    network: NetworkType | None,
    host: str | None,
    port: int | None,
    ssl: bool | None,
    gap_limit: int | None,
    script_type: ScriptType | None,
) -> WalletService:
    settings = get_settings()
    config: WalletConfig = settings.wallet_config(
        network=network,
        electrum_host=host,
        electrum_port=port,
        use_ssl=ssl,
        gap_limit=gap_limit,
        script_type=script_type,
    )

    try:
        if mnemonic:
            return WalletService.from_mnemonic(mnemonic, config)
        if xpub:
            return WalletService.from_extended_key(xpub, config)
    except ExtendedKeyError as e:
        logger.error(f"Invalid account key: {e}")
        raise typer.Exit(1)

    logger.error("Account key required. Use --xpub, --mnemonic or WATCHWALLET_XPUB")
    raise typer.Exit(1)


def _run(service: WalletService, action: Callable[[WalletService], Awaitable[T]]) -> T:
    async def runner() -> T:
        try:
            await service.connect()
            return await action(service)
        finally:
            await service.close()

    try:
        return asyncio.run(runner())
    except CLI_ERRORS as e:
        logger.error(f"{type(e).__name__}: {e}")
        raise typer.Exit(1)


async def _synced(service: WalletService) -> WalletService:
    await service.sync()
    return service


XpubOption = typer.Option(None, "--xpub", "-x", envvar="WATCHWALLET_XPUB", help="Account xpub")
MnemonicOption = typer.Option(
    None, "--mnemonic", envvar="WATCHWALLET_MNEMONIC", help="BIP39 mnemonic (enables signing)"
)
NetworkOption = typer.Option(None, "--network", "-n", help="Bitcoin network")
HostOption = typer.Option(None, "--host", help="Electrum server host")
PortOption = typer.Option(None, "--port", "-p", help="Electrum server port")
SslOption = typer.Option(None, "--ssl/--no-ssl", help="Use TLS")
GapOption = typer.Option(None, "--gap-limit", "-g", help="Address gap limit")
ScriptTypeOption = typer.Option(None, "--script-type", "-t", help="p2wpkh | p2sh-p2wpkh")
LogLevelOption = typer.Option("INFO", "--log-level", "-l")


@app.command()
def addresses(
    xpub: str | None = XpubOption,
    mnemonic: str | None = MnemonicOption,
    network: NetworkType | None = NetworkOption,
    host: str | None = HostOption,
    port: int | None = PortOption,
    ssl: bool | None = SslOption,
    gap_limit: int | None = GapOption,
    script_type: ScriptType | None = ScriptTypeOption,
    log_level: str = LogLevelOption,
) -> None:
    """List discovered addresses on both chains."""
    setup_logging(log_level)
    service = _load_service(xpub, mnemonic, network, host, port, ssl, gap_limit, script_type)
    service = _run(service, _synced)

    for chain in Chain:
        typer.echo(f"\n{chain.name.title()} chain:")
        for info in service.discovery.addresses(chain):
            marker = "used" if info.active else "    "
            typer.echo(f"  {info.path:>8}  {marker}  {info.address}")


@app.command()
def balance(
    xpub: str | None = XpubOption,
    mnemonic: str | None = MnemonicOption,
    network: NetworkType | None = NetworkOption,
    host: str | None = HostOption,
    port: int | None = PortOption,
    ssl: bool | None = SslOption,
    gap_limit: int | None = GapOption,
    script_type: ScriptType | None = ScriptTypeOption,
    log_level: str = LogLevelOption,
) -> None:
    """Show the spendable balance."""
    setup_logging(log_level)
    service = _load_service(xpub, mnemonic, network, host, port, ssl, gap_limit, script_type)
    service = _run(service, _synced)

    total = service.balance()
    unconfirmed = sum(u.value for u in service.utxos() if u.height is None)
    typer.echo(f"\nBalance: {total:,} sats ({total / 1e8:.8f} BTC)")
    if unconfirmed:
        typer.echo(f"  of which unconfirmed: {unconfirmed:,} sats")

    receive = service.next_receiving_address()
    if receive is not None:
        typer.echo(f"Next receiving address: {receive.address}")


@app.command()
def history(
    xpub: str | None = XpubOption,
    mnemonic: str | None = MnemonicOption,
    network: NetworkType | None = NetworkOption,
    host: str | None = HostOption,
    port: int | None = PortOption,
    ssl: bool | None = SslOption,
    gap_limit: int | None = GapOption,
    script_type: ScriptType | None = ScriptTypeOption,
    log_level: str = LogLevelOption,
) -> None:
    """List wallet transactions, newest first."""
    setup_logging(log_level)
    service = _load_service(xpub, mnemonic, network, host, port, ssl, gap_limit, script_type)
    service = _run(service, _synced)

    owned = service.owned_addresses()
    for record in service.history():
        received = sum(o.value for o in record.outputs if o.address in owned)
        when = (
            datetime.fromtimestamp(record.block_time).strftime("%Y-%m-%d %H:%M")
            if record.block_time is not None
            else "unconfirmed"
        )
        fee = f"fee {record.fee:,}" if record.fee is not None else ""
        typer.echo(f"{when:>16}  {record.txid}  +{received:,} sats  {fee}")


@app.command()
def utxos(
    xpub: str | None = XpubOption,
    mnemonic: str | None = MnemonicOption,
    network: NetworkType | None = NetworkOption,
    host: str | None = HostOption,
    port: int | None = PortOption,
    ssl: bool | None = SslOption,
    gap_limit: int | None = GapOption,
    script_type: ScriptType | None = ScriptTypeOption,
    log_level: str = LogLevelOption,
) -> None:
    """List unspent outputs."""
    setup_logging(log_level)
    service = _load_service(xpub, mnemonic, network, host, port, ssl, gap_limit, script_type)
    service = _run(service, _synced)

    for utxo in sorted(service.utxos(), key=lambda u: u.value, reverse=True):
        height = utxo.height if utxo.height is not None else "-"
        typer.echo(f"{utxo.txid}:{utxo.vout}  {utxo.value:>15,} sats  {height:>8}  {utxo.address}")


@app.command()
def send(
    destination: str = typer.Argument(..., help="Destination address"),
    amount: int = typer.Argument(..., help="Amount in sats"),
    fee_rate: float | None = typer.Option(
        None, "--fee-rate", "-f", help="sat/vbyte (default: server estimate)"
    ),
    push: bool = typer.Option(False, "--broadcast", "-b", help="Sign and broadcast"),
    xpub: str | None = XpubOption,
    mnemonic: str | None = MnemonicOption,
    network: NetworkType | None = NetworkOption,
    host: str | None = HostOption,
    port: int | None = PortOption,
    ssl: bool | None = SslOption,
    gap_limit: int | None = GapOption,
    script_type: ScriptType | None = ScriptTypeOption,
    log_level: str = LogLevelOption,
) -> None:
    """Build a payment; prints the signing plan, or signs when a mnemonic is given."""
    setup_logging(log_level)
    service = _load_service(xpub, mnemonic, network, host, port, ssl, gap_limit, script_type)

    async def action(service: WalletService) -> None:
        await service.sync()
        unsigned = await service.create_transaction(destination, amount, fee_rate)

        typer.echo(f"\nTransaction {unsigned.txid}")
        typer.echo(f"  fee: {unsigned.fee:,} sats  change: {unsigned.change_value:,} sats")
        for info in unsigned.inputs:
            typer.echo(f"  input {info.txid}:{info.vout}  {info.value:,} sats  signs: {info.path}")

        if service.signer is None:
            typer.echo(f"\nUnsigned: {unsigned.to_hex()}")
            return

        signed = service.sign(unsigned)
        typer.echo(f"\nSigned: {signed.to_hex()}")
        if push:
            record = await service.broadcast(signed)
            typer.echo(f"Broadcast: {record.txid}")

    _run(service, action)


@app.command()
def broadcast(
    raw_tx: str = typer.Argument(..., help="Raw transaction hex"),
    network: NetworkType | None = NetworkOption,
    host: str | None = HostOption,
    port: int | None = PortOption,
    ssl: bool | None = SslOption,
    log_level: str = LogLevelOption,
) -> None:
    """Broadcast a signed transaction."""
    setup_logging(log_level)
    config = get_settings().wallet_config(
        network=network, electrum_host=host, electrum_port=port, use_ssl=ssl
    )
    service = WalletService(None, config)

    async def action(service: WalletService) -> str:
        record = await service.api.broadcast_transaction(raw_tx)
        return record.txid

    txid = _run(service, action)
    typer.echo(txid)


@app.command()
def watch(
    xpub: str | None = XpubOption,
    mnemonic: str | None = MnemonicOption,
    network: NetworkType | None = NetworkOption,
    host: str | None = HostOption,
    port: int | None = PortOption,
    ssl: bool | None = SslOption,
    gap_limit: int | None = GapOption,
    script_type: ScriptType | None = ScriptTypeOption,
    log_level: str = LogLevelOption,
) -> None:
    """Follow new blocks and address activity until interrupted."""
    setup_logging(log_level)
    service = _load_service(xpub, mnemonic, network, host, port, ssl, gap_limit, script_type)

    async def runner() -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        try:
            await service.watch(stop)
        finally:
            await service.close()
            logger.info(f"Stopped; balance {service.balance():,} sats")

    asyncio.run(runner())


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
