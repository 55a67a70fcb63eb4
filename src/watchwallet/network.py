"""
Network primitives: newline-framed connections to Electrum servers.
"""

from __future__ import annotations

import asyncio
import ssl
from abc import ABC, abstractmethod

from loguru import logger

from watchwallet.constants import MAX_MESSAGE_SIZE


class NetworkConnectionError(Exception):
    pass


class Connection(ABC):
    @abstractmethod
    async def send(self, data: bytes) -> None:
        pass

    @abstractmethod
    async def receive(self) -> bytes:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    @abstractmethod
    def is_connected(self) -> bool:
        pass


class TCPConnection(Connection):
    """One JSON message per line over a plain or TLS stream."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        max_message_size: int = MAX_MESSAGE_SIZE,
    ):
        self.reader = reader
        self.writer = writer
        self.max_message_size = max_message_size
        self._connected = True

    async def send(self, data: bytes) -> None:
        if not self._connected:
            raise NetworkConnectionError("Connection closed")
        if len(data) > self.max_message_size:
            raise ValueError(f"Message too large: {len(data)} > {self.max_message_size}")

        self.writer.write(data + b"\n")
        await self.writer.drain()
        logger.debug(f"TCPConnection.send: {len(data) + 1} bytes")

    async def receive(self) -> bytes:
        if not self._connected:
            raise NetworkConnectionError("Connection closed")

        try:
            data = await self.reader.readuntil(b"\n")
        except asyncio.LimitOverrunError as e:
            logger.error(f"Message too large (>{self.max_message_size} bytes)")
            raise NetworkConnectionError("Message too large") from e
        except asyncio.IncompleteReadError as e:
            self._connected = False
            logger.debug("TCPConnection.receive: connection closed by peer")
            raise NetworkConnectionError("Connection closed by peer") from e

        return data.rstrip(b"\r\n")

    async def close(self) -> None:
        if not self._connected:
            return
        self._connected = False
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, ssl.SSLError) as e:
            logger.debug(f"TCPConnection.close: {e}")

    def is_connected(self) -> bool:
        return self._connected


def make_ssl_context(verify: bool = True) -> ssl.SSLContext:
    """Electrum servers commonly run self-signed certificates."""
    context = ssl.create_default_context()
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


async def connect_direct(
    host: str,
    port: int,
    max_message_size: int = MAX_MESSAGE_SIZE,
    timeout: float = 30.0,
    use_ssl: bool = False,
    verify_ssl: bool = False,
) -> TCPConnection:
    """Open a TCP (optionally TLS) connection to host:port."""
    context = make_ssl_context(verify_ssl) if use_ssl else None
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port, ssl=context, limit=max_message_size),
            timeout=timeout,
        )
    except (OSError, TimeoutError) as e:
        raise NetworkConnectionError(f"Failed to connect to {host}:{port}: {e}") from e

    logger.info(f"Connected to {host}:{port}{' (ssl)' if use_ssl else ''}")
    return TCPConnection(reader, writer, max_message_size)
