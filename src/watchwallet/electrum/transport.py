"""
Electrum protocol transport.

One persistent connection carrying JSON-RPC requests, their out-of-order
responses and server-pushed subscription notifications. The transport knows
nothing about wallets.

Connection lifecycle:

    CONNECTING --connect()--> OPEN --close/peer drop--> CLOSED

Requests issued while not OPEN wait on the "connected" gate. When the
connection closes the gate is reset, the keepalive stops and requests still
in flight fail with TransportClosedError; they are never retried.
Subscriptions stay registered across a close, but the server forgets them:
after reconnecting the caller must invoke resubscribe().
"""

from __future__ import annotations

import asyncio
import inspect
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

from watchwallet.constants import KEEPALIVE_INTERVAL, MAX_MESSAGE_SIZE, REQUEST_ID_MAX
from watchwallet.network import Connection, NetworkConnectionError, connect_direct
from watchwallet.protocol import (
    SUBSCRIBE_SUFFIX,
    UNSUBSCRIBE_SUFFIX,
    ProtocolError,
    RpcNotification,
    RpcRequest,
    RpcResponse,
    parse_message,
    subscribe_method,
    subscription_key,
)

SubscriptionCallback = Callable[[list[Any]], Awaitable[None] | None]


class TransportClosedError(Exception):
    """The connection closed before a response arrived."""


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class Subscription:
    """Ordered delivery channel for one routing key."""

    key: str
    method: str
    params: tuple[Any, ...]
    callback: SubscriptionCallback
    queue: asyncio.Queue[list[Any]] = field(default_factory=asyncio.Queue)
    worker: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self.worker is None or self.worker.done():
            self.worker = asyncio.create_task(self._drain())

    def stop(self) -> None:
        if self.worker is not None:
            self.worker.cancel()
            self.worker = None

    async def _drain(self) -> None:
        while True:
            params = await self.queue.get()
            try:
                outcome = self.callback(params)
                if inspect.isawaitable(outcome):
                    await outcome
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Subscription callback for {self.key} failed: {e}")
            finally:
                self.queue.task_done()


class ElectrumTransport:
    """JSON-RPC client over a single Electrum server connection."""

    def __init__(
        self,
        host: str,
        port: int,
        use_ssl: bool = False,
        verify_ssl: bool = True,
        keepalive_interval: float = KEEPALIVE_INTERVAL,
        max_message_size: int = MAX_MESSAGE_SIZE,
        connect_timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.use_ssl = use_ssl
        self.verify_ssl = verify_ssl
        self.keepalive_interval = keepalive_interval
        self.max_message_size = max_message_size
        self.connect_timeout = connect_timeout

        self.state = ConnectionState.CONNECTING
        self.connection: Connection | None = None

        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._pending_methods: dict[int, str] = {}
        # Ids written to the socket (as opposed to waiting on the gate)
        self._in_flight: set[int] = set()
        self._subscriptions: dict[str, Subscription] = {}
        self._connected = asyncio.Event()
        self._reader_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._closed_callbacks: list[Callable[[], None]] = []

    @property
    def pending_ids(self) -> set[int]:
        return set(self._pending)

    @property
    def subscription_keys(self) -> set[str]:
        return set(self._subscriptions)

    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN

    def on_close(self, callback: Callable[[], None]) -> None:
        """Register a callback run whenever the connection closes."""
        self._closed_callbacks.append(callback)

    async def connect(self) -> None:
        self.state = ConnectionState.CONNECTING
        connection = await connect_direct(
            self.host,
            self.port,
            max_message_size=self.max_message_size,
            timeout=self.connect_timeout,
            use_ssl=self.use_ssl,
            verify_ssl=self.verify_ssl,
        )
        self.attach(connection)

    def attach(self, connection: Connection) -> None:
        """Take ownership of an established connection and open the gate."""
        self.connection = connection
        self.state = ConnectionState.OPEN
        self._reader_task = asyncio.create_task(self._read_loop(connection))
        self._keepalive_task = asyncio.create_task(self._keepalive())
        self._connected.set()
        logger.debug(f"ElectrumTransport OPEN ({self.host}:{self.port})")

    async def close(self) -> None:
        connection = self.connection
        reader = self._reader_task
        self._on_close()
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
        if connection is not None:
            await connection.close()
        for subscription in self._subscriptions.values():
            subscription.stop()

    def _allocate_id(self) -> int:
        while True:
            request_id = random.randint(1, REQUEST_ID_MAX)
            if request_id not in self._pending:
                return request_id

    async def request(self, method: str, *params: Any) -> Any:
        """
        Send a request and wait for its response.

        Raises:
            ProtocolError: if the response carries an error or no result
            TransportClosedError: if the connection closes first
        """
        request_id = self._allocate_id()
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        self._pending_methods[request_id] = method

        try:
            while self.connection is None:
                await self._connected.wait()
            payload = RpcRequest(method=method, params=list(params), id=request_id)
            logger.debug(f"ElectrumTransport SEND: {method} {list(params)}")
            self._in_flight.add(request_id)
            await self.connection.send(payload.serialize())
        except NetworkConnectionError as e:
            self._discard(request_id, future)
            raise TransportClosedError(f"{method}: {e}") from e
        except BaseException:
            self._discard(request_id, future)
            raise

        try:
            return await future
        finally:
            # The id may already belong to a newer request
            if self._pending.get(request_id) is future:
                self._forget(request_id)

    def _forget(self, request_id: int) -> None:
        self._pending.pop(request_id, None)
        self._pending_methods.pop(request_id, None)
        self._in_flight.discard(request_id)

    def _discard(self, request_id: int, future: asyncio.Future[Any]) -> None:
        if self._pending.get(request_id) is future:
            self._forget(request_id)
        if future.done() and not future.cancelled():
            future.exception()
        else:
            future.cancel()

    async def subscribe(self, method: str, callback: SubscriptionCallback, *params: Any) -> Any:
        """
        Subscribe to server notifications.

        The initial result is delivered to the callback as [*params, result],
        the same shape as a later push, and is also returned.
        """
        method = subscribe_method(method)
        key = subscription_key(method, params)

        existing = self._subscriptions.pop(key, None)
        if existing is not None:
            existing.stop()

        subscription = Subscription(key=key, method=method, params=params, callback=callback)
        self._subscriptions[key] = subscription
        subscription.start()

        result = await self.request(method, *params)
        subscription.queue.put_nowait([*params, result])
        return result

    async def unsubscribe(self, method: str, *params: Any) -> Any:
        base = method.removesuffix(SUBSCRIBE_SUFFIX)
        key = subscription_key(subscribe_method(base), params)
        subscription = self._subscriptions.pop(key, None)
        if subscription is not None:
            subscription.stop()

        return await self.request(f"{base}{UNSUBSCRIBE_SUFFIX}", *params)

    async def resubscribe(self) -> None:
        """Re-issue every registered subscription, e.g. after a reconnect."""
        for subscription in list(self._subscriptions.values()):
            logger.debug(f"Re-issuing subscription {subscription.key}")
            await self.subscribe(subscription.method, subscription.callback, *subscription.params)

    def dispatch(self, data: bytes) -> None:
        """Route one received message to its request or subscription."""
        try:
            message = parse_message(data)
        except ProtocolError as e:
            logger.warning(f"Dropping undecodable message: {e}")
            return

        if isinstance(message, RpcResponse):
            self._resolve(message)
        elif isinstance(message, RpcNotification) and message.is_subscription:
            self._route(message)
        else:
            logger.debug(f"Ignoring notification {message.method}")

    def _resolve(self, response: RpcResponse) -> None:
        if not isinstance(response.id, int) or response.id not in self._pending:
            logger.debug(f"No pending request for response id {response.id!r}")
            return

        future = self._pending.pop(response.id)
        method = self._pending_methods.pop(response.id, None)
        self._in_flight.discard(response.id)
        if future.done():
            return
        try:
            future.set_result(response.unwrap(method))
        except ProtocolError as e:
            future.set_exception(e)

    def _route(self, notification: RpcNotification) -> None:
        subscription = self._subscriptions.get(notification.routing_key)
        if subscription is None:
            logger.debug(f"No subscription for {notification.routing_key}")
            return
        subscription.queue.put_nowait(notification.params)

    async def _read_loop(self, connection: Connection) -> None:
        try:
            while True:
                data = await connection.receive()
                if data:
                    self.dispatch(data)
        except NetworkConnectionError as e:
            logger.warning(f"ElectrumTransport CLOSED: {e}")
        except asyncio.CancelledError:
            return
        if self.connection is connection:
            self._on_close()
            await connection.close()

    async def _keepalive(self) -> None:
        while True:
            await asyncio.sleep(self.keepalive_interval)
            try:
                await self.request("server.ping")
            except (ProtocolError, TransportClosedError) as e:
                logger.warning(f"Keepalive ping failed: {e}")

    def _on_close(self) -> None:
        if self.state == ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        self.connection = None
        self._connected.clear()

        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            self._keepalive_task = None
        self._reader_task = None

        # Requests still waiting on the gate go out after the next connect
        in_flight = sorted(self._in_flight)
        self._in_flight.clear()
        for request_id in in_flight:
            future = self._pending.pop(request_id, None)
            method = self._pending_methods.pop(request_id, None)
            if future is not None and not future.done():
                future.set_exception(
                    TransportClosedError(f"Connection closed before response to {method}")
                )
        if in_flight:
            logger.warning(f"Rejected {len(in_flight)} in-flight request(s) on close")

        for callback in self._closed_callbacks:
            callback()
