"""
Connection Manager — Owns one AMQP connection + channel for a relay role.

State machine (one instance per producer / consumer process):

  ┌──────────────┐ connect() ┌────────────┐  channel + queue  ┌───────────┐
  │ disconnected │──────────▶│ connecting │──── declared ────▶│ connected │
  └──────────────┘           └─────┬──────┘                   └─────┬─────┘
         ▲                         │ failure                        │ error / close
         │                         ▼                                │
         └──────── retry after reconnect_delay (flat) ◀─────────────┘

- Connection error: handles cleared, no immediate retry.
- Connection close: handles cleared, exactly one retry scheduled.
- Channel close: channel handle cleared; a still-open connection is closed
  so the connection close path drives recovery.
- At most one connect attempt in flight and one retry pending at a time.
"""
from __future__ import annotations

import asyncio
import structlog
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlsplit

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractQueue

from config.settings import DEFAULT_QUEUE_NAME, DEFAULT_RECONNECT_DELAY_MS

logger = structlog.get_logger()

RECONNECT_DELAY_SECONDS = DEFAULT_RECONNECT_DELAY_MS / 1000

ReadyHook = Callable[[AbstractChannel, AbstractQueue], Awaitable[Any]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def _safe_url(url: str) -> str:
    """Strip credentials from an AMQP URL for logging."""
    parts = urlsplit(url)
    if parts.password is None and parts.username is None:
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return parts._replace(netloc=host).geturl()


class ConnectionManager:
    """
    Establishes and maintains one connection and one channel to the broker.

    Usage:
        manager = ConnectionManager("amqp://localhost", role="producer")
        await manager.connect()      # one attempt; retries in background on failure
        channel = manager.channel    # None whenever not connected
        await manager.close()
    """

    def __init__(
        self,
        url: str,
        queue_name: str = DEFAULT_QUEUE_NAME,
        role: str = "producer",
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
        on_ready: Optional[ReadyHook] = None,
        connect_fn: Optional[Callable[[str], Awaitable[AbstractConnection]]] = None,
    ):
        self.url = url
        self.queue_name = queue_name
        self.role = role
        self.reconnect_delay = reconnect_delay
        self._on_ready = on_ready
        self._connect_fn = connect_fn or aio_pika.connect

        self._state = ConnectionState.DISCONNECTED
        self._connection: Optional[AbstractConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._orphan_task: Optional[asyncio.Task] = None
        self._closing = False
        self.attempts = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._channel is not None

    @property
    def channel(self) -> Optional[AbstractChannel]:
        """The usable channel, or None. Never cache this across awaits."""
        if self._state is not ConnectionState.CONNECTED:
            return None
        return self._channel

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    # ── Connecting ────────────────────────────────────────────

    async def connect(self) -> bool:
        """Make one connection attempt. Returns True when connected."""
        if self._closing or self._state is not ConnectionState.DISCONNECTED:
            return self._state is ConnectionState.CONNECTED

        self._state = ConnectionState.CONNECTING
        self.attempts += 1
        logger.info("amqp_connecting", role=self.role, url=_safe_url(self.url),
                    attempt=self.attempts)

        connection: Optional[AbstractConnection] = None
        try:
            connection = await self._connect_fn(self.url)
            self._connection = connection
            connection.close_callbacks.add(self._on_connection_close)
            logger.info("amqp_connected", role=self.role)

            channel = await connection.channel()
            channel.close_callbacks.add(self._on_channel_close)
            logger.info("amqp_channel_created", role=self.role)

            queue = await channel.declare_queue(self.queue_name, durable=True)
            logger.info("amqp_queue_declared", role=self.role, queue=self.queue_name)

            if self._on_ready is not None and not self._closing:
                await self._on_ready(channel, queue)
        except asyncio.CancelledError:
            await self._discard(connection)
            self._state = ConnectionState.DISCONNECTED
            raise
        except Exception as e:
            logger.error("amqp_connect_failed", role=self.role, error=str(e))
            await self._discard(connection)
            self._state = ConnectionState.DISCONNECTED
            self._schedule_reconnect()
            return False

        if self._closing:
            # close() ran while this attempt was in flight
            logger.info("amqp_connect_abandoned", role=self.role)
            await self._discard(connection)
            self._state = ConnectionState.DISCONNECTED
            return False

        self._channel = channel
        self._state = ConnectionState.CONNECTED
        return True

    def request_connect(self) -> Optional[asyncio.Task]:
        """
        Fire-and-forget connect attempt; the caller does not wait for it.
        Returns the attempt task, or None if one is in flight or not needed.
        """
        if self._closing or self._state is not ConnectionState.DISCONNECTED:
            return None
        if self._connect_task is not None and not self._connect_task.done():
            return None
        self._connect_task = asyncio.create_task(self.connect())
        return self._connect_task

    async def _discard(self, connection: Optional[AbstractConnection]) -> None:
        """Drop a partially set up connection without triggering recovery."""
        self._channel = None
        self._connection = None
        if connection is None:
            return
        connection.close_callbacks.discard(self._on_connection_close)
        try:
            await connection.close()
        except Exception as e:
            logger.warning("amqp_partial_close_failed", role=self.role, error=str(e))

    def _schedule_reconnect(self) -> None:
        if self._closing or self.reconnect_pending:
            return
        logger.info("amqp_reconnect_scheduled", role=self.role,
                    delay_seconds=self.reconnect_delay)
        self._reconnect_task = asyncio.create_task(self._reconnect_after_delay())

    async def _reconnect_after_delay(self) -> None:
        await asyncio.sleep(self.reconnect_delay)
        # Cleared before connecting so a failed attempt can schedule the next one
        self._reconnect_task = None
        await self.connect()

    # ── Broker events ─────────────────────────────────────────

    def _on_connection_close(self, sender: Any, exc: Optional[BaseException] = None) -> None:
        if self._closing:
            return
        if self._state is ConnectionState.CONNECTING:
            # connect() owns recovery until it settles
            return
        if self._connection is not None and sender is not self._connection:
            return
        if exc is not None:
            self.handle_connection_error(exc)
        self.handle_connection_closed()

    def handle_connection_error(self, exc: BaseException) -> None:
        """Fatal for this connection; recovery waits for the close event or next use."""
        logger.error("amqp_connection_error", role=self.role, error=str(exc))
        self._connection = None
        self._channel = None
        self._state = ConnectionState.DISCONNECTED

    def handle_connection_closed(self) -> None:
        logger.warning("amqp_connection_closed", role=self.role,
                       retry_in_seconds=self.reconnect_delay)
        self._connection = None
        self._channel = None
        self._state = ConnectionState.DISCONNECTED
        self._schedule_reconnect()

    def _on_channel_close(self, sender: Any, exc: Optional[BaseException] = None) -> None:
        if sender is not self._channel:
            return
        logger.info("amqp_channel_closed", role=self.role,
                    error=str(exc) if exc else None)
        self._channel = None

        connection = self._connection
        if self._closing or connection is None or connection.is_closed:
            return
        # A connection without a channel is useless here; closing it hands
        # recovery to the connection close path.
        self._orphan_task = asyncio.create_task(self._close_orphaned(connection))

    async def _close_orphaned(self, connection: AbstractConnection) -> None:
        try:
            await connection.close()
        except Exception as e:
            logger.warning("amqp_orphan_close_failed", role=self.role, error=str(e))
            if connection is self._connection:
                self.handle_connection_closed()

    # ── Shutdown ──────────────────────────────────────────────

    async def close(self) -> None:
        """Close the connection and stop all recovery."""
        self._closing = True
        for task in (self._reconnect_task, self._connect_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reconnect_task = None
        self._connect_task = None
        if self._orphan_task is not None and not self._orphan_task.done():
            await self._orphan_task
        self._orphan_task = None

        connection = self._connection
        self._connection = None
        self._channel = None
        self._state = ConnectionState.DISCONNECTED
        if connection is not None and not connection.is_closed:
            await connection.close()
        logger.info("amqp_connection_shutdown", role=self.role)
