"""Broker connection lifecycle and topic subscriptions.

The :class:`SubscriptionManager` owns the MQTT connection state machine.
It connects with exponential backoff, subscribes every configured topic
filter, and feeds inbound messages into a bounded queue that the dispatcher
drains. When the connection drops it reconnects and re-subscribes; when
reconnection is exhausted the failure is recorded for the supervisor.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, List, Optional, Protocol, Sequence, Tuple

from .adapters.mqtt import MQTTConnectionError, MQTTSubscriptionError
from .health import HealthReporter

if TYPE_CHECKING:
    from .config import ResilienceConfig

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class InboundMessage:
    topic: str
    payload: bytes


class ConnectionState(str, Enum):
    """Current state of the broker connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SUBSCRIBED = "subscribed"
    DISCONNECTING = "disconnecting"
    TERMINATED = "terminated"


class BrokerClient(Protocol):
    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def subscribe(self, filters: Sequence[Tuple[str, int]]) -> List[int]: ...

    def set_message_handler(self, handler): ...

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None: ...


StateListener = Callable[[ConnectionState, Optional[str]], None]


class SubscriptionManager:
    """Keeps the bridge subscribed to its topic filters."""

    def __init__(
        self,
        *,
        mqtt_client: BrokerClient,
        topics: Sequence[str],
        resilience_config: ResilienceConfig,
        qos: int = 0,
        queue_size: int = 16,
        state_listener: Optional[StateListener] = None,
        health: Optional[HealthReporter] = None,
    ) -> None:
        if not topics:
            raise ValueError("at least one topic filter is required")

        self._mqtt_client = mqtt_client
        self._topics: Tuple[str, ...] = tuple(topics)
        self._qos = qos
        self._resilience = resilience_config
        self._state_listener = state_listener
        self._health = health

        self._state = ConnectionState.DISCONNECTED
        self._queue: asyncio.Queue[InboundMessage] = asyncio.Queue(maxsize=queue_size)
        self._reconnect_event = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._failed_event = asyncio.Event()
        self._failure: Optional[BaseException] = None
        self._supervisor_task: Optional[asyncio.Task[None]] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def topics(self) -> Tuple[str, ...]:
        return self._topics

    @property
    def queue(self) -> asyncio.Queue[InboundMessage]:
        return self._queue

    @property
    def failure(self) -> Optional[BaseException]:
        return self._failure

    async def start(self) -> None:
        """Connect and subscribe every topic filter.

        Raises:
            MQTTConnectionError: If the broker cannot be reached.
            MQTTSubscriptionError: If a subscription is rejected.
        """
        if self._state is not ConnectionState.DISCONNECTED:
            raise RuntimeError(f"SubscriptionManager cannot start from {self._state.value}")

        self._mqtt_client.set_message_handler(self._on_message)
        self._mqtt_client.register_disconnect_handler(self._on_disconnect)
        self._stop_event.clear()

        self._set_state(ConnectionState.CONNECTING, "connecting to broker")
        await self._connect_and_subscribe()
        self._set_state(ConnectionState.SUBSCRIBED, ", ".join(self._topics))

        self._supervisor_task = asyncio.create_task(self._supervision_loop())

    async def stop(self) -> None:
        """Disconnect from the broker.

        Disconnect errors are logged; they never prevent shutdown.
        """
        if self._state is ConnectionState.TERMINATED:
            return

        self._set_state(ConnectionState.DISCONNECTING, "shutdown requested")
        self._stop_event.set()
        self._reconnect_event.set()

        if self._supervisor_task is not None:
            self._supervisor_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._supervisor_task
            self._supervisor_task = None

        self._mqtt_client.set_message_handler(None)

        try:
            await self._mqtt_client.disconnect()
        except Exception as exc:
            LOGGER.warning("Error while disconnecting from MQTT broker: %s", exc)

        pending = self._queue.qsize()
        if pending:
            LOGGER.info("Discarding %d undelivered message(s)", pending)

        self._set_state(ConnectionState.TERMINATED)

    async def wait_failed(self) -> Optional[BaseException]:
        """Block until the connection is given up for good."""
        await self._failed_event.wait()
        return self._failure

    def _set_state(self, state: ConnectionState, detail: Optional[str] = None) -> None:
        if state is self._state and detail is None:
            return
        previous = self._state
        self._state = state
        LOGGER.debug(
            "Connection state %s -> %s%s",
            previous.value,
            state.value,
            f" ({detail})" if detail else "",
        )
        if self._state_listener is not None:
            self._state_listener(state, detail)

    def _fail(self, exc: BaseException) -> None:
        self._failure = exc
        self._set_state(ConnectionState.DISCONNECTED, str(exc))
        self._failed_event.set()

    def _on_message(self, topic: str, payload: bytes) -> None:
        if self._state in (ConnectionState.DISCONNECTING, ConnectionState.TERMINATED):
            return

        self._count("messages_received")
        try:
            self._queue.put_nowait(InboundMessage(topic=topic, payload=payload))
        except asyncio.QueueFull:
            self._count("messages_dropped")
            LOGGER.warning(
                "Inbound queue full (%d); dropping message on %s",
                self._queue.maxsize,
                topic,
            )

    def _on_disconnect(self, rc: int) -> None:
        if self._stop_event.is_set() or self._state is not ConnectionState.SUBSCRIBED:
            return

        LOGGER.warning("Lost connection to MQTT broker (rc=%s); reconnecting", rc)
        self._set_state(ConnectionState.CONNECTING, f"connection lost (rc={rc})")
        self._reconnect_event.set()

    async def _supervision_loop(self) -> None:
        while not self._stop_event.is_set():
            await self._reconnect_event.wait()
            self._reconnect_event.clear()

            if self._stop_event.is_set():
                break

            try:
                await self._reconnect()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if self._stop_event.is_set():
                    break
                LOGGER.error("Giving up on MQTT broker: %s", exc)
                self._fail(exc)
                break

    async def _reconnect(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        await self._discard_connection()
        await self._connect_and_subscribe()
        self._set_state(ConnectionState.SUBSCRIBED, "resubscribed after reconnect")
        LOGGER.info("Reconnected to MQTT broker")

    async def _discard_connection(self) -> None:
        try:
            await self._mqtt_client.disconnect()
        except Exception:
            LOGGER.debug("Cleanup disconnect failed", exc_info=True)

    async def _subscribe_all(self) -> None:
        filters = [(topic, self._qos) for topic in self._topics]
        granted = await self._mqtt_client.subscribe(filters)
        for topic, qos in zip(self._topics, granted):
            LOGGER.info("Subscribed to %s (qos=%s)", topic, qos)

    async def _connect_and_subscribe(self) -> None:
        """Connect and subscribe with exponential backoff.

        A failed subscription (including a connection dropped before the
        broker acknowledged it) consumes an attempt like a failed connect.

        Raises:
            MQTTConnectionError: When every attempt failed to connect or
                shutdown began.
            MQTTSubscriptionError: When the last attempt connected but the
                subscription failed.
        """
        delay = max(0.01, self._resilience.reconnect_initial_seconds)
        max_delay = max(delay, self._resilience.reconnect_max_seconds)
        jitter_ratio = max(0.0, min(1.0, self._resilience.reconnect_jitter_ratio))
        max_attempts = max(1, self._resilience.reconnect_max_attempts)

        for attempt in range(1, max_attempts + 1):
            if self._stop_event.is_set():
                break

            self._set_state(ConnectionState.CONNECTING)
            try:
                LOGGER.debug("MQTT connection attempt %d", attempt)
                await self._mqtt_client.connect()
            except Exception as exc:
                if attempt == max_attempts:
                    raise MQTTConnectionError(
                        f"Could not connect after {attempt} attempt(s): {exc}"
                    ) from exc
                failure = exc
            else:
                self._set_state(ConnectionState.CONNECTED)
                try:
                    await self._subscribe_all()
                    return
                except MQTTSubscriptionError as exc:
                    if attempt == max_attempts:
                        raise
                    failure = exc
                    await self._discard_connection()

            sleep_for = delay
            if jitter_ratio > 0.0:
                jitter = delay * jitter_ratio
                sleep_for = random.uniform(max(0.01, delay - jitter), delay + jitter)

            LOGGER.warning(
                "Connection attempt %d failed: %s, retrying in %.1fs",
                attempt,
                failure,
                sleep_for,
            )

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_for)
                break
            except asyncio.TimeoutError:
                pass

            delay = min(delay * 2, max_delay)

        raise MQTTConnectionError("Connection attempt abandoned during shutdown")

    def _count(self, counter: str) -> None:
        if self._health is not None:
            self._health.increment(counter)
