"""MQTT adapter encapsulating paho-mqtt client usage."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import paho.mqtt.client as mqtt

from ..config import BrokerConfig
from ..errors import BridgeError, ErrorCategory

LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], None]


class MQTTConnectionError(BridgeError):
    """Raised when the MQTT client fails to establish a connection."""

    category = ErrorCategory.CONNECTION


class MQTTSubscriptionError(BridgeError):
    """Raised when the broker does not accept a subscription."""

    category = ErrorCategory.SUBSCRIPTION


def _reason_value(code: Any) -> int:
    """Return the numeric value of a paho reason code (or plain int)."""

    value = getattr(code, "value", code)
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


class MQTTClient:
    """Async-friendly wrapper over the threaded paho-mqtt client.

    paho runs its network loop on a background thread. Every callback is
    handed to the asyncio loop with ``call_soon_threadsafe`` so that the rest
    of the bridge only ever runs on the loop thread.
    """

    def __init__(
        self,
        config: BrokerConfig,
        *,
        client_id: str,
    ) -> None:
        self.config = config
        self.client_id = client_id
        self.keepalive = config.keepalive_seconds

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected_event: Optional[asyncio.Event] = None
        self._disconnect_event: Optional[asyncio.Event] = None
        self._message_handler: Optional[MessageHandler] = None
        self._last_connect_rc: Optional[int] = None
        self._connected: bool = False
        self._pending_subacks: Dict[int, asyncio.Future[List[int]]] = {}
        self._disconnect_handlers: List[Callable[[int], None]] = []

    async def connect(self, timeout: Optional[float] = None) -> None:
        """Connect to the MQTT broker and wait for acknowledgement."""

        if timeout is None:
            timeout = self.config.connect_timeout_seconds

        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._disconnect_event = asyncio.Event()
        self._last_connect_rc = None

        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            clean_session=True,
            reconnect_on_failure=False,
        )
        client.enable_logger(LOGGER)

        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)

        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_subscribe = self._on_subscribe
        client.on_message = self._on_message

        self._client = client

        LOGGER.info(
            "Connecting to MQTT broker %s:%s as %s",
            self.config.host,
            self.config.port,
            self.client_id,
        )

        try:
            client.connect_async(self.config.host, self.config.port, self.keepalive)
        except (OSError, ValueError) as exc:
            self._client = None
            raise MQTTConnectionError(f"Could not start MQTT connection: {exc}") from exc
        client.loop_start()

        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
            if self._last_connect_rc is None or self._last_connect_rc != 0:
                raise MQTTConnectionError(
                    f"MQTT broker rejected connection (rc={self._last_connect_rc})"
                )
        except asyncio.TimeoutError as exc:
            self._abandon_client(client)
            raise MQTTConnectionError("Timed out connecting to MQTT broker") from exc
        except MQTTConnectionError:
            self._abandon_client(client)
            raise

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Gracefully disconnect from the broker."""

        client = self._client
        if not client:
            return

        assert self._disconnect_event is not None

        was_connected = self._connected
        client.disconnect()

        try:
            if was_connected:
                await asyncio.wait_for(self._disconnect_event.wait(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise MQTTConnectionError(
                "Timed out waiting for MQTT disconnect acknowledgement"
            ) from exc
        finally:
            client.loop_stop()
            self._client = None
            self._connected = False
            self._fail_pending_subacks("client disconnected")

    async def subscribe(
        self, filters: Sequence[Tuple[str, int]], timeout: float = 10.0
    ) -> List[int]:
        """Subscribe to ``filters`` and wait for the broker's SUBACK.

        Returns the granted QoS per filter.
        """

        if not self._client or self._loop is None:
            raise RuntimeError("MQTT client not connected")
        if not filters:
            return []

        result, mid = self._client.subscribe(list(filters))
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTSubscriptionError(f"Subscribe failed with rc={result}")

        future: asyncio.Future[List[int]] = self._loop.create_future()
        self._pending_subacks[mid] = future

        try:
            granted = await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise MQTTSubscriptionError(
                "Timed out waiting for subscription acknowledgement"
            ) from exc
        finally:
            self._pending_subacks.pop(mid, None)

        rejected = [
            topic for (topic, _), code in zip(filters, granted) if code >= 0x80
        ]
        if rejected or len(granted) != len(filters):
            raise MQTTSubscriptionError(
                f"Broker rejected subscription to {', '.join(rejected) or 'filters'}"
            )
        return granted

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        self._disconnect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    def _abandon_client(self, client: mqtt.Client) -> None:
        # Closes any socket paho already opened for this attempt.
        client.disconnect()
        client.loop_stop()
        if self._client is client:
            self._client = None
        self._connected = False

    def _fail_pending_subacks(self, reason: str) -> None:
        pending = list(self._pending_subacks.values())
        self._pending_subacks.clear()
        for future in pending:
            if not future.done():
                future.set_exception(MQTTSubscriptionError(reason))

    def _call_soon(self, callback: Callable[..., None], *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            LOGGER.debug("Dropping MQTT callback; event loop unavailable")
            return
        loop.call_soon_threadsafe(callback, *args)

    # ------------------------------------------------------------------
    # Internal callbacks bridging the threaded paho callbacks into asyncio
    # ------------------------------------------------------------------
    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        self._call_soon(self._handle_connect, _reason_value(reason_code))

    def _on_connect_fail(self, client, userdata) -> None:
        self._call_soon(self._handle_connect_fail)

    def _on_disconnect(
        self, client, userdata, flags, reason_code=0, properties=None
    ) -> None:
        self._call_soon(self._handle_disconnect, client, _reason_value(reason_code))

    def _on_subscribe(self, client, userdata, mid, reason_codes, properties=None) -> None:
        codes = [_reason_value(code) for code in reason_codes]
        self._call_soon(self._handle_suback, mid, codes)

    def _on_message(self, client, userdata, message: mqtt.MQTTMessage) -> None:
        self._call_soon(self._deliver, message.topic, bytes(message.payload))

    def _handle_connect(self, rc: int) -> None:
        self._last_connect_rc = rc
        if rc == 0:
            LOGGER.info("Connected to MQTT broker")
            self._connected = True
        else:
            LOGGER.error("MQTT connection failed with rc=%s", rc)
            self._connected = False
        if self._connected_event:
            self._connected_event.set()

    def _handle_connect_fail(self) -> None:
        LOGGER.error(
            "Could not reach MQTT broker %s:%s", self.config.host, self.config.port
        )
        self._connected = False
        if self._connected_event:
            self._connected_event.set()

    def _handle_disconnect(self, client: mqtt.Client, rc: int) -> None:
        if client is not self._client:
            LOGGER.debug("Ignoring disconnect from a discarded MQTT client (rc=%s)", rc)
            return
        LOGGER.info("Disconnected from MQTT broker (rc=%s)", rc)
        if self._disconnect_event:
            self._disconnect_event.set()
        self._connected = False
        self._fail_pending_subacks(f"disconnected before SUBACK (rc={rc})")
        for handler in self._disconnect_handlers:
            handler(rc)

    def _handle_suback(self, mid: int, codes: List[int]) -> None:
        future = self._pending_subacks.get(mid)
        if future is not None and not future.done():
            future.set_result(codes)

    def _deliver(self, topic: str, payload: bytes) -> None:
        handler = self._message_handler
        if not handler:
            return

        try:
            handler(topic, payload)
        except Exception:  # pragma: no cover - defensive logging
            LOGGER.exception("MQTT message handler raised an exception")
