"""Unit tests for SubscriptionManager.

Covers the connection state machine, subscription of every topic filter,
the bounded inbound queue and reconnection after a dropped connection.
"""

import asyncio

import pytest

from xset_listener.adapters import MQTTConnectionError, MQTTSubscriptionError
from xset_listener.config import ResilienceConfig
from xset_listener.health import HealthReporter
from xset_listener.subscription import (
    ConnectionState,
    InboundMessage,
    SubscriptionManager,
)

TOPICS = ["home/monitors/all", "home/monitors/desk"]


class FakeBrokerClient:
    """Minimal stand-in for MQTTClient used in manager tests."""

    def __init__(self, *, connect_failures: int = 0, reject_subscribe: bool = False):
        self.connect_failures = connect_failures
        self.reject_subscribe = reject_subscribe
        self.subscribe_failures = 0
        self.connect_call_count = 0
        self.disconnect_call_count = 0
        self.subscriptions: list = []
        self.handler = None
        self.disconnect_handlers: list = []
        self.disconnect_error: Exception | None = None

    async def connect(self):
        self.connect_call_count += 1
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise ConnectionError("Simulated connection failure")

    async def disconnect(self):
        self.disconnect_call_count += 1
        if self.disconnect_error is not None:
            raise self.disconnect_error

    async def subscribe(self, filters):
        if self.reject_subscribe:
            raise MQTTSubscriptionError("Broker rejected subscription")
        if self.subscribe_failures > 0:
            self.subscribe_failures -= 1
            raise MQTTSubscriptionError("disconnected before SUBACK (rc=7)")
        self.subscriptions.append(list(filters))
        return [qos for _, qos in filters]

    def set_message_handler(self, handler):
        self.handler = handler

    def register_disconnect_handler(self, handler):
        self.disconnect_handlers.append(handler)

    # helpers
    def deliver(self, topic, payload):
        self.handler(topic, payload)

    def drop(self, rc=7):
        for handler in self.disconnect_handlers:
            handler(rc)


def _resilience(**overrides) -> ResilienceConfig:
    values = dict(
        reconnect_initial_seconds=0.01,
        reconnect_max_seconds=0.05,
        reconnect_jitter_ratio=0.0,
        reconnect_max_attempts=3,
    )
    values.update(overrides)
    return ResilienceConfig(**values)


def _manager(client, **kwargs) -> SubscriptionManager:
    kwargs.setdefault("resilience_config", _resilience())
    return SubscriptionManager(mqtt_client=client, topics=TOPICS, **kwargs)


async def _wait_for_state(manager, state, timeout=1.0):
    async def _poll():
        while manager.state is not state:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.mark.asyncio
async def test_initial_state_is_disconnected():
    manager = _manager(FakeBrokerClient())

    assert manager.state is ConnectionState.DISCONNECTED
    assert manager.topics == tuple(TOPICS)


def test_requires_at_least_one_topic():
    with pytest.raises(ValueError):
        SubscriptionManager(
            mqtt_client=FakeBrokerClient(), topics=[], resilience_config=_resilience()
        )


@pytest.mark.asyncio
async def test_start_subscribes_every_filter():
    client = FakeBrokerClient()
    states = []
    manager = _manager(client, qos=0, state_listener=lambda s, d: states.append(s))

    await manager.start()

    assert manager.state is ConnectionState.SUBSCRIBED
    assert client.subscriptions == [[(TOPICS[0], 0), (TOPICS[1], 0)]]
    assert states[:3] == [
        ConnectionState.CONNECTING,
        ConnectionState.CONNECTED,
        ConnectionState.SUBSCRIBED,
    ]

    await manager.stop()


@pytest.mark.asyncio
async def test_start_retries_with_backoff():
    client = FakeBrokerClient(connect_failures=2)
    manager = _manager(client)

    await manager.start()

    assert client.connect_call_count == 3
    assert manager.state is ConnectionState.SUBSCRIBED
    await manager.stop()


@pytest.mark.asyncio
async def test_start_gives_up_after_max_attempts():
    client = FakeBrokerClient(connect_failures=10)
    manager = _manager(client, resilience_config=_resilience(reconnect_max_attempts=2))

    with pytest.raises(MQTTConnectionError):
        await manager.start()

    assert client.connect_call_count == 2
    assert client.subscriptions == []


@pytest.mark.asyncio
async def test_subscription_rejection_is_raised():
    client = FakeBrokerClient(reject_subscribe=True)
    manager = _manager(client)

    with pytest.raises(MQTTSubscriptionError):
        await manager.start()

    assert manager.state is ConnectionState.CONNECTED
    await manager.stop()
    assert manager.state is ConnectionState.TERMINATED


@pytest.mark.asyncio
async def test_messages_from_any_filter_are_queued_in_order():
    client = FakeBrokerClient()
    health = HealthReporter()
    manager = _manager(client, health=health)
    await manager.start()

    client.deliver("home/monitors/all", b"on")
    client.deliver("home/monitors/desk", b"off")

    assert manager.queue.get_nowait() == InboundMessage("home/monitors/all", b"on")
    assert manager.queue.get_nowait() == InboundMessage("home/monitors/desk", b"off")
    assert health.counter("messages_received") == 2
    await manager.stop()


@pytest.mark.asyncio
async def test_full_queue_drops_messages():
    client = FakeBrokerClient()
    health = HealthReporter()
    manager = _manager(client, queue_size=1, health=health)
    await manager.start()

    client.deliver("home/monitors/all", b"on")
    client.deliver("home/monitors/all", b"off")

    assert manager.queue.qsize() == 1
    assert manager.queue.get_nowait().payload == b"on"
    assert health.counter("messages_dropped") == 1
    await manager.stop()


@pytest.mark.asyncio
async def test_connection_loss_reconnects_and_resubscribes():
    client = FakeBrokerClient()
    manager = _manager(client)
    await manager.start()

    client.connect_failures = 1
    client.drop(rc=7)
    assert manager.state is ConnectionState.CONNECTING

    await _wait_for_state(manager, ConnectionState.SUBSCRIBED)

    assert client.connect_call_count == 3
    assert len(client.subscriptions) == 2
    assert client.subscriptions[1] == client.subscriptions[0]
    assert manager.failure is None
    await manager.stop()


@pytest.mark.asyncio
async def test_reconnect_exhaustion_is_reported_as_failure():
    client = FakeBrokerClient()
    manager = _manager(client, resilience_config=_resilience(reconnect_max_attempts=2))
    await manager.start()

    client.connect_failures = 5
    client.drop()

    failure = await asyncio.wait_for(manager.wait_failed(), timeout=1.0)

    assert isinstance(failure, MQTTConnectionError)
    assert manager.state is ConnectionState.DISCONNECTED
    await manager.stop()
    assert manager.state is ConnectionState.TERMINATED


@pytest.mark.asyncio
async def test_stop_disconnects_and_ignores_late_messages():
    client = FakeBrokerClient()
    manager = _manager(client)
    await manager.start()
    handler = client.handler

    await manager.stop()
    handler("home/monitors/all", b"on")
    client.drop()

    assert manager.state is ConnectionState.TERMINATED
    assert client.disconnect_call_count == 1
    assert client.handler is None
    assert manager.queue.empty()


@pytest.mark.asyncio
async def test_disconnect_errors_do_not_block_stop():
    client = FakeBrokerClient()
    manager = _manager(client)
    await manager.start()
    client.disconnect_error = MQTTConnectionError("Timed out")

    await manager.stop()

    assert manager.state is ConnectionState.TERMINATED


@pytest.mark.asyncio
async def test_stop_is_idempotent():
    client = FakeBrokerClient()
    manager = _manager(client)
    await manager.start()

    await manager.stop()
    await manager.stop()

    assert client.disconnect_call_count == 1


@pytest.mark.asyncio
async def test_drop_before_resubscribe_ack_is_retried():
    client = FakeBrokerClient()
    manager = _manager(client)
    await manager.start()

    client.subscribe_failures = 1
    client.drop(rc=7)

    await _wait_for_state(manager, ConnectionState.SUBSCRIBED)

    assert manager.failure is None
    assert client.connect_call_count == 3
    assert len(client.subscriptions) == 2
    # one cleanup before reconnecting, one after the failed subscribe
    assert client.disconnect_call_count == 2
    await manager.stop()


@pytest.mark.asyncio
async def test_resubscribe_failures_share_the_attempt_budget():
    client = FakeBrokerClient()
    manager = _manager(client, resilience_config=_resilience(reconnect_max_attempts=2))
    await manager.start()

    client.subscribe_failures = 5
    client.drop()

    failure = await asyncio.wait_for(manager.wait_failed(), timeout=1.0)

    assert isinstance(failure, MQTTSubscriptionError)
    assert client.connect_call_count == 3
    await manager.stop()


@pytest.mark.asyncio
async def test_start_retries_failed_subscription():
    client = FakeBrokerClient()
    client.subscribe_failures = 1
    manager = _manager(client)

    await manager.start()

    assert manager.state is ConnectionState.SUBSCRIBED
    assert client.connect_call_count == 2
    assert len(client.subscriptions) == 1
    await manager.stop()
