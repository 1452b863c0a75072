"""Main application entry-point for xset-listener."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import socket
from enum import Enum
from typing import Callable, Optional, Set

from .actions import ActionSpec, ActionTable, detect_platform
from .adapters import MQTTClient
from .config import BridgeConfig, BrokerConfig, load_config
from .dispatch import Dispatcher, Executor
from .errors import EXIT_OK, EXIT_UNEXPECTED, BridgeError, ErrorCategory, exit_code_for
from .executor import CommandExecutor
from .health import HealthReporter, HealthServer
from .logging import configure_logging
from .subscription import BrokerClient, ConnectionState, SubscriptionManager

LOGGER = logging.getLogger(__name__)

MQTTClientFactory = Callable[[BrokerConfig, str], BrokerClient]
HostnameResolver = Callable[[], str]


class ClientIdentityError(BridgeError):
    """Raised when the host name needed for the client id is unavailable."""

    category = ErrorCategory.STARTUP


class BridgeState(str, Enum):
    COLD_START = "cold_start"
    CONNECTING = "connecting"
    ACTIVE = "active"
    RECOVERING = "recovering"
    STOPPING = "stopping"


def _default_mqtt_factory(config: BrokerConfig, client_id: str) -> BrokerClient:
    return MQTTClient(config, client_id=client_id)


class BridgeApp:
    """Wires the bridge together and supervises its lifetime.

    Startup order: resolve the host platform and its commands, derive the
    client identity, connect and subscribe, then dispatch messages until a
    termination signal or a fatal error arrives. Shutdown lets a running
    command finish (bounded by ``shutdown_grace_seconds``) before the
    broker connection is closed.
    """

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        *,
        action_table: Optional[ActionTable] = None,
        executor: Optional[Executor] = None,
        mqtt_client_factory: Optional[MQTTClientFactory] = None,
        hostname_resolver: Optional[HostnameResolver] = None,
    ) -> None:
        self._config = config or load_config()
        self._action_table = action_table or ActionTable()
        self._executor: Executor = executor or CommandExecutor(
            timeout_seconds=self._config.commands.timeout_seconds
        )
        self._mqtt_client_factory = mqtt_client_factory or _default_mqtt_factory
        self._hostname_resolver = hostname_resolver or socket.gethostname
        self._health = HealthReporter()
        self._health_server: Optional[HealthServer] = None
        self._subscriptions: Optional[SubscriptionManager] = None
        self._dispatcher: Optional[Dispatcher] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._state = BridgeState.COLD_START
        self._signals: list[signal.Signals] = []
        self._background: Set[asyncio.Task[None]] = set()
        self.client_id: Optional[str] = None

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def health(self) -> HealthReporter:
        return self._health

    @property
    def subscriptions(self) -> Optional[SubscriptionManager]:
        return self._subscriptions

    def request_stop(self) -> None:
        """Ask the bridge to shut down; safe to call from signal handlers."""
        if self._stop_event is not None:
            self._stop_event.set()

    async def run(self) -> int:
        """Run the bridge until shutdown and return the process exit code."""

        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()

        LOGGER.info("xset-listener starting with config: %s", self._config.path)

        try:
            spec = self._resolve_actions()
            hostname = self._resolve_hostname()
        except BridgeError as exc:
            LOGGER.error("%s - exiting.", exc)
            return exit_code_for(exc)

        self.client_id = build_client_id(
            self._config.bridge.client_id_prefix, hostname
        )
        LOGGER.info("Starting up mqtt listener with clientid [%s]", self.client_id)

        self._install_signal_handlers()
        try:
            return await self._serve(spec, self._config.topics_for(hostname))
        finally:
            self._remove_signal_handlers()

    @classmethod
    def start(cls, config: Optional[BridgeConfig] = None) -> int:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        try:
            return asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("xset-listener received shutdown signal")
            return EXIT_OK

    def _resolve_actions(self) -> ActionSpec:
        platform_key = detect_platform(self._config.bridge.platform)
        spec = self._action_table.lookup(platform_key)
        LOGGER.info(
            "Using commands for %s: on=%s off=%s",
            platform_key,
            list(spec.on_command),
            list(spec.off_command),
        )
        return spec

    def _resolve_hostname(self) -> str:
        try:
            hostname = self._hostname_resolver()
        except OSError as exc:
            raise ClientIdentityError(f"Couldn't determine my hostname: {exc}") from exc
        if not hostname:
            raise ClientIdentityError("Couldn't determine my hostname: empty result")
        return hostname

    async def _serve(self, spec: ActionSpec, topics: list[str]) -> int:
        assert self.client_id is not None
        assert self._stop_event is not None

        mqtt_client = self._mqtt_client_factory(self._config.broker, self.client_id)
        subscriptions = SubscriptionManager(
            mqtt_client=mqtt_client,
            topics=topics,
            resilience_config=self._config.resilience,
            qos=self._config.subscriptions.qos,
            queue_size=self._config.subscriptions.queue_size,
            state_listener=self._on_connection_state,
            health=self._health,
        )
        dispatcher = Dispatcher(
            spec,
            self._executor,
            exit_on_failure=self._config.commands.exit_on_failure,
            health=self._health,
        )
        self._subscriptions = subscriptions
        self._dispatcher = dispatcher

        await self._start_health_server()
        await self._transition_state(BridgeState.CONNECTING, detail="connecting to mqtt broker")

        try:
            exit_code = await self._run_until_exit(subscriptions, dispatcher)
        finally:
            late_failure = await self._stop_services()

        if exit_code == EXIT_OK and late_failure is not None:
            LOGGER.error("Command failed during shutdown: %s", late_failure)
            return exit_code_for(late_failure)
        return exit_code

    async def _run_until_exit(
        self, subscriptions: SubscriptionManager, dispatcher: Dispatcher
    ) -> int:
        try:
            subscribed = await self._start_subscriptions(subscriptions)
        except BridgeError as exc:
            LOGGER.error("MQTT setup failed: %s", exc)
            return exit_code_for(exc)
        if not subscribed:
            LOGGER.info("Shutdown requested before the bridge was subscribed")
            return EXIT_OK

        await self._health.update("commands", True, None)
        await self._transition_state(BridgeState.ACTIVE, detail="subscribed")
        dispatch_task = dispatcher.start(subscriptions.queue)
        return await self._wait_for_exit(subscriptions, dispatch_task)

    async def _start_subscriptions(self, subscriptions: SubscriptionManager) -> bool:
        """Connect and subscribe unless a stop request arrives first."""
        assert self._stop_event is not None

        start_task = asyncio.create_task(subscriptions.start())
        stop_task = asyncio.create_task(self._stop_event.wait())
        try:
            await asyncio.wait(
                {start_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (start_task, stop_task):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task

        if start_task.cancelled():
            return False
        start_task.result()
        return True

    async def _wait_for_exit(
        self,
        subscriptions: SubscriptionManager,
        dispatch_task: asyncio.Task[None],
    ) -> int:
        assert self._stop_event is not None

        LOGGER.info("xset-listener active; awaiting shutdown signal")
        stop_task = asyncio.create_task(self._stop_event.wait())
        failed_task = asyncio.create_task(subscriptions.wait_failed())

        try:
            done, _ = await asyncio.wait(
                {stop_task, failed_task, dispatch_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (stop_task, failed_task):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task

        if stop_task in done:
            LOGGER.info("xset-listener received shutdown signal")
            return EXIT_OK

        if failed_task in done:
            failure = subscriptions.failure
            LOGGER.error("MQTT connection lost for good: %s", failure)
            return exit_code_for(failure) if failure is not None else EXIT_UNEXPECTED

        if dispatch_task.cancelled():
            LOGGER.error("Dispatcher was cancelled unexpectedly")
            return EXIT_UNEXPECTED

        exc = dispatch_task.exception()
        if exc is None:
            LOGGER.error("Dispatcher stopped unexpectedly")
            return EXIT_UNEXPECTED
        if isinstance(exc, BridgeError):
            LOGGER.error("%s", exc)
        else:
            LOGGER.error("Dispatcher crashed", exc_info=exc)
        return exit_code_for(exc)

    async def _stop_services(self) -> Optional[BaseException]:
        """Stop every service; returns the dispatcher's late failure, if any."""
        await self._transition_state(BridgeState.STOPPING, detail="shutdown requested")

        late_failure: Optional[BaseException] = None
        if self._dispatcher is not None:
            late_failure = await self._dispatcher.stop(
                self._config.commands.shutdown_grace_seconds
            )
            await self._health.update("commands", False, "shutdown")

        if self._subscriptions is not None:
            await self._subscriptions.stop()

        await self._stop_health_server()

        for task in list(self._background):
            with contextlib.suppress(asyncio.CancelledError):
                await task

        return late_failure

    async def _start_health_server(self) -> None:
        health = self._config.health
        if not health.enabled or health.port <= 0:
            return

        server = HealthServer(self._health, health.host, health.port)
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
            await self._health.update("health-endpoint", False, str(exc))
        else:
            self._health_server = server
            await self._health.update("health-endpoint", True, None)

    async def _stop_health_server(self) -> None:
        if self._health_server is None:
            return
        await self._health_server.stop()
        self._health_server = None
        await self._health.update("health-endpoint", False, "shutdown")

    async def _transition_state(
        self, state: BridgeState, *, detail: Optional[str] = None
    ) -> None:
        previous = self._state
        self._state = state

        message_detail = detail or state.value
        if previous is not state:
            LOGGER.info(
                "Bridge state transition %s -> %s (%s)",
                previous.value,
                state.value,
                message_detail,
            )
        await self._health.set_bridge_state(
            state.value,
            healthy=state == BridgeState.ACTIVE,
            detail=message_detail,
        )

    def _on_connection_state(
        self, state: ConnectionState, detail: Optional[str]
    ) -> None:
        healthy = state is ConnectionState.SUBSCRIBED
        self._schedule(self._health.update("mqtt", healthy, detail or state.value))

        if self._state is BridgeState.ACTIVE and state is ConnectionState.CONNECTING:
            self._schedule(
                self._transition_state(BridgeState.RECOVERING, detail=detail)
            )
        elif self._state is BridgeState.RECOVERING and healthy:
            self._schedule(
                self._transition_state(BridgeState.ACTIVE, detail="reconnected")
            )

    def _schedule(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _install_signal_handlers(self) -> None:
        loop = self._loop
        if loop is None:
            return
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                LOGGER.debug("Signal handlers unavailable for %s", sig.name)
            else:
                self._signals.append(sig)

    def _remove_signal_handlers(self) -> None:
        loop = self._loop
        while self._signals:
            sig = self._signals.pop()
            if loop is not None:
                loop.remove_signal_handler(sig)

    def _handle_signal(self, sig: signal.Signals) -> None:
        LOGGER.info("Received signal %s, shutting down", sig.name)
        self.request_stop()


def build_client_id(prefix: str, hostname: str, pid: Optional[int] = None) -> str:
    return f"{prefix}-{hostname}-{pid if pid is not None else os.getpid()}"


__all__ = [
    "BridgeApp",
    "BridgeState",
    "ClientIdentityError",
    "build_client_id",
]
