"""Health reporting utilities for xset-listener."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from aiohttp import web

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Tracks component statuses and message counters for the bridge.

    Counters are only incremented from the event loop thread.
    """

    _BRIDGE_KEY = "__bridge_state__"

    def __init__(self) -> None:
        self._status: Dict[str, ComponentStatus] = {}
        self._counters: Counter[str] = Counter()
        self._lock = asyncio.Lock()

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._status[name] = ComponentStatus(
                name=name, healthy=healthy, detail=detail
            )

    async def set_bridge_state(
        self, state: str, *, healthy: bool, detail: Optional[str] = None
    ) -> None:
        detail_value = detail if detail is not None else state
        await self.update(self._BRIDGE_KEY, healthy, detail_value)

    def increment(self, counter: str, amount: int = 1) -> None:
        self._counters[counter] += amount

    def counter(self, name: str) -> int:
        return self._counters[name]

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            entries = list(self._status.values())
        counters = dict(self._counters)

        bridge_state: Optional[ComponentStatus] = None
        components: list[Dict[str, object]] = []
        for status in entries:
            if status.name == self._BRIDGE_KEY:
                bridge_state = status
                continue
            components.append(status.as_dict())

        overall_components_healthy = all(item["healthy"] for item in components)
        overall = "ok" if overall_components_healthy else "degraded"
        if bridge_state is not None and not bridge_state.healthy:
            overall = "degraded"

        payload: Dict[str, object] = {
            "status": overall,
            "components": components,
            "counters": counters,
        }
        if bridge_state is not None:
            payload["bridgeState"] = {
                "state": bridge_state.detail,
                "healthy": bridge_state.healthy,
                "updatedAt": bridge_state.updated_at.isoformat(timespec="seconds"),
            }

        return payload


class HealthServer:
    """Minimal HTTP server exposing `/healthz` for status checks."""

    def __init__(self, reporter: HealthReporter, host: str, port: int) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info(
            "Health endpoint listening on http://%s:%s/healthz", self._host, self._port
        )

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)
