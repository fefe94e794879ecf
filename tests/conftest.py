"""Shared fixtures for wa-hub tests.

Provides a deterministic fake automation engine, a recording webhook
delivery, a manual clock, and a registry wired to all three. Registry tests
advance virtual time with ``run_for`` instead of waiting on wall-clock
timers; engine calls that must hang rely on the small real timeouts set in
the ``config`` fixture.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable

import pytest
import pytest_asyncio

from wahub.clock import ManualClock
from wahub.config import (
    EngineConfig,
    QueueConfig,
    RestoreConfig,
    StorageConfig,
    WaHubConfig,
)
from wahub.engine import EngineEvent, EventCallback, SessionInfo
from wahub.orchestrator.registry import InstanceRegistry
from wahub.webhooks import WebhookDispatcher, WebhookEnvelope

WEBHOOK_URL = "https://hooks.example.com/wa"


class FakeSession:
    """Engine session double recording every command it receives."""

    def __init__(self, engine: FakeEngine, instance_id: str, on_event: EventCallback):
        self.engine = engine
        self.instance_id = instance_id
        self.on_event = on_event
        self.initialized = False
        self.destroyed = False
        self.typing: list[tuple[str, str]] = []

    async def emit(self, event: str | EngineEvent, data: dict[str, Any] | None = None) -> None:
        """Deliver an engine event to the orchestrator."""
        await self.on_event(EngineEvent(event), data or {})

    async def initialize(self) -> None:
        behavior = self.engine.next_launch(self.instance_id)
        self.engine.launches.append(self.instance_id)
        self.engine.launching += 1
        self.engine.peak_launching = max(self.engine.peak_launching, self.engine.launching)
        try:
            if self.engine.launch_delay:
                await asyncio.sleep(self.engine.launch_delay)
            if behavior == "fail":
                raise RuntimeError("Failed to launch the browser process")
            if behavior == "hang":
                await asyncio.Event().wait()
        finally:
            self.engine.launching -= 1
        self.initialized = True

    async def destroy(self) -> None:
        if self.engine.destroy_hang:
            await asyncio.Event().wait()
        self.destroyed = True
        self.engine.destroyed.append(self.instance_id)

    async def get_session_info(self) -> SessionInfo | None:
        return self.engine.session_info

    async def get_chat_by_id(self, chat_id: str) -> Any:
        return {"id": chat_id}

    async def send_message(
        self, chat_id: str, content: Any, options: dict[str, Any] | None = None
    ) -> str:
        if self.engine.send_errors:
            raise self.engine.send_errors.pop(0)
        self.engine.sent.append((self.instance_id, chat_id, content))
        return f"msg-{len(self.engine.sent)}"

    async def send_poll(
        self,
        chat_id: str,
        question: str,
        options: list[str],
        settings: dict[str, Any] | None = None,
    ) -> str:
        if self.engine.send_errors:
            raise self.engine.send_errors.pop(0)
        self.engine.sent.append((self.instance_id, chat_id, {"question": question, "options": options}))
        return f"poll-{len(self.engine.sent)}"

    async def get_unread_messages(self) -> list[dict[str, Any]]:
        return list(self.engine.unread)

    async def set_typing(self, chat_id: str) -> None:
        self.typing.append(("typing", chat_id))

    async def clear_typing(self, chat_id: str) -> None:
        self.typing.append(("clear", chat_id))

    async def mark_seen(self, chat_id: str) -> None:
        self.typing.append(("seen", chat_id))


class FakeEngine:
    """Engine factory double.

    Attributes:
        sessions: Every session built, per instance, oldest first.
        launch_plan: Per-instance queue of launch outcomes ("ok", "fail", "hang").
        sent: (instance_id, chat_id, content) of every successful send.
        send_errors: Exceptions raised by upcoming sends, in order.
        unread: Messages returned by the unread-message poll.
        session_info: Value returned by the ready poll.
    """

    def __init__(self) -> None:
        self.sessions: dict[str, list[FakeSession]] = {}
        self.launch_plan: dict[str, list[str]] = {}
        self.launches: list[str] = []
        self.destroyed: list[str] = []
        self.sent: list[tuple[str, str, Any]] = []
        self.send_errors: list[Exception] = []
        self.unread: list[dict[str, Any]] = []
        self.session_info: SessionInfo | None = None
        self.launch_delay = 0.0
        self.destroy_hang = False
        self.launching = 0
        self.peak_launching = 0

    def __call__(self, instance_id: str, on_event: EventCallback) -> FakeSession:
        session = FakeSession(self, instance_id, on_event)
        self.sessions.setdefault(instance_id, []).append(session)
        return session

    def next_launch(self, instance_id: str) -> str:
        plan = self.launch_plan.get(instance_id)
        return plan.pop(0) if plan else "ok"

    def latest(self, instance_id: str) -> FakeSession:
        return self.sessions[instance_id][-1]


class RecordingDelivery:
    """Webhook delivery double that keeps every envelope instead of POSTing."""

    def __init__(self) -> None:
        self.delivered: list[tuple[str, WebhookEnvelope]] = []
        self.fail = False

    async def deliver(self, url: str, envelope: WebhookEnvelope) -> bool:
        if self.fail:
            return False
        self.delivered.append((url, envelope))
        return True

    async def close(self) -> None:
        pass

    def events(self, instance_id: str | None = None) -> list[str]:
        return [
            envelope.event.value
            for _, envelope in self.delivered
            if instance_id is None or envelope.instance_id == instance_id
        ]

    def of(self, event: str) -> list[WebhookEnvelope]:
        return [envelope for _, envelope in self.delivered if envelope.event.value == event]


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def delivery() -> RecordingDelivery:
    return RecordingDelivery()


def make_config(tmp_path: Path, **sections: Any) -> WaHubConfig:
    """Test configuration with short engine timeouts and isolated storage."""
    defaults: dict[str, Any] = {
        "storage": StorageConfig(
            instances_path=tmp_path / "instances.json",
            idempotency_path=tmp_path / "idempotency.json",
        ),
        "engine": EngineConfig(
            auth_base_dir=tmp_path / "auth",
            launch_timeout_seconds=0.5,
            destroy_timeout_seconds=0.5,
            send_timeout_seconds=0.5,
            poll_timeout_seconds=0.5,
            delete_destroy_timeout_seconds=0.1,
            launch_min_free_mem_mb=0,
        ),
        "restore": RestoreConfig(restore_min_free_mem_mb=0),
        "queue": QueueConfig(outbound_drain_delay_seconds=0),
    }
    defaults.update(sections)
    return WaHubConfig(**defaults)


@pytest.fixture
def config(tmp_path: Path) -> WaHubConfig:
    return make_config(tmp_path)


@pytest.fixture
def build_registry(
    engine: FakeEngine,
    clock: ManualClock,
    delivery: RecordingDelivery,
) -> Callable[..., InstanceRegistry]:
    """Factory for registries sharing the fake engine, clock and delivery."""

    def _build(config: WaHubConfig, memory_probe: Callable[[], float] = lambda: 64_000.0) -> InstanceRegistry:
        return InstanceRegistry(
            config,
            engine,
            clock=clock,
            webhooks=WebhookDispatcher(delivery, clock),
            memory_probe=memory_probe,
        )

    return _build


@pytest_asyncio.fixture
async def registry(config: WaHubConfig, build_registry: Callable[..., InstanceRegistry]):
    reg = build_registry(config)
    await reg.start(run_loop=False)
    yield reg
    await reg.stop()


@pytest.fixture
def run_for(clock: ManualClock) -> Callable[..., Awaitable[None]]:
    """Advance virtual time in steps, ticking the registry after each step."""

    async def _run_for(registry: InstanceRegistry, seconds: float, step: float = 1.0) -> None:
        await registry.tick()
        await registry.wait_idle()
        elapsed = 0.0
        while elapsed < seconds:
            delta = min(step, seconds - elapsed)
            clock.advance(delta)
            elapsed += delta
            await registry.tick()
            await registry.wait_idle()

    return _run_for


@pytest.fixture
def activate(engine: FakeEngine) -> Callable[..., Awaitable[FakeSession]]:
    """Create an instance and drive it to ACTIVE through the engine events."""

    async def _activate(
        registry: InstanceRegistry,
        instance_id: str,
        webhook_url: str | None = WEBHOOK_URL,
        webhook_events: list[str] | None = None,
    ) -> FakeSession:
        await registry.create_instance(
            instance_id,
            f"Tenant {instance_id}",
            webhook_url=webhook_url,
            webhook_events=webhook_events,
        )
        await registry.wait_idle()
        session = engine.latest(instance_id)
        await session.emit("authenticated")
        await session.emit("ready")
        await registry.wait_idle()
        return session

    return _activate


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., WaHubConfig]:
    """Build a test configuration with some sections replaced."""

    def _factory(**sections: Any) -> WaHubConfig:
        return make_config(tmp_path, **sections)

    return _factory
