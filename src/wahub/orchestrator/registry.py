"""Instance registry: the orchestrator's composition root.

The registry owns every tenant :class:`Instance` and is the only entry point
for commands (create, delete, send, retry) and automation engine events.
Each instance is logically single-threaded: commands, engine events and
timer callbacks for one instance run one at a time under its lock, while
different instances proceed in parallel. Slow engine I/O (launch, destroy,
chat lookup, send, polls) runs as tracked background tasks with hard
timeouts and reports back under the lock when done.

Time never advances on its own inside the registry. A driver loop calls
:meth:`InstanceRegistry.tick` every ``tick_interval_seconds``; tests call it
directly after moving a manual clock forward.
"""

from __future__ import annotations

import asyncio
import functools
from datetime import datetime, timedelta
from typing import Any, Coroutine

import structlog

from wahub import session_guard
from wahub.clock import Clock, SystemClock
from wahub.config import WaHubConfig
from wahub.engine import (
    EngineEvent,
    EngineFactory,
    EngineSession,
    SessionInfo,
    guarded_call,
    is_session_lost,
)
from wahub.errors import (
    EngineActionError,
    ErrorKind,
    InstanceExistsError,
    InstanceNotFoundError,
    InstanceUnavailableError,
    LastError,
    truncate_excerpt,
)
from wahub.hooks import NoopSendHooks, SendHooks, run_hook
from wahub.logging import bind_instance_context
from wahub.orchestrator.idempotency import IdempotencyStatus, IdempotencyStore
from wahub.orchestrator.inbound_buffer import InboundEntry
from wahub.orchestrator.instance import Instance, InstanceStatus, QrCycle
from wahub.orchestrator.outbound_queue import OutboundItem, SendKind
from wahub.orchestrator.restart import RestartController, RestartPlan
from wahub.orchestrator.restore import RestoreKind, RestoreScheduler, RestoreTicket
from wahub.orchestrator.state_machine import (
    InstanceState,
    InstanceStateMachine,
    Transition,
)
from wahub.orchestrator.timers import InstanceTimers, TimerCallback
from wahub.orchestrator.watchdog import (
    CONNECTING_WATCHDOG,
    DRAIN,
    HEALTH_CHECK,
    INBOUND_FLUSH,
    LAUNCH_RETRY,
    MESSAGE_POLL,
    QR_CHECK,
    QR_RECOVERY,
    READY_POLL,
    READY_WATCHDOG,
    RESTART,
    QrPolicy,
    QrVerdict,
    SystemMode,
    compute_system_mode,
    evaluate_health,
    timers_to_cancel,
)
from wahub.storage import InstanceStore
from wahub.system import LaunchGate, MemoryProbe, free_memory_mb
from wahub.webhooks import (
    WebhookDelivery,
    WebhookDispatcher,
    WebhookEvent,
    WebhookTarget,
)

logger = structlog.get_logger(__name__)

# Upper bound on timer firings handled for one instance in a single tick
MAX_TIMER_FIRINGS_PER_TICK = 100

IDEMPOTENCY_PURGE = "idempotency_purge"

_LIVE_STATES = frozenset(
    {
        InstanceState.connecting,
        InstanceState.needs_qr,
        InstanceState.syncing,
        InstanceState.active,
    }
)


def _webhook_target(url: str | None, events: list[str] | None) -> WebhookTarget | None:
    if not url:
        return None
    return WebhookTarget(url=url, events=list(events or []))


class InstanceRegistry:
    """Owns all instances and implements every orchestrator operation.

    Args:
        config: Resolved configuration.
        engine_factory: Builds engine sessions for instances.
        clock: Time source (wall clock by default).
        webhooks: Webhook dispatcher (built from config if omitted).
        idempotency: Idempotency store (built from config if omitted).
        instance_store: Persisted instance list (built from config if omitted).
        send_hooks: Hooks run around every send.
        memory_probe: Free-memory probe used by the launch gate and restores.
    """

    def __init__(
        self,
        config: WaHubConfig,
        engine_factory: EngineFactory,
        clock: Clock | None = None,
        webhooks: WebhookDispatcher | None = None,
        idempotency: IdempotencyStore | None = None,
        instance_store: InstanceStore | None = None,
        send_hooks: SendHooks | None = None,
        memory_probe: MemoryProbe = free_memory_mb,
    ) -> None:
        self.config = config
        self.engine_factory = engine_factory
        self.clock = clock or SystemClock()
        self.webhooks = webhooks or WebhookDispatcher(
            WebhookDelivery.from_config(config.webhook), self.clock
        )
        self.idempotency = idempotency or IdempotencyStore(
            config.storage.idempotency_path, config.storage.idempotency_ttl_hours
        )
        self.instance_store = instance_store or InstanceStore(
            config.storage.instances_path
        )
        self.send_hooks = send_hooks or NoopSendHooks()

        self.state_machine = InstanceStateMachine()
        self.restarts = RestartController(config.restart)
        self.qr_policy = QrPolicy(config.qr)
        self.launch_gate = LaunchGate(
            max_concurrent=config.engine.max_concurrent_launches,
            min_free_mb=config.engine.launch_min_free_mem_mb,
            memory_probe=memory_probe,
        )
        self.restore = RestoreScheduler(
            config.restore,
            self.clock,
            launcher=self._restore_launch,
            on_exhausted=self._restore_exhausted,
            memory_probe=memory_probe,
        )

        self._instances: dict[str, Instance] = {}
        self._hub_timers = InstanceTimers(self.clock, owner="hub")
        self._forced_normal_until: datetime | None = None
        self._driver: asyncio.Task[None] | None = None
        self.logger = logger.bind(component="InstanceRegistry")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, run_loop: bool = True) -> int:
        """Load persisted state, queue restores and start the tick loop.

        Args:
            run_loop: Start the background driver loop. Tests pass False and
                call :meth:`tick` themselves.

        Returns:
            Number of instances restored from the persisted list.
        """
        self.idempotency.load(self.clock.now())
        self._hub_timers.arm_every(
            IDEMPOTENCY_PURGE,
            self.config.storage.idempotency_purge_interval_minutes * 60,
            self._purge_idempotency,
        )
        restored = self.restore_persisted()

        if run_loop and self._driver is None:
            self._driver = asyncio.create_task(self._run_loop())
        self.logger.info("registry_started", restored=restored)
        return restored

    def restore_persisted(self) -> int:
        """Register persisted instances as CREATED and queue their restore."""
        count = 0
        for descriptor in self.instance_store.load():
            if descriptor.id in self._instances:
                continue
            instance = Instance.build(
                descriptor.id,
                descriptor.name,
                self.config,
                self.clock,
                webhook=_webhook_target(descriptor.webhook_url, descriptor.webhook_events),
                created_at=descriptor.created_at,
            )
            self._instances[descriptor.id] = instance
            self.restore.enqueue(descriptor.id, RestoreKind.restore)
            count += 1
        return count

    async def stop(self) -> None:
        """Stop the tick loop, destroy every session and flush webhooks."""
        if self._driver is not None:
            self._driver.cancel()
            try:
                await self._driver
            except asyncio.CancelledError:
                pass
            self._driver = None

        sessions: list[tuple[Instance, EngineSession]] = []
        for instance in list(self._instances.values()):
            async with instance.lock:
                instance.timers.cancel_all()
                session = self._detach_session(instance)
                if session is not None:
                    sessions.append((instance, session))

        await asyncio.gather(
            *(self._destroy_session(inst, session) for inst, session in sessions),
            return_exceptions=True,
        )

        pending = [t for inst in self._instances.values() for t in inst.tasks]
        pending.extend(self.restore.tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        await self.webhooks.close()
        self.logger.info("registry_stopped", instances=len(self._instances))

    async def _run_loop(self) -> None:
        interval = self.config.watchdog.tick_interval_seconds
        while True:
            try:
                await self.tick()
            except Exception as e:
                self.logger.error("tick_failed", error=str(e), exc_info=True)
            await self.clock.sleep(interval)

    async def tick(self) -> None:
        """Run every due timer and pump the restore scheduler once."""
        now = self.clock.now()
        await self._run_due_timers(self._hub_timers, None, now)
        for instance in list(self._instances.values()):
            if not instance.deleting:
                self.restarts.reset_if_window_elapsed(instance, now)
            await self._run_due_timers(instance.timers, instance, now)
        await self.restore.pump()

    async def _run_due_timers(
        self,
        timers: InstanceTimers,
        instance: Instance | None,
        now: datetime,
    ) -> None:
        for _ in range(MAX_TIMER_FIRINGS_PER_TICK):
            if instance is not None and instance.deleting:
                return
            due = timers.pop_next_due(now)
            if due is None:
                return
            name, callback = due
            if instance is None:
                await self._run_timer(timers.owner, name, callback)
                continue
            async with instance.lock:
                if instance.deleting:
                    return
                await self._run_timer(instance.id, name, callback)

    async def _run_timer(self, owner: str, name: str, callback: TimerCallback) -> None:
        try:
            await callback()
        except Exception as e:
            self.logger.error(
                "timer_callback_failed",
                instance_id=owner,
                timer=name,
                error=str(e),
                exc_info=True,
            )

    async def wait_idle(self) -> None:
        """Wait until no background task or webhook delivery is in flight."""
        while True:
            pending: set[asyncio.Task[Any]] = set(self.restore.tasks)
            for instance in list(self._instances.values()):
                pending |= instance.tasks
            if not pending and self.webhooks.pending == 0:
                return
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            await self.webhooks.drain()

    def _spawn(
        self,
        instance: Instance,
        coro: Coroutine[Any, Any, Any],
        name: str,
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(self._guard_task(instance, coro, name))
        instance.tasks.add(task)
        task.add_done_callback(instance.tasks.discard)
        return task

    async def _guard_task(
        self,
        instance: Instance,
        coro: Coroutine[Any, Any, Any],
        name: str,
    ) -> Any:
        bind_instance_context(instance.id, task=name)
        try:
            return await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(
                "background_task_failed",
                instance_id=instance.id,
                task=name,
                error=str(e),
                exc_info=True,
            )
            return None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, instance_id: str) -> Instance:
        """Return the live instance object.

        Raises:
            InstanceNotFoundError: If no such instance exists.
        """
        instance = self._instances.get(instance_id)
        if instance is None or instance.deleting:
            raise InstanceNotFoundError(instance_id)
        return instance

    def __contains__(self, instance_id: str) -> bool:
        return instance_id in self._instances

    def get_status(self, instance_id: str) -> InstanceStatus:
        return self.get(instance_id).status(self.clock.now())

    def list_statuses(self) -> list[InstanceStatus]:
        now = self.clock.now()
        return [i.status(now) for i in self._instances.values() if not i.deleting]

    def system_mode(self) -> SystemMode:
        """Hub-wide mode: SYNCING while any session is starting up."""
        return compute_system_mode(
            self._instances.values(),
            self.config.watchdog,
            self.config.qr,
            self.clock.now(),
            self._forced_normal_until,
        )

    def force_normal(self, cooldown_seconds: float) -> datetime:
        """Hold the hub in NORMAL mode for ``cooldown_seconds``."""
        until = self.clock.now() + timedelta(seconds=cooldown_seconds)
        self._forced_normal_until = until
        self.logger.warning("system_mode_forced_normal", until=until.isoformat())
        return until

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def create_instance(
        self,
        instance_id: str,
        name: str,
        webhook_url: str | None = None,
        webhook_events: list[str] | None = None,
    ) -> InstanceStatus:
        """Register a new instance and start connecting it.

        Raises:
            InstanceExistsError: If ``instance_id`` is already registered.
        """
        if instance_id in self._instances:
            raise InstanceExistsError(instance_id)

        instance = Instance.build(
            instance_id,
            name,
            self.config,
            self.clock,
            webhook=_webhook_target(webhook_url, webhook_events),
        )
        self._instances[instance_id] = instance
        self._persist_instances()
        self.logger.info("instance_created", instance_id=instance_id, display_name=name)

        async with instance.lock:
            self._begin_connect(instance, "created")
        return instance.status(self.clock.now())

    async def delete_instance(
        self,
        instance_id: str,
        purge_session_data: bool = False,
    ) -> None:
        """Destroy an instance's session and forget the instance.

        The session gets ``delete_destroy_timeout_seconds`` to shut down.
        Past that the instance is force-purged: its background tasks are
        cancelled and the handle is dropped. Queued sends are discarded.

        Args:
            instance_id: Instance to delete.
            purge_session_data: Also remove the on-disk session directory
                after verifying no process holds it open.

        Raises:
            InstanceNotFoundError: If the instance does not exist.
            SessionDataInUseError: If session data is still held open (the
                instance itself is already deleted at that point).
        """
        instance = self.get(instance_id)
        async with instance.lock:
            instance.deleting = True
            instance.timers.cancel_all()
            discarded = instance.queue.clear()
            for item in discarded:
                self._settle(item, IdempotencyStatus.discarded, reason="instance_deleted")
            instance.inbound.clear()
            session = self._detach_session(instance)
        self.restore.discard(instance_id)

        forced = False
        if session is not None:
            try:
                await guarded_call(
                    "destroy",
                    session.destroy(),
                    self.config.engine.delete_destroy_timeout_seconds,
                )
            except EngineActionError as e:
                forced = e.timed_out
                self.logger.warning(
                    "instance_destroy_failed",
                    instance_id=instance_id,
                    timed_out=e.timed_out,
                    error=str(e),
                )

        # Past the destroy timeout nothing of this instance keeps running
        tasks = list(instance.tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        # A send cut off mid-flight never reported back
        if instance.in_flight is not None:
            discarded.append(instance.in_flight)
            self._settle(instance.in_flight, IdempotencyStatus.discarded, reason="instance_deleted")
            instance.in_flight = None

        del self._instances[instance_id]
        self._persist_instances()
        self.webhooks.emit(
            instance_id,
            instance.webhook,
            WebhookEvent.deleted,
            {"forced": forced, "discardedQueued": len(discarded)},
        )
        self.logger.info(
            "instance_deleted",
            instance_id=instance_id,
            forced=forced,
            discarded_queued=len(discarded),
        )

        if purge_session_data:
            session_guard.purge_session_data(
                session_guard.session_dir(self.config.engine.auth_base_dir, instance_id)
            )

    async def update_webhook(
        self,
        instance_id: str,
        url: str | None,
        events: list[str] | None = None,
    ) -> InstanceStatus:
        """Replace the webhook URL and event filter of an instance."""
        instance = self.get(instance_id)
        async with instance.lock:
            instance.webhook = _webhook_target(url, events)
        self._persist_instances()
        self.logger.info(
            "webhook_updated",
            instance_id=instance_id,
            url=url,
            events=list(events or []),
        )
        return instance.status(self.clock.now())

    async def send_message(
        self,
        instance_id: str,
        chat_id: str,
        content: Any,
        options: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        ttl_seconds: float | None = None,
    ) -> dict[str, Any]:
        """Queue a message for sending.

        Returns:
            The queued result, or the cached result if ``idempotency_key``
            was already used within its TTL.

        Raises:
            InstanceNotFoundError: Unknown instance.
            InstanceUnavailableError: Instance is in ERROR.
            QueueFullError: Outbound queue at capacity.
        """
        return await self._submit(
            instance_id,
            SendKind.message,
            chat_id,
            {"content": content, "options": options or {}},
            idempotency_key,
            ttl_seconds,
        )

    async def send_poll(
        self,
        instance_id: str,
        chat_id: str,
        question: str,
        options: list[str],
        settings: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        ttl_seconds: float | None = None,
    ) -> dict[str, Any]:
        """Queue a poll for sending. Same contract as :meth:`send_message`."""
        return await self._submit(
            instance_id,
            SendKind.poll,
            chat_id,
            {"question": question, "options": list(options), "settings": settings or {}},
            idempotency_key,
            ttl_seconds,
        )

    async def _submit(
        self,
        instance_id: str,
        kind: SendKind,
        chat_id: str,
        payload: dict[str, Any],
        idempotency_key: str | None,
        ttl_seconds: float | None,
    ) -> dict[str, Any]:
        instance = self.get(instance_id)
        async with instance.lock:
            now = self.clock.now()
            if idempotency_key:
                record = self.idempotency.get(idempotency_key, now)
                if record is not None:
                    self.logger.info(
                        "idempotent_replay",
                        instance_id=instance_id,
                        idempotency_key=idempotency_key,
                        status=record.status.value,
                    )
                    return dict(record.result)

            if instance.state == InstanceState.error:
                raise InstanceUnavailableError(
                    instance_id,
                    instance.state.value,
                    instance.last_error.kind.value if instance.last_error else None,
                )

            item = instance.queue.enqueue(
                chat_id,
                kind,
                payload,
                now,
                idempotency_key=idempotency_key,
                ttl_seconds=ttl_seconds,
            )
            result: dict[str, Any] = {
                "status": IdempotencyStatus.queued.value,
                "instanceId": instance_id,
                "queueItemId": item.id,
                "queuePosition": len(instance.queue),
            }
            if idempotency_key:
                result["idempotencyKey"] = idempotency_key
                self.idempotency.record_queued(idempotency_key, instance_id, result, now)

            self.logger.info(
                "send_queued",
                instance_id=instance_id,
                kind=kind.value,
                item_id=item.id,
                queue_size=len(instance.queue),
            )
            self._schedule_drain(instance)
            return dict(result)

    async def retry_instance(self, instance_id: str) -> bool:
        """Operator retry of a failed or disconnected instance.

        The retry goes through the restore scheduler.

        Raises:
            InstanceUnavailableError: If the instance is neither in ERROR nor
                DISCONNECTED.
        """
        instance = self.get(instance_id)
        async with instance.lock:
            if instance.state not in (InstanceState.error, InstanceState.disconnected):
                raise InstanceUnavailableError(
                    instance_id,
                    instance.state.value,
                    "only failed or disconnected instances can be retried",
                )
            instance.connect_failures = 0
            instance.qr_recovery_attempts = 0
            instance.timers.cancel(RESTART)
        queued = self.restore.enqueue(instance_id, RestoreKind.retry)
        self.logger.info("instance_retry_requested", instance_id=instance_id, queued=queued)
        return queued

    async def restart_all(self) -> int:
        """Tear down every session and restart all instances sequentially.

        Returns:
            Number of instances queued for restart.
        """
        count = 0
        for instance in list(self._instances.values()):
            if instance.deleting:
                continue
            async with instance.lock:
                instance.timers.cancel(RESTART)
                instance.connect_failures = 0
                if instance.state in _LIVE_STATES:
                    self._teardown_session(instance)
                    self._transition(instance, InstanceState.disconnected, "restart_all")
                else:
                    self._teardown_session(instance)
            if self.restore.enqueue(instance.id, RestoreKind.retry):
                count += 1
        self.logger.info("restart_all_requested", queued=count)
        return count

    # ------------------------------------------------------------------
    # Transitions and session ownership
    # ------------------------------------------------------------------

    def _transition(
        self,
        instance: Instance,
        target: InstanceState,
        reason: str,
    ) -> Transition:
        transition = self.state_machine.transition(
            instance, target, reason, self.clock.now()
        )
        self._after_transition(instance, transition)
        return transition

    def _after_transition(self, instance: Instance, transition: Transition) -> None:
        timers = instance.timers
        now = transition.at
        target = transition.to_state
        timers.cancel_many(timers_to_cancel(target))

        if transition.from_state == InstanceState.needs_qr and target != InstanceState.needs_qr:
            instance.needs_qr_since = None

        if target == InstanceState.connecting:
            instance.qr = None
            timers.arm(
                CONNECTING_WATCHDOG,
                self.config.watchdog.connecting_watchdog_seconds,
                functools.partial(self._on_connecting_timeout, instance),
            )
        elif target == InstanceState.needs_qr:
            instance.needs_qr_since = now
            timers.arm_every(
                QR_CHECK,
                self.config.qr.qr_recovery_watchdog_interval_seconds,
                functools.partial(self._check_qr, instance),
            )
        elif target == InstanceState.syncing:
            instance.connect_failures = 0
            instance.qr = None
            instance.qr_recovery_attempts = 0
            timers.arm(
                READY_WATCHDOG,
                self.config.watchdog.ready_watchdog_seconds,
                functools.partial(self._on_ready_timeout, instance),
            )
            timers.arm_every(
                READY_POLL,
                self.config.watchdog.ready_poll_interval_seconds,
                functools.partial(self._poll_ready, instance),
            )
        elif target == InstanceState.active:
            instance.connect_failures = 0
            instance.restricted = False
            instance.zombie_suspected = False
            instance.last_activity_at = now
            timers.arm_every(
                HEALTH_CHECK,
                self.config.health.health_check_interval_minutes * 60,
                functools.partial(self._check_health, instance),
            )
            if self.config.watchdog.message_fallback_poll_enabled:
                timers.arm_every(
                    MESSAGE_POLL,
                    self.config.watchdog.message_fallback_poll_interval_seconds,
                    functools.partial(self._poll_messages, instance),
                )
            self._schedule_drain(instance)
        else:
            instance.qr = None

        self.webhooks.emit(
            instance.id,
            instance.webhook,
            WebhookEvent.state_changed,
            {
                "from": transition.from_state.value,
                "to": target.value,
                "reason": transition.reason,
                "restricted": instance.restricted,
            },
        )
        self._maybe_flush_inbound(instance, now)

    def _detach_session(self, instance: Instance) -> EngineSession | None:
        """Supersede the current session generation and take its handle."""
        instance.session_generation += 1
        session = instance.session
        instance.session = None
        return session

    def _teardown_session(self, instance: Instance) -> None:
        session = self._detach_session(instance)
        if session is not None:
            instance.teardown_task = self._spawn(
                instance, self._destroy_session(instance, session), "destroy"
            )

    async def _destroy_session(self, instance: Instance, session: EngineSession) -> None:
        try:
            await guarded_call(
                "destroy",
                session.destroy(),
                self.config.engine.destroy_timeout_seconds,
            )
        except EngineActionError as e:
            self.logger.warning(
                "session_destroy_failed",
                instance_id=instance.id,
                timed_out=e.timed_out,
                error=str(e),
            )

    def _record_error(
        self,
        instance: Instance,
        kind: ErrorKind,
        cause: BaseException | str,
    ) -> LastError:
        now = self.clock.now()
        if isinstance(cause, BaseException):
            error = LastError.from_exception(kind, cause, at=now)
        else:
            error = LastError(kind=kind, message=truncate_excerpt(cause), at=now)
        instance.last_error = error
        self.logger.warning(
            "instance_error_recorded",
            instance_id=instance.id,
            kind=kind.value,
            message=error.message,
        )
        return error

    def _enter_error(
        self,
        instance: Instance,
        kind: ErrorKind,
        message: str,
        event: WebhookEvent | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        error = self._record_error(instance, kind, message)
        self._teardown_session(instance)
        if instance.state != InstanceState.error:
            self._transition(instance, InstanceState.error, kind.value)
        if event is not None:
            self.webhooks.emit(
                instance.id,
                instance.webhook,
                event,
                {**(data or {}), "lastError": error.model_dump(mode="json")},
            )

    # ------------------------------------------------------------------
    # Launch and restart
    # ------------------------------------------------------------------

    def _begin_connect(
        self,
        instance: Instance,
        reason: str,
        via_restore: bool = False,
    ) -> asyncio.Task[Any]:
        """Move to CONNECTING and launch a fresh session in the background."""
        old_session = self._detach_session(instance)
        generation = instance.session_generation
        self._transition(instance, InstanceState.connecting, reason)
        return self._spawn(
            instance,
            self._launch(instance, generation, old_session, via_restore),
            "launch",
        )

    async def _launch(
        self,
        instance: Instance,
        generation: int,
        old_session: EngineSession | None,
        via_restore: bool,
    ) -> bool:
        # At most one live session: the previous one is gone before launching
        if old_session is not None:
            await self._destroy_session(instance, old_session)
        teardown = instance.teardown_task
        if teardown is not None and not teardown.done():
            await asyncio.wait({teardown})

        if not self.launch_gate.memory_ok():
            async with instance.lock:
                if generation != instance.session_generation:
                    return False
                if via_restore:
                    self._record_error(
                        instance, ErrorKind.launch_failed, "insufficient free memory to launch"
                    )
                    self._transition(instance, InstanceState.disconnected, "launch_memory_low")
                    return False
                delay = self.config.restore.restore_backoff_base_seconds
                instance.timers.arm(
                    LAUNCH_RETRY, delay, functools.partial(self._retry_launch, instance)
                )
                self.logger.warning(
                    "launch_deferred",
                    instance_id=instance.id,
                    delay_seconds=delay,
                )
            return False

        error: EngineActionError | None = None
        async with self.launch_gate.slot():
            if generation != instance.session_generation or instance.deleting:
                return False
            on_event = functools.partial(self._handle_event, instance.id, generation)
            try:
                session = self.engine_factory(instance.id, on_event)
            except Exception as e:
                error = EngineActionError("create_session", str(e) or e.__class__.__name__)
            else:
                instance.session = session
                self.logger.info("session_launching", instance_id=instance.id)
                try:
                    await guarded_call(
                        "initialize",
                        session.initialize(),
                        self.config.engine.launch_timeout_seconds,
                    )
                except EngineActionError as e:
                    error = e

        if error is None:
            self.logger.info("session_launched", instance_id=instance.id)
            return True

        async with instance.lock:
            if generation != instance.session_generation:
                return False
            self._on_launch_failed(instance, error, via_restore)
        return False

    async def _retry_launch(self, instance: Instance) -> None:
        if instance.state != InstanceState.connecting or instance.session is not None:
            return
        generation = instance.session_generation
        self._spawn(instance, self._launch(instance, generation, None, False), "launch")

    def _on_launch_failed(
        self,
        instance: Instance,
        error: EngineActionError,
        via_restore: bool,
    ) -> None:
        self._record_error(instance, ErrorKind.launch_failed, error)
        self._teardown_session(instance)
        if instance.state not in (InstanceState.disconnected, InstanceState.error):
            self._transition(instance, InstanceState.disconnected, "launch_failed")
        if via_restore:
            # The restore scheduler owns retries of restores
            return

        instance.connect_failures += 1
        if instance.connect_failures > self.config.watchdog.connecting_watchdog_max_restarts:
            self._enter_error(
                instance,
                ErrorKind.launch_failed,
                f"launch failed {instance.connect_failures} times in a row: {error.cause_message}",
            )
            return
        self._schedule_restart(instance, "launch_failed")

    def _schedule_restart(self, instance: Instance, reason: str) -> RestartPlan:
        now = self.clock.now()
        plan = self.restarts.plan(instance, now)
        due = plan.due_at
        if instance.paused_until is not None and instance.paused_until > due:
            due = instance.paused_until
        instance.timers.arm_at(RESTART, due, functools.partial(self._restart, instance))
        self.logger.info(
            "restart_scheduled",
            instance_id=instance.id,
            reason=reason,
            attempt=plan.attempt,
            delay_seconds=(due - now).total_seconds(),
            due_at=due.isoformat(),
            rate_limited=plan.rate_limited,
        )
        return plan

    async def _restart(self, instance: Instance) -> None:
        if instance.state != InstanceState.disconnected:
            return
        self._begin_connect(instance, "restart")

    # ------------------------------------------------------------------
    # Restore scheduler hooks
    # ------------------------------------------------------------------

    async def _restore_launch(self, instance_id: str, kind: RestoreKind) -> bool:
        instance = self._instances.get(instance_id)
        if instance is None or instance.deleting:
            return True
        async with instance.lock:
            startable = {InstanceState.created, InstanceState.disconnected}
            if kind == RestoreKind.retry:
                startable.add(InstanceState.error)
            if instance.state not in startable:
                self.logger.info(
                    "restore_skipped",
                    instance_id=instance_id,
                    state=instance.state.value,
                )
                return True
            instance.timers.cancel(RESTART)
            task = self._begin_connect(instance, kind.value, via_restore=True)

        await asyncio.wait({task})
        if task.cancelled():
            return True
        return bool(task.result())

    async def _restore_exhausted(self, ticket: RestoreTicket) -> None:
        instance = self._instances.get(ticket.instance_id)
        if instance is None or instance.deleting:
            return
        async with instance.lock:
            self._enter_error(
                instance,
                ErrorKind.restore_failed,
                f"restore failed after {ticket.attempt} attempts ({ticket.last_reason})",
                WebhookEvent.restore_failed,
                {"attempts": ticket.attempt, "reason": ticket.last_reason},
            )

    # ------------------------------------------------------------------
    # Engine events
    # ------------------------------------------------------------------

    async def _handle_event(
        self,
        instance_id: str,
        generation: int,
        event: EngineEvent | str,
        data: dict[str, Any] | None = None,
    ) -> None:
        instance = self._instances.get(instance_id)
        if instance is None or instance.deleting:
            return
        async with instance.lock:
            if generation != instance.session_generation:
                self.logger.debug(
                    "stale_event_ignored",
                    instance_id=instance_id,
                    event_type=str(getattr(event, "value", event)),
                    generation=generation,
                    current_generation=instance.session_generation,
                )
                return
            try:
                self._apply_event(instance, EngineEvent(event), data or {})
            except Exception as e:
                self.logger.error(
                    "event_handling_failed",
                    instance_id=instance_id,
                    event_type=str(getattr(event, "value", event)),
                    error=str(e),
                    exc_info=True,
                )

    def _apply_event(self, instance: Instance, event: EngineEvent, data: dict[str, Any]) -> None:
        now = self.clock.now()
        instance.last_event_at = now
        state = instance.state

        if event == EngineEvent.qr:
            if state == InstanceState.connecting:
                self._transition(instance, InstanceState.needs_qr, "qr")
            elif state != InstanceState.needs_qr:
                self.logger.info("qr_ignored", instance_id=instance.id, state=state.value)
                return
            if instance.qr is None:
                instance.qr = QrCycle(
                    attempt=instance.qr_recovery_attempts + 1,
                    started_at=now,
                    last_qr_seen_at=now,
                )
            else:
                instance.qr.last_qr_seen_at = now
                instance.qr.stale = False
            self.webhooks.emit(
                instance.id,
                instance.webhook,
                WebhookEvent.qr,
                {"qr": data.get("qr"), "attempt": instance.qr.attempt},
            )

        elif event == EngineEvent.authenticated:
            if state in (InstanceState.connecting, InstanceState.needs_qr):
                self._transition(instance, InstanceState.syncing, "authenticated")
            self.webhooks.emit(instance.id, instance.webhook, WebhookEvent.authenticated, {})

        elif event == EngineEvent.ready:
            instance.last_activity_at = now
            self._mark_ready(instance, "event", None)

        elif event == EngineEvent.disconnected:
            self._on_disconnected(
                instance,
                data.get("reason"),
                ErrorKind.disconnected,
                bool(data.get("restricted")),
                WebhookEvent.disconnected,
            )

        elif event == EngineEvent.auth_failure:
            self._on_disconnected(
                instance,
                data.get("message") or data.get("reason"),
                ErrorKind.auth_failure,
                bool(data.get("restricted")),
                WebhookEvent.auth_failure,
            )

        elif event == EngineEvent.change_state:
            instance.last_activity_at = now
            instance.zombie_suspected = False
            self.webhooks.emit(instance.id, instance.webhook, WebhookEvent.change_state, data)

        else:
            self._on_inbound(instance, event.value, data, now)

    def _mark_ready(
        self,
        instance: Instance,
        source: str,
        info: SessionInfo | None,
    ) -> None:
        """Merge readiness from the ready event and the ready poll."""
        state = instance.state
        if state == InstanceState.active:
            return
        if state not in (InstanceState.connecting, InstanceState.needs_qr, InstanceState.syncing):
            self.logger.info("ready_ignored", instance_id=instance.id, state=state.value)
            return
        if info is not None:
            instance.phone_number = info.phone_number or instance.phone_number
            instance.push_name = info.push_name or instance.push_name
        if state != InstanceState.syncing:
            self._transition(instance, InstanceState.syncing, f"ready_{source}")
        self._transition(instance, InstanceState.active, f"ready_{source}")
        self.webhooks.emit(
            instance.id,
            instance.webhook,
            WebhookEvent.ready,
            {
                "source": source,
                "phoneNumber": instance.phone_number,
                "pushName": instance.push_name,
            },
        )

    def _on_disconnected(
        self,
        instance: Instance,
        reason: Any,
        kind: ErrorKind,
        restricted_flag: bool,
        event: WebhookEvent,
    ) -> None:
        now = self.clock.now()
        cooldown_config = self.config.cooldown
        reason_text = str(reason or "unknown")
        upper = reason_text.upper()

        restricted = restricted_flag or any(
            marker.upper() in upper for marker in cooldown_config.restriction_markers
        )
        if restricted:
            kind = ErrorKind.restricted
            cooldown = timedelta(hours=cooldown_config.extended_restriction_cooldown_hours)
            message = f"remote restriction signalled: {reason_text}"
        elif any(marker.upper() in upper for marker in cooldown_config.terminal_disconnect_markers):
            kind = ErrorKind.logged_out
            cooldown = timedelta(seconds=cooldown_config.min_disconnect_cooldown_seconds)
            message = f"session logged out ({reason_text}); a new QR login is required"
        else:
            cooldown = timedelta(seconds=cooldown_config.min_disconnect_cooldown_seconds)
            message = f"{kind.value}: {reason_text}"

        instance.cooldown_until = now + cooldown
        instance.pause_until(instance.cooldown_until)
        instance.restricted = restricted
        instance.last_disconnect_reason = reason_text
        self._record_error(instance, kind, message)

        self._teardown_session(instance)
        if instance.state not in (InstanceState.disconnected, InstanceState.error):
            self._transition(instance, InstanceState.disconnected, kind.value)

        self.webhooks.emit(
            instance.id,
            instance.webhook,
            event,
            {
                "reason": reason_text,
                "restricted": restricted,
                "cooldownUntil": instance.cooldown_until.isoformat(),
            },
        )
        self.logger.warning(
            "instance_disconnected",
            instance_id=instance.id,
            reason=reason_text,
            restricted=restricted,
            cooldown_seconds=cooldown.total_seconds(),
        )

        if self.config.restart.disable_auto_reconnect:
            self.logger.info("auto_reconnect_disabled", instance_id=instance.id)
            return
        self._schedule_restart(instance, kind.value)

    # ------------------------------------------------------------------
    # Watchdogs and polls (timer callbacks, run under the instance lock)
    # ------------------------------------------------------------------

    async def _on_connecting_timeout(self, instance: Instance) -> None:
        if instance.state not in (InstanceState.connecting, InstanceState.needs_qr):
            return
        instance.connect_failures += 1
        limit = self.config.watchdog.connecting_watchdog_max_restarts
        waited = self.config.watchdog.connecting_watchdog_seconds
        self.logger.warning(
            "connecting_watchdog_fired",
            instance_id=instance.id,
            state=instance.state.value,
            connect_failures=instance.connect_failures,
        )
        if instance.connect_failures > limit:
            self._enter_error(
                instance,
                ErrorKind.connect_timeout,
                f"not connected after {instance.connect_failures} attempts of {waited:g}s",
            )
            return
        self._record_error(
            instance, ErrorKind.connect_timeout, f"not connected after {waited:g}s"
        )
        self._teardown_session(instance)
        self._transition(instance, InstanceState.disconnected, "connecting_timeout")
        self._schedule_restart(instance, "connecting_timeout")

    async def _on_ready_timeout(self, instance: Instance) -> None:
        if instance.state != InstanceState.syncing:
            return
        now = self.clock.now()
        waited = self.config.watchdog.ready_watchdog_seconds
        paused_until = now + timedelta(minutes=self.config.watchdog.ready_timeout_pause_minutes)
        instance.pause_until(paused_until)
        error = self._record_error(
            instance, ErrorKind.ready_timeout, f"not ready after {waited:g}s of syncing"
        )
        self.webhooks.emit(
            instance.id,
            instance.webhook,
            WebhookEvent.ready_timeout,
            {
                "waitedSeconds": waited,
                "pausedUntil": paused_until.isoformat(),
                "lastError": error.model_dump(mode="json"),
            },
        )
        self._teardown_session(instance)
        self._transition(instance, InstanceState.disconnected, "ready_timeout")
        self._schedule_restart(instance, "ready_timeout")

    async def _poll_ready(self, instance: Instance) -> None:
        if instance.state != InstanceState.syncing or instance.session is None:
            return
        self._spawn(
            instance,
            self._run_ready_poll(instance, instance.session_generation, instance.session),
            "ready_poll",
        )

    async def _run_ready_poll(
        self,
        instance: Instance,
        generation: int,
        session: EngineSession,
    ) -> None:
        try:
            info = await guarded_call(
                "get_session_info",
                session.get_session_info(),
                self.config.engine.poll_timeout_seconds,
            )
        except EngineActionError as e:
            self.logger.debug("ready_poll_failed", instance_id=instance.id, error=str(e))
            return
        if info is None:
            return
        async with instance.lock:
            if generation != instance.session_generation:
                return
            if instance.state != InstanceState.syncing:
                return
            self.logger.info("ready_detected_by_poll", instance_id=instance.id)
            self._mark_ready(instance, "poll", info)

    async def _check_qr(self, instance: Instance) -> None:
        cycle = instance.qr
        if instance.state != InstanceState.needs_qr or cycle is None:
            return
        verdict = self.qr_policy.evaluate(cycle, instance.qr_recovery_attempts, self.clock.now())

        if verdict == QrVerdict.stale:
            cycle.stale = True
            self.logger.warning("qr_stale", instance_id=instance.id, attempt=cycle.attempt)

        elif verdict == QrVerdict.recover:
            cycle.recovery_scheduled = True
            instance.qr_recovery_attempts += 1
            delay = self.qr_policy.recovery_delay(instance.qr_recovery_attempts)
            instance.timers.arm(
                QR_RECOVERY, delay, functools.partial(self._recover_qr, instance)
            )
            self.logger.warning(
                "qr_recovery_scheduled",
                instance_id=instance.id,
                recovery_attempt=instance.qr_recovery_attempts,
                delay_seconds=delay,
            )

        elif verdict == QrVerdict.exhausted:
            attempts = instance.qr_recovery_attempts
            self._enter_error(
                instance,
                ErrorKind.qr_timeout,
                f"no QR login after {attempts} recovery attempts",
                WebhookEvent.qr_timeout,
                {"recoveryAttempts": attempts},
            )

    async def _recover_qr(self, instance: Instance) -> None:
        if instance.state != InstanceState.needs_qr:
            return
        self.logger.info(
            "qr_recovery_relaunch",
            instance_id=instance.id,
            recovery_attempt=instance.qr_recovery_attempts,
        )
        self._begin_connect(instance, "qr_recovery")

    async def _check_health(self, instance: Instance) -> None:
        if instance.state != InstanceState.active:
            return
        verdict = evaluate_health(instance, self.config.health, self.clock.now())
        if not verdict.newly_suspected:
            return
        instance.zombie_suspected = True
        self.logger.warning(
            "zombie_suspected",
            instance_id=instance.id,
            idle_seconds=verdict.idle_seconds,
            threshold_seconds=verdict.threshold_seconds,
        )
        self.webhooks.emit(
            instance.id,
            instance.webhook,
            WebhookEvent.zombie_suspected,
            {
                "idleSeconds": verdict.idle_seconds,
                "thresholdSeconds": verdict.threshold_seconds,
            },
        )

    async def _poll_messages(self, instance: Instance) -> None:
        if instance.state != InstanceState.active or instance.session is None:
            return
        if self.system_mode() == SystemMode.syncing:
            self.logger.debug("message_poll_skipped", instance_id=instance.id)
            return
        self._spawn(
            instance,
            self._run_message_poll(instance, instance.session_generation, instance.session),
            "message_poll",
        )

    async def _run_message_poll(
        self,
        instance: Instance,
        generation: int,
        session: EngineSession,
    ) -> None:
        try:
            messages = await guarded_call(
                "get_unread_messages",
                session.get_unread_messages(),
                self.config.engine.poll_timeout_seconds,
            )
        except EngineActionError as e:
            self.logger.warning("message_poll_failed", instance_id=instance.id, error=str(e))
            return
        async with instance.lock:
            if generation != instance.session_generation:
                return
            if instance.state != InstanceState.active:
                return
            now = self.clock.now()
            for message in messages or []:
                self._on_inbound(
                    instance, EngineEvent.message.value, {**message, "source": "poll"}, now
                )

    async def _purge_idempotency(self) -> None:
        self.idempotency.purge_expired(self.clock.now())

    # ------------------------------------------------------------------
    # Inbound buffering
    # ------------------------------------------------------------------

    def _on_inbound(
        self,
        instance: Instance,
        event: str,
        data: dict[str, Any],
        now: datetime,
    ) -> None:
        message_id = data.get("id")
        if message_id is not None and not instance.seen_messages.add(str(message_id)):
            self.logger.debug(
                "inbound_duplicate_ignored",
                instance_id=instance.id,
                message_id=str(message_id),
            )
            return

        instance.last_activity_at = now
        instance.zombie_suspected = False
        constrained = instance.is_constrained(now, self.config.qr.qr_sync_grace_seconds)

        if constrained or len(instance.inbound) > 0 or instance.flushing:
            batch_ready = instance.inbound.add(
                InboundEntry(event=event, data=data, received_at=now)
            )
            if not instance.timers.is_armed(INBOUND_FLUSH):
                instance.timers.arm_every(
                    INBOUND_FLUSH,
                    self.config.queue.inbound_flush_interval_seconds,
                    functools.partial(self._flush_tick, instance),
                )
            if batch_ready and not constrained:
                self._start_flush(instance)
            return

        self.webhooks.emit(instance.id, instance.webhook, WebhookEvent(event), data)

    async def _flush_tick(self, instance: Instance) -> None:
        if len(instance.inbound) == 0 and not instance.flushing:
            instance.timers.cancel(INBOUND_FLUSH)
            return
        if not instance.is_constrained(self.clock.now(), self.config.qr.qr_sync_grace_seconds):
            self._start_flush(instance)

    def _maybe_flush_inbound(self, instance: Instance, now: datetime) -> None:
        if len(instance.inbound) == 0:
            return
        if instance.is_constrained(now, self.config.qr.qr_sync_grace_seconds):
            return
        self._start_flush(instance)

    def _start_flush(self, instance: Instance) -> None:
        if instance.flushing or instance.deleting:
            return
        batch = instance.inbound.take_batch()
        if not batch:
            return
        instance.flushing = True
        self._spawn(instance, self._flush_inbound(instance, batch), "inbound_flush")

    async def _flush_inbound(self, instance: Instance, batch: list[InboundEntry]) -> None:
        delivered = 0
        try:
            for entry in batch:
                ok = await self.webhooks.send(
                    instance.id, instance.webhook, WebhookEvent(entry.event), entry.data
                )
                if not ok:
                    break
                delivered += 1
        finally:
            async with instance.lock:
                instance.flushing = False
                if delivered < len(batch):
                    instance.inbound.restore_front(batch[delivered:])
                    self.logger.warning(
                        "inbound_flush_incomplete",
                        instance_id=instance.id,
                        delivered=delivered,
                        restored=len(batch) - delivered,
                    )
                else:
                    self.logger.debug(
                        "inbound_flushed",
                        instance_id=instance.id,
                        delivered=delivered,
                        remaining=len(instance.inbound),
                    )

    # ------------------------------------------------------------------
    # Outbound drain
    # ------------------------------------------------------------------

    def _schedule_drain(self, instance: Instance, delay_seconds: float = 0.0) -> None:
        if instance.state != InstanceState.active or instance.deleting:
            return
        due = self.clock.now() + timedelta(seconds=delay_seconds)
        if instance.paused_until is not None and instance.paused_until > due:
            due = instance.paused_until
        existing = instance.timers.due_at(DRAIN)
        if existing is not None and existing <= due:
            return
        instance.timers.arm_at(DRAIN, due, functools.partial(self._drain, instance))

    async def _drain(self, instance: Instance) -> None:
        if instance.state != InstanceState.active or instance.session is None:
            return
        if instance.in_flight is not None:
            return
        now = self.clock.now()
        if instance.paused_until is not None and now < instance.paused_until:
            instance.timers.arm_at(
                DRAIN, instance.paused_until, functools.partial(self._drain, instance)
            )
            return

        for expired in instance.queue.drop_expired_head(now):
            self._settle(expired, IdempotencyStatus.expired, reason="ttl_expired")
            self.logger.info(
                "send_expired",
                instance_id=instance.id,
                item_id=expired.id,
                enqueued_at=expired.enqueued_at.isoformat(),
            )

        item = instance.queue.peek()
        if item is None:
            return

        decision = instance.rate_limiter.check(now)
        if not decision.allowed:
            instance.timers.arm(
                DRAIN,
                decision.retry_after_seconds,
                functools.partial(self._drain, instance),
            )
            self.logger.info(
                "send_deferred",
                instance_id=instance.id,
                limit=decision.limit,
                retry_after_seconds=decision.retry_after_seconds,
                queue_size=len(instance.queue),
            )
            return

        instance.queue.pop()
        item.attempts += 1
        instance.in_flight = item
        instance.rate_limiter.record(now)
        self._spawn(
            instance,
            self._dispatch(instance, instance.session_generation, instance.session, item),
            "send",
        )

    async def _dispatch(
        self,
        instance: Instance,
        generation: int,
        session: EngineSession,
        item: OutboundItem,
    ) -> None:
        timeout = self.config.engine.send_timeout_seconds
        message_id: str | None = None
        error: EngineActionError | None = None
        try:
            await run_hook(self.send_hooks, "before_send", session, item.chat_id)
            await guarded_call(
                "get_chat_by_id", session.get_chat_by_id(item.chat_id), timeout
            )
            if item.kind == SendKind.message:
                message_id = await guarded_call(
                    "send_message",
                    session.send_message(
                        item.chat_id,
                        item.payload.get("content"),
                        item.payload.get("options") or None,
                    ),
                    timeout,
                )
            else:
                message_id = await guarded_call(
                    "send_poll",
                    session.send_poll(
                        item.chat_id,
                        item.payload["question"],
                        item.payload["options"],
                        item.payload.get("settings") or None,
                    ),
                    timeout,
                )
            await run_hook(self.send_hooks, "after_send", session, item.chat_id, message_id)
        except EngineActionError as e:
            error = e

        async with instance.lock:
            instance.in_flight = None
            if error is None:
                self._on_send_succeeded(instance, item, message_id)
            else:
                self._on_send_failed(instance, generation, item, error)

    def _on_send_succeeded(
        self,
        instance: Instance,
        item: OutboundItem,
        message_id: str | None,
    ) -> None:
        instance.last_activity_at = self.clock.now()
        instance.zombie_suspected = False
        self._settle(item, IdempotencyStatus.sent, messageId=message_id)
        self.logger.info(
            "send_completed",
            instance_id=instance.id,
            item_id=item.id,
            kind=item.kind.value,
            message_id=message_id,
        )
        self._schedule_drain(instance, self.config.queue.outbound_drain_delay_seconds)

    def _on_send_failed(
        self,
        instance: Instance,
        generation: int,
        item: OutboundItem,
        error: EngineActionError,
    ) -> None:
        if not is_session_lost(error):
            self._settle(item, IdempotencyStatus.failed, error=truncate_excerpt(str(error)))
            self._record_error(instance, ErrorKind.send_failed, error)
            self._schedule_drain(instance, self.config.queue.outbound_drain_delay_seconds)
            return

        if not instance.queue.push_front(item):
            self._settle(item, IdempotencyStatus.failed, error="queue_full_on_requeue")
        self.logger.warning(
            "send_session_lost",
            instance_id=instance.id,
            item_id=item.id,
            action=error.action,
            timed_out=error.timed_out,
        )
        if generation == instance.session_generation and instance.state in _LIVE_STATES:
            self._on_disconnected(
                instance,
                f"send failed: {error.cause_message}",
                ErrorKind.session_lost,
                False,
                WebhookEvent.disconnected,
            )

    def _settle(self, item: OutboundItem, status: IdempotencyStatus, **fields: Any) -> None:
        if item.idempotency_key:
            self.idempotency.update(item.idempotency_key, status, **fields)

    def _persist_instances(self) -> None:
        self.instance_store.save(
            [i.describe() for i in self._instances.values() if not i.deleting]
        )
