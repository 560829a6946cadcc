from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from .actor_state import ActorStateStore, CleanupPhase, TimerState
from .cleanup import CleanupOrchestrator
from .errors import SchedulingValidationError
from .log import bind
from .session_store import SessionStore

DEFAULT_RETRY_DELAY_SECONDS = 5 * 60


class ActorStatus(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    FIRING = "firing"
    # Retry cap reached; state is kept for an operator to inspect or cancel.
    STALLED = "stalled"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Delay before re-attempting a failed cleanup.

    The defaults retry forever, every five minutes. ``backoff_factor`` grows the
    delay geometrically per failed attempt (capped by ``max_delay_seconds``) and
    ``max_attempts`` stops re-arming once that many attempts have failed.
    """

    delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS
    backoff_factor: float = 1.0
    max_delay_seconds: float | None = None
    max_attempts: int | None = None

    def delay_for(self, attempts: int) -> float:
        delay = self.delay_seconds * (self.backoff_factor ** max(attempts - 1, 0))
        if self.max_delay_seconds is not None:
            delay = min(delay, self.max_delay_seconds)
        return delay

    def exhausted(self, attempts: int) -> bool:
        return self.max_attempts is not None and attempts >= self.max_attempts


@dataclass(frozen=True, slots=True)
class ActorSnapshot:
    user_id: str
    status: ActorStatus
    primary_resource_id: str | None
    secondary_resource_ids: list[str]
    alarm_at: datetime | None
    attempts: int


def _to_datetime(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def _validate_schedule_fields(
    user_id: str | None,
    primary_resource_id: str | None,
    duration_minutes: int | None,
) -> None:
    missing: list[str] = []
    if not user_id:
        missing.append("user_id")
    if not primary_resource_id:
        missing.append("lab_request_id")
    if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int) or duration_minutes <= 0:
        missing.append("duration")
    if missing:
        raise SchedulingValidationError(missing)


def _build_snapshot(user_id: str, status: ActorStatus, state: TimerState | None) -> ActorSnapshot:
    if state is None:
        return ActorSnapshot(
            user_id=user_id,
            status=status,
            primary_resource_id=None,
            secondary_resource_ids=[],
            alarm_at=None,
            attempts=0,
        )
    return ActorSnapshot(
        user_id=user_id,
        status=status,
        primary_resource_id=state.primary_resource_id,
        secondary_resource_ids=list(state.secondary_resource_ids),
        alarm_at=_to_datetime(state.alarm_at) if state.alarm_at is not None else None,
        attempts=state.attempts,
    )


class SessionTimerActor:
    """Owns the expiration timer and cleanup of one user's lab session.

    ``schedule``, ``cancel`` and ``on_alarm_fired`` serialize on a per-actor lock,
    so a cancel that arrives while a cleanup is running waits for it to finish
    and then clears whatever is left.

    Once backend resources are deleted the persisted state is marked
    ``CleanupPhase.CLEANED`` before the store record goes. A later firing of
    that state (a retry or a restart) only finishes the store and state
    deletion and never calls the backend again.
    """

    def __init__(
        self,
        user_id: str,
        state_store: ActorStateStore,
        session_store: SessionStore,
        orchestrator: CleanupOrchestrator,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.time,
        logger: logging.Logger | None = None,
        on_idle: Callable[[SessionTimerActor], None] | None = None,
    ) -> None:
        self.user_id = user_id
        self._state_store = state_store
        self._session_store = session_store
        self._orchestrator = orchestrator
        self._retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._log = bind(logger or logging.getLogger(__name__), user_id=user_id)
        self._on_idle = on_idle
        self._lock = asyncio.Lock()
        self._holders = 0
        self._alarm_task: asyncio.Task[None] | None = None
        self._alarm_at: float | None = None
        # Every alarm task still running, including one that is mid-cleanup.
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False
        self._status = ActorStatus.IDLE
        # Alarm firings that could not read the persisted state.
        self._unreadable_attempts = 0

    @property
    def status(self) -> ActorStatus:
        return self._status

    @property
    def alarm_at(self) -> datetime | None:
        return _to_datetime(self._alarm_at) if self._alarm_at is not None else None

    @property
    def has_pending_alarm(self) -> bool:
        return self._alarm_task is not None and not self._alarm_task.done()

    @property
    def is_idle(self) -> bool:
        return self._holders == 0 and self._status is ActorStatus.IDLE and not self.has_pending_alarm

    async def schedule(
        self,
        user_id: str,
        primary_resource_id: str,
        secondary_resource_ids: Iterable[str] | None,
        duration_minutes: int,
    ) -> datetime:
        _validate_schedule_fields(user_id, primary_resource_id, duration_minutes)
        if user_id != self.user_id:
            raise ValueError(f"Actor for user '{self.user_id}' cannot schedule cleanup for '{user_id}'.")

        async with self._exclusive():
            now = self._clock()
            alarm_at = now + duration_minutes * 60
            state = TimerState(
                user_id=user_id,
                primary_resource_id=primary_resource_id,
                secondary_resource_ids=list(secondary_resource_ids or []),
                duration=duration_minutes,
                created_at=now,
                alarm_at=alarm_at,
            )
            await self._state_store.put(state)
            self._unreadable_attempts = 0
            self._arm(alarm_at)
            self._status = ActorStatus.SCHEDULED

        expires_at = _to_datetime(alarm_at)
        self._log.info("Scheduled cleanup at %s", expires_at.isoformat())
        return expires_at

    async def cancel(self) -> str | None:
        async with self._exclusive():
            self._disarm()
            self._status = ActorStatus.IDLE
            self._unreadable_attempts = 0
            state = await self._state_store.get(self.user_id)
            await self._state_store.clear_alarm(self.user_id)
            await self._state_store.delete_all(self.user_id)

        canceled_user_id = state.user_id if state is not None else None
        self._log.info("Cancelled cleanup (pending state: %s)", "yes" if canceled_user_id else "no")
        return canceled_user_id

    async def on_alarm_fired(self) -> None:
        """Run one cleanup attempt. Never raises; failures re-arm the alarm."""
        async with self._exclusive():
            self._disarm()
            try:
                state = await self._state_store.get(self.user_id)
            except Exception as exc:
                self._log.error("Failed to read actor state on alarm: %s", exc)
                self._retry_unreadable_state()
                return
            self._unreadable_attempts = 0

            if state is None:
                self._log.debug("Alarm fired without session state, nothing to clean up")
                self._status = ActorStatus.IDLE
                return

            self._status = ActorStatus.FIRING
            log = bind(self._log, lab_request_id=state.primary_resource_id)
            if state.phase is CleanupPhase.CLEANED:
                await self._finish_cleaned(state, log)
                return

            log.warning("Session expired, triggering cleanup")
            try:
                await self._state_store.clear_alarm(self.user_id)
                outcome = await self._orchestrator.run(
                    state.user_id,
                    state.primary_resource_id,
                    state.secondary_resource_ids,
                )
                outcome.raise_for_failure()
                state.alarm_at = None
                state.phase = CleanupPhase.CLEANED
                await self._state_store.put(state)
                removed = await self._session_store.delete(state.user_id)
            except Exception as exc:
                log.error("Cleanup failed: %s", exc)
                state.phase = CleanupPhase.PENDING
                await self._schedule_retry(state)
                return

            log.info("Deleted backend resources (store record %s)", "deleted" if removed else "already absent")
            await self._clear_state(state, log)

    async def restore(self, state: TimerState) -> None:
        """Re-arm the alarm for state persisted by a previous process."""
        async with self._exclusive():
            if state.alarm_at is None and self._retry_policy.exhausted(state.attempts):
                self._status = ActorStatus.STALLED
            else:
                alarm_at = state.alarm_at
                if alarm_at is None or state.phase is CleanupPhase.CLEANED:
                    # Stopped mid-cleanup, or only the store and state deletion is left.
                    alarm_at = self._clock()
                self._arm(alarm_at)
                self._status = ActorStatus.SCHEDULED
        self._log.info("Restored actor state (status: %s, phase: %s)", self._status.value, state.phase.value)

    async def snapshot(self) -> ActorSnapshot:
        async with self._exclusive():
            state = await self._state_store.get(self.user_id)
            status = self._status
        return _build_snapshot(self.user_id, status, state)

    def close(self) -> None:
        self._closed = True

    async def shutdown(self) -> None:
        """Stop pending alarms and any cleanup they are running; nothing re-arms afterwards."""
        self.close()
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current and not task.done()]
        self._alarm_task = None
        self._alarm_at = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @asynccontextmanager
    async def _exclusive(self) -> AsyncIterator[None]:
        self._holders += 1
        try:
            async with self._lock:
                yield
        finally:
            self._holders -= 1
            if self._on_idle is not None and self.is_idle:
                self._on_idle(self)

    async def _finish_cleaned(self, state: TimerState, log: logging.LoggerAdapter) -> None:
        log.info("Backend resources already deleted, finishing store cleanup")
        try:
            record = await self._session_store.get(self.user_id)
            # A record for another lab belongs to a newer session.
            if record is not None and record.lab_request_id == state.primary_resource_id:
                await self._session_store.delete(self.user_id)
        except Exception as exc:
            log.error("Failed to delete session record: %s", exc)
            await self._schedule_retry(state)
            return
        await self._clear_state(state, log)

    async def _clear_state(self, state: TimerState, log: logging.LoggerAdapter) -> None:
        try:
            await self._state_store.delete_all(self.user_id)
        except Exception as exc:
            log.error("Cleanup succeeded but clearing actor state failed: %s", exc)
            await self._schedule_retry(state)
            return
        self._status = ActorStatus.IDLE
        log.info("Cleaned up expired session")

    async def _schedule_retry(self, state: TimerState) -> None:
        state.attempts += 1
        if self._retry_policy.exhausted(state.attempts):
            state.alarm_at = None
            self._status = ActorStatus.STALLED
            self._log.critical(
                "Giving up automatic cleanup after %d failed attempts; manual deletion required",
                state.attempts,
            )
            try:
                await self._state_store.put(state)
            except Exception as exc:
                self._log.error("Failed to persist stalled actor state: %s", exc)
            return

        delay = self._retry_policy.delay_for(state.attempts)
        state.alarm_at = self._clock() + delay
        try:
            await self._state_store.put(state)
        except Exception as exc:
            self._log.error("Failed to persist retry alarm: %s", exc)
        self._arm(state.alarm_at)
        self._status = ActorStatus.SCHEDULED
        self._log.info("Rescheduled cleanup retry in %.0f seconds (attempt %d)", delay, state.attempts)

    def _retry_unreadable_state(self) -> None:
        # Counted in memory only; the state that would hold the count is unreadable.
        self._unreadable_attempts += 1
        if self._retry_policy.exhausted(self._unreadable_attempts):
            self._status = ActorStatus.STALLED
            self._log.critical(
                "Giving up after %d failed reads of actor state; manual deletion required",
                self._unreadable_attempts,
            )
            return
        self._arm(self._clock() + self._retry_policy.delay_for(self._unreadable_attempts))
        self._status = ActorStatus.SCHEDULED

    def _arm(self, alarm_at: float) -> None:
        self._disarm()
        if self._closed:
            self._log.debug("Actor is shut down, not arming alarm")
            return
        self._alarm_at = alarm_at
        task = asyncio.create_task(
            self._wait_and_fire(alarm_at),
            name=f"lab-session-alarm:{self.user_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._alarm_task = task

    def _disarm(self) -> None:
        task = self._alarm_task
        self._alarm_task = None
        self._alarm_at = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _wait_and_fire(self, alarm_at: float) -> None:
        delay = alarm_at - self._clock()
        if delay > 0:
            await asyncio.sleep(delay)
        await self.on_alarm_fired()


class TimerActorRegistry:
    """Addressable map of timer actors keyed by user id.

    Only actors with a pending alarm, a running operation or a stalled cleanup
    are held; an actor is dropped as soon as it is idle again.
    """

    def __init__(
        self,
        state_store: ActorStateStore,
        session_store: SessionStore,
        orchestrator: CleanupOrchestrator,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.time,
        logger: logging.Logger | None = None,
    ) -> None:
        self._state_store = state_store
        self._session_store = session_store
        self._orchestrator = orchestrator
        self._retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)
        self._actors: dict[str, SessionTimerActor] = {}
        self._closed = False

    def __len__(self) -> int:
        return len(self._actors)

    def actor(self, user_id: str) -> SessionTimerActor:
        actor = self._actors.get(user_id)
        if actor is None:
            actor = SessionTimerActor(
                user_id=user_id,
                state_store=self._state_store,
                session_store=self._session_store,
                orchestrator=self._orchestrator,
                retry_policy=self._retry_policy,
                clock=self._clock,
                logger=self._logger,
                on_idle=self._evict,
            )
            if self._closed:
                actor.close()
            self._actors[user_id] = actor
        return actor

    async def schedule(
        self,
        user_id: str,
        primary_resource_id: str,
        secondary_resource_ids: Iterable[str] | None,
        duration_minutes: int,
    ) -> datetime:
        _validate_schedule_fields(user_id, primary_resource_id, duration_minutes)
        return await self.actor(user_id).schedule(
            user_id,
            primary_resource_id,
            secondary_resource_ids,
            duration_minutes,
        )

    async def cancel(self, user_id: str) -> str | None:
        return await self.actor(user_id).cancel()

    async def snapshot(self, user_id: str) -> ActorSnapshot:
        actor = self._actors.get(user_id)
        if actor is not None:
            return await actor.snapshot()

        state = await self._state_store.get(user_id)
        if state is None:
            status = ActorStatus.IDLE
        elif state.alarm_at is not None:
            status = ActorStatus.SCHEDULED
        elif self._retry_policy.exhausted(state.attempts):
            status = ActorStatus.STALLED
        else:
            status = ActorStatus.IDLE
        return _build_snapshot(user_id, status, state)

    async def restore(self) -> int:
        states = await self._state_store.all_states()
        for state in states:
            await self.actor(state.user_id).restore(state)
        if states:
            self._logger.info("Restored %d session timer(s)", len(states))
        return len(states)

    async def shutdown(self) -> None:
        self._closed = True
        for actor in list(self._actors.values()):
            await actor.shutdown()

    def _evict(self, actor: SessionTimerActor) -> None:
        if self._actors.get(actor.user_id) is actor:
            del self._actors[actor.user_id]
