from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from .errors import SessionAlreadyExistsError, SessionNotFoundError
from .log import bind
from .models import LabSessionCreate
from .session_store import LabSessionRecord, SessionStore
from .timer_actor import ActorSnapshot, TimerActorRegistry

_KEY_FIELDS = {"id", "user_id", "lab_request_id", "duration"}


def record_to_payload(record: LabSessionRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        **record.attributes,
        "lab_request_id": record.lab_request_id,
        "user_id": record.user_id,
        "duration": record.duration,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


class LabSessionService:
    def __init__(
        self,
        store: SessionStore,
        timers: TimerActorRegistry,
        clock: Callable[[], float] = time.time,
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._timers = timers
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)

    def _now_iso(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat()

    async def create_session(self, payload: LabSessionCreate) -> tuple[LabSessionRecord, datetime | None]:
        log = bind(self._logger, user_id=payload.user_id, lab_request_id=payload.lab_request_id)
        if await self._store.get(payload.user_id) is not None:
            raise SessionAlreadyExistsError(payload.user_id)

        now = self._now_iso()
        record = LabSessionRecord(
            id=payload.id or str(uuid4()),
            user_id=payload.user_id,
            lab_request_id=payload.lab_request_id,
            duration=payload.duration,
            created_at=now,
            updated_at=now,
            attributes=payload.model_dump(mode="json", exclude=_KEY_FIELDS, exclude_none=True),
        )
        await self._store.insert(record)
        log.info("Session created with duration %d minutes", record.duration)

        expires_at: datetime | None = None
        try:
            expires_at = await self._timers.schedule(
                record.user_id,
                record.lab_request_id,
                record.worker_lab_request_ids,
                record.duration,
            )
        except Exception as exc:
            # Creation still succeeds; the session just has no automatic cleanup.
            log.warning("Failed to schedule automatic cleanup: %s", exc)
        return record, expires_at

    async def get_session(self, user_id: str) -> LabSessionRecord:
        record = await self._store.get(user_id)
        if record is None:
            raise SessionNotFoundError(user_id)
        return record

    async def update_session(self, user_id: str, changes: dict[str, Any]) -> LabSessionRecord:
        record = await self._store.update(user_id, changes, self._now_iso())
        if record is None:
            raise SessionNotFoundError(user_id)
        log = bind(self._logger, user_id=user_id)
        log.info("Session updated (fields: %s)", sorted(changes))
        if "duration" in changes:
            # Existing behavior: the armed timer keeps the expiration computed at creation.
            log.warning("Duration changed to %s minutes; cleanup timer was not rescheduled", changes["duration"])
        return record

    async def delete_session(self, user_id: str) -> None:
        log = bind(self._logger, user_id=user_id)
        # A failed cancel keeps the record so the deletion can be retried.
        await self._timers.cancel(user_id)
        removed = await self._store.delete(user_id)
        if not removed:
            raise SessionNotFoundError(user_id)
        log.info("Session deleted (manual)")

    async def timer_status(self, user_id: str) -> ActorSnapshot:
        snapshot = await self._timers.snapshot(user_id)
        if snapshot.primary_resource_id is None:
            raise SessionNotFoundError(user_id)
        return snapshot
