from __future__ import annotations

import asyncio
import copy
import json
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

import redis.asyncio as redis_async

from .errors import SessionAlreadyExistsError


@dataclass(slots=True)
class LabSessionRecord:
    id: str
    user_id: str
    lab_request_id: str
    duration: int
    created_at: str
    updated_at: str
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def worker_lab_request_ids(self) -> list[str]:
        worker_nodes = self.attributes.get("worker_nodes") or []
        ids: list[str] = []
        for node in worker_nodes:
            if isinstance(node, dict) and node.get("worker_lab_request_id"):
                ids.append(str(node["worker_lab_request_id"]))
        return ids

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> LabSessionRecord:
        return cls(
            id=raw["id"],
            user_id=raw["user_id"],
            lab_request_id=raw["lab_request_id"],
            duration=int(raw["duration"]),
            created_at=raw["created_at"],
            updated_at=raw["updated_at"],
            attributes=dict(raw.get("attributes") or {}),
        )


class SessionStore(Protocol):
    async def get(self, user_id: str) -> LabSessionRecord | None: ...

    async def insert(self, record: LabSessionRecord) -> None: ...

    async def update(self, user_id: str, changes: dict[str, Any], updated_at: str) -> LabSessionRecord | None: ...

    async def delete(self, user_id: str) -> bool: ...

    async def close(self) -> None: ...


def _apply_changes(record: LabSessionRecord, changes: dict[str, Any], updated_at: str) -> None:
    for key, value in changes.items():
        if key == "duration":
            record.duration = int(value)
        else:
            record.attributes[key] = value
    record.updated_at = updated_at


class MemorySessionStore:
    def __init__(self) -> None:
        self._records: dict[str, LabSessionRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str) -> LabSessionRecord | None:
        async with self._lock:
            record = self._records.get(user_id)
            return copy.deepcopy(record) if record else None

    async def insert(self, record: LabSessionRecord) -> None:
        async with self._lock:
            if record.user_id in self._records:
                raise SessionAlreadyExistsError(record.user_id)
            self._records[record.user_id] = copy.deepcopy(record)

    async def update(self, user_id: str, changes: dict[str, Any], updated_at: str) -> LabSessionRecord | None:
        async with self._lock:
            record = self._records.get(user_id)
            if record is None:
                return None
            _apply_changes(record, changes, updated_at)
            return copy.deepcopy(record)

    async def delete(self, user_id: str) -> bool:
        async with self._lock:
            return self._records.pop(user_id, None) is not None

    async def close(self) -> None:
        return None


class RedisSessionStore:
    def __init__(self, client: redis_async.Redis) -> None:
        self._redis = client

    @classmethod
    def from_url(cls, redis_url: str) -> RedisSessionStore:
        return cls(redis_async.from_url(redis_url, decode_responses=True))

    def _session_key(self, user_id: str) -> str:
        return f"lab_sessions:session:{user_id}"

    async def get(self, user_id: str) -> LabSessionRecord | None:
        raw = await self._redis.get(self._session_key(user_id))
        if not raw:
            return None
        return LabSessionRecord.from_dict(json.loads(raw))

    async def insert(self, record: LabSessionRecord) -> None:
        created = await self._redis.set(
            self._session_key(record.user_id),
            json.dumps(record.to_dict()),
            nx=True,
        )
        if not created:
            raise SessionAlreadyExistsError(record.user_id)

    async def update(self, user_id: str, changes: dict[str, Any], updated_at: str) -> LabSessionRecord | None:
        record = await self.get(user_id)
        if record is None:
            return None
        _apply_changes(record, changes, updated_at)
        await self._redis.set(self._session_key(user_id), json.dumps(record.to_dict()), xx=True)
        return record

    async def delete(self, user_id: str) -> bool:
        removed = await self._redis.delete(self._session_key(user_id))
        return bool(removed)

    async def close(self) -> None:
        await self._redis.aclose()


def create_session_store(redis_url: str | None) -> SessionStore:
    if redis_url:
        return RedisSessionStore.from_url(redis_url)
    return MemorySessionStore()
