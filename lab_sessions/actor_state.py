from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Protocol

import redis.asyncio as redis_async


class CleanupPhase(str, Enum):
    PENDING = "pending"
    # Backend resources are gone; only the store record and this state remain.
    CLEANED = "cleaned"


@dataclass(slots=True)
class TimerState:
    user_id: str
    primary_resource_id: str
    secondary_resource_ids: list[str] = field(default_factory=list)
    duration: int = 0
    created_at: float = 0.0
    alarm_at: float | None = None
    attempts: int = 0
    phase: CleanupPhase = CleanupPhase.PENDING


class ActorStateStore(Protocol):
    async def get(self, user_id: str) -> TimerState | None: ...

    async def put(self, state: TimerState) -> None: ...

    async def set_alarm(self, user_id: str, alarm_at: float) -> None: ...

    async def clear_alarm(self, user_id: str) -> None: ...

    async def delete_all(self, user_id: str) -> None: ...

    async def all_states(self) -> list[TimerState]: ...

    async def close(self) -> None: ...


class MemoryActorStateStore:
    def __init__(self) -> None:
        self._states: dict[str, TimerState] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _clone(state: TimerState) -> TimerState:
        return replace(state, secondary_resource_ids=list(state.secondary_resource_ids))

    async def get(self, user_id: str) -> TimerState | None:
        async with self._lock:
            state = self._states.get(user_id)
            return self._clone(state) if state else None

    async def put(self, state: TimerState) -> None:
        async with self._lock:
            self._states[state.user_id] = self._clone(state)

    async def set_alarm(self, user_id: str, alarm_at: float) -> None:
        async with self._lock:
            state = self._states.get(user_id)
            if state is not None:
                state.alarm_at = alarm_at

    async def clear_alarm(self, user_id: str) -> None:
        async with self._lock:
            state = self._states.get(user_id)
            if state is not None:
                state.alarm_at = None

    async def delete_all(self, user_id: str) -> None:
        async with self._lock:
            self._states.pop(user_id, None)

    async def all_states(self) -> list[TimerState]:
        async with self._lock:
            return [self._clone(state) for state in self._states.values()]

    async def close(self) -> None:
        return None


class RedisActorStateStore:
    def __init__(self, client: redis_async.Redis) -> None:
        self._redis = client
        self._index_key = "lab_sessions:actors"

    @classmethod
    def from_url(cls, redis_url: str) -> RedisActorStateStore:
        return cls(redis_async.from_url(redis_url, decode_responses=True))

    def _actor_key(self, user_id: str) -> str:
        return f"lab_sessions:actor:{user_id}"

    @staticmethod
    def _to_state(user_id: str, raw: dict[str, str]) -> TimerState | None:
        if not raw:
            return None
        primary_resource_id = raw.get("primary_resource_id")
        if not primary_resource_id:
            return None
        alarm_at_raw = raw.get("alarm_at")
        return TimerState(
            user_id=user_id,
            primary_resource_id=primary_resource_id,
            secondary_resource_ids=json.loads(raw.get("secondary_resource_ids") or "[]"),
            duration=int(raw.get("duration") or 0),
            created_at=float(raw.get("created_at") or 0.0),
            alarm_at=float(alarm_at_raw) if alarm_at_raw else None,
            attempts=int(raw.get("attempts") or 0),
            phase=CleanupPhase(raw.get("phase") or CleanupPhase.PENDING.value),
        )

    async def get(self, user_id: str) -> TimerState | None:
        raw = await self._redis.hgetall(self._actor_key(user_id))
        return self._to_state(user_id, raw)

    async def put(self, state: TimerState) -> None:
        actor_key = self._actor_key(state.user_id)
        pipeline = self._redis.pipeline(transaction=True)
        pipeline.delete(actor_key)
        mapping = {
            "primary_resource_id": state.primary_resource_id,
            "secondary_resource_ids": json.dumps(state.secondary_resource_ids),
            "duration": str(state.duration),
            "created_at": str(state.created_at),
            "attempts": str(state.attempts),
            "phase": state.phase.value,
        }
        if state.alarm_at is not None:
            mapping["alarm_at"] = str(state.alarm_at)
        pipeline.hset(actor_key, mapping=mapping)
        pipeline.sadd(self._index_key, state.user_id)
        await pipeline.execute()

    async def set_alarm(self, user_id: str, alarm_at: float) -> None:
        actor_key = self._actor_key(user_id)
        if not await self._redis.exists(actor_key):
            return
        await self._redis.hset(actor_key, mapping={"alarm_at": str(alarm_at)})

    async def clear_alarm(self, user_id: str) -> None:
        await self._redis.hdel(self._actor_key(user_id), "alarm_at")

    async def delete_all(self, user_id: str) -> None:
        pipeline = self._redis.pipeline(transaction=True)
        pipeline.delete(self._actor_key(user_id))
        pipeline.srem(self._index_key, user_id)
        await pipeline.execute()

    async def all_states(self) -> list[TimerState]:
        user_ids = await self._redis.smembers(self._index_key)
        if not user_ids:
            return []

        pipeline = self._redis.pipeline()
        ordered_user_ids = sorted(user_ids)
        for user_id in ordered_user_ids:
            pipeline.hgetall(self._actor_key(user_id))
        rows = await pipeline.execute()

        states: list[TimerState] = []
        for user_id, raw in zip(ordered_user_ids, rows):
            state = self._to_state(user_id, raw)
            if state is not None:
                states.append(state)
        return states

    async def close(self) -> None:
        await self._redis.aclose()


def create_actor_state_store(redis_url: str | None) -> ActorStateStore:
    if redis_url:
        return RedisActorStateStore.from_url(redis_url)
    return MemoryActorStateStore()
