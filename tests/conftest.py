from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pytest

from lab_sessions.errors import BackendRequestError
from lab_sessions.session_store import LabSessionRecord


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class FakeBackendGateway:
    service_calls: list[str] = field(default_factory=list)
    resource_calls: list[tuple[str, str]] = field(default_factory=list)
    # resource id -> number of upcoming calls that fail; -1 fails forever
    fail_resources: dict[str, int] = field(default_factory=dict)
    fail_services: bool = False

    async def delete_exposed_services(self, lab_request_id: str) -> dict[str, Any]:
        self.service_calls.append(lab_request_id)
        if self.fail_services:
            raise BackendRequestError(
                f"delete exposed services for lab '{lab_request_id}'",
                status_code=503,
                detail="unavailable",
            )
        return {"deleted": lab_request_id}

    async def delete_resource(self, lab_request_id: str, user_id: str) -> dict[str, Any]:
        self.resource_calls.append((lab_request_id, user_id))
        remaining = self.fail_resources.get(lab_request_id, 0)
        if remaining:
            if remaining > 0:
                self.fail_resources[lab_request_id] = remaining - 1
            raise BackendRequestError(
                f"delete VM for lab '{lab_request_id}'",
                status_code=500,
                detail="hypervisor unavailable",
            )
        return {"lab_request_id": lab_request_id, "status": "accepted"}


def make_record(user_id: str, lab_request_id: str, worker_ids: list[str] | None = None, duration: int = 1) -> LabSessionRecord:
    worker_nodes = [
        {
            "name": f"worker-{index}",
            "worker_lab_request_id": worker_id,
            "network_id": "net-1",
            "netbird_ip": f"100.64.0.{index + 10}",
        }
        for index, worker_id in enumerate(worker_ids or [])
    ]
    return LabSessionRecord(
        id=f"session-{user_id}",
        user_id=user_id,
        lab_request_id=lab_request_id,
        duration=duration,
        created_at="2026-01-01T00:00:00+00:00",
        updated_at="2026-01-01T00:00:00+00:00",
        attributes={"labTitle": "Kubernetes basics", "worker_nodes": worker_nodes},
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> FakeBackendGateway:
    return FakeBackendGateway()
