from __future__ import annotations

import logging

import pytest

from lab_sessions.backend_gateway import BackendGateway
from lab_sessions.cleanup import CleanupOrchestrator, dedupe_resource_ids
from lab_sessions.errors import BackendConfigurationError, CleanupFailedError

from .conftest import FakeBackendGateway


def test_dedupe_keeps_primary_first_and_given_order() -> None:
    assert dedupe_resource_ids("master", ["w1", "master", "w2", "w1"]) == ["master", "w1", "w2"]
    assert dedupe_resource_ids("master", []) == ["master"]


@pytest.mark.asyncio
async def test_secondary_equal_to_primary_is_deleted_once(gateway: FakeBackendGateway) -> None:
    orchestrator = CleanupOrchestrator(gateway)

    outcome = await orchestrator.run("user-1", "master", ["master", "worker"])

    assert gateway.resource_calls == [("master", "user-1"), ("worker", "user-1")]
    assert gateway.service_calls == ["master"]
    assert outcome.ok
    assert list(outcome.resource_results) == ["master", "worker"]


@pytest.mark.asyncio
async def test_failed_resource_does_not_skip_the_rest(gateway: FakeBackendGateway) -> None:
    gateway.fail_resources["a"] = 1
    orchestrator = CleanupOrchestrator(gateway)

    outcome = await orchestrator.run("user-1", "a", ["b"])

    assert gateway.resource_calls == [("a", "user-1"), ("b", "user-1")]
    assert not outcome.ok
    assert list(outcome.failed) == ["a"]
    assert outcome.succeeded == ["b"]
    with pytest.raises(CleanupFailedError) as exc_info:
        outcome.raise_for_failure()
    assert str(exc_info.value) == "Failed to delete 1 out of 2 VMs"
    assert "hypervisor unavailable" in exc_info.value.failed["a"]


@pytest.mark.asyncio
async def test_exposed_service_failure_never_downgrades_verdict(
    gateway: FakeBackendGateway,
    caplog: pytest.LogCaptureFixture,
) -> None:
    gateway.fail_services = True
    orchestrator = CleanupOrchestrator(gateway)

    with caplog.at_level(logging.WARNING, logger="lab_sessions.cleanup"):
        outcome = await orchestrator.run("user-1", "master", ["w1", "w2"])

    assert outcome.ok
    assert outcome.auxiliary_service_result is not None
    assert not outcome.auxiliary_service_result.success
    assert gateway.service_calls == ["master"]
    assert len(gateway.resource_calls) == 3
    assert "Exposed services deletion failed" in caplog.text
    assert "user_id=user-1" in caplog.text


@pytest.mark.asyncio
async def test_injected_logger_receives_cleanup_logs(
    gateway: FakeBackendGateway,
    caplog: pytest.LogCaptureFixture,
) -> None:
    orchestrator = CleanupOrchestrator(gateway, logger=logging.getLogger("tests.cleanup"))

    with caplog.at_level(logging.INFO, logger="tests.cleanup"):
        await orchestrator.run("user-1", "master")

    assert any(record.name == "tests.cleanup" for record in caplog.records)


@pytest.mark.asyncio
async def test_missing_backend_configuration_propagates() -> None:
    orchestrator = CleanupOrchestrator(BackendGateway(api_url=None, api_token=None))

    with pytest.raises(BackendConfigurationError):
        await orchestrator.run("user-1", "master", ["worker"])
