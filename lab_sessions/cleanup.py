from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from .errors import BackendConfigurationError, CleanupFailedError
from .log import bind


class CleanupGateway(Protocol):
    async def delete_exposed_services(self, lab_request_id: str) -> Any: ...

    async def delete_resource(self, lab_request_id: str, user_id: str) -> Any: ...


@dataclass(slots=True)
class ResourceResult:
    success: bool
    error: str | None = None
    ack: Any = None


@dataclass(slots=True)
class CleanupOutcome:
    user_id: str
    primary_resource_id: str
    resource_results: dict[str, ResourceResult] = field(default_factory=dict)
    auxiliary_service_result: ResourceResult | None = None

    @property
    def ok(self) -> bool:
        return all(result.success for result in self.resource_results.values())

    @property
    def failed(self) -> dict[str, str]:
        return {
            resource_id: result.error or "unknown error"
            for resource_id, result in self.resource_results.items()
            if not result.success
        }

    @property
    def succeeded(self) -> list[str]:
        return [resource_id for resource_id, result in self.resource_results.items() if result.success]

    def raise_for_failure(self) -> None:
        if not self.ok:
            raise CleanupFailedError(self.failed, total=len(self.resource_results))


def dedupe_resource_ids(primary_resource_id: str, secondary_resource_ids: Iterable[str]) -> list[str]:
    """Primary first, then secondaries in given order, each id once."""
    return list(dict.fromkeys([primary_resource_id, *secondary_resource_ids]))


class CleanupOrchestrator:
    def __init__(self, gateway: CleanupGateway, logger: logging.Logger | None = None) -> None:
        self._gateway = gateway
        self._logger = logger or logging.getLogger(__name__)

    async def run(
        self,
        user_id: str,
        primary_resource_id: str,
        secondary_resource_ids: Iterable[str] = (),
    ) -> CleanupOutcome:
        log = bind(self._logger, user_id=user_id, lab_request_id=primary_resource_id)
        secondary_resource_ids = list(secondary_resource_ids)
        resource_ids = dedupe_resource_ids(primary_resource_id, secondary_resource_ids)
        log.info(
            "Cleaning up %s, %d unique VM(s) to delete",
            "multi-node lab" if secondary_resource_ids else "single VM lab",
            len(resource_ids),
        )

        outcome = CleanupOutcome(user_id=user_id, primary_resource_id=primary_resource_id)
        outcome.auxiliary_service_result = await self._delete_exposed_services(primary_resource_id, log)

        for resource_id in resource_ids:
            vm_type = "master" if resource_id == primary_resource_id else "worker"
            try:
                ack = await self._gateway.delete_resource(resource_id, user_id)
            except BackendConfigurationError:
                raise
            except Exception as exc:
                log.error("VM deletion failed for %s VM '%s': %s", vm_type, resource_id, exc)
                outcome.resource_results[resource_id] = ResourceResult(success=False, error=str(exc))
                continue
            log.info("%s VM '%s' deleted", vm_type.capitalize(), resource_id)
            outcome.resource_results[resource_id] = ResourceResult(success=True, ack=ack)

        if outcome.ok:
            log.info("Deleted all %d VM(s)", len(resource_ids))
        else:
            log.error(
                "Failed to delete %d out of %d VMs (succeeded: %s, failed: %s)",
                len(outcome.failed),
                len(resource_ids),
                outcome.succeeded,
                outcome.failed,
            )
        return outcome

    async def _delete_exposed_services(self, primary_resource_id: str, log: logging.LoggerAdapter) -> ResourceResult:
        try:
            ack = await self._gateway.delete_exposed_services(primary_resource_id)
        except BackendConfigurationError:
            raise
        except Exception as exc:
            log.warning("Exposed services deletion failed for lab '%s' (continuing): %s", primary_resource_id, exc)
            return ResourceResult(success=False, error=str(exc))
        log.info("Exposed services deleted for lab '%s'", primary_resource_id)
        return ResourceResult(success=True, ack=ack)
