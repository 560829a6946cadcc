from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class LabSessionsError(Exception):
    pass


class BackendConfigurationError(LabSessionsError):
    """Backend URL or token is missing. Needs operator intervention."""


class SchedulingValidationError(LabSessionsError):
    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Missing required fields: {', '.join(missing)}")


class BackendRequestError(LabSessionsError):
    def __init__(self, action: str, status_code: int | None = None, detail: str = "") -> None:
        self.action = action
        self.status_code = status_code
        self.detail = detail
        if status_code is None:
            message = f"Failed to {action}: {detail}"
        else:
            message = f"Backend API returned {status_code} for {action}: {detail}"
        super().__init__(message)


class CleanupFailedError(LabSessionsError):
    def __init__(self, failed: dict[str, str], total: int) -> None:
        self.failed = failed
        self.total = total
        super().__init__(f"Failed to delete {len(failed)} out of {total} VMs")


class SessionAlreadyExistsError(LabSessionsError):
    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"User '{user_id}' already has an active lab session.")


class SessionNotFoundError(LabSessionsError):
    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"No active lab session found for user '{user_id}'.")


@dataclass(slots=True)
class APIError(Exception):
    status_code: int
    code: str
    message: str


def error_payload(code: str, message: str) -> dict[str, Any]:
    return {"success": False, "error": message, "code": code}
