from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PositiveInt

UPDATABLE_FIELDS = (
    "worker_nodes",
    "loadBalancers",
    "vscode_domain",
    "puku_domain",
    "terminal_url",
    "duration",
)


class VM(BaseModel):
    name: str
    network_id: str
    netbird_ip: str
    model_config = ConfigDict(extra="allow")


class WorkerNode(BaseModel):
    name: str
    worker_lab_request_id: str
    network_id: str
    netbird_ip: str
    model_config = ConfigDict(extra="allow")


class LoadBalancer(BaseModel):
    id: str
    domain: str
    port: str
    model_config = ConfigDict(extra="allow")


class LabSessionCreate(BaseModel):
    id: str | None = None
    labId: str = Field(min_length=1)
    labTitle: str = Field(min_length=1)
    labGroupID: str = Field(min_length=1)
    moduleID: str = Field(min_length=1)
    duration: PositiveInt
    activatedAt: str = Field(min_length=1)
    counterID: str = Field(min_length=1)
    configId: str = Field(min_length=1)
    workerConfigId: str = Field(min_length=1)
    lab_request_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    terminal_url: str = Field(min_length=1)
    validation: int
    vscode_domain: str | None = None
    puku_domain: str | None = None
    vm: VM
    worker_nodes: list[WorkerNode] | None = None
    loadBalancers: list[LoadBalancer] | None = None


class LabSessionUpdate(BaseModel):
    worker_nodes: list[WorkerNode] | None = None
    loadBalancers: list[LoadBalancer] | None = None
    vscode_domain: str | None = None
    puku_domain: str | None = None
    terminal_url: str | None = None
    duration: PositiveInt | None = None
    model_config = ConfigDict(extra="allow")

    def changes(self) -> dict[str, Any]:
        provided = self.model_dump(mode="json", exclude_unset=True)
        return {key: value for key, value in provided.items() if key in UPDATABLE_FIELDS}


class ApiResponse(BaseModel):
    success: bool
    data: Any | None = None
    message: str | None = None
    error: str | None = None


class TimerStatus(BaseModel):
    user_id: str
    status: str
    lab_request_id: str | None = None
    worker_lab_request_ids: list[str] = []
    alarm_at: datetime | None = None
    attempts: int = 0


class HealthResponse(BaseModel):
    status: str
    service: str
    timestamp: datetime
