from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .errors import BackendConfigurationError, BackendRequestError

EXPOSE_PATH = "/api/v1/expose/"
LAB_DELETE_PATH = "/api/v1/labs/delete"


@dataclass(slots=True)
class ServiceDeleteAck:
    lab_request_id: str
    status_code: int
    payload: Any = None


@dataclass(slots=True)
class ResourceDeleteAck:
    lab_request_id: str
    status_code: int
    payload: Any = None

    @property
    def accepted(self) -> bool:
        return self.status_code == httpx.codes.ACCEPTED


class BackendGateway:
    """Thin client over the lab backend's control plane. Never retries."""

    def __init__(
        self,
        api_url: str | None,
        api_token: str | None,
        timeout_seconds: float | None = None,
        client: httpx.AsyncClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._api_url = api_url.rstrip("/") if api_url else None
        self._api_token = api_token
        self._timeout = timeout_seconds
        self._client = client
        self._owns_client = client is None
        self._logger = logger or logging.getLogger(__name__)

    def _require_config(self) -> tuple[str, str]:
        if not self._api_url:
            raise BackendConfigurationError("BACKEND_API_URL not configured")
        if not self._api_token:
            raise BackendConfigurationError("BACKEND_API_TOKEN not configured")
        return self._api_url, self._api_token

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def _send(self, method: str, path: str, body: dict[str, str], action: str) -> httpx.Response:
        base_url, token = self._require_config()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        try:
            return await self._get_client().request(method, f"{base_url}{path}", json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise BackendRequestError(action, detail=str(exc) or type(exc).__name__) from exc

    @staticmethod
    def _json_or_text(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text

    async def delete_exposed_services(self, lab_request_id: str) -> ServiceDeleteAck:
        action = f"delete exposed services for lab '{lab_request_id}'"
        response = await self._send("DELETE", EXPOSE_PATH, {"lab_request_id": lab_request_id}, action)
        if not response.is_success:
            raise BackendRequestError(action, status_code=response.status_code, detail=response.text)
        return ServiceDeleteAck(
            lab_request_id=lab_request_id,
            status_code=response.status_code,
            payload=self._json_or_text(response),
        )

    async def delete_resource(self, lab_request_id: str, user_id: str) -> ResourceDeleteAck:
        action = f"delete VM for lab '{lab_request_id}'"
        response = await self._send(
            "POST",
            LAB_DELETE_PATH,
            {"lab_request_id": lab_request_id, "user_id": user_id},
            action,
        )
        if not response.is_success:
            raise BackendRequestError(action, status_code=response.status_code, detail=response.text)
        ack = ResourceDeleteAck(
            lab_request_id=lab_request_id,
            status_code=response.status_code,
            payload=self._json_or_text(response),
        )
        if ack.accepted:
            self._logger.info("VM deletion for lab '%s' accepted (async processing)", lab_request_id)
        return ack

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
