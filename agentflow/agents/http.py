from __future__ import annotations

import time
from typing import Any

import httpx

from ..core.errors import MalformedAgentResponse, UpstreamFailure, UpstreamRateLimited
from ..core.logging import get_logger
from ..workflows.state import AgentRole

logger = get_logger(name=__name__)

_BODY_PREVIEW_CHARS = 500


class AgentHTTPClient:
    """JSON-over-HTTP transport shared by the three agent roles."""

    role: AgentRole

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 120.0,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds),
            headers=headers or {},
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        body = {key: value for key, value in payload.items() if value is not None}
        start = time.perf_counter()
        try:
            response = await self._client.post(path, json=body)
        except httpx.HTTPError as exc:
            logger.warning("agent_transport_error", role=self.role.value, path=path, error=str(exc))
            raise UpstreamFailure(f"{self.role.value} agent {path} request failed: {exc!r}") from exc

        latency = time.perf_counter() - start
        if response.status_code == 429:
            raise UpstreamRateLimited(
                f"{self.role.value} agent {path} returned 429: {_preview(response.text)}"
            )
        if not response.is_success:
            logger.warning(
                "agent_error_response",
                role=self.role.value,
                path=path,
                status=response.status_code,
                latency=latency,
            )
            raise UpstreamFailure(
                f"{self.role.value} agent {path} returned {response.status_code}: {_preview(response.text)}"
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedAgentResponse(f"{self.role.value} agent {path} returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise MalformedAgentResponse(f"{self.role.value} agent {path} returned a non-object body")
        if data.get("success") is False:
            raise UpstreamFailure(f"{self.role.value} agent {path} reported failure: {data.get('error')}")

        logger.debug("agent_call_completed", role=self.role.value, path=path, latency=latency)
        return data

    def _require(self, data: dict[str, Any], key: str, path: str) -> Any:
        if key not in data or data[key] is None:
            raise MalformedAgentResponse(f"{self.role.value} agent {path} response is missing '{key}'")
        return data[key]

    def _require_text(self, data: dict[str, Any], key: str, path: str) -> str:
        value = self._require(data, key, path)
        if not isinstance(value, str):
            raise MalformedAgentResponse(f"{self.role.value} agent {path} field '{key}' is not text")
        return value


def _preview(text: str) -> str:
    if len(text) <= _BODY_PREVIEW_CHARS:
        return text
    return text[:_BODY_PREVIEW_CHARS] + "..."
