from __future__ import annotations

import logging

import httpx

from causal_router.models import ExecutionRequest, ExecutionResult
from causal_router.venues.base import ExecutionVenue

LOGGER = logging.getLogger(__name__)


class HttpExecutionVenue(ExecutionVenue):
    """Forwards execution requests to an external executor service.

    The executor owns keys, transport and call encoding; this adapter only
    posts the request as JSON to ``POST /execute`` and parses the reply.
    """

    name = "http"

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 10.0,
        auth_token: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {auth_token}"} if auth_token else None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            headers=headers,
        )

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        response = await self._client.post("/execute", json=request.to_dict())
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError(f"executor returned {type(payload).__name__}, expected an object")
        result = ExecutionResult.from_dict(payload)
        LOGGER.debug(
            "executor replied venue=%s strategy=%s success=%s ref=%s",
            request.venue_id,
            request.strategy_id,
            result.success,
            result.execution_ref or "-",
        )
        return result

    async def aclose(self) -> None:
        await self._client.aclose()
