from __future__ import annotations

import asyncio
import json
import random

import httpx
import pytest

from causal_router.models import ErrorKind, ExecutionRequest, Signal
from causal_router.venues import HttpExecutionVenue, SimulatedVenue
from causal_router.venues.simulated import SimulatedExecutionError


def _request(strategy: str, expected: float = 0.14, cascade: float = 85.0) -> ExecutionRequest:
    signal = Signal(
        type="LIQUIDATION_THRESHOLD_BREACH",
        weight=9.5,
        cascade_potential=cascade,
        timestamp=1_700_000_000.0,
        origin_id="origin-1",
    )
    return ExecutionRequest(venue_id="ethereum", strategy_id=strategy, signal=signal, expected_profit=expected)


class TestSimulatedVenue:
    def test_same_seed_same_outcome(self) -> None:
        a = asyncio.run(SimulatedVenue(random.Random(11)).execute(_request("liquidation")))
        b = asyncio.run(SimulatedVenue(random.Random(11)).execute(_request("liquidation")))
        assert a == b

    def test_liquidation_scales_with_cascade(self) -> None:
        result = asyncio.run(SimulatedVenue(random.Random(3)).execute(_request("liquidation", cascade=85.0)))
        # 85 // 20 positions
        assert result.success is True
        assert result.cascade_size == 4.0
        assert result.resource_cost == 4 * 150_000
        assert 4 * 10.0 * 0.05 <= result.profit <= 4 * 100.0 * 0.13
        assert result.execution_ref.startswith("0x")
        assert len(result.execution_ref) == 66

    def test_generic_within_band(self) -> None:
        venue = SimulatedVenue(random.Random(5))
        for _ in range(50):
            result = asyncio.run(venue.execute(_request("oracleArbitrage", expected=1.0)))
            assert 0.8 <= result.profit <= 1.2

    def test_failure_probability(self) -> None:
        venue = SimulatedVenue(random.Random(1), failure_probability=1.0)
        with pytest.raises(SimulatedExecutionError):
            asyncio.run(venue.execute(_request("sandwich")))

    def test_supported_strategies(self) -> None:
        venue = SimulatedVenue(random.Random(1), strategies=["sandwich"])
        assert venue.supports("sandwich")
        assert not venue.supports("liquidation")
        assert SimulatedVenue(random.Random(1)).supports("anything")

    def test_rejects_bad_probability(self) -> None:
        with pytest.raises(ValueError):
            SimulatedVenue(random.Random(1), failure_probability=1.5)


class TestHttpExecutionVenue:
    def test_posts_request_and_parses_result(self) -> None:
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(
                200,
                json={"success": True, "profit": 0.31, "executionRef": "0xfeed", "resourceCost": 210000, "cascadeSize": 6},
            )

        client = httpx.AsyncClient(
            base_url="http://executor.local",
            transport=httpx.MockTransport(handler),
            headers={"Authorization": "Bearer token"},
        )
        venue = HttpExecutionVenue("http://executor.local", client=client)

        async def _run():
            try:
                return await venue.execute(_request("liquidation"))
            finally:
                await venue.aclose()

        result = asyncio.run(_run())

        assert seen["path"] == "/execute"
        assert seen["body"]["strategyId"] == "liquidation"
        assert seen["body"]["signal"]["type"] == "LIQUIDATION_THRESHOLD_BREACH"
        assert seen["auth"] == "Bearer token"
        assert result.success is True
        assert result.execution_ref == "0xfeed"
        assert result.resource_cost == 210000
        assert result.cascade_size == 6.0

    def test_failure_reply(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"success": False, "error": "timeout", "detail": "mempool stall"})

        client = httpx.AsyncClient(base_url="http://executor.local", transport=httpx.MockTransport(handler))
        result = asyncio.run(HttpExecutionVenue("http://executor.local", client=client).execute(_request("sandwich")))
        assert result.success is False
        assert result.error is ErrorKind.TIMEOUT

    def test_http_error_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, json={"detail": "down"})

        client = httpx.AsyncClient(base_url="http://executor.local", transport=httpx.MockTransport(handler))
        with pytest.raises(httpx.HTTPStatusError):
            asyncio.run(HttpExecutionVenue("http://executor.local", client=client).execute(_request("sandwich")))
