"""Read-only reporting API over the attribution ledger."""

from __future__ import annotations

import logging

from fastapi import APIRouter, FastAPI, HTTPException, Query
from fastapi.responses import PlainTextResponse

from causal_router.ledger import AttributionLedger
from causal_router.metrics import MetricsRegistry

LOGGER = logging.getLogger(__name__)


def build_router(ledger: AttributionLedger) -> APIRouter:
    router = APIRouter(prefix="/api", tags=["attribution"])

    @router.get("/dashboard")
    async def dashboard():
        return ledger.get_dashboard().to_dict()

    @router.get("/analysis")
    async def analysis():
        return {signal_type: item.to_dict() for signal_type, item in ledger.analyze().items()}

    @router.get("/chains/{chain_id}")
    async def chain_trace(chain_id: str):
        trace = ledger.get_trace(chain_id)
        if trace is None:
            raise HTTPException(status_code=404, detail=f"unknown chain {chain_id}")
        return trace.to_dict()

    @router.get("/top-signals")
    async def top_signals(limit: int = Query(5, ge=1, le=100)):
        return [
            {"type": item.signal_type, "profit": item.profit, "percentage": item.share * 100.0}
            for item in ledger.top_signal_types(limit)
        ]

    return router


def create_app(ledger: AttributionLedger, metrics: MetricsRegistry | None = None) -> FastAPI:
    registry = metrics or MetricsRegistry()
    app = FastAPI(title="Causal Router Dashboard")
    app.include_router(build_router(ledger))

    @app.get("/metrics", response_class=PlainTextResponse)
    async def prometheus_metrics():
        return registry.snapshot().to_prometheus_text()

    return app
