from __future__ import annotations

import argparse
import asyncio
import json
import logging
import random
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

import uvicorn

from causal_router.config import AppSettings, load_routing_document, load_settings
from causal_router.dashboard import create_app
from causal_router.dispatcher import ExecutionDispatcher
from causal_router.estimator import EstimatorConfig, ProfitEstimator
from causal_router.feedback import (
    ReinforcementFeedback,
    SignalTemplate,
    TimeWeightTable,
    parse_signal_templates,
)
from causal_router.ledger import AttributionLedger, JsonLedgerStore
from causal_router.logging_setup import configure_logging
from causal_router.metrics import MetricsRegistry
from causal_router.models import RawEvent, Signal
from causal_router.router import RoutingOutcome, SignalRouter
from causal_router.routing import RoutingTable
from causal_router.scheduler import RouterLoop
from causal_router.scorer import Scorer
from causal_router.selector import OpportunitySelector
from causal_router.venues import ExecutionVenue, HttpExecutionVenue, SimulatedVenue

LOGGER = logging.getLogger(__name__)


@dataclass
class RouterRuntime:
    settings: AppSettings
    metrics: MetricsRegistry
    scorer: Scorer
    ledger: AttributionLedger
    dispatcher: ExecutionDispatcher
    router: SignalRouter
    feedback: ReinforcementFeedback
    templates: tuple[SignalTemplate, ...]


def build_runtime(
    settings: AppSettings,
    document: Dict[str, Any],
    *,
    seed: int | None = None,
) -> RouterRuntime:
    """Wire every component from settings and the routing document.

    Raises RoutingConfigError for unusable routing configuration.
    """
    master = random.Random(seed)
    metrics = MetricsRegistry()

    table = RoutingTable.from_document(document)
    estimator = ProfitEstimator(EstimatorConfig.from_document(document))
    selector = OpportunitySelector(table, estimator)

    venue: ExecutionVenue
    if settings.venues.executor_url:
        venue = HttpExecutionVenue(
            settings.venues.executor_url,
            timeout_seconds=settings.router.execution_timeout_seconds,
            auth_token=settings.venues.executor_auth_token,
        )
    else:
        venue = SimulatedVenue(
            random.Random(master.getrandbits(64)),
            failure_probability=settings.venues.simulated_failure_probability,
            strategies=settings.venues.simulated_strategies or None,
        )
    dispatcher = ExecutionDispatcher(
        default_venue=venue,
        timeout_seconds=settings.router.execution_timeout_seconds,
        metrics=metrics,
    )

    ledger = AttributionLedger(
        JsonLedgerStore(settings.ledger.path),
        rng=random.Random(master.getrandbits(64)) if seed is not None else None,
        metrics=metrics,
        recent_profits=settings.ledger.recent_profits,
        persist=settings.ledger.persist,
    )
    router = SignalRouter(
        selector,
        dispatcher,
        ledger,
        metrics=metrics,
        resource_unit_cost=settings.router.resource_unit_cost,
    )
    feedback = ReinforcementFeedback(
        ledger,
        random.Random(master.getrandbits(64)),
        time_weights=TimeWeightTable.from_document(document),
        top_k=settings.feedback.top_k,
        history_window=settings.feedback.history_window,
    )
    return RouterRuntime(
        settings=settings,
        metrics=metrics,
        scorer=Scorer.from_document(document),
        ledger=ledger,
        dispatcher=dispatcher,
        router=router,
        feedback=feedback,
        templates=parse_signal_templates(document),
    )


def read_events(path: str | Path, scorer: Scorer) -> List[Signal]:
    """Score a JSONL file of raw events into signals (blank lines skipped)."""
    signals: List[Signal] = []
    with open(path, encoding="utf-8") as handle:
        for line_no, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
                if not isinstance(payload, dict):
                    raise TypeError(f"expected an object, got {type(payload).__name__}")
                event = RawEvent.from_dict(payload)
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                LOGGER.warning("skipping malformed event path=%s line=%d: %s", path, line_no, exc)
                continue
            signals.append(scorer.to_signal(event))
    return signals


def parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Route weighted signals to execution venues and attribute realized profit",
    )
    parser.add_argument(
        "--events",
        type=str,
        default=None,
        help="JSONL file of raw events to score and route",
    )
    parser.add_argument(
        "--select",
        type=int,
        default=0,
        help="Run N feedback-driven selection cycles over the signal templates",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=12.0,
        help="Seconds between selection cycles when running continuously",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process the given inputs and exit",
    )
    parser.add_argument(
        "--dashboard",
        action="store_true",
        help="Serve the reporting API while the router runs",
    )
    parser.add_argument(
        "--ledger",
        type=str,
        default=None,
        help="Ledger JSON path (overrides ROUTER_LEDGER_PATH)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed for every random source (overrides ROUTER_FEEDBACK_SEED)",
    )
    return parser.parse_args(argv)


def _log_outcome(outcome: RoutingOutcome) -> None:
    if outcome.profit is not None:
        LOGGER.info(
            "signal routed type=%s chain_id=%s venue=%s net=%.6f roi=%.2f",
            outcome.signal.type,
            outcome.chain_id,
            outcome.opportunity.venue if outcome.opportunity else "-",
            outcome.profit.profit,
            outcome.profit.semantic_roi,
        )
    else:
        LOGGER.info(
            "signal finished type=%s status=%s chain_id=%s",
            outcome.signal.type,
            outcome.status.value,
            outcome.chain_id or "-",
        )


async def _produce(args: argparse.Namespace, runtime: RouterRuntime, loop: RouterLoop) -> None:
    if args.events:
        for signal in read_events(args.events, runtime.scorer):
            await loop.submit(signal)

    # None means select continuously until stopped.
    if args.select:
        limit: int | None = args.select
    elif args.events:
        limit = 0
    elif args.once:
        limit = 1
    else:
        limit = None

    cycles = 0
    while not loop.cancelled and (limit is None or cycles < limit):
        signal = runtime.feedback.select_signal(runtime.templates, datetime.now().hour)
        await loop.submit(signal)
        cycles += 1
        if limit is None or (cycles < limit and not args.once):
            await asyncio.sleep(args.interval)

    if limit is not None:
        await loop.close()


async def _run() -> None:
    args = parse_args()
    settings = load_settings()

    if args.once:
        settings = replace(settings, run_once=True)
    if args.ledger:
        settings = replace(settings, ledger=replace(settings.ledger, path=args.ledger))
    if args.dashboard:
        settings = replace(settings, dashboard=replace(settings.dashboard, enabled=True))
    args.once = args.once or settings.run_once

    configure_logging(settings.log_level)

    seed = args.seed if args.seed is not None else settings.feedback.seed
    runtime = build_runtime(settings, load_routing_document(settings.routing_config_path), seed=seed)
    runtime.ledger.load()

    loop = RouterLoop(
        runtime.router,
        max_inflight=settings.router.max_inflight,
        queue_size=settings.router.queue_size,
        flush_interval_seconds=settings.router.flush_interval_seconds,
        metrics=runtime.metrics,
        on_outcome=_log_outcome,
    )

    server: uvicorn.Server | None = None
    server_task: asyncio.Task | None = None
    if settings.dashboard.enabled:
        server = uvicorn.Server(
            uvicorn.Config(
                create_app(runtime.ledger, runtime.metrics),
                host=settings.dashboard.host,
                port=settings.dashboard.port,
                log_level=settings.log_level.lower(),
            )
        )
        server_task = asyncio.create_task(server.serve())
        LOGGER.info("dashboard listening host=%s port=%d", settings.dashboard.host, settings.dashboard.port)

    LOGGER.info(
        "router mode=%s venue=%s max_inflight=%d ledger=%s",
        "once" if args.once else "continuous",
        "http" if settings.venues.executor_url else "simulated",
        settings.router.max_inflight,
        settings.ledger.path,
    )

    runner = asyncio.create_task(loop.run())
    try:
        await _produce(args, runtime, loop)
        await runner
    finally:
        loop.stop()
        await asyncio.gather(runner, return_exceptions=True)
        if server is not None and server_task is not None:
            server.should_exit = True
            await asyncio.gather(server_task, return_exceptions=True)
        await runtime.dispatcher.aclose()

    dashboard = runtime.ledger.get_dashboard()
    LOGGER.info(
        "summary signals=%d completed=%d success_rate=%.2f total_profit=%.6f",
        dashboard.summary.total_signals,
        dashboard.summary.completed_signals,
        dashboard.summary.success_rate,
        dashboard.summary.total_profit,
    )


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
