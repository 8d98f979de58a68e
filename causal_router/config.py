from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from dotenv import load_dotenv


class RoutingConfigError(ValueError):
    """Raised at startup when routing/economics configuration cannot be used."""


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    return float(value)


def _as_optional_int(value: str | None) -> int | None:
    if value is None or not value.strip():
        return None
    return int(value)


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _as_path(value: str | None, default: str | None = None) -> str | None:
    candidate = value if value and value.strip() else default
    if candidate is None:
        return None
    return str(Path(candidate.strip()).expanduser())


def _as_csv(value: str | None) -> List[str]:
    if value is None or not value.strip():
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass(frozen=True)
class RouterSettings:
    """Routing loop settings.

    Parameters
    ----------
    max_inflight:
        Maximum concurrent pipeline executions. Default 4.
    queue_size:
        Bound of the pending-signal queue; producers wait when full.
        Default 1000.
    execution_timeout_seconds:
        Timeout applied to every execution-venue call. Default 15.0.
    resource_unit_cost:
        Cost charged per unit of venue-reported resource usage when
        computing realized net profit. Default 0.0.
    flush_interval_seconds:
        Period of the background ledger flush. 0 disables it. Default 30.0.
    """

    max_inflight: int = 4
    queue_size: int = 1000
    execution_timeout_seconds: float = 15.0
    resource_unit_cost: float = 0.0
    flush_interval_seconds: float = 30.0


@dataclass(frozen=True)
class LedgerSettings:
    """Attribution ledger settings.

    Parameters
    ----------
    path:
        JSON file holding the ledger snapshot. Default "causal-profits.json".
    persist:
        Write a snapshot after every profit record. Default True.
    recent_profits:
        Number of profit records shown on the dashboard. Default 10.
    """

    path: str = "causal-profits.json"
    persist: bool = True
    recent_profits: int = 10


@dataclass(frozen=True)
class FeedbackSettings:
    top_k: int = 3
    history_window: int = 50
    seed: int | None = None


@dataclass(frozen=True)
class DashboardSettings:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 9130


@dataclass(frozen=True)
class VenueSettings:
    executor_url: str | None = None
    executor_auth_token: str | None = None
    simulated_failure_probability: float = 0.0
    simulated_strategies: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class AppSettings:
    log_level: str
    run_once: bool
    routing_config_path: str | None
    router: RouterSettings
    ledger: LedgerSettings
    feedback: FeedbackSettings
    dashboard: DashboardSettings
    venues: VenueSettings = field(default_factory=VenueSettings)


def load_settings() -> AppSettings:
    load_dotenv(override=False)

    return AppSettings(
        log_level=os.getenv("ROUTER_LOG_LEVEL", "INFO"),
        run_once=_as_bool(os.getenv("ROUTER_RUN_ONCE"), default=False),
        routing_config_path=_as_path(os.getenv("ROUTER_ROUTING_CONFIG_PATH")),
        router=RouterSettings(
            max_inflight=max(1, _as_int(os.getenv("ROUTER_MAX_INFLIGHT"), 4)),
            queue_size=max(1, _as_int(os.getenv("ROUTER_QUEUE_SIZE"), 1000)),
            execution_timeout_seconds=_as_float(
                os.getenv("ROUTER_EXECUTION_TIMEOUT_SECONDS"),
                15.0,
            ),
            resource_unit_cost=_as_float(os.getenv("ROUTER_RESOURCE_UNIT_COST"), 0.0),
            flush_interval_seconds=_as_float(os.getenv("ROUTER_FLUSH_INTERVAL_SECONDS"), 30.0),
        ),
        ledger=LedgerSettings(
            path=_as_path(os.getenv("ROUTER_LEDGER_PATH"), "causal-profits.json") or "causal-profits.json",
            persist=_as_bool(os.getenv("ROUTER_LEDGER_PERSIST"), default=True),
            recent_profits=_as_int(os.getenv("ROUTER_LEDGER_RECENT_PROFITS"), 10),
        ),
        feedback=FeedbackSettings(
            top_k=max(1, _as_int(os.getenv("ROUTER_FEEDBACK_TOP_K"), 3)),
            history_window=max(1, _as_int(os.getenv("ROUTER_FEEDBACK_HISTORY_WINDOW"), 50)),
            seed=_as_optional_int(os.getenv("ROUTER_FEEDBACK_SEED")),
        ),
        dashboard=DashboardSettings(
            enabled=_as_bool(os.getenv("ROUTER_DASHBOARD_ENABLED"), default=False),
            host=os.getenv("ROUTER_DASHBOARD_HOST", "127.0.0.1"),
            port=_as_int(os.getenv("ROUTER_DASHBOARD_PORT"), 9130),
        ),
        venues=VenueSettings(
            executor_url=os.getenv("ROUTER_EXECUTOR_URL") or None,
            executor_auth_token=os.getenv("ROUTER_EXECUTOR_AUTH_TOKEN") or None,
            simulated_failure_probability=_as_float(
                os.getenv("ROUTER_SIMULATED_FAILURE_PROBABILITY"),
                0.0,
            ),
            simulated_strategies=_as_csv(os.getenv("ROUTER_SIMULATED_STRATEGIES")),
        ),
    )


def load_routing_document(path: str | None) -> Dict[str, Any]:
    """Read the routing/economics JSON document.

    Returns an empty document when no path is configured, so every
    component falls back to its built-in tables.
    """
    if not path:
        return {}
    json_path = Path(path)
    try:
        payload = json.loads(json_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise RoutingConfigError(f"cannot read routing config {json_path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise RoutingConfigError(f"routing config {json_path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise RoutingConfigError(f"routing config {json_path} must be a JSON object")
    return payload


def as_float_map(value: Any, *, name: str) -> Dict[str, float]:
    """Validate a `{key: number}` section of the routing document."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise RoutingConfigError(f"{name} must be an object of numbers")
    items: Dict[str, float] = {}
    for key, amount in value.items():
        try:
            items[str(key)] = float(amount)
        except (TypeError, ValueError) as exc:
            raise RoutingConfigError(f"{name}.{key} is not a number: {amount!r}") from exc
    return items
