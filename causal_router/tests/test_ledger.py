from __future__ import annotations

import asyncio
import json
import random
from pathlib import Path
from typing import Any, Dict

import pytest

from causal_router.ledger import AttributionLedger, JsonLedgerStore, LedgerStore
from causal_router.metrics import MetricsRegistry
from causal_router.models import ChainStatus, EventKind, ProfitData, Signal


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _Clock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


class _FlakyStore(LedgerStore):
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.saved: list[Dict[str, Any]] = []

    def save(self, snapshot: Dict[str, Any]) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise OSError("disk full")
        self.saved.append(snapshot)

    def load(self) -> Dict[str, Any] | None:
        return self.saved[-1] if self.saved else None


def _signal(signal_type: str = "LIQUIDATION_THRESHOLD_BREACH", weight: float = 9.5, origin_id: str = "o-1") -> Signal:
    return Signal(
        type=signal_type,
        weight=weight,
        cascade_potential=weight ** 2,
        timestamp=1_700_000_000.0,
        origin_id=origin_id,
        source="Aave health factor breach",
    )


def _ledger(store: LedgerStore | None = None, **kwargs: Any) -> AttributionLedger:
    kwargs.setdefault("rng", random.Random(0))
    kwargs.setdefault("clock", _Clock())
    return AttributionLedger(store, **kwargs)


# ---------------------------------------------------------------------------
# Tagging and events
# ---------------------------------------------------------------------------


class TestTagSignal:
    def test_opens_broadcasted_chain(self) -> None:
        ledger = _ledger()
        chain_id = ledger.tag_signal(_signal())

        assert chain_id.startswith("SIG-")
        assert len(chain_id.split("-")[1]) == 8
        trace = ledger.get_trace(chain_id)
        assert trace is not None
        assert trace.status is ChainStatus.BROADCASTED
        assert trace.expected_cascade == pytest.approx(90.25)
        assert trace.events == ()
        assert trace.timeline is None

    def test_same_signal_same_chain(self) -> None:
        ledger = _ledger()
        assert ledger.tag_signal(_signal()) == ledger.tag_signal(_signal())
        assert ledger.chain_count == 1

    def test_ids_unique_for_identical_content(self) -> None:
        ledger = _ledger()
        ids = {ledger.tag_signal(_signal(origin_id=f"o-{i}")) for i in range(50)}
        assert len(ids) == 50

    def test_chains_view_is_detached(self) -> None:
        ledger = _ledger()
        chain_id = ledger.tag_signal(_signal())
        view = ledger.chains[chain_id]
        view.profit = 99.0
        assert ledger.get_trace(chain_id).profit == 0.0


class TestRecordEvent:
    def test_unknown_chain_ignored(self) -> None:
        ledger = _ledger()
        assert ledger.record_event("SIG-missing", EventKind.BOT_RESPONSE) is None
        assert ledger.chain_count == 0

    def test_status_progression(self) -> None:
        ledger = _ledger()
        chain_id = ledger.tag_signal(_signal())

        ledger.record_event(chain_id, EventKind.ROUTED, venue="ethereum", strategy="liquidation")
        assert ledger.get_trace(chain_id).status is ChainStatus.BROADCASTED
        ledger.record_event(chain_id, EventKind.BOT_RESPONSE, cascade_size=12)
        assert ledger.get_trace(chain_id).status is ChainStatus.TRIGGERED
        ledger.record_event(chain_id, EventKind.EXECUTION_EXECUTED, execution_ref="0x1", resource_cost=150_000)
        assert ledger.get_trace(chain_id).status is ChainStatus.PROFITABLE

    def test_unreachable_status_appends_without_change(self) -> None:
        ledger = _ledger()
        chain_id = ledger.tag_signal(_signal())
        ledger.record_event(chain_id, EventKind.EXECUTION_EXECUTED, execution_ref="0x1")
        ledger.record_event(chain_id, EventKind.EXECUTION_FAILED)

        trace = ledger.get_trace(chain_id)
        assert trace.status is ChainStatus.PROFITABLE
        assert [e.kind for e in trace.events] == [EventKind.EXECUTION_EXECUTED, EventKind.EXECUTION_FAILED]

    def test_events_timestamps_non_decreasing(self) -> None:
        times = iter([10.0, 20.0, 15.0, 30.0])
        ledger = _ledger(clock=lambda: next(times))
        chain_id = ledger.tag_signal(_signal())
        ledger.record_event(chain_id, EventKind.ROUTED)
        ledger.record_event(chain_id, EventKind.BOT_RESPONSE)
        ledger.record_event(chain_id, EventKind.EXECUTION_FAILED)

        stamps = [e.timestamp for e in ledger.get_trace(chain_id).events]
        assert stamps == [20.0, 20.0, 30.0]

    def test_timeline(self) -> None:
        ledger = _ledger()
        chain_id = ledger.tag_signal(_signal())
        ledger.record_event(chain_id, EventKind.ROUTED)
        ledger.record_event(chain_id, EventKind.BOT_RESPONSE)

        timeline = ledger.get_trace(chain_id).timeline
        assert timeline.signal_to_event == 1.0
        assert timeline.total_duration == 2.0
        assert timeline.event_count == 2

    def test_status_only_advances(self) -> None:
        order = {
            ChainStatus.BROADCASTED: 0,
            ChainStatus.TRIGGERED: 1,
            ChainStatus.FAILED: 1,
            ChainStatus.PROFITABLE: 2,
            ChainStatus.COMPLETED: 3,
        }
        kinds = list(EventKind)
        rng = random.Random(1234)
        for _ in range(200):
            ledger = _ledger()
            chain_id = ledger.tag_signal(_signal())
            previous = ChainStatus.BROADCASTED
            for _ in range(rng.randrange(1, 12)):
                if rng.random() < 0.1:
                    asyncio.run(ledger.record_profit(chain_id, ProfitData(f"0x{rng.getrandbits(32):x}", 0.1)))
                else:
                    ledger.record_event(chain_id, rng.choice(kinds))
                current = ledger.get_trace(chain_id).status
                assert current is previous or previous.can_transition_to(current)
                assert order[current] >= order[previous]
                previous = current


# ---------------------------------------------------------------------------
# Profit
# ---------------------------------------------------------------------------


class TestRecordProfit:
    def test_completes_chain_and_computes_roi(self) -> None:
        ledger = _ledger()
        chain_id = ledger.tag_signal(_signal(weight=8.0))

        outcome = asyncio.run(ledger.record_profit(chain_id, ProfitData("0xabc", 1.2, 0.2)))

        assert outcome.profit == pytest.approx(1.0)
        assert outcome.semantic_roi == pytest.approx(12.5)
        assert outcome.cascade_multiplier == pytest.approx(50.0)
        assert outcome.duplicate is False
        trace = ledger.get_trace(chain_id)
        assert trace.status is ChainStatus.COMPLETED
        assert trace.profit == pytest.approx(1.0)

    def test_duplicate_reference_not_double_counted(self) -> None:
        ledger = _ledger()
        chain_id = ledger.tag_signal(_signal())

        async def _run():
            first = await ledger.record_profit(chain_id, ProfitData("0xabc", 1.0))
            second = await ledger.record_profit(chain_id, ProfitData("0xabc", 1.0))
            return first, second

        first, second = asyncio.run(_run())
        assert second.duplicate is True
        assert second.profit == first.profit
        assert ledger.get_trace(chain_id).profit == pytest.approx(1.0)
        assert ledger.profit_count == 1

    def test_duplicate_from_other_chain_reports_original_roi(self) -> None:
        ledger = _ledger()
        first_chain = ledger.tag_signal(_signal(weight=8.0, origin_id="o-1"))
        other_chain = ledger.tag_signal(_signal(weight=2.0, origin_id="o-2"))

        async def _run():
            await ledger.record_profit(first_chain, ProfitData("0xabc", 1.0))
            return await ledger.record_profit(other_chain, ProfitData("0xabc", 1.0))

        outcome = asyncio.run(_run())
        assert outcome.duplicate is True
        assert outcome.chain_id == first_chain
        assert outcome.semantic_roi == pytest.approx(12.5)
        assert ledger.get_trace(other_chain).profit == 0.0

    def test_concurrent_duplicates(self) -> None:
        ledger = _ledger()
        chain_id = ledger.tag_signal(_signal())

        async def _run():
            return await asyncio.gather(
                *(ledger.record_profit(chain_id, ProfitData("0xsame", 0.5)) for _ in range(10))
            )

        outcomes = asyncio.run(_run())
        assert sum(1 for o in outcomes if not o.duplicate) == 1
        assert ledger.get_trace(chain_id).profit == pytest.approx(0.5)

    def test_unknown_chain(self) -> None:
        assert asyncio.run(_ledger().record_profit("SIG-x", ProfitData("0x1", 1.0))) is None

    def test_requires_reference(self) -> None:
        ledger = _ledger()
        chain_id = ledger.tag_signal(_signal())
        with pytest.raises(ValueError):
            asyncio.run(ledger.record_profit(chain_id, ProfitData("", 1.0)))

    def test_zero_weight_roi(self) -> None:
        ledger = _ledger()
        chain_id = ledger.tag_signal(_signal(weight=0.0))
        outcome = asyncio.run(ledger.record_profit(chain_id, ProfitData("0x1", 1.0)))
        assert outcome.semantic_roi == 0.0


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def _populated(store: LedgerStore | None = None) -> AttributionLedger:
    ledger = _ledger(store)

    async def _run() -> None:
        for i, (signal_type, weight) in enumerate(
            [("LIQUIDATION_THRESHOLD_BREACH", 9.5), ("ORACLE_PRICE_DEVIATION", 9.2), ("LIQUIDATION_THRESHOLD_BREACH", 7.0)]
        ):
            chain_id = ledger.tag_signal(_signal(signal_type, weight, origin_id=f"o-{i}"))
            ledger.record_event(chain_id, EventKind.ROUTED, venue="ethereum", strategy="liquidation")
            ledger.record_event(chain_id, EventKind.BOT_RESPONSE, cascade_size=10.0 * (i + 1))
            if i < 2:
                await ledger.record_profit(chain_id, ProfitData(f"0x{i}", 0.5 * (i + 1), 0.01, kind="liquidation"))
        ledger.tag_signal(_signal("MEV_OPPORTUNITY_SURFACE", 9.1, origin_id="o-open"))

    asyncio.run(_run())
    return ledger


class TestPersistence:
    def test_round_trip(self, tmp_path: Path) -> None:
        store = JsonLedgerStore(tmp_path / "ledger.json")
        ledger = _populated(store)
        assert asyncio.run(ledger.flush()) is True

        reloaded = _ledger(JsonLedgerStore(tmp_path / "ledger.json"))
        assert reloaded.load() is True

        assert dict(reloaded.chains) == dict(ledger.chains)
        assert dict(reloaded.profits) == dict(ledger.profits)
        assert reloaded.chain_for_origin("o-open") == ledger.chain_for_origin("o-open")

    def test_persisted_format(self, tmp_path: Path) -> None:
        path = tmp_path / "ledger.json"
        _populated(JsonLedgerStore(path))
        payload = json.loads(path.read_text())

        assert set(payload) == {"chains", "profits", "timestamp"}
        chain_id, body = payload["chains"][0]
        assert chain_id.startswith("SIG-")
        assert {"origin", "events", "profit", "status", "semanticROI"} <= set(body)
        ref, record = payload["profits"][0]
        assert ref == "0x0"
        assert {"chainId", "amountEarned", "gasSpent", "netProfit", "timestamp"} <= set(record)

    def test_missing_file_starts_fresh(self, tmp_path: Path) -> None:
        ledger = _ledger(JsonLedgerStore(tmp_path / "absent.json"))
        assert ledger.load() is False
        assert ledger.chain_count == 0

    def test_corrupt_file_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "ledger.json"
        path.write_text("{not json")
        with pytest.raises(ValueError):
            _ledger(JsonLedgerStore(path)).load()

    def test_failed_write_retried(self) -> None:
        store = _FlakyStore(failures=1)
        metrics = MetricsRegistry()
        ledger = _ledger(store, metrics=metrics)
        chain_id = ledger.tag_signal(_signal())

        outcome = asyncio.run(ledger.record_profit(chain_id, ProfitData("0x1", 1.0)))

        assert outcome is not None
        assert ledger.dirty is True
        assert store.saved == []
        assert metrics.value("ledger_persist_failures") == 1

        assert asyncio.run(ledger.flush()) is True
        assert ledger.dirty is False
        assert len(store.saved) == 1
        assert store.saved[0]["profits"][0][0] == "0x1"

    def test_flush_noop_when_clean(self) -> None:
        store = _FlakyStore(failures=0)
        ledger = _ledger(store)
        assert asyncio.run(ledger.flush()) is True
        assert store.saved == []

    def test_persist_disabled(self, tmp_path: Path) -> None:
        path = tmp_path / "ledger.json"
        ledger = _ledger(JsonLedgerStore(path), persist=False)
        chain_id = ledger.tag_signal(_signal())
        asyncio.run(ledger.record_profit(chain_id, ProfitData("0x1", 1.0)))
        assert not path.exists()


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------


class TestAnalytics:
    def test_analyze_per_type(self) -> None:
        analysis = _populated().analyze()

        liq = analysis["LIQUIDATION_THRESHOLD_BREACH"]
        assert liq.count == 2
        assert liq.total_profit == pytest.approx(0.49)
        assert liq.avg_profit == pytest.approx(0.245)
        assert liq.success_rate == pytest.approx(0.5)
        assert liq.avg_roi == pytest.approx(0.49 / 9.5 * 100)

        mev = analysis["MEV_OPPORTUNITY_SURFACE"]
        assert mev.count == 1
        assert mev.success_rate == 0.0
        assert mev.avg_roi == 0.0

    def test_success_rate_bounded(self) -> None:
        for item in _populated().analyze().values():
            assert 0.0 <= item.success_rate <= 1.0

    def test_dashboard_consistency(self) -> None:
        ledger = _populated()
        dashboard = ledger.get_dashboard()

        assert dashboard.summary.total_signals == 4
        assert dashboard.summary.completed_signals == 2
        assert dashboard.summary.success_rate == pytest.approx(0.5)
        assert dashboard.summary.total_profit == pytest.approx(sum(c.profit for c in ledger.chains.values()))
        assert dashboard.summary.avg_profit_per_signal == pytest.approx(dashboard.summary.total_profit / 4)
        assert [r.execution_ref for r in dashboard.recent_profits] == ["0x1", "0x0"]

        payload = dashboard.to_dict()
        assert payload["summary"]["totalSignals"] == 4
        assert set(payload["perTypeAnalysis"]) == {
            "LIQUIDATION_THRESHOLD_BREACH",
            "ORACLE_PRICE_DEVIATION",
            "MEV_OPPORTUNITY_SURFACE",
        }

    def test_empty_dashboard(self) -> None:
        summary = _ledger().get_dashboard().summary
        assert summary.total_signals == 0
        assert summary.success_rate == 0.0
        assert summary.avg_profit_per_signal == 0.0

    def test_recent_profits_limited(self) -> None:
        ledger = _ledger(recent_profits=1)

        async def _run() -> None:
            for i in range(3):
                chain_id = ledger.tag_signal(_signal(origin_id=f"o-{i}"))
                await ledger.record_profit(chain_id, ProfitData(f"0x{i}", 1.0))

        asyncio.run(_run())
        assert [r.execution_ref for r in ledger.get_dashboard().recent_profits] == ["0x2"]

    def test_top_signal_types(self) -> None:
        top = _populated().top_signal_types(2)
        assert [t.signal_type for t in top] == ["ORACLE_PRICE_DEVIATION", "LIQUIDATION_THRESHOLD_BREACH"]
        assert top[0].share == pytest.approx(0.99 / 1.48)

    def test_recent_cascade_sizes(self) -> None:
        ledger = _populated()
        assert ledger.recent_cascade_sizes("LIQUIDATION_THRESHOLD_BREACH", 10) == [30.0, 10.0]
        assert ledger.recent_cascade_sizes("LIQUIDATION_THRESHOLD_BREACH", 1) == [30.0]
        assert ledger.recent_cascade_sizes("UNSEEN", 5) == []

    def test_trace_dict(self) -> None:
        ledger = _populated()
        chain_id = ledger.chain_for_origin("o-0")
        payload = ledger.get_trace(chain_id).to_dict()
        assert payload["signalId"] == chain_id
        assert payload["profit"]["status"] == "COMPLETED"
        assert payload["timeline"]["eventCount"] == 2


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class TestSubscribe:
    def test_transitions_delivered_and_unsubscribed(self) -> None:
        ledger = _ledger()
        seen = []
        unsubscribe = ledger.subscribe(seen.append)

        chain_id = ledger.tag_signal(_signal())
        ledger.record_event(chain_id, EventKind.BOT_RESPONSE)
        ledger.record_event(chain_id, EventKind.ROUTED)
        unsubscribe()
        ledger.record_event(chain_id, EventKind.EXECUTION_EXECUTED, execution_ref="0x1")

        assert [(t.previous, t.current) for t in seen] == [
            (None, ChainStatus.BROADCASTED),
            (ChainStatus.BROADCASTED, ChainStatus.TRIGGERED),
        ]
        assert seen[0].chain_id == chain_id

    def test_failing_subscriber_does_not_break_ledger(self) -> None:
        ledger = _ledger()

        def _boom(transition) -> None:
            raise RuntimeError("subscriber bug")

        ledger.subscribe(_boom)
        chain_id = ledger.tag_signal(_signal())
        ledger.record_event(chain_id, EventKind.BOT_RESPONSE)
        assert ledger.get_trace(chain_id).status is ChainStatus.TRIGGERED
