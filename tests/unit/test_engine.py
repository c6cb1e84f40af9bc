"""Tests for run_analysis() and AnalysisScheduler cancellation."""

from __future__ import annotations

import pytest

from azureguard.core.engine import (
    AnalysisCancelled,
    AnalysisScheduler,
    CancelToken,
    run_analysis,
)
from azureguard.core.model import AdapterStats, Resource
from azureguard.outputs.output_json import dumps_report
from azureguard.policy.config import AzureGuardConfig


class TestRunAnalysis:
    def test_hub_spoke(self, hub_spoke: list[Resource]) -> None:
        result = run_analysis(hub_spoke)
        assert len(result.topology.vnets) == 2
        assert [c.nsg_id for c in result.rule_chains] == ["azurerm_network_security_group_app"]
        assert set(result.postures) == {r.key for r in hub_spoke}
        assert result.summary.total_resources == len(hub_spoke)
        assert result.stats.total == len(hub_spoke)
        assert 0 <= result.summary.overall_score <= 100

    def test_idempotent(self, hub_spoke: list[Resource]) -> None:
        first = dumps_report(run_analysis(hub_spoke, max_workers=1))
        second = dumps_report(run_analysis(hub_spoke, max_workers=8))
        assert first == second

    def test_input_order_does_not_change_flows(self, hub_spoke: list[Resource]) -> None:
        forward = run_analysis(hub_spoke)
        backward = run_analysis(list(reversed(hub_spoke)))
        assert forward.flows == backward.flows
        assert forward.postures == backward.postures

    def test_empty_input(self) -> None:
        result = run_analysis([])
        assert result.topology.is_empty
        assert result.flows == []
        assert result.postures == {}
        assert result.summary.overall_score == 100

    def test_stats_passed_through(self) -> None:
        stats = AdapterStats(total=10, supported=0, skipped=10)
        assert run_analysis([], stats=stats).stats == stats

    def test_disabled_rules(self, hub_spoke: list[Resource]) -> None:
        config = AzureGuardConfig(disabled_rules=["sql-public-access"])
        result = run_analysis(hub_spoke, config=config)
        rule_ids = {f.rule_id for f in result.postures["azurerm_mssql_server_db"].findings}
        assert "sql-public-access" not in rule_ids

    def test_cancelled_token_raises(self, hub_spoke: list[Resource]) -> None:
        token = CancelToken()
        token.cancel()
        with pytest.raises(AnalysisCancelled):
            run_analysis(hub_spoke, token=token)


class TestCancelToken:
    def test_wait_returns_when_cancelled(self) -> None:
        token = CancelToken()
        assert token.wait(0.01) is False
        token.cancel()
        assert token.cancelled
        assert token.wait(5) is True


class TestScheduler:
    def test_latest_request_wins(self, hub_spoke: list[Resource]) -> None:
        with AnalysisScheduler(delay=0.5) as scheduler:
            stale = scheduler.submit(hub_spoke[:3])
            latest = scheduler.submit(hub_spoke)
            with pytest.raises(AnalysisCancelled):
                stale.result(timeout=10)
            result = latest.result(timeout=30)
        assert scheduler.generation == 2
        assert set(result.postures) == {r.key for r in hub_spoke}

    def test_single_request_completes(self, hub_spoke: list[Resource]) -> None:
        with AnalysisScheduler() as scheduler:
            result = scheduler.submit(hub_spoke).result(timeout=30)
        assert result.summary.total_resources == len(hub_spoke)

    def test_shutdown_cancel_pending(self, hub_spoke: list[Resource]) -> None:
        scheduler = AnalysisScheduler(delay=5.0)
        pending = scheduler.submit(hub_spoke)
        scheduler.shutdown(cancel_pending=True)
        with pytest.raises(AnalysisCancelled):
            pending.result(timeout=1)
