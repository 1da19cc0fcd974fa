"""Tests for context diagnostics"""

import pytest

from novelctx.memory import CacheStats
from novelctx.models import BudgetReport, ShedRecord
from novelctx.orchestrator import Alert, ContextDiagnostics


@pytest.fixture
def diagnostics():
    return ContextDiagnostics()


def codes(report):
    return [a["code"] for a in report["alerts"]]


def test_healthy_report(diagnostics):
    report = diagnostics.report_health(
        CacheStats(total=10, valid=9, expired=1, hits=5, misses=5),
        BudgetReport(total_tokens=5000, total_budget=100000, required_tokens=1000)
    )

    assert report["healthy"]
    assert report["alerts"] == []
    assert not report["escalation_required"]


def test_mostly_expired_cache_is_low_severity(diagnostics):
    report = diagnostics.report_health(CacheStats(total=4, valid=1, expired=3))

    assert codes(report) == ["cache_mostly_expired"]
    assert report["alerts"][0]["severity"] == "low"
    assert report["healthy"]


def test_budget_near_ceiling(diagnostics):
    report = diagnostics.report_health(budget_report=BudgetReport(total_tokens=95, total_budget=100))

    assert codes(report) == ["budget_near_ceiling"]
    assert not report["healthy"]
    assert not report["escalation_required"]


def test_shed_sections_reported(diagnostics):
    report = diagnostics.report_health(budget_report=BudgetReport(
        total_tokens=50,
        total_budget=100,
        shed=[ShedRecord(section="recent_summaries", removed=4), ShedRecord(section="world_rules", removed=1)]
    ))

    assert codes(report) == ["sections_shed"]
    assert "5 item(s)" in report["alerts"][0]["message"]


def test_required_sections_escalate(diagnostics):
    report = diagnostics.report_health(budget_report=BudgetReport(
        total_tokens=85, total_budget=100, required_tokens=85
    ))

    assert "required_sections_dominate" in codes(report)
    assert report["escalation_required"]

    alerts = diagnostics.check_escalation(report)
    assert alerts == [Alert(
        severity="high",
        code="required_sections_dominate",
        message=report["alerts"][0]["message"],
        details=report["alerts"][0]
    )]


def test_thresholds_configurable():
    diagnostics = ContextDiagnostics({"thresholds": {"utilization": 0.4}})
    report = diagnostics.report_health(budget_report=BudgetReport(total_tokens=50, total_budget=100))
    assert codes(report) == ["budget_near_ceiling"]


def test_check_escalation_ignores_low_and_medium(diagnostics):
    report = {"alerts": [
        {"severity": "low", "code": "a", "message": ""},
        {"severity": "medium", "code": "b", "message": ""},
        {"severity": "critical", "code": "c", "message": "boom"},
    ]}

    assert [a.code for a in diagnostics.check_escalation(report)] == ["c"]


def test_empty_inputs(diagnostics):
    report = diagnostics.report_health()
    assert report["healthy"]
    assert report["cache"] is None
