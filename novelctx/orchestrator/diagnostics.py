"""Context Diagnostics - health reports and escalations for cache and budget"""

import logging
from typing import Dict, Any, Optional, List
from dataclasses import dataclass

from novelctx.memory import CacheStats
from novelctx.models import BudgetReport

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLDS = {
    "expired_ratio": 0.5,
    "utilization": 0.9,
    "required_ratio": 0.8,
}


@dataclass
class Alert:
    """Single alert for escalation"""
    severity: str  # "low", "medium", "high", "critical"
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None


class ContextDiagnostics:
    """
    Monitors query cache and context budget health: stale cache entries,
    budgets running near their ceiling, shed sections. Aggregates alerts and
    flags escalation when the required sections crowd out everything else.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self.thresholds = {**DEFAULT_THRESHOLDS, **self.config.get("thresholds", {})}

    def report_health(
        self,
        cache_stats: Optional[CacheStats] = None,
        budget_report: Optional[BudgetReport] = None
    ) -> Dict[str, Any]:
        """
        Produce a health report from cache statistics and a context's budget report.

        Args:
            cache_stats: Snapshot from QueryCache.stats()
            budget_report: BudgetReport of an assembled context

        Returns:
            Dict with health summary, alerts and escalation flag
        """
        report = {
            "healthy": True,
            "cache": cache_stats.model_dump() if cache_stats else None,
            "budget": budget_report.model_dump() if budget_report else None,
            "alerts": [],
            "escalation_required": False
        }

        if cache_stats and cache_stats.total:
            expired_ratio = cache_stats.expired / cache_stats.total
            if expired_ratio > self.thresholds["expired_ratio"]:
                report["alerts"].append({
                    "severity": "low",
                    "code": "cache_mostly_expired",
                    "message": f"{cache_stats.expired}/{cache_stats.total} cache entries expired"
                })

        if budget_report and budget_report.total_budget > 0:
            utilization = budget_report.utilization
            if utilization > self.thresholds["utilization"]:
                report["healthy"] = False
                report["alerts"].append({
                    "severity": "medium",
                    "code": "budget_near_ceiling",
                    "message": f"Context uses {utilization:.0%} of the input budget"
                })

            if budget_report.shed:
                removed = sum(record.removed for record in budget_report.shed)
                sections = ", ".join(record.section for record in budget_report.shed)
                report["healthy"] = False
                report["alerts"].append({
                    "severity": "medium",
                    "code": "sections_shed",
                    "message": f"{removed} item(s) shed from {sections}"
                })

            required_ratio = budget_report.required_tokens / budget_report.total_budget
            if required_ratio > self.thresholds["required_ratio"]:
                report["healthy"] = False
                report["alerts"].append({
                    "severity": "high",
                    "code": "required_sections_dominate",
                    "message": f"Required sections alone use {required_ratio:.0%} of the input budget"
                })

        # Escalation if any high/critical
        for a in report["alerts"]:
            if a.get("severity") in ("high", "critical"):
                report["escalation_required"] = True
                break

        if report["alerts"]:
            logger.info(f"Context health: {len(report['alerts'])} alert(s), escalation={report['escalation_required']}")
        return report

    def check_escalation(self, report: Dict[str, Any]) -> List[Alert]:
        """
        Convert health report into list of Alert objects for escalation path.

        Args:
            report: Output from report_health

        Returns:
            List of Alert instances that warrant escalation
        """
        alerts = []
        for a in report.get("alerts", []):
            severity = a.get("severity", "low")
            if severity in ("high", "critical"):
                alerts.append(Alert(
                    severity=severity,
                    code=a.get("code", "unknown"),
                    message=a.get("message", ""),
                    details=a
                ))
        return alerts
