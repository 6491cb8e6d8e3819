"""
Budget Threshold Checker Module

Evaluates budget line utilization against alert bands and classifies severity.

Alerts are recomputed from the current ledger state on every call. Nothing is
persisted and nothing is deduplicated: a caller that wants to notify at most
once per threshold must remember externally which thresholds it already acted on.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path

from .config import load_thresholds
from .models import BudgetLine, BudgetLineStatus, Utilization
from .exceptions import NotFoundError
from .store import LedgerStore

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    WARNING = "WARNING"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass
class BudgetAlert:
    """Alert for a line at or above the listing threshold."""

    line_id: str
    project_id: str
    category: str
    fiscal_year: int
    allocated: Decimal
    spent: Decimal
    utilization_percent: Decimal
    severity: AlertSeverity
    alert_threshold_percent: Decimal
    evaluated_at: datetime = field(default_factory=datetime.now)
    message: str = ""

    @property
    def is_over_threshold(self) -> bool:
        """Whether the line's own configured threshold is reached."""
        return self.utilization_percent >= self.alert_threshold_percent

    def to_dict(self) -> dict:
        return {
            "line_id": self.line_id,
            "project_id": self.project_id,
            "category": self.category,
            "fiscal_year": self.fiscal_year,
            "allocated": float(self.allocated),
            "spent": float(self.spent),
            "utilization_percent": float(self.utilization_percent),
            "severity": self.severity.value,
            "alert_threshold_percent": float(self.alert_threshold_percent),
            "is_over_threshold": self.is_over_threshold,
            "evaluated_at": self.evaluated_at.isoformat(),
            "message": self.message,
        }


class ThresholdChecker:
    """Checks budget line utilization and generates alerts."""

    def __init__(self, store: LedgerStore, config_dir: Path | str | None = None):
        """Initialize the threshold checker.

        Args:
            store: Ledger store collaborator
            config_dir: Path to configuration directory
        """
        self.store = store
        self._load_config(config_dir)

    def _load_config(self, config_dir) -> None:
        """Load alert bands."""
        alerts = load_thresholds(config_dir)["alerts"]
        bands = alerts["bands"]

        self.listing_threshold = Decimal(str(alerts["listing_threshold"]))
        self.warning_threshold = Decimal(str(bands["warning"]))
        self.high_threshold = Decimal(str(bands["high"]))
        self.critical_threshold = Decimal(str(bands["critical"]))

    def classify(self, utilization_percent: Decimal) -> AlertSeverity | None:
        """Map a utilization percentage to a severity band (highest first)."""
        if utilization_percent >= self.critical_threshold:
            return AlertSeverity.CRITICAL
        elif utilization_percent >= self.high_threshold:
            return AlertSeverity.HIGH
        elif utilization_percent >= self.warning_threshold:
            return AlertSeverity.WARNING
        return None

    def check_line(self, line: BudgetLine, utilization: Utilization) -> BudgetAlert | None:
        """Check a single line.

        Args:
            line: Budget line
            utilization: Its current utilization

        Returns:
            BudgetAlert if the line is at or above the listing threshold, None otherwise
        """
        percent = utilization.utilization_percent
        if percent < self.listing_threshold:
            return None

        severity = self.classify(percent)
        if severity is None:
            return None

        alert = BudgetAlert(
            line_id=line.id,
            project_id=line.project_id,
            category=line.category.value,
            fiscal_year=line.fiscal_year,
            allocated=utilization.allocated,
            spent=utilization.spent,
            utilization_percent=percent,
            severity=severity,
            alert_threshold_percent=line.alert_threshold_percent,
        )
        alert.message = self._format_alert_message(alert, utilization)
        return alert

    def evaluate(self, line_id: str | None = None) -> list[BudgetAlert]:
        """Evaluate one line, or every active line when line_id is None.

        Returns:
            Alerts sorted by utilization, highest first
        """
        if line_id is not None:
            snapshot = self.store.snapshot(line_id)
            if snapshot is None:
                raise NotFoundError("Budget line", line_id)
            snapshots = [snapshot] if snapshot.line.is_active else []
        else:
            snapshots = [
                self.store.snapshot(line.id)
                for line in self.store.list_lines(status=BudgetLineStatus.ACTIVE)
            ]

        alerts = []
        for snapshot in snapshots:
            if snapshot is None:
                continue
            alert = self.check_line(snapshot.line, snapshot.utilization)
            if alert:
                alerts.append(alert)

        alerts.sort(key=lambda a: a.utilization_percent, reverse=True)

        if alerts:
            logger.warning(
                f"{len(alerts)} budget line(s) at or above {self.listing_threshold}% utilization"
            )
        return alerts

    def _format_alert_message(self, alert: BudgetAlert, utilization: Utilization) -> str:
        if alert.severity == AlertSeverity.CRITICAL:
            return (
                f"Budget exceeded: {alert.category} FY{alert.fiscal_year} "
                f"spent {utilization.spent:,.2f} of {utilization.allocated:,.2f} "
                f"({alert.utilization_percent}%)"
            )
        elif alert.severity == AlertSeverity.HIGH:
            return (
                f"Budget almost depleted: {alert.category} FY{alert.fiscal_year} "
                f"remaining {utilization.allocated - utilization.spent:,.2f} "
                f"({alert.utilization_percent}%)"
            )
        return (
            f"Budget approaching limit: {alert.category} FY{alert.fiscal_year} "
            f"({alert.utilization_percent}%)"
        )
