"""
Threshold Checker Tests

Tests for alert band classification and evaluation across budget lines.
"""

import pytest
from decimal import Decimal
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "python"))

from budget import AlertSeverity, NotFoundError, ThresholdChecker


def spend(processor, line_id, amount):
    txn = processor.record(line_id, "EXPENSE", amount, "Site works")
    processor.decide(txn.id, "APPROVED", "fc.reyes")


class TestClassify:
    """Tests for severity bands."""

    @pytest.mark.parametrize(
        "percent,expected",
        [
            ("0", None),
            ("74.99", None),
            ("75", AlertSeverity.WARNING),
            ("89.99", AlertSeverity.WARNING),
            ("90", AlertSeverity.HIGH),
            ("99.99", AlertSeverity.HIGH),
            ("100", AlertSeverity.CRITICAL),
            ("120", AlertSeverity.CRITICAL),
        ],
    )
    def test_default_bands(self, checker, percent, expected):
        assert checker.classify(Decimal(percent)) == expected

    def test_bands_from_config(self, store, write_config):
        config_dir = write_config(
            "budget_thresholds.yaml",
            {"alerts": {"listing_threshold": 60, "bands": {"warning": 60, "high": 80}}},
        )
        checker = ThresholdChecker(store, config_dir)

        assert checker.classify(Decimal("65")) == AlertSeverity.WARNING
        assert checker.classify(Decimal("85")) == AlertSeverity.HIGH
        # Unset keys keep their defaults
        assert checker.critical_threshold == Decimal("100")


class TestEvaluate:
    """Tests for ThresholdChecker.evaluate."""

    def test_line_below_floor_has_no_alert(self, checker, processor, line):
        spend(processor, line.id, 74999)

        assert checker.evaluate(line.id) == []

    def test_pending_spend_does_not_trigger_alert(self, checker, processor, line):
        processor.record(line.id, "COMMITMENT", 95000, "Big PO")

        assert checker.evaluate(line.id) == []

    def test_alert_fields(self, checker, processor, line):
        spend(processor, line.id, 92000)

        alerts = checker.evaluate(line.id)

        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.line_id == line.id
        assert alert.project_id == "PRJ-001"
        assert alert.category == "EQUIPMENT"
        assert alert.utilization_percent == Decimal("92.00")
        assert alert.severity == AlertSeverity.HIGH
        assert alert.is_over_threshold is True
        assert "almost depleted" in alert.message

    def test_line_threshold_drives_over_threshold_flag(self, ledger, checker, processor):
        line = ledger.allocate("PRJ-005", "SERVICES", 1000, 2025, alert_threshold_percent=95)
        spend(processor, line.id, 900)

        alert = checker.evaluate(line.id)[0]

        assert alert.severity == AlertSeverity.HIGH
        assert alert.is_over_threshold is False

    def test_evaluate_all_sorted_highest_first(self, ledger, checker, processor):
        warning = ledger.allocate("PRJ-100", "EQUIPMENT", 1000, 2025)
        critical = ledger.allocate("PRJ-101", "EQUIPMENT", 1000, 2025)
        quiet = ledger.allocate("PRJ-102", "EQUIPMENT", 1000, 2025)
        spend(processor, warning.id, 800)
        spend(processor, critical.id, 1000)
        spend(processor, quiet.id, 100)

        alerts = checker.evaluate()

        assert [a.line_id for a in alerts] == [critical.id, warning.id]
        assert [a.severity for a in alerts] == [AlertSeverity.CRITICAL, AlertSeverity.WARNING]
        assert alerts[0].to_dict()["severity"] == "CRITICAL"

    def test_closed_lines_are_skipped(self, ledger, checker, processor, line):
        spend(processor, line.id, 100000)
        ledger.close(line.id)

        assert checker.evaluate() == []
        assert checker.evaluate(line.id) == []

    def test_evaluation_is_stateless(self, checker, processor, line):
        spend(processor, line.id, 80000)

        first = checker.evaluate()
        second = checker.evaluate()

        assert len(first) == len(second) == 1

    def test_unknown_line_raises_not_found(self, checker):
        with pytest.raises(NotFoundError):
            checker.evaluate("missing")
