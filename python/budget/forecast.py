"""
Budget Forecast Module

Projects end-of-period spend for a budget line from its approved monthly
expense history.

Risk level is banded on *current* utilization, not on the projection. The
name suggests otherwise; the behavior is kept as-is until product confirms
which of the two it should reflect.
"""

import calendar
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from pathlib import Path

from .config import load_thresholds
from .exceptions import NotFoundError
from .models import CENT, ZERO, TransactionStatus, TransactionType
from .store import LedgerStore

logger = logging.getLogger(__name__)


class RiskLevel(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass
class BudgetForecast:
    """Spend projection for one budget line."""

    line_id: str
    as_of: date
    allocated: Decimal
    spent: Decimal
    available: Decimal
    utilization_percent: Decimal
    average_monthly_spend: Decimal
    months_elapsed: int
    months_remaining: Decimal | None  # None: spend rate is zero, never exhausts
    projected_total: Decimal
    projected_overrun: Decimal
    will_exceed: bool
    risk_level: RiskLevel
    projected_exhaustion_date: date | None = None
    monthly_spend: dict[str, Decimal] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "line_id": self.line_id,
            "as_of": self.as_of.isoformat(),
            "allocated": float(self.allocated),
            "spent": float(self.spent),
            "available": float(self.available),
            "utilization_percent": float(self.utilization_percent),
            "average_monthly_spend": float(self.average_monthly_spend),
            "months_elapsed": self.months_elapsed,
            "months_remaining": float(self.months_remaining) if self.months_remaining is not None else None,
            "projected_total": float(self.projected_total),
            "projected_overrun": float(self.projected_overrun),
            "will_exceed": self.will_exceed,
            "risk_level": self.risk_level.value,
            "projected_exhaustion_date": (
                self.projected_exhaustion_date.isoformat() if self.projected_exhaustion_date else None
            ),
            "monthly_spend": {k: float(v) for k, v in self.monthly_spend.items()},
        }


def months_between(start: date, end: date) -> int:
    """Calendar months from start's month to end's month, inclusive, at least 1."""
    return max(1, (end.year - start.year) * 12 + end.month - start.month + 1)


def add_months(day: date, months: int) -> date:
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


class ForecastEngine:
    """Projects budget line spend from historical monthly consumption."""

    def __init__(self, store: LedgerStore, config_dir: Path | str | None = None):
        self.store = store
        bands = load_thresholds(config_dir)["forecast"]["risk_bands"]
        self.medium_threshold = Decimal(str(bands["medium"]))
        self.high_threshold = Decimal(str(bands["high"]))
        self.critical_threshold = Decimal(str(bands["critical"]))

    def risk_for(self, utilization_percent: Decimal) -> RiskLevel:
        if utilization_percent >= self.critical_threshold:
            return RiskLevel.CRITICAL
        elif utilization_percent >= self.high_threshold:
            return RiskLevel.HIGH
        elif utilization_percent >= self.medium_threshold:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def forecast(self, line_id: str, as_of: date | None = None) -> BudgetForecast:
        """Forecast a line's spend.

        averageMonthlySpend is the approved expense total dated between the
        line's effective start and as_of, divided by the calendar months
        elapsed over that window. With no spend history the average is 0, the
        line never exhausts and no overrun is projected.

        Args:
            line_id: Budget line ID
            as_of: Date to forecast from (default today)

        Returns:
            BudgetForecast
        """
        snapshot = self.store.snapshot(line_id)
        if snapshot is None:
            raise NotFoundError("Budget line", line_id)

        as_of = as_of or date.today()
        line = snapshot.line
        utilization = snapshot.utilization

        monthly: dict[str, Decimal] = defaultdict(lambda: ZERO)
        for txn in snapshot.transactions:
            if txn.status != TransactionStatus.APPROVED or txn.type != TransactionType.EXPENSE:
                continue
            # Only spend inside the months being averaged over
            if line.starts_on <= txn.transaction_date <= as_of:
                monthly[txn.transaction_date.strftime("%Y-%m")] += txn.amount

        total_expense = sum(monthly.values(), ZERO)
        months_elapsed = months_between(line.starts_on, as_of)
        average = (total_expense / months_elapsed).quantize(CENT, rounding=ROUND_HALF_UP)

        available = utilization.available
        months_remaining = None
        exhaustion_date = None
        projected_total = utilization.spent

        if average > 0:
            months_remaining = max(ZERO, available / average).quantize(CENT, rounding=ROUND_HALF_UP)
            projected_total = (utilization.spent + average * months_remaining).quantize(
                CENT, rounding=ROUND_HALF_UP
            )
            exhaustion_date = add_months(as_of, math.ceil(months_remaining))

        projected_overrun = max(ZERO, projected_total - utilization.allocated)

        result = BudgetForecast(
            line_id=line_id,
            as_of=as_of,
            allocated=utilization.allocated,
            spent=utilization.spent,
            available=available,
            utilization_percent=utilization.utilization_percent,
            average_monthly_spend=average,
            months_elapsed=months_elapsed,
            months_remaining=months_remaining,
            projected_total=projected_total,
            projected_overrun=projected_overrun,
            will_exceed=projected_overrun > 0,
            risk_level=self.risk_for(utilization.utilization_percent),
            projected_exhaustion_date=exhaustion_date,
            monthly_spend=dict(sorted(monthly.items())),
        )

        logger.debug(
            f"Forecast for line {line_id}: avg {average:,.2f}/month, risk {result.risk_level.value}"
        )
        return result
