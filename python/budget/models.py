"""
Budget Ledger Models

Budget lines, ledger transactions and the utilization figures derived from them.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum

from .exceptions import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


class BudgetCategory(Enum):
    """Budget line category."""
    PERSONNEL = "PERSONNEL"
    EQUIPMENT = "EQUIPMENT"
    MATERIALS = "MATERIALS"
    CONTRACTORS = "CONTRACTORS"
    SERVICES = "SERVICES"
    OVERHEAD = "OVERHEAD"
    CONTINGENCY = "CONTINGENCY"
    OTHER = "OTHER"


class BudgetLineStatus(Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class TransactionType(Enum):
    """Ledger entry type."""
    EXPENSE = "EXPENSE"
    COMMITMENT = "COMMITMENT"
    ADJUSTMENT = "ADJUSTMENT"
    REFUND = "REFUND"

    @property
    def consumes_budget(self) -> bool:
        """Whether the entry draws down the available balance."""
        return self in (TransactionType.EXPENSE, TransactionType.COMMITMENT)


class TransactionStatus(Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


def to_money(value, field_name: str = "amount") -> Decimal:
    """Coerce a number or numeric string to a 2-decimal Decimal.

    Args:
        value: int, float, str or Decimal
        field_name: Name used in the validation message

    Returns:
        Quantized Decimal

    Raises:
        ValidationError: If the value is not numeric
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a number", details={"field": field_name})
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a number", details={"field": field_name})
    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be finite", details={"field": field_name})
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_enum(enum_cls, value, field_name: str):
    """Resolve an enum member from a member, value or case-insensitive name."""
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        key = value.strip().upper()
        for member in enum_cls:
            if member.value == key:
                return member
    allowed = ", ".join(m.value for m in enum_cls)
    raise ValidationError(
        f"Invalid {field_name}: {value!r}. Allowed: {allowed}",
        details={"field": field_name, "allowed": [m.value for m in enum_cls]},
    )


def percent_of(part: Decimal, whole: Decimal) -> Decimal:
    """Percentage of part in whole, 0 when whole is 0."""
    if whole <= 0:
        return ZERO
    return (part * 100 / whole).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class BudgetLine:
    """A scoped allocation of funds for one project/category/fiscal year."""

    id: str
    project_id: str
    category: BudgetCategory
    fiscal_year: int
    allocated_amount: Decimal
    alert_threshold_percent: Decimal = Decimal("90")
    status: BudgetLineStatus = BudgetLineStatus.ACTIVE
    starts_on: date | None = None
    notes: str | None = None
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    version: int = 0

    def __post_init__(self):
        if self.starts_on is None:
            self.starts_on = date(self.fiscal_year, 1, 1)

    @property
    def is_active(self) -> bool:
        return self.status == BudgetLineStatus.ACTIVE

    @property
    def key(self) -> tuple[str, BudgetCategory, int]:
        return (self.project_id, self.category, self.fiscal_year)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "category": self.category.value,
            "fiscal_year": self.fiscal_year,
            "allocated_amount": float(self.allocated_amount),
            "alert_threshold_percent": float(self.alert_threshold_percent),
            "status": self.status.value,
            "starts_on": self.starts_on.isoformat(),
            "notes": self.notes,
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class Transaction:
    """A ledger entry against a budget line."""

    id: str
    budget_line_id: str
    type: TransactionType
    amount: Decimal
    description: str
    vendor_id: str | None = None
    status: TransactionStatus = TransactionStatus.PENDING
    transaction_date: date = field(default_factory=date.today)
    invoice_number: str | None = None
    reference_number: str | None = None
    created_by: str | None = None
    approved_by: str | None = None
    decision_comment: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    decided_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "budget_line_id": self.budget_line_id,
            "type": self.type.value,
            "amount": float(self.amount),
            "description": self.description,
            "vendor_id": self.vendor_id,
            "status": self.status.value,
            "transaction_date": self.transaction_date.isoformat(),
            "invoice_number": self.invoice_number,
            "reference_number": self.reference_number,
            "created_by": self.created_by,
            "approved_by": self.approved_by,
            "decision_comment": self.decision_comment,
            "created_at": self.created_at.isoformat(),
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
        }


@dataclass
class Utilization:
    """Derived balance figures for a budget line."""

    allocated: Decimal
    spent: Decimal
    committed: Decimal

    @classmethod
    def from_transactions(cls, allocated: Decimal, transactions: list[Transaction]) -> "Utilization":
        """Recompute spent/committed from the full transaction set.

        Args:
            allocated: Allocated amount of the line
            transactions: Every transaction on the line

        Returns:
            Utilization
        """
        debits = ZERO
        credits = ZERO
        committed = ZERO

        for txn in transactions:
            if txn.status == TransactionStatus.APPROVED:
                if txn.type.consumes_budget:
                    debits += txn.amount
                else:
                    credits += txn.amount
            elif txn.status == TransactionStatus.PENDING and txn.type.consumes_budget:
                committed += txn.amount

        spent = max(ZERO, debits - credits)
        return cls(allocated=allocated, spent=spent, committed=committed)

    @property
    def available(self) -> Decimal:
        return self.allocated - self.spent - self.committed

    @property
    def utilization_percent(self) -> Decimal:
        return percent_of(self.spent, self.allocated)

    @property
    def commitment_percent(self) -> Decimal:
        return percent_of(self.spent + self.committed, self.allocated)

    def to_dict(self) -> dict:
        return {
            "allocated": float(self.allocated),
            "spent": float(self.spent),
            "committed": float(self.committed),
            "available": float(self.available),
            "utilization_percent": float(self.utilization_percent),
            "commitment_percent": float(self.commitment_percent),
        }


@dataclass(frozen=True)
class AmendBudgetCommand:
    """Typed amendment of a budget line; only these fields may change."""

    new_allocated_amount: Decimal
    alert_threshold_percent: Decimal | None = None
    notes: str | None = None
    amended_by: str | None = None


@dataclass
class LineSnapshot:
    """A budget line and its transactions as read at one version."""

    line: BudgetLine
    transactions: list[Transaction]

    @property
    def version(self) -> int:
        return self.line.version

    @property
    def utilization(self) -> Utilization:
        return Utilization.from_transactions(self.line.allocated_amount, self.transactions)
