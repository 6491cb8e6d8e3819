"""
Approval Models

Approval requests, their ordered levels and the append-only decision log.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from budget.exceptions import ValidationError


class ApprovalEntityType(Enum):
    """Kinds of entity an approval request can gate."""
    PROJECT = "PROJECT"
    BUDGET = "BUDGET"
    PURCHASE_ORDER = "PURCHASE_ORDER"
    TRANSACTION = "TRANSACTION"


class ApprovalStatus(Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self != ApprovalStatus.PENDING


class Priority(Enum):
    URGENT = "URGENT"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        """Sort rank, most urgent first."""
        return list(Priority).index(self)


class Decision(Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class ApprovalLevel:
    """One sequential approval step bound to a role."""

    order: int
    required_role: str
    name: str | None = None

    def to_dict(self) -> dict:
        return {"order": self.order, "required_role": self.required_role, "name": self.name}


@dataclass(frozen=True)
class ApprovalDecision:
    """A single recorded decision at one level."""

    level_order: int
    approver_id: str
    decision: Decision
    comment: str | None = None
    decided_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "level_order": self.level_order,
            "approver_id": self.approver_id,
            "decision": self.decision.value,
            "comment": self.comment,
            "decided_at": self.decided_at.isoformat(),
        }


def build_levels(levels) -> list[ApprovalLevel]:
    """Normalize and validate a level list.

    Accepts ApprovalLevel instances, dicts with `order`/`required_role`
    (optionally `name`), or bare role strings numbered in list order.

    Raises:
        ValidationError: If the list is empty, a role is missing, or the
            orders are not exactly 1..N
    """
    if not levels:
        raise ValidationError("At least one approval level is required", details={"field": "levels"})

    result = []
    for position, level in enumerate(levels, start=1):
        if isinstance(level, ApprovalLevel):
            result.append(level)
        elif isinstance(level, str):
            result.append(ApprovalLevel(order=position, required_role=level))
        elif isinstance(level, dict):
            result.append(
                ApprovalLevel(
                    order=level.get("order", position),
                    required_role=level.get("required_role") or level.get("role"),
                    name=level.get("name"),
                )
            )
        else:
            raise ValidationError(
                f"Invalid approval level: {level!r}", details={"field": "levels"}
            )

    for level in result:
        if not level.required_role or not str(level.required_role).strip():
            raise ValidationError(
                f"Approval level {level.order} has no required role",
                details={"field": "levels", "order": level.order},
            )

    orders = [level.order for level in result]
    if orders != list(range(1, len(result) + 1)):
        raise ValidationError(
            "Approval levels must be ordered 1..N without gaps",
            details={"field": "levels", "orders": orders},
        )
    return result


@dataclass
class ApprovalRequest:
    """A gated action moving through its ordered approval levels."""

    id: str
    entity_type: ApprovalEntityType
    entity_id: str
    levels: list[ApprovalLevel]
    requester_id: str
    level_index: int = 0
    status: ApprovalStatus = ApprovalStatus.PENDING
    decisions: list[ApprovalDecision] = field(default_factory=list)
    title: str | None = None
    priority: Priority = Priority.MEDIUM
    notes: str | None = None
    request_data: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    completed_at: datetime | None = None
    version: int = 0

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING

    @property
    def entity_key(self) -> tuple[ApprovalEntityType, str]:
        return (self.entity_type, self.entity_id)

    @property
    def current_level(self) -> ApprovalLevel | None:
        """Level awaiting a decision, None once terminal."""
        if not self.is_pending:
            return None
        return self.levels[self.level_index]

    @property
    def is_final_level(self) -> bool:
        return self.level_index == len(self.levels) - 1

    def to_dict(self) -> dict:
        current = self.current_level
        return {
            "id": self.id,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "title": self.title,
            "priority": self.priority.value,
            "status": self.status.value,
            "requester_id": self.requester_id,
            "level_index": self.level_index,
            "current_level": current.to_dict() if current else None,
            "levels": [level.to_dict() for level in self.levels],
            "decisions": [decision.to_dict() for decision in self.decisions],
            "notes": self.notes,
            "request_data": self.request_data,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
