"""
Approval Workflow Module

Sequential, role-gated approval of projects, budgets, purchase orders and
ledger transactions.
"""

from .models import (
    ApprovalDecision,
    ApprovalEntityType,
    ApprovalLevel,
    ApprovalRequest,
    ApprovalStatus,
    Decision,
    Priority,
)
from .sql_store import SqlApprovalStore
from .store import ApprovalStore, InMemoryApprovalStore
from .transaction_bridge import RecordedTransaction, TransactionApprovalBridge
from .workflow import ApprovalWorkflow

__all__ = [
    "ApprovalDecision",
    "ApprovalEntityType",
    "ApprovalLevel",
    "ApprovalRequest",
    "ApprovalStatus",
    "ApprovalStore",
    "ApprovalWorkflow",
    "Decision",
    "InMemoryApprovalStore",
    "Priority",
    "RecordedTransaction",
    "SqlApprovalStore",
    "TransactionApprovalBridge",
]
