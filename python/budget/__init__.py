"""
Budget Ledger Module

Handles budget line allocation, transaction recording, threshold alerts and
spend forecasting for government projects.
"""

from .exceptions import (
    AlreadyProcessedError,
    BudgetCoreError,
    CannotCancelError,
    ConflictError,
    ContentionError,
    InsufficientBudgetError,
    NotFoundError,
    StorageError,
    UnauthorizedApproverError,
    UnauthorizedCancelError,
    ValidationError,
)
from .forecast import BudgetForecast, ForecastEngine, RiskLevel
from .ledger import BudgetLedger, BudgetSummary
from .models import (
    AmendBudgetCommand,
    BudgetCategory,
    BudgetLine,
    BudgetLineStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    Utilization,
)
from .sql_store import SqlLedgerStore
from .store import InMemoryLedgerStore, LedgerStore
from .threshold_checker import AlertSeverity, BudgetAlert, ThresholdChecker
from .transaction_processor import TransactionProcessor

__all__ = [
    # Ledger
    "BudgetLedger",
    "BudgetSummary",
    "AmendBudgetCommand",
    "BudgetCategory",
    "BudgetLine",
    "BudgetLineStatus",
    "Utilization",
    # Transactions
    "TransactionProcessor",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    # Alerts and forecasting
    "ThresholdChecker",
    "BudgetAlert",
    "AlertSeverity",
    "ForecastEngine",
    "BudgetForecast",
    "RiskLevel",
    # Storage
    "LedgerStore",
    "InMemoryLedgerStore",
    "SqlLedgerStore",
    # Errors
    "BudgetCoreError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "InsufficientBudgetError",
    "UnauthorizedApproverError",
    "UnauthorizedCancelError",
    "AlreadyProcessedError",
    "CannotCancelError",
    "ContentionError",
    "StorageError",
]
