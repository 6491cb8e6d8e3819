"""
API Dependencies

Store selection and per-request construction of the ledger components.
LEDGER_STORE selects the backend: `sql` (default) or `memory`.
"""

import os
from functools import lru_cache
from typing import Any

from fastapi import Depends

from approvals import (
    ApprovalStore,
    ApprovalWorkflow,
    InMemoryApprovalStore,
    SqlApprovalStore,
    TransactionApprovalBridge,
)
from budget import (
    BudgetLedger,
    ForecastEngine,
    InMemoryLedgerStore,
    LedgerStore,
    SqlLedgerStore,
    ThresholdChecker,
    TransactionProcessor,
)

from .auth import User, get_auth_config, get_current_user
from .database import get_engine


def use_sql_store() -> bool:
    return os.getenv("LEDGER_STORE", "sql").lower() == "sql"


@lru_cache
def get_ledger_store() -> LedgerStore:
    if use_sql_store():
        return SqlLedgerStore(get_engine())
    return InMemoryLedgerStore()


@lru_cache
def get_approval_store() -> ApprovalStore:
    if use_sql_store():
        return SqlApprovalStore(get_engine())
    return InMemoryApprovalStore()


def get_ledger(store: LedgerStore = Depends(get_ledger_store)) -> BudgetLedger:
    return BudgetLedger(store)


def get_processor(store: LedgerStore = Depends(get_ledger_store)) -> TransactionProcessor:
    return TransactionProcessor(store)


def get_threshold_checker(store: LedgerStore = Depends(get_ledger_store)) -> ThresholdChecker:
    return ThresholdChecker(store)


def get_forecast_engine(store: LedgerStore = Depends(get_ledger_store)) -> ForecastEngine:
    return ForecastEngine(store)


def get_bridge(
    user: User = Depends(get_current_user),
    approval_store: ApprovalStore = Depends(get_approval_store),
    processor: TransactionProcessor = Depends(get_processor),
) -> TransactionApprovalBridge:
    """Workflow wired to the transaction processor for the acting user.

    The acting user's roles come from their token; anyone else's from config.
    """
    def resolve_roles(user_id: str) -> list[str]:
        if user_id == user.user_id:
            return user.roles
        return get_auth_config().roles_for(user_id)

    workflow = ApprovalWorkflow(approval_store, resolve_roles)
    return TransactionApprovalBridge(processor, workflow)


def get_workflow(bridge: TransactionApprovalBridge = Depends(get_bridge)) -> ApprovalWorkflow:
    return bridge.workflow


def success(data: Any) -> dict:
    """Wrap a payload in the response envelope."""
    return {"success": True, "data": data}
