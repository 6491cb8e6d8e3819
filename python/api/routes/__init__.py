"""
API Routes Package

Contains all route modules for the budget ledger API.
"""

from .budgets import router as budgets_router
from .transactions import router as transactions_router
from .approvals import router as approvals_router

__all__ = [
    "budgets_router",
    "transactions_router",
    "approvals_router",
]
