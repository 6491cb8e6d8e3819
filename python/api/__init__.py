"""
FastAPI Backend for the PMIS Budget Ledger

Provides REST API endpoints over the budget ledger and approval workflow.
"""

from .main import app

__all__ = ["app"]
