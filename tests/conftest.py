"""
Pytest configuration and fixtures for budget ledger tests.
"""

import os
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from pathlib import Path

import pytest
import yaml

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT / "python"))

from approvals import ApprovalWorkflow, InMemoryApprovalStore, TransactionApprovalBridge  # noqa: E402
from budget import (  # noqa: E402
    BudgetLedger,
    ForecastEngine,
    InsufficientBudgetError,
    InMemoryLedgerStore,
    ThresholdChecker,
    TransactionProcessor,
)

USER_ROLES = {
    "alice": ["A"],
    "bob": ["B"],
    "carol": ["C"],
    "pm.santos": ["PROJECT_MANAGER"],
    "fc.reyes": ["FINANCE_CONTROLLER"],
    "sup.cruz": ["SUPERVISOR"],
    "admin": ["ADMIN"],
}


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def config_dir() -> Path:
    """Return the config directory path."""
    return PROJECT_ROOT / "config"


@pytest.fixture
def budget_thresholds(config_dir: Path) -> dict:
    """Load the budget thresholds configuration."""
    with open(config_dir / "budget_thresholds.yaml") as f:
        return yaml.safe_load(f)


@pytest.fixture
def write_config(tmp_path: Path):
    """Write a YAML file into a temporary config directory."""
    def _write(filename: str, data: dict) -> Path:
        with open(tmp_path / filename, "w") as f:
            yaml.safe_dump(data, f)
        return tmp_path

    return _write


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def ledger(store, config_dir) -> BudgetLedger:
    return BudgetLedger(store, config_dir)


@pytest.fixture
def processor(store) -> TransactionProcessor:
    return TransactionProcessor(store)


@pytest.fixture
def checker(store, config_dir) -> ThresholdChecker:
    return ThresholdChecker(store, config_dir)


@pytest.fixture
def forecast_engine(store, config_dir) -> ForecastEngine:
    return ForecastEngine(store, config_dir)


@pytest.fixture
def approval_store() -> InMemoryApprovalStore:
    return InMemoryApprovalStore()


@pytest.fixture
def role_resolver():
    """Resolve roles from the static USER_ROLES table."""
    return lambda user_id: USER_ROLES.get(user_id, [])


@pytest.fixture
def workflow(approval_store, role_resolver, config_dir) -> ApprovalWorkflow:
    return ApprovalWorkflow(approval_store, role_resolver, config_dir)


@pytest.fixture
def bridge(processor, workflow, config_dir) -> TransactionApprovalBridge:
    return TransactionApprovalBridge(processor, workflow, config_dir)


@pytest.fixture
def line(ledger):
    """An active 100,000 EQUIPMENT line for FY2025."""
    return ledger.allocate("PRJ-001", "EQUIPMENT", Decimal("100000"), 2025, created_by="pm.santos")


@pytest.fixture
def concurrent_spends():
    """Record one EXPENSE per worker against a line, all released at once.

    Returns the outcome of each call: "ok" or "insufficient".
    """
    def _run(processor: TransactionProcessor, line_id: str, amount, workers: int) -> list[str]:
        barrier = threading.Barrier(workers)

        def spend(i):
            barrier.wait()
            try:
                processor.record(line_id, "EXPENSE", amount, f"Concurrent spend {i}")
                return "ok"
            except InsufficientBudgetError:
                return "insufficient"

        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(spend, range(workers)))

    return _run


# Environment setup for tests
@pytest.fixture(autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ.setdefault("ENVIRONMENT", "development")
    os.environ.setdefault("LEDGER_STORE", "memory")
    os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
    yield
