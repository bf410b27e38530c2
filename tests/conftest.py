"""Shared fixtures: file-backed DuckDB databases, services and fake oracles."""

from unittest.mock import AsyncMock

import pytest

from refinery.core.agents.evaluation import Evaluation
from refinery.core.policy import TransformationPolicy
from refinery.database import DatabaseManager
from refinery.database.models.plan import TransformationRequest
from refinery.database.services import ServiceContainer
from refinery.engine.iteration import IterationEngine
from refinery.engine.lifecycle import PlanLifecycleManager
from refinery.sandbox.executor import SandboxResult

CUSTOMER_ROWS = [
    (1, "alice", "ALICE@EXAMPLE.COM", "2024-01-05"),
    (2, "bob", "Bob@Example.com", "2024-02-11"),
    (3, "carol", None, "2024-03-20"),
]

UPPERCASE_CODE = """
def transform(data):
    return [{**row, "name": row["name"].upper()} for row in data]
"""


@pytest.fixture
def db_manager(tmp_path):
    """Use file-based DuckDB for thread-safe testing."""
    manager = DatabaseManager(str(tmp_path / "system.db"), str(tmp_path / "data.db"))
    manager.data_execute(
        """
        CREATE TABLE customers (
            id INTEGER,
            name VARCHAR,
            email VARCHAR,
            signup_date VARCHAR
        )
        """
    )
    manager.data_executemany(
        "INSERT INTO customers VALUES (?, ?, ?, ?)", [list(row) for row in CUSTOMER_ROWS]
    )
    yield manager
    manager.close()


@pytest.fixture
def services(db_manager):
    return ServiceContainer(db_manager)


@pytest.fixture
def policy():
    return TransformationPolicy.from_mapping(
        {
            "format_standardization": {"requires_iteration": True, "risk_level": "low"},
            "null_remediation": {"requires_iteration": False, "risk_level": "low"},
            "deduplication": {"requires_iteration": True, "risk_level": "high"},
            "custom": {"requires_iteration": True, "risk_level": "high"},
        }
    )


def _evaluation(accuracy: float, threshold: float = 0.95) -> Evaluation:
    return Evaluation(
        accuracy=accuracy,
        meets_threshold=accuracy >= threshold,
        issues=[] if accuracy >= threshold else ["Some rows were not transformed"],
        improvements=[] if accuracy >= threshold else ["Handle mixed-case values"],
        notes=f"Scored {accuracy}",
    )


def _result(success: bool = True, error: str | None = None) -> SandboxResult:
    if not success:
        return SandboxResult.failure(error or "ValueError: boom", execution_time_ms=3)
    return SandboxResult(
        success=True,
        output={
            "sample_before": [{"id": 1, "name": "alice"}],
            "sample_after": [{"id": 1, "name": "ALICE"}],
            "stats": {"total": 3, "transformed": 3, "unchanged": 0, "errors": 0},
        },
        rows=[],
        execution_time_ms=12,
    )


@pytest.fixture
def synthesizer():
    fake = AsyncMock()
    fake.synthesize = AsyncMock(return_value=UPPERCASE_CODE)
    return fake


@pytest.fixture
def evaluator():
    fake = AsyncMock()
    fake.evaluate = AsyncMock(return_value=_evaluation(0.5))
    return fake


@pytest.fixture
def sandbox():
    fake = AsyncMock()
    fake.execute = AsyncMock(return_value=_result())
    return fake


@pytest.fixture
def engine(services, policy, synthesizer, evaluator, sandbox):
    return IterationEngine(
        services,
        policy,
        synthesizer=synthesizer,
        evaluator=evaluator,
        sandbox=sandbox,
        sample_size=100,
        max_retries=2,
        retry_base_delay=0,
    )


@pytest.fixture
def lifecycle(services, policy, engine, sandbox):
    return PlanLifecycleManager(services, policy, engine, sandbox)


@pytest.fixture
def make_request():
    def factory(**overrides) -> TransformationRequest:
        fields = {
            "target_asset": "customers",
            "transformation_type": "format_standardization",
            "description": "Uppercase customer names",
            "requested_by": "dana",
            "target_column": "name",
        }
        fields.update(overrides)
        return TransformationRequest(**fields)

    return factory


@pytest.fixture
def make_evaluation():
    return _evaluation


@pytest.fixture
def make_result():
    return _result


@pytest.fixture
def uppercase_code():
    return UPPERCASE_CODE
