"""Risk assessment shown to reviewers in a plan preview."""

from dataclasses import asdict, dataclass, field
from typing import Any

from refinery.database.models.plan import TransformationPlan

LARGE_SCOPE_ROWS = 10_000
BATCH_ADVISORY_ROWS = 1_000


@dataclass
class RiskAssessment:
    level: str
    factors: list[str] = field(default_factory=list)
    affected_row_count: int | None = None
    reversible: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def assess_risk(
    plan: TransformationPlan, affected_row_count: int | None
) -> RiskAssessment:
    """List what a reviewer should weigh before approving ``plan``.

    The level comes from the plan itself (set from the policy table at
    creation); the factors depend on the plan type and the table size.
    """
    factors = []

    if affected_row_count is None:
        factors.append("Affected row count unknown: target asset could not be read")
    else:
        if affected_row_count > LARGE_SCOPE_ROWS:
            factors.append(f"Large scope: {affected_row_count:,} rows affected")
        if affected_row_count > BATCH_ADVISORY_ROWS:
            factors.append("Consider running in batches")

    if plan.transformation_type == "deduplication":
        factors.append("Deduplication may delete records")
    if plan.transformation_type == "custom":
        factors.append("Custom transformation - review carefully")

    if not factors:
        factors.append("Low risk transformation")

    # Execution always snapshots the table first
    factors.append("Reversible: rollback restores the pre-execution snapshot")

    return RiskAssessment(
        level=plan.risk_level,
        factors=factors,
        affected_row_count=affected_row_count,
        reversible=True,
    )
