"""Rich rendering of plans, previews and history for the CLI."""

import json
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from refinery.database.models.plan import PlanStatus, TransformationPlan

STATUS_STYLES = {
    PlanStatus.DRAFT: "dim",
    PlanStatus.ITERATING: "cyan",
    PlanStatus.PENDING_APPROVAL: "yellow",
    PlanStatus.APPROVED: "green",
    PlanStatus.REJECTED: "red",
    PlanStatus.EXECUTING: "cyan",
    PlanStatus.COMPLETED: "bold green",
    PlanStatus.FAILED: "bold red",
    PlanStatus.CANCELLED: "magenta",
}

MAX_DIFF_ROWS = 20


def _cell(value: Any) -> str:
    if value is None:
        return "[dim]NULL[/dim]"
    if isinstance(value, dict | list):
        return json.dumps(value, separators=(",", ":"), default=str)
    return str(value)


def _accuracy(value: float | None) -> str:
    return "n/a" if value is None else f"{value:.1%}"


class PlanConsole:
    """Output helpers shared by the CLI commands."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def show_system_error(self, message: str) -> None:
        self.console.print(f"❌ {message}", style="red")

    def show_system_success(self, message: str) -> None:
        self.console.print(f"✓ {message}")

    def show_warning(self, message: str) -> None:
        self.console.print(f"⚠️ {message}", style="yellow")

    def show_info(self, message: str) -> None:
        self.console.print(message)

    def show_json(self, data: Any) -> None:
        self.console.print_json(json.dumps(data, default=str))

    def show_table(self, title: str, columns: list[str], rows: list[list[str]]) -> None:
        table = Table(title=title, box=box.SIMPLE_HEAVY)
        for col in columns:
            table.add_column(col)

        if not rows:
            table.add_row(*(["-"] * len(columns)))
        else:
            for row in rows:
                table.add_row(*row)

        self.console.print(table)

    def show_key_values(self, title: str, pairs: list[list[str]]) -> None:
        table = Table(title=title, box=box.SIMPLE)
        table.add_column("Field", style="bold")
        table.add_column("Value")

        for pair in pairs:
            if len(pair) >= 2:
                table.add_row(pair[0], pair[1])

        self.console.print(table)

    def status_text(self, status: PlanStatus) -> str:
        style = STATUS_STYLES.get(status, "")
        return f"[{style}]{status.value}[/{style}]" if style else status.value

    def show_plan(self, plan: TransformationPlan) -> None:
        pairs = [
            ["Plan", plan.plan_id],
            ["Status", self.status_text(plan.status)],
            ["Asset", plan.target_asset + (f".{plan.target_column}" if plan.target_column else "")],
            ["Type", plan.transformation_type],
            ["Risk", plan.risk_level],
            ["Iterations", f"{plan.iteration_count}/{plan.max_iterations}"],
            [
                "Accuracy",
                f"{_accuracy(plan.final_accuracy)} "
                f"(required {plan.accuracy_threshold:.0%})",
            ],
            ["Requested by", plan.requested_by],
        ]
        if plan.cancel_requested:
            pairs.append(["Cancellation", "requested"])
        if plan.error_message:
            pairs.append(["Error", f"[red]{plan.error_message}[/red]"])
        self.show_key_values(plan.description, pairs)

    def show_code(self, code: str, title: str = "Generated code") -> None:
        self.console.print(
            Panel(
                Syntax(code, "python", theme="github-dark", line_numbers=True),
                title=title,
                border_style="color(240)",
            )
        )

    def show_preview(self, preview: dict[str, Any]) -> None:
        plan = preview["plan"]
        self.show_plan(plan)

        iterations = preview["iterations"]
        self.show_table(
            "Iterations",
            ["#", "Success", "Accuracy", "Meets threshold", "Time (ms)", "Issues"],
            [
                [
                    str(it.iteration_number),
                    "yes" if it.success else "[red]no[/red]",
                    _accuracy(it.accuracy),
                    "yes" if it.meets_threshold else "no",
                    str(it.execution_time_ms),
                    "; ".join(it.issues_found) or "-",
                ]
                for it in iterations
            ],
        )

        diff = preview["diff"]
        if diff.changes:
            rows = [
                [str(change.row), change.column, _cell(change.before), _cell(change.after)]
                for change in diff.changes[:MAX_DIFF_ROWS]
            ]
            self.show_table("Sample changes", ["Row", "Column", "Before", "After"], rows)
            if len(diff.changes) > MAX_DIFF_ROWS:
                self.show_info(
                    f"[dim]Showing {MAX_DIFF_ROWS} of {len(diff.changes)} changed cells[/dim]"
                )
        if diff.rows_added or diff.rows_removed:
            self.show_info(
                f"Sample rows added: {len(diff.rows_added)}, "
                f"removed: {len(diff.rows_removed)}"
            )

        risk = preview["risk"]
        affected = (
            "unknown" if risk.affected_row_count is None else f"{risk.affected_row_count:,}"
        )
        self.show_key_values(
            "Risk",
            [["Level", risk.level], ["Rows affected", affected]]
            + [["Factor", factor] for factor in risk.factors],
        )

        if plan.generated_code:
            self.show_code(plan.generated_code)

        execution = preview.get("execution")
        if execution is not None:
            self.show_key_values(
                "Execution",
                [
                    ["Outcome", execution.outcome.value],
                    ["Executed by", execution.executed_by],
                    ["Rows affected", _cell(execution.rows_affected)],
                    ["Attempts", str(execution.attempts)],
                    ["Error", _cell(execution.error_message)],
                ],
            )

    def show_history(self, history: dict[str, Any]) -> None:
        self.show_table(
            "Transformation plans",
            ["Plan", "Asset", "Type", "Status", "Accuracy", "Iterations", "Created"],
            [
                [
                    plan.plan_id,
                    plan.target_asset,
                    plan.transformation_type,
                    self.status_text(plan.status),
                    _accuracy(plan.final_accuracy),
                    str(plan.iteration_count),
                    plan.created_at.strftime("%Y-%m-%d %H:%M") if plan.created_at else "-",
                ]
                for plan in history["plans"]
            ],
        )
        stats = history["stats"]
        summary = ", ".join(
            f"{status}: {count}" for status, count in stats.items() if count and status != "total"
        )
        self.show_info(f"Total plans: {stats['total']}" + (f" ({summary})" if summary else ""))
