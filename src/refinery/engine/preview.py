"""Row-by-row diff of an iteration's before and after samples."""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class CellChange:
    row: int
    column: str
    before: Any
    after: Any


@dataclass
class SampleDiff:
    """Differences between ``sample_before`` and ``sample_after``.

    Rows are paired by position. Rows past the end of the shorter sample are
    reported as added or removed rather than as cell changes.
    """

    changes: list[CellChange] = field(default_factory=list)
    rows_changed: int = 0
    rows_unchanged: int = 0
    rows_added: list[dict[str, Any]] = field(default_factory=list)
    rows_removed: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.changes or self.rows_added or self.rows_removed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "changes": [
                {
                    "row": change.row,
                    "column": change.column,
                    "before": change.before,
                    "after": change.after,
                }
                for change in self.changes
            ],
            "rows_changed": self.rows_changed,
            "rows_unchanged": self.rows_unchanged,
            "rows_added": self.rows_added,
            "rows_removed": self.rows_removed,
        }


def diff_samples(
    before: list[dict[str, Any]], after: list[dict[str, Any]]
) -> SampleDiff:
    diff = SampleDiff()

    for index, (old, new) in enumerate(zip(before, after)):
        columns = list(old) + [column for column in new if column not in old]
        row_changes = [
            CellChange(index, column, old.get(column), new.get(column))
            for column in columns
            if old.get(column) != new.get(column) or (column in old) != (column in new)
        ]
        if row_changes:
            diff.changes.extend(row_changes)
            diff.rows_changed += 1
        else:
            diff.rows_unchanged += 1

    paired = min(len(before), len(after))
    diff.rows_removed = list(before[paired:])
    diff.rows_added = list(after[paired:])
    return diff
