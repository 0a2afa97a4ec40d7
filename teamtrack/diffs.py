"""
Field-level change tracking for projects and tasks.

Each entity has an explicit list of mutable fields. A diff only contains
fields that were supplied in the update AND whose value actually changed,
with values normalized to JSON-safe primitives so they can be stored in the
activity log and the project revision history as-is.
"""

import enum
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping

from teamtrack.time_utils import as_utc

PROJECT_MUTABLE_FIELDS = ("title", "description", "key")

TASK_MUTABLE_FIELDS = (
    "title",
    "description",
    "type",
    "assignee_id",
    "status",
    "priority",
    "progress",
    "due_date",
)

FieldDiff = Dict[str, Dict[str, Any]]


def comparable(value: Any) -> Any:
    """Normalize a field value to a JSON-safe primitive for comparison and storage."""
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    return value


def _diff(current: Any, changes: Mapping[str, Any], fields: Iterable[str]) -> FieldDiff:
    diff: FieldDiff = {}
    for field in fields:
        if field not in changes:
            continue
        old = comparable(getattr(current, field))
        new = comparable(changes[field])
        if old != new:
            diff[field] = {"from": old, "to": new}
    return diff


def diff_project(project: Any, changes: Mapping[str, Any]) -> FieldDiff:
    """Compare the mutable project fields present in `changes` against `project`."""
    return _diff(project, changes, PROJECT_MUTABLE_FIELDS)


def diff_task(task: Any, changes: Mapping[str, Any]) -> FieldDiff:
    """Compare the mutable task fields present in `changes` against `task`."""
    return _diff(task, changes, TASK_MUTABLE_FIELDS)


def describe_changes(actor_name: str, diff: FieldDiff) -> List[str]:
    """
    Build one human-readable sentence per changed field.

    Example:
        >>> describe_changes("alice", {"title": {"from": "Old", "to": "New"}})
        ['alice changed title from "Old" to "New"']
    """
    sentences = []
    for field, change in diff.items():
        old = "empty" if change["from"] in (None, "") else change["from"]
        sentences.append(f'{actor_name} changed {field} from "{old}" to "{change["to"]}"')
    return sentences
