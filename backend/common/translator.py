"""Translation between local task rows and Todoist task records."""
import hashlib
import json
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from common.models import (
    DueDatePrecision, ExternalEntityMap, MappingEntityType, Task, TaskPriority
)
from common.store import as_utc
from common.todoist import RemoteDue, RemoteTask, RemoteTaskPayload

LOCAL_TO_REMOTE_PRIORITY = {
    TaskPriority.none: 1,
    TaskPriority.low: 2,
    TaskPriority.medium: 3,
    TaskPriority.high: 4,
}
REMOTE_TO_LOCAL_PRIORITY = {value: key for key, value in LOCAL_TO_REMOTE_PRIORITY.items()}

COARSE_PRECISIONS = {DueDatePrecision.week, DueDatePrecision.month, DueDatePrecision.year}
MINUTES_PER_DAY = 1440


@dataclass
class MappingState:
    """One consistent view of the mappings, threaded through a whole pass."""

    project_to_list: Dict[str, Optional[int]] = field(default_factory=dict)
    list_label_to_list: Dict[str, Optional[int]] = field(default_factory=dict)
    label_to_local: Dict[str, int] = field(default_factory=dict)
    task_to_local: Dict[str, int] = field(default_factory=dict)
    task_precision: Dict[str, DueDatePrecision] = field(default_factory=dict)
    remote_labels: Dict[str, str] = field(default_factory=dict)  # remote label id -> name
    local_labels: Dict[int, str] = field(default_factory=dict)  # local label id -> name

    def project_for_list(self, list_id: Optional[int]) -> Optional[str]:
        if list_id is None:
            return None
        for project_id, mapped_list in self.project_to_list.items():
            if mapped_list == list_id:
                return project_id
        return None

    def list_label_for_list(self, list_id: Optional[int]) -> Optional[str]:
        if list_id is None:
            return None
        for label_id, mapped_list in self.list_label_to_list.items():
            if mapped_list == list_id:
                return label_id
        return None

    def is_list_exported(self, list_id: Optional[int]) -> bool:
        return self.project_for_list(list_id) is not None or self.list_label_for_list(list_id) is not None

    def remote_task_id(self, local_task_id: Optional[int]) -> Optional[str]:
        if local_task_id is None:
            return None
        for external_id, local_id in self.task_to_local.items():
            if local_id == local_task_id:
                return external_id
        return None

    def remote_label_id_by_name(self, name: str) -> Optional[str]:
        wanted = name.strip().lower()
        for label_id, label_name in self.remote_labels.items():
            if label_name.strip().lower() == wanted:
                return label_id
        return None

    def local_label_id_by_name(self, name: str) -> Optional[int]:
        wanted = name.strip().lower()
        for label_id, label_name in self.local_labels.items():
            if label_name.strip().lower() == wanted:
                return label_id
        return None

    def list_for_remote_task(self, task: RemoteTask) -> Optional[int]:
        """Project mapping first, then any label that backs a list."""
        if task.project_id is not None:
            list_id = self.project_to_list.get(task.project_id)
            if list_id is not None:
                return list_id
        for name in task.labels:
            label_id = self.remote_label_id_by_name(name)
            if label_id is None:
                continue
            list_id = self.list_label_to_list.get(label_id)
            if list_id is not None:
                return list_id
        return None

    def record_task(self, external_id: str, local_id: int) -> None:
        self.task_to_local[external_id] = local_id


def build_mapping_state(
    rows: Iterable[ExternalEntityMap],
    remote_labels: Optional[Dict[str, str]] = None,
    local_labels: Optional[Dict[int, str]] = None,
) -> MappingState:
    state = MappingState(
        remote_labels=dict(remote_labels or {}),
        local_labels=dict(local_labels or {}),
    )
    for row in rows:
        if row.entity_type == MappingEntityType.list:
            state.project_to_list[row.external_id] = row.local_id
        elif row.entity_type == MappingEntityType.list_label:
            state.list_label_to_list[row.external_id] = row.local_id
        elif row.entity_type == MappingEntityType.label:
            if row.local_id is not None:
                state.label_to_local[row.external_id] = row.local_id
        elif row.entity_type == MappingEntityType.task:
            if row.local_id is not None:
                state.task_to_local[row.external_id] = row.local_id
            if row.due_precision is not None:
                state.task_precision[row.external_id] = row.due_precision
    return state


@dataclass
class LocalTaskPatch:
    title: str
    description: Optional[str]
    priority: TaskPriority
    is_completed: bool
    completed_at: Optional[datetime]
    due_date: Optional[datetime]
    due_date_precision: Optional[DueDatePrecision]
    deadline: Optional[datetime]
    estimate_minutes: Optional[int]
    is_recurring: bool
    recurring_rule: Optional[str]
    parent_id: Optional[int]
    list_id: Optional[int]
    label_ids: List[int] = field(default_factory=list)


def _dedupe(values: Iterable[str]) -> List[str]:
    out: List[str] = []
    for value in values:
        if value not in out:
            out.append(value)
    return out


def _is_midnight(value: datetime) -> bool:
    return (value.hour, value.minute, value.second, value.microsecond) == (0, 0, 0, 0)


def to_remote(task: Task, label_ids: Sequence[int], state: MappingState) -> RemoteTaskPayload:
    project_id = state.project_for_list(task.list_id)
    label_names: List[str] = []
    if project_id is None:
        list_label_id = state.list_label_for_list(task.list_id)
        if list_label_id is not None and list_label_id in state.remote_labels:
            label_names.append(state.remote_labels[list_label_id])

    local_to_remote_label = {local_id: remote_id for remote_id, local_id in state.label_to_local.items()}
    for label_id in label_ids:
        remote_id = local_to_remote_label.get(label_id)
        # Labels never exported to Todoist are dropped rather than created remotely.
        if remote_id is None or remote_id not in state.remote_labels:
            continue
        label_names.append(state.remote_labels[remote_id])

    payload = RemoteTaskPayload(
        content=task.title,
        description=task.description or "",
        project_id=project_id,
        parent_id=state.remote_task_id(task.parent_id),
        labels=_dedupe(label_names),
        priority=LOCAL_TO_REMOTE_PRIORITY.get(task.priority or TaskPriority.none, 1),
    )

    due = as_utc(task.due_date)
    if task.is_recurring and task.recurring_rule:
        payload.due_string = task.recurring_rule
    elif due is not None:
        if task.due_date_precision in COARSE_PRECISIONS or _is_midnight(due):
            payload.due_date = due.date().isoformat()
        else:
            payload.due_datetime = due.strftime("%Y-%m-%dT%H:%M:%SZ")

    deadline = as_utc(task.deadline)
    if deadline is not None:
        payload.deadline_date = deadline.date().isoformat()
    if task.estimate_minutes:
        payload.duration = task.estimate_minutes
        payload.duration_unit = "minute"
    return payload


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return as_utc(parsed)


def parse_remote_due(
    due: Optional[RemoteDue], stored_precision: Optional[DueDatePrecision] = None
) -> Tuple[Optional[datetime], Optional[DueDatePrecision]]:
    if due is None or not due.date:
        return None, None
    raw = due.date.strip()
    if "T" in raw:
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None, None
        if parsed.tzinfo is None and due.timezone:
            try:
                parsed = parsed.replace(tzinfo=ZoneInfo(due.timezone))
            except ZoneInfoNotFoundError:
                pass
        return as_utc(parsed), DueDatePrecision.day
    try:
        day = date.fromisoformat(raw[:10])
    except ValueError:
        return None, None
    value = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    return value, stored_precision or DueDatePrecision.day


def to_local(task: RemoteTask, state: MappingState) -> LocalTaskPatch:
    due_date, precision = parse_remote_due(task.due, state.task_precision.get(task.id))

    deadline = None
    if task.deadline is not None:
        try:
            day = date.fromisoformat(task.deadline.date[:10])
            deadline = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
        except ValueError:
            deadline = None

    estimate = None
    if task.duration is not None:
        estimate = task.duration.amount * (MINUTES_PER_DAY if task.duration.unit == "day" else 1)

    list_label_ids = {label_id for label_id, list_id in state.list_label_to_list.items() if list_id is not None}
    label_ids: List[int] = []
    for name in task.labels:
        remote_id = state.remote_label_id_by_name(name)
        if remote_id is not None and remote_id in list_label_ids:
            continue
        local_id = state.label_to_local.get(remote_id) if remote_id is not None else None
        if local_id is None:
            local_id = state.local_label_id_by_name(name)
        if local_id is not None and local_id not in label_ids:
            label_ids.append(local_id)

    is_recurring = bool(task.due and task.due.is_recurring)
    return LocalTaskPatch(
        title=task.content,
        description=task.description or None,
        priority=REMOTE_TO_LOCAL_PRIORITY.get(task.priority, TaskPriority.none),
        is_completed=task.checked,
        completed_at=_parse_timestamp(task.completed_at) if task.checked else None,
        due_date=due_date,
        due_date_precision=precision,
        deadline=deadline,
        estimate_minutes=estimate,
        is_recurring=is_recurring,
        recurring_rule=task.due.string if is_recurring and task.due else None,
        parent_id=state.task_to_local.get(task.parent_id) if task.parent_id else None,
        list_id=state.list_for_remote_task(task),
        label_ids=label_ids,
    )


def apply_local_patch(task: Task, patch: LocalTaskPatch, now: datetime) -> None:
    """Overwrite the mutable fields of a local task with a translated remote version."""
    task.title = patch.title
    task.description = patch.description
    task.priority = patch.priority
    if patch.is_completed and not task.is_completed:
        task.completed_at = patch.completed_at or now
    elif not patch.is_completed:
        task.completed_at = None
    task.is_completed = patch.is_completed
    task.due_date = patch.due_date
    task.due_date_precision = patch.due_date_precision
    task.deadline = patch.deadline
    task.estimate_minutes = patch.estimate_minutes
    task.is_recurring = patch.is_recurring
    task.recurring_rule = patch.recurring_rule
    if patch.parent_id != task.id:
        task.parent_id = patch.parent_id
    if patch.list_id is not None:
        task.list_id = patch.list_id
    task.updated_at = now


def plan_move(payload: RemoteTaskPayload, remote: RemoteTask) -> Optional[Tuple[Optional[str], Optional[str]]]:
    """Return (project_id, parent_id) for a move call, or None when placement already matches."""
    if payload.parent_id is not None:
        if payload.parent_id != remote.parent_id:
            return None, payload.parent_id
        return None
    target_project = payload.project_id or remote.project_id
    if remote.parent_id is not None and target_project:
        return target_project, None
    if payload.project_id is not None and payload.project_id != remote.project_id:
        return payload.project_id, None
    return None


def remote_fingerprint(task: RemoteTask) -> str:
    """Stable hash of the fields a pass syncs; the remote last-modified marker."""
    material = {
        "content": task.content,
        "description": task.description or "",
        "project_id": task.project_id,
        "parent_id": task.parent_id,
        "labels": sorted(task.labels),
        "priority": task.priority,
        "due": task.due.model_dump() if task.due else None,
        "deadline": task.deadline.date if task.deadline else None,
        "duration": task.duration.model_dump() if task.duration else None,
        "checked": task.checked,
    }
    return hashlib.sha256(json.dumps(material, sort_keys=True).encode("utf-8")).hexdigest()


def local_snapshot(task: Task, label_ids: Sequence[int]) -> dict:
    """JSON-safe copy of a local task, stored on conflicts for display."""
    due = as_utc(task.due_date)
    deadline = as_utc(task.deadline)
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "priority": task.priority.value if task.priority else None,
        "is_completed": task.is_completed,
        "due_date": due.isoformat() if due else None,
        "due_date_precision": task.due_date_precision.value if task.due_date_precision else None,
        "deadline": deadline.isoformat() if deadline else None,
        "estimate_minutes": task.estimate_minutes,
        "list_id": task.list_id,
        "parent_id": task.parent_id,
        "label_ids": list(label_ids),
    }
