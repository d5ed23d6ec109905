"""One Todoist sync pass per user: fetch, diff, apply, record conflicts."""
import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from sqlalchemy import func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from common.config import settings
from common.crypto import ReconnectRequiredError, access_token_payload, decrypt_token, get_integration
from common.mapping import create_list, load_mappings
from common.models import (
    ConflictStatus, EventLog, ExternalEntityMap, ExternalSyncConflict, ExternalSyncState,
    Label, MappingEntityType, SyncStatus, Task, TODOIST_PROVIDER, utc_now
)
from common.results import RECONNECT_REQUIRED, SYNC_IN_PROGRESS
from common.store import as_utc, get_task_label_ids, list_labels, list_lists, list_tasks, set_task_labels
from common.todoist import (
    RemoteLabel, RemoteProject, RemoteTask, TodoistAPIError, TodoistAuthError, TodoistNotFoundError,
    collect_pages, create_todoist_client, fetch_all_labels, fetch_all_projects, fetch_all_tasks,
    fetch_completed_tasks
)
from common.translator import (
    MappingState, apply_local_patch, build_mapping_state, local_snapshot, plan_move,
    remote_fingerprint, to_local, to_remote
)

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], Any]

TASK_IDS_PER_REQUEST = 100


@dataclass
class SyncResult:
    status: str  # ok | error | skipped
    code: Optional[str] = None
    error: Optional[str] = None
    created_local: int = 0
    created_remote: int = 0
    updated_local: int = 0
    updated_remote: int = 0
    conflicts: int = 0
    failed: int = 0
    pending_conflicts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _record_event(db: AsyncSession, request_id: str, user_id: str, event_type: str,
                  entity_id: Optional[Any] = None, payload: Optional[dict] = None) -> None:
    db.add(EventLog(
        id=str(uuid.uuid4()), request_id=request_id, user_id=user_id,
        event_type=event_type, entity_type="task" if entity_id is not None else None,
        entity_id=str(entity_id) if entity_id is not None else None,
        payload_json=payload or {},
    ))


# --- Sync state / single-writer slot ---

def _state_filter(user_id: str):
    return (ExternalSyncState.user_id == user_id, ExternalSyncState.provider == TODOIST_PROVIDER)


async def _ensure_sync_state(db: AsyncSession, user_id: str) -> None:
    existing = (await db.execute(select(ExternalSyncState.id).where(*_state_filter(user_id)))).scalar_one_or_none()
    if existing is not None:
        return
    try:
        await db.execute(insert(ExternalSyncState).values(
            user_id=user_id, provider=TODOIST_PROVIDER, status=SyncStatus.idle,
        ))
        await db.commit()
    except IntegrityError:
        # Another caller created the row first.
        await db.rollback()


async def acquire_sync_slot(db: AsyncSession, user_id: str, now: datetime) -> bool:
    """Atomically move the state to syncing unless a live pass holds it.

    A pass recorded as syncing for longer than SYNC_STALE_AFTER_MINUTES is
    treated as wedged and taken over.
    """
    await _ensure_sync_state(db, user_id)
    stale_cutoff = now - timedelta(minutes=settings.SYNC_STALE_AFTER_MINUTES)
    stmt = (
        update(ExternalSyncState)
        .where(
            *_state_filter(user_id),
            or_(
                ExternalSyncState.status != SyncStatus.syncing,
                ExternalSyncState.sync_started_at.is_(None),
                ExternalSyncState.sync_started_at < stale_cutoff,
            ),
        )
        .values(status=SyncStatus.syncing, sync_started_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    await db.commit()
    return result.rowcount == 1


async def _finish_sync(db: AsyncSession, user_id: str, status: SyncStatus, error: Optional[str],
                       last_synced_at: Optional[datetime] = None) -> None:
    values: Dict[str, Any] = {"status": status, "error": error, "sync_started_at": None, "updated_at": utc_now()}
    if last_synced_at is not None:
        values["last_synced_at"] = last_synced_at
    await db.execute(
        update(ExternalSyncState)
        .where(*_state_filter(user_id))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def get_sync_state(db: AsyncSession, user_id: str) -> Optional[ExternalSyncState]:
    stmt = (
        select(ExternalSyncState)
        .where(*_state_filter(user_id))
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def count_pending_conflicts(db: AsyncSession, user_id: str) -> int:
    stmt = select(func.count(ExternalSyncConflict.id)).where(
        ExternalSyncConflict.user_id == user_id,
        ExternalSyncConflict.provider == TODOIST_PROVIDER,
        ExternalSyncConflict.status == ConflictStatus.pending,
    )
    return (await db.execute(stmt)).scalar() or 0


async def _pending_conflict_keys(db: AsyncSession, user_id: str) -> Tuple[Set[int], Set[str]]:
    stmt = select(ExternalSyncConflict.local_id, ExternalSyncConflict.external_id).where(
        ExternalSyncConflict.user_id == user_id,
        ExternalSyncConflict.provider == TODOIST_PROVIDER,
        ExternalSyncConflict.entity_type == MappingEntityType.task,
        ExternalSyncConflict.status == ConflictStatus.pending,
    )
    local_ids: Set[int] = set()
    external_ids: Set[str] = set()
    for local_id, external_id in (await db.execute(stmt)).all():
        if local_id is not None:
            local_ids.add(local_id)
        if external_id is not None:
            external_ids.add(external_id)
    return local_ids, external_ids


# --- Helpers shared with conflict resolution ---

def parents_first(items: Sequence[Any], key: Callable[[Any], Any], parent: Callable[[Any], Any]) -> List[Any]:
    """Order items so a parent inside the batch always precedes its children."""
    by_key = {key(item): item for item in items}

    def depth(item: Any) -> int:
        level = 0
        seen = set()
        current = parent(item)
        while current is not None and current in by_key and current not in seen:
            seen.add(current)
            level += 1
            current = parent(by_key[current])
        return level

    return sorted(items, key=depth)


async def push_local_task(client, task: Task, label_ids: Sequence[int], state: MappingState,
                          remote: RemoteTask) -> RemoteTask:
    """Make the remote task match the local one and return the refreshed remote record."""
    payload = to_remote(task, label_ids, state)
    await client.update_task(remote.id, payload)
    move = plan_move(payload, remote)
    if move is not None:
        await client.move_task(remote.id, project_id=move[0], parent_id=move[1])
    if task.is_completed and not remote.checked:
        await client.close_task(remote.id)
    elif not task.is_completed and remote.checked:
        await client.reopen_task(remote.id)
    refreshed = await client.get_task(remote.id)
    if refreshed is None:
        raise TodoistNotFoundError(f"Todoist task {remote.id} disappeared during update", 404)
    return refreshed


def mark_task_synced(row: ExternalEntityMap, local_version: datetime, remote: RemoteTask, precision) -> None:
    row.local_version = local_version
    row.remote_version = remote_fingerprint(remote)
    row.external_parent_id = remote.parent_id
    row.due_precision = precision


# --- Bootstrap of project and label mappings ---

async def _bootstrap_project_mappings(db: AsyncSession, user_id: str, projects: List[RemoteProject]) -> None:
    lists_by_name = {task_list.name.strip().lower(): task_list for task_list in await list_lists(db, user_id)}
    for project in projects[: settings.SYNC_DEFAULT_PROJECT_LIMIT]:
        task_list = lists_by_name.get(project.name.strip().lower())
        if task_list is None:
            task_list = await create_list(db, user_id, project.name)
            lists_by_name[project.name.strip().lower()] = task_list
        db.add(ExternalEntityMap(
            user_id=user_id, provider=TODOIST_PROVIDER, entity_type=MappingEntityType.list,
            local_id=task_list.id, external_id=project.id,
        ))
    await db.commit()
    logger.info(f"Bootstrapped default Todoist project mappings for user {user_id}")


async def _import_labels(db: AsyncSession, user_id: str, remote_labels: List[RemoteLabel],
                         remote_tasks: List[RemoteTask], rows: List[ExternalEntityMap]) -> None:
    """Map remote labels used by in-scope tasks to local labels, creating them by name if needed."""
    state = build_mapping_state(rows, {label.id: label.name for label in remote_labels})
    recorded = {row.external_id for row in rows if row.entity_type == MappingEntityType.label}
    used_names = set()
    for task in remote_tasks:
        if state.list_for_remote_task(task) is not None:
            used_names.update(name.strip().lower() for name in task.labels)
    if not used_names:
        return

    local_by_name = {label.name.strip().lower(): label for label in await list_labels(db, user_id)}
    mapped_local_ids = set(state.label_to_local.values())
    created = 0
    for remote_label in remote_labels:
        key = remote_label.name.strip().lower()
        if remote_label.id in recorded or remote_label.id in state.list_label_to_list or key not in used_names:
            continue
        local_label = local_by_name.get(key)
        if local_label is None or local_label.id in mapped_local_ids:
            local_label = Label(user_id=user_id, name=remote_label.name, position=remote_label.order or 0)
            db.add(local_label)
            await db.flush()
            local_by_name[key] = local_label
            created += 1
        mapped_local_ids.add(local_label.id)
        db.add(ExternalEntityMap(
            user_id=user_id, provider=TODOIST_PROVIDER, entity_type=MappingEntityType.label,
            local_id=local_label.id, external_id=remote_label.id,
        ))
    await db.commit()
    if created:
        logger.info(f"Imported {created} Todoist labels for user {user_id}")


# --- Per-task steps ---

async def _reconcile_mapped_task(db: AsyncSession, client, user_id: str, request_id: str,
                                 row: ExternalEntityMap, local: Task, remote: RemoteTask,
                                 label_ids: List[int], state: MappingState, result: SyncResult) -> None:
    fingerprint = remote_fingerprint(remote)
    if row.local_version is None or row.remote_version is None:
        # No baseline recorded yet; adopt the current versions.
        row.local_version = as_utc(local.updated_at)
        row.remote_version = fingerprint
        await db.commit()
        return

    local_changed = as_utc(local.updated_at) > as_utc(row.local_version)
    remote_changed = row.remote_version != fingerprint

    if local_changed and remote_changed:
        db.add(ExternalSyncConflict(
            user_id=user_id, provider=TODOIST_PROVIDER, entity_type=MappingEntityType.task,
            local_id=local.id, external_id=remote.id, conflict_type="both_modified",
            local_payload=local_snapshot(local, label_ids), external_payload=remote.model_dump(mode="json"),
            status=ConflictStatus.pending,
        ))
        _record_event(db, request_id, user_id, "todoist_sync_conflict_detected", local.id,
                      {"todoist_task_id": remote.id})
        await db.commit()
        result.conflicts += 1
        logger.info(f"Conflict detected for task {local.id} / Todoist {remote.id}")
        return

    if remote_changed:
        now = utc_now()
        patch = to_local(remote, state)
        apply_local_patch(local, patch, now)
        await set_task_labels(db, local.id, patch.label_ids)
        mark_task_synced(row, now, remote, patch.due_date_precision)
        await db.commit()
        result.updated_local += 1
        return

    if local_changed:
        try:
            refreshed = await push_local_task(client, local, label_ids, state, remote)
        except TodoistAuthError:
            raise
        except TodoistAPIError as exc:
            _skip_entity(db, request_id, user_id, local.id, remote.id, exc, result)
            await db.commit()
            return
        mark_task_synced(row, as_utc(local.updated_at), refreshed, local.due_date_precision)
        await db.commit()
        result.updated_remote += 1


def _skip_entity(db: AsyncSession, request_id: str, user_id: str, local_id: Optional[int],
                 todoist_id: Optional[str], exc: Exception, result: SyncResult) -> None:
    result.failed += 1
    logger.error(f"Failed to sync task {local_id} / Todoist {todoist_id}: {exc}")
    _record_event(db, request_id, user_id, "todoist_sync_task_failed", local_id,
                  {"todoist_task_id": todoist_id, "error": str(exc)})


async def _fetch_tasks_by_id(client, ids: Sequence[str]) -> List[RemoteTask]:
    found: List[RemoteTask] = []
    for start in range(0, len(ids), TASK_IDS_PER_REQUEST):
        chunk = list(ids[start:start + TASK_IDS_PER_REQUEST])
        found.extend(await collect_pages(lambda cursor, chunk=chunk: client.get_tasks(ids=chunk, cursor=cursor)))
    return found


async def _create_local_task(db: AsyncSession, user_id: str, remote: RemoteTask,
                             state: MappingState, result: SyncResult) -> None:
    now = utc_now()
    patch = to_local(remote, state)
    task = Task(user_id=user_id, title=patch.title, is_completed=False, created_at=now)
    apply_local_patch(task, patch, now)
    db.add(task)
    await db.flush()
    await set_task_labels(db, task.id, patch.label_ids)
    row = ExternalEntityMap(
        user_id=user_id, provider=TODOIST_PROVIDER, entity_type=MappingEntityType.task,
        local_id=task.id, external_id=remote.id,
    )
    mark_task_synced(row, now, remote, patch.due_date_precision)
    db.add(row)
    await db.commit()
    state.record_task(remote.id, task.id)
    result.created_local += 1


async def _create_remote_task(db: AsyncSession, client, user_id: str, request_id: str, task: Task,
                              label_ids: List[int], state: MappingState, result: SyncResult) -> None:
    payload = to_remote(task, label_ids, state)
    try:
        created = await client.create_task(payload)
    except TodoistAuthError:
        raise
    except TodoistAPIError as exc:
        _skip_entity(db, request_id, user_id, task.id, None, exc, result)
        await db.commit()
        return
    row = ExternalEntityMap(
        user_id=user_id, provider=TODOIST_PROVIDER, entity_type=MappingEntityType.task,
        local_id=task.id, external_id=created.id,
    )
    mark_task_synced(row, as_utc(task.updated_at), created, task.due_date_precision)
    db.add(row)
    await db.commit()
    state.record_task(created.id, task.id)
    result.created_remote += 1
    logger.info(f"Created Todoist task {created.id} for local task {task.id}")


# --- Pass ---

async def _run_pass_body(db: AsyncSession, user_id: str, token: str, client_factory: ClientFactory,
                         request_id: str, since: Optional[datetime], started: datetime,
                         result: SyncResult) -> None:
    client = client_factory(token)

    projects = await fetch_all_projects(client)
    remote_labels = await fetch_all_labels(client)
    remote_tasks = await fetch_all_tasks(client)
    remote_by_id: Dict[str, RemoteTask] = {task.id: task for task in remote_tasks}
    if since is not None:
        completed = await fetch_completed_tasks(
            client, since=as_utc(since).strftime("%Y-%m-%dT%H:%M:%SZ"), until=started.strftime("%Y-%m-%dT%H:%M:%SZ")
        )
        for task in completed:
            remote_by_id.setdefault(task.id, task)

    rows = await load_mappings(db, user_id)
    if not any(row.entity_type in (MappingEntityType.list, MappingEntityType.list_label) for row in rows):
        await _bootstrap_project_mappings(db, user_id, projects)
        rows = await load_mappings(db, user_id)

    await _import_labels(db, user_id, remote_labels, remote_tasks, rows)
    rows = await load_mappings(db, user_id)

    local_labels = await list_labels(db, user_id)
    state = build_mapping_state(
        rows,
        {label.id: label.name for label in remote_labels},
        {label.id: label.name for label in local_labels},
    )
    task_rows = {row.external_id: row for row in rows if row.entity_type == MappingEntityType.task}
    local_tasks = {task.id: task for task in await list_tasks(db, user_id)}
    label_ids_by_task = await get_task_label_ids(db, local_tasks.keys())
    pending_local, pending_external = await _pending_conflict_keys(db, user_id)

    reconcilable = {
        external_id: row for external_id, row in task_rows.items()
        if row.local_id in local_tasks
        and row.local_id not in pending_local and external_id not in pending_external
    }
    # Completed before the window or deleted remotely: ask for them by id.
    missing = [external_id for external_id in reconcilable if external_id not in remote_by_id]
    if missing:
        for task in await _fetch_tasks_by_id(client, missing):
            remote_by_id.setdefault(task.id, task)

    for external_id, row in reconcilable.items():
        local = local_tasks[row.local_id]
        remote = remote_by_id.get(external_id)
        if remote is None:
            _skip_entity(db, request_id, user_id, local.id, external_id,
                         TodoistNotFoundError(f"Todoist task {external_id} not found", 404), result)
            await db.commit()
            continue
        await _reconcile_mapped_task(
            db, client, user_id, request_id, row, local, remote,
            label_ids_by_task.get(local.id, []), state, result,
        )

    new_remote = [
        task for task in remote_tasks
        if task.id not in task_rows and not task.checked and state.list_for_remote_task(task) is not None
    ]
    for remote in parents_first(new_remote, key=lambda t: t.id, parent=lambda t: t.parent_id):
        await _create_local_task(db, user_id, remote, state, result)

    mapped_local_ids = set(state.task_to_local.values())
    mapped_local_ids.update(row.local_id for row in task_rows.values() if row.local_id is not None)
    new_local = [
        task for task in local_tasks.values()
        if task.id not in mapped_local_ids and not task.is_completed and state.is_list_exported(task.list_id)
    ]
    for task in parents_first(new_local, key=lambda t: t.id, parent=lambda t: t.parent_id):
        await _create_remote_task(
            db, client, user_id, request_id, task, label_ids_by_task.get(task.id, []), state, result,
        )


async def run_sync_pass(db: AsyncSession, user_id: str, client_factory: Optional[ClientFactory] = None,
                        request_id: Optional[str] = None) -> SyncResult:
    client_factory = client_factory or create_todoist_client
    request_id = request_id or f"sync_{uuid.uuid4()}"

    integration = await get_integration(db, user_id)
    if integration is None:
        return SyncResult(status="error", code=RECONNECT_REQUIRED, error="Todoist integration not connected.")
    sealed_token = access_token_payload(integration)

    started = utc_now()
    previous_state = await get_sync_state(db, user_id)
    since = previous_state.last_synced_at if previous_state is not None else None
    if not await acquire_sync_slot(db, user_id, started):
        logger.info(f"Todoist sync already running for user {user_id}, skipping")
        return SyncResult(status="skipped", code=SYNC_IN_PROGRESS, error="A Todoist sync is already running.")

    logger.info(f"Starting Todoist sync for user {user_id} ({request_id})")
    result = SyncResult(status="ok")
    error_message: Optional[str] = None
    try:
        token = decrypt_token(sealed_token)
        await asyncio.wait_for(
            _run_pass_body(db, user_id, token, client_factory, request_id, since, started, result),
            timeout=settings.SYNC_PASS_TIMEOUT_SECONDS,
        )
    except ReconnectRequiredError as exc:
        result.code = RECONNECT_REQUIRED
        error_message = str(exc)
    except TodoistAuthError as exc:
        result.code = RECONNECT_REQUIRED
        error_message = f"Todoist integration reconnection required: {exc}"
    except asyncio.TimeoutError:
        error_message = f"Todoist sync timed out after {settings.SYNC_PASS_TIMEOUT_SECONDS}s."
    except Exception as exc:
        logger.exception(f"Todoist sync failed for user {user_id}")
        error_message = str(exc) or exc.__class__.__name__

    if error_message is not None:
        # Work already committed stays; only the in-flight step is discarded.
        await db.rollback()
        result.status = "error"
        result.error = error_message
        _record_event(db, request_id, user_id, "todoist_sync_failed", payload={"error": error_message})
        await _finish_sync(db, user_id, SyncStatus.error, error_message)
        logger.error(f"Todoist sync failed for user {user_id}: {error_message}")
        return result

    result.pending_conflicts = await count_pending_conflicts(db, user_id)
    _record_event(db, request_id, user_id, "todoist_sync_completed", payload=result.to_dict())
    await _finish_sync(db, user_id, SyncStatus.idle, None, last_synced_at=started)
    logger.info(
        f"Todoist sync complete for user {user_id}: "
        f"{result.created_local} pulled, {result.created_remote} pushed, {result.conflicts} conflicts"
    )
    return result
