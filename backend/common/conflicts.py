import logging
import uuid
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from common.crypto import ReconnectRequiredError, get_access_token
from common.mapping import load_mappings
from common.models import (
    ConflictResolution, ConflictStatus, EventLog, ExternalEntityMap, ExternalSyncConflict,
    MappingEntityType, TODOIST_PROVIDER, utc_now
)
from common.results import (
    ActionResult, ALREADY_RESOLVED, NOT_FOUND, RECONNECT_REQUIRED, REMOTE_ERROR,
    UNSUPPORTED_ENTITY, VALIDATION_ERROR
)
from common.store import as_utc, get_task, get_task_label_ids, list_labels, set_task_labels
from common.sync import ClientFactory, mark_task_synced, push_local_task
from common.todoist import TodoistAPIError, TodoistAuthError, create_todoist_client, fetch_all_labels
from common.translator import apply_local_patch, build_mapping_state, to_local

logger = logging.getLogger(__name__)


async def list_conflicts(db: AsyncSession, user_id: str) -> List[ExternalSyncConflict]:
    """Pending conflicts for the user, oldest first."""
    stmt = (
        select(ExternalSyncConflict)
        .where(
            ExternalSyncConflict.user_id == user_id,
            ExternalSyncConflict.provider == TODOIST_PROVIDER,
            ExternalSyncConflict.status == ConflictStatus.pending,
        )
        .order_by(ExternalSyncConflict.created_at, ExternalSyncConflict.id)
    )
    return list((await db.execute(stmt)).scalars().all())


async def _get_conflict(db: AsyncSession, user_id: str, conflict_id: int) -> Optional[ExternalSyncConflict]:
    stmt = (
        select(ExternalSyncConflict)
        .where(
            ExternalSyncConflict.id == conflict_id,
            ExternalSyncConflict.user_id == user_id,
            ExternalSyncConflict.provider == TODOIST_PROVIDER,
        )
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def _task_mapping(db: AsyncSession, user_id: str, match) -> Optional[ExternalEntityMap]:
    stmt = select(ExternalEntityMap).where(
        ExternalEntityMap.user_id == user_id,
        ExternalEntityMap.provider == TODOIST_PROVIDER,
        ExternalEntityMap.entity_type == MappingEntityType.task,
        match,
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def resolve_conflict(
    db: AsyncSession,
    user_id: str,
    conflict_id: int,
    resolution: str,
    client_factory: Optional[ClientFactory] = None,
) -> ActionResult:
    """Apply the chosen side of a task conflict to the other side and close the conflict.

    "local" pushes the local task to Todoist, "remote" overwrites the local
    task with the Todoist version. A conflict closes at most once.
    """
    try:
        choice = ConflictResolution(resolution)
    except ValueError:
        return ActionResult.fail(VALIDATION_ERROR, "Resolution must be 'local' or 'remote'.")

    conflict = await _get_conflict(db, user_id, conflict_id)
    if conflict is None:
        return ActionResult.fail(NOT_FOUND, "Conflict not found.")
    if conflict.status == ConflictStatus.resolved:
        return ActionResult.fail(ALREADY_RESOLVED, "Conflict already resolved.")
    if conflict.entity_type != MappingEntityType.task:
        return ActionResult.fail(
            UNSUPPORTED_ENTITY, f"Resolving {conflict.entity_type.value} conflicts is not yet supported."
        )

    task = await get_task(db, user_id, conflict.local_id) if conflict.local_id is not None else None
    if task is None:
        return ActionResult.fail(NOT_FOUND, "Local task no longer exists.")

    try:
        token = await get_access_token(db, user_id)
    except ReconnectRequiredError as exc:
        return ActionResult.fail(RECONNECT_REQUIRED, str(exc))

    client = (client_factory or create_todoist_client)(token)
    now = utc_now()
    try:
        remote = await client.get_task(conflict.external_id)
        if remote is None:
            return ActionResult.fail(NOT_FOUND, "Todoist task no longer exists.")

        remote_labels = await fetch_all_labels(client)
        state = build_mapping_state(
            await load_mappings(db, user_id),
            {label.id: label.name for label in remote_labels},
            {label.id: label.name for label in await list_labels(db, user_id)},
        )
        label_ids = (await get_task_label_ids(db, [task.id])).get(task.id, [])

        if choice == ConflictResolution.local:
            final_remote = await push_local_task(client, task, label_ids, state, remote)
            local_version = as_utc(task.updated_at)
            precision = task.due_date_precision
        else:
            patch = to_local(remote, state)
            apply_local_patch(task, patch, now)
            await set_task_labels(db, task.id, patch.label_ids)
            final_remote = remote
            local_version = now
            precision = patch.due_date_precision
    except TodoistAuthError as exc:
        await db.rollback()
        return ActionResult.fail(RECONNECT_REQUIRED, f"Todoist integration reconnection required: {exc}")
    except TodoistAPIError as exc:
        await db.rollback()
        logger.error(f"Todoist error resolving conflict {conflict_id}: {exc}")
        return ActionResult.fail(REMOTE_ERROR, str(exc))

    closed = await db.execute(
        update(ExternalSyncConflict)
        .where(ExternalSyncConflict.id == conflict.id, ExternalSyncConflict.status == ConflictStatus.pending)
        .values(status=ConflictStatus.resolved, resolution=choice, resolved_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if closed.rowcount != 1:
        await db.rollback()
        return ActionResult.fail(ALREADY_RESOLVED, "Conflict already resolved.")

    row = await _task_mapping(db, user_id, ExternalEntityMap.external_id == final_remote.id)
    if row is None:
        # The local task may still be linked to a different Todoist id.
        row = await _task_mapping(db, user_id, ExternalEntityMap.local_id == task.id)
        if row is not None:
            row.external_id = final_remote.id
    if row is None:
        row = ExternalEntityMap(
            user_id=user_id, provider=TODOIST_PROVIDER, entity_type=MappingEntityType.task,
            local_id=task.id, external_id=final_remote.id,
        )
        db.add(row)
    mark_task_synced(row, local_version, final_remote, precision)

    db.add(EventLog(
        id=str(uuid.uuid4()), request_id=f"resolve_{conflict.id}", user_id=user_id,
        event_type="todoist_conflict_resolved", entity_type="task", entity_id=str(task.id),
        payload_json={"conflict_id": conflict.id, "resolution": choice.value, "todoist_task_id": final_remote.id},
    ))
    await db.commit()
    logger.info(f"Resolved conflict {conflict.id} for user {user_id} with {choice.value}")
    return ActionResult.ok(conflict_id=conflict.id, resolution=choice.value)
