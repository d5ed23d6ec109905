"""Connect, disconnect and inspect a user's Todoist integration."""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from common.config import settings
from common.crypto import (
    ReconnectRequiredError, encrypt_token, get_access_token, get_integration, rotate_tokens,
    store_access_token, store_refresh_token
)
from common.mapping import load_mappings
from common.models import (
    ExternalEntityMap, ExternalIntegration, ExternalSyncConflict, ExternalSyncState,
    MappingEntityType, TODOIST_PROVIDER, utc_now
)
from common.results import ActionResult, NOT_FOUND, RECONNECT_REQUIRED, REMOTE_ERROR, VALIDATION_ERROR
from common.store import list_lists
from common.sync import ClientFactory, count_pending_conflicts, get_sync_state
from common.todoist import TodoistAPIError, TodoistAuthError, create_todoist_client, fetch_all_labels, fetch_all_projects

logger = logging.getLogger(__name__)


async def connect_todoist(
    db: AsyncSession, user_id: str, token: str, client_factory: Optional[ClientFactory] = None
) -> ActionResult:
    cleaned = (token or "").strip()
    if not cleaned:
        return ActionResult.fail(VALIDATION_ERROR, "Todoist API token is required.")

    client = (client_factory or create_todoist_client)(cleaned)
    try:
        await client.get_projects(limit=1)
    except TodoistAuthError:
        return ActionResult.fail(VALIDATION_ERROR, "Todoist rejected the API token.")
    except TodoistAPIError as exc:
        logger.error(f"Todoist handshake failed for user {user_id}: {exc}")
        return ActionResult.fail(REMOTE_ERROR, f"Could not reach Todoist: {exc}")

    encrypted = encrypt_token(cleaned)
    integration = await get_integration(db, user_id)
    if integration is None:
        integration = ExternalIntegration(user_id=user_id, provider=TODOIST_PROVIDER)
        db.add(integration)
    store_access_token(integration, encrypted)
    store_refresh_token(integration, None)
    integration.metadata_json = {"connected_at": utc_now().isoformat()}
    integration.updated_at = utc_now()
    await db.commit()
    logger.info(f"Connected Todoist for user {user_id} (key {encrypted.key_id})")
    return ActionResult.ok(connected=True)


async def disconnect_todoist(db: AsyncSession, user_id: str) -> ActionResult:
    """Remove the credential and every mapping, conflict and sync-state row for Todoist."""
    for model in (ExternalSyncConflict, ExternalEntityMap, ExternalSyncState, ExternalIntegration):
        await db.execute(delete(model).where(model.user_id == user_id, model.provider == TODOIST_PROVIDER))
    await db.commit()
    logger.info(f"Disconnected Todoist for user {user_id}")
    return ActionResult.ok(disconnected=True)


async def rotate_integration(db: AsyncSession, user_id: str) -> ActionResult:
    try:
        key_id = await rotate_tokens(db, user_id)
    except ReconnectRequiredError as exc:
        return ActionResult.fail(RECONNECT_REQUIRED, str(exc))
    if key_id is None:
        return ActionResult.fail(NOT_FOUND, "Todoist integration not connected.")
    return ActionResult.ok(key_id=key_id)


async def connected_user_ids(db: AsyncSession) -> List[str]:
    stmt = (
        select(ExternalIntegration.user_id)
        .where(ExternalIntegration.provider == TODOIST_PROVIDER)
        .order_by(ExternalIntegration.user_id)
    )
    return list((await db.execute(stmt)).scalars().all())


async def rotate_all_tokens(db: AsyncSession) -> Dict[str, int]:
    """Re-encrypt every stored Todoist credential; unreadable ones are counted, not raised."""
    rotated = 0
    failed = 0
    for user_id in await connected_user_ids(db):
        result = await rotate_integration(db, user_id)
        if result.success:
            rotated += 1
        else:
            failed += 1
            logger.warning(f"Could not rotate Todoist tokens for user {user_id}: {result.error}")
    return {"rotated": rotated, "failed": failed}


def _mapping_entries(rows: List[ExternalEntityMap], entity_type: MappingEntityType) -> List[Dict[str, Any]]:
    return [
        {"external_id": row.external_id, "local_id": row.local_id}
        for row in rows if row.entity_type == entity_type
    ]


async def get_mapping_data(
    db: AsyncSession, user_id: str, client_factory: Optional[ClientFactory] = None
) -> ActionResult:
    """Everything the mapping screen needs: remote projects/labels, local lists, current mappings."""
    try:
        token = await get_access_token(db, user_id)
    except ReconnectRequiredError as exc:
        return ActionResult.fail(RECONNECT_REQUIRED, str(exc))

    client = (client_factory or create_todoist_client)(token)
    try:
        projects = await fetch_all_projects(client)
        labels = await fetch_all_labels(client)
    except TodoistAuthError as exc:
        return ActionResult.fail(RECONNECT_REQUIRED, f"Todoist integration reconnection required: {exc}")
    except TodoistAPIError as exc:
        return ActionResult.fail(REMOTE_ERROR, str(exc))

    rows = await load_mappings(db, user_id)
    lists = await list_lists(db, user_id)
    return ActionResult.ok(
        projects=[
            {"id": project.id, "name": project.name}
            for project in projects[: settings.SYNC_DEFAULT_PROJECT_LIMIT]
        ],
        labels=[{"id": label.id, "name": label.name} for label in labels],
        lists=[{"id": task_list.id, "name": task_list.name} for task_list in lists],
        project_mappings=_mapping_entries(rows, MappingEntityType.list),
        label_mappings=_mapping_entries(rows, MappingEntityType.list_label),
    )


async def get_sync_status(db: AsyncSession, user_id: str) -> Dict[str, Any]:
    integration = await get_integration(db, user_id)
    state = await get_sync_state(db, user_id)
    return {
        "connected": integration is not None,
        "status": state.status.value if state else "idle",
        "last_synced_at": state.last_synced_at.isoformat() if state and state.last_synced_at else None,
        "sync_started_at": state.sync_started_at.isoformat() if state and state.sync_started_at else None,
        "error": state.error if state else None,
        "pending_conflicts": await count_pending_conflicts(db, user_id),
    }
