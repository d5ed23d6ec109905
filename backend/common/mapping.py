import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from common.config import settings
from common.models import (
    ExternalEntityMap, Label, MappingEntityType, Task, TaskList, TODOIST_PROVIDER
)
from common.results import ActionResult, NOT_FOUND, VALIDATION_ERROR
from common.store import max_list_position, owned_ids

logger = logging.getLogger(__name__)

# Which local table a mapping's local_id points into.
LOCAL_TARGETS = {
    MappingEntityType.list: (TaskList, "List"),
    MappingEntityType.list_label: (TaskList, "List"),
    MappingEntityType.label: (Label, "Label"),
    MappingEntityType.task: (Task, "Task"),
}


@dataclass
class MappingEntry:
    external_id: str
    local_id: Optional[int] = None


def slugify(value: str) -> str:
    slug = value.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_-]+", "-", slug)
    return slug.strip("-")


def _first_duplicate(values: Sequence) -> Optional[object]:
    seen = set()
    for value in values:
        if value in seen:
            return value
        seen.add(value)
    return None


async def load_mappings(
    db: AsyncSession, user_id: str, entity_type: Optional[MappingEntityType] = None
) -> List[ExternalEntityMap]:
    stmt = select(ExternalEntityMap).where(
        ExternalEntityMap.user_id == user_id,
        ExternalEntityMap.provider == TODOIST_PROVIDER,
    )
    if entity_type is not None:
        stmt = stmt.where(ExternalEntityMap.entity_type == entity_type)
    stmt = stmt.order_by(ExternalEntityMap.id)
    return list((await db.execute(stmt)).scalars().all())


async def set_mappings(
    db: AsyncSession,
    user_id: str,
    entity_type: MappingEntityType,
    entries: Sequence[MappingEntry],
) -> ActionResult:
    """Replace the full mapping set for one entity type.

    The submitted entries are the complete desired state: nothing is written
    unless every entry validates, then rows missing from the set are deleted
    and the rest are upserted.
    """
    if len(entries) > settings.MAPPING_MAX_ENTRIES:
        return ActionResult.fail(
            VALIDATION_ERROR, f"Too many mappings submitted ({len(entries)} > {settings.MAPPING_MAX_ENTRIES})."
        )
    for entry in entries:
        if not isinstance(entry.external_id, str) or not entry.external_id.strip():
            return ActionResult.fail(VALIDATION_ERROR, "Every mapping needs a remote id.")

    duplicate_external = _first_duplicate([entry.external_id for entry in entries])
    if duplicate_external is not None:
        return ActionResult.fail(VALIDATION_ERROR, f"Remote item {duplicate_external} is mapped more than once.")

    local_ids = [entry.local_id for entry in entries if entry.local_id is not None]
    model, noun = LOCAL_TARGETS[entity_type]
    duplicate_local = _first_duplicate(local_ids)
    if duplicate_local is not None:
        return ActionResult.fail(VALIDATION_ERROR, f"{noun} {duplicate_local} can only be mapped once.")

    owned = await owned_ids(db, model, user_id, local_ids)
    missing = sorted(set(local_ids) - owned)
    if missing:
        return ActionResult.fail(NOT_FOUND, f"{noun} {missing[0]} was not found.")

    desired = {entry.external_id: entry.local_id for entry in entries}
    existing = {row.external_id: row for row in await load_mappings(db, user_id, entity_type)}

    try:
        # Release local ids first so swapped targets never trip the unique index mid-update.
        for external_id, row in existing.items():
            if external_id not in desired:
                await db.delete(row)
            elif row.local_id != desired[external_id]:
                row.local_id = None
        await db.flush()

        for entry in entries:
            row = existing.get(entry.external_id)
            if row is not None:
                row.local_id = entry.local_id
            else:
                db.add(ExternalEntityMap(
                    user_id=user_id,
                    provider=TODOIST_PROVIDER,
                    entity_type=entity_type,
                    local_id=entry.local_id,
                    external_id=entry.external_id,
                ))
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.warning(f"Concurrent mapping change for user {user_id} ({entity_type.value})")
        return ActionResult.fail(VALIDATION_ERROR, "Mappings changed while saving; reload and try again.")

    logger.info(f"Saved {len(entries)} {entity_type.value} mappings for user {user_id}")
    return ActionResult.ok(count=len(entries))


async def set_project_mappings(db: AsyncSession, user_id: str, entries: Sequence[MappingEntry]) -> ActionResult:
    return await set_mappings(db, user_id, MappingEntityType.list, entries)


async def set_label_mappings(db: AsyncSession, user_id: str, entries: Sequence[MappingEntry]) -> ActionResult:
    return await set_mappings(db, user_id, MappingEntityType.list_label, entries)


async def unique_list_slug(db: AsyncSession, user_id: str, name: str) -> str:
    base = slugify(name) or "list"
    stmt = select(TaskList.slug).where(
        TaskList.user_id == user_id,
        TaskList.slug.like(f"{base}%"),
    )
    taken = set((await db.execute(stmt)).scalars().all())
    slug = base
    suffix = 2
    while slug in taken:
        slug = f"{base}-{suffix}"
        suffix += 1
    return slug


async def create_list(db: AsyncSession, user_id: str, name: str) -> TaskList:
    """Insert a list with a unique slug after the user's last list. Flushes, does not commit."""
    current_max = await max_list_position(db, user_id)
    task_list = TaskList(
        user_id=user_id,
        name=name,
        slug=await unique_list_slug(db, user_id, name),
        position=0 if current_max is None else current_max + 1,
    )
    db.add(task_list)
    await db.flush()
    return task_list


async def create_mapping_list(db: AsyncSession, user_id: str, name: str) -> ActionResult:
    cleaned = (name or "").strip()
    if not cleaned:
        return ActionResult.fail(VALIDATION_ERROR, "List name is required.")
    task_list = await create_list(db, user_id, cleaned)
    await db.commit()
    return ActionResult.ok(list=task_list)


async def resolve_local_id(
    db: AsyncSession, user_id: str, external_id: str, entity_type: MappingEntityType
) -> Optional[int]:
    stmt = select(ExternalEntityMap.local_id).where(
        ExternalEntityMap.user_id == user_id,
        ExternalEntityMap.provider == TODOIST_PROVIDER,
        ExternalEntityMap.entity_type == entity_type,
        ExternalEntityMap.external_id == external_id,
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def resolve_external_id(
    db: AsyncSession, user_id: str, local_id: int, entity_type: MappingEntityType
) -> Optional[str]:
    stmt = select(ExternalEntityMap.external_id).where(
        ExternalEntityMap.user_id == user_id,
        ExternalEntityMap.provider == TODOIST_PROVIDER,
        ExternalEntityMap.entity_type == entity_type,
        ExternalEntityMap.local_id == local_id,
    )
    return (await db.execute(stmt)).scalar_one_or_none()
