"""Read/update helpers over the local task store, always keyed by user."""
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from common.models import Label, Task, TaskLabel, TaskList


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on round trip; treat naive values as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def get_task(db: AsyncSession, user_id: str, task_id: int) -> Optional[Task]:
    stmt = select(Task).where(Task.id == task_id, Task.user_id == user_id)
    return (await db.execute(stmt)).scalar_one_or_none()


async def list_tasks(db: AsyncSession, user_id: str) -> List[Task]:
    stmt = select(Task).where(Task.user_id == user_id).order_by(Task.id)
    return list((await db.execute(stmt)).scalars().all())


async def list_lists(db: AsyncSession, user_id: str) -> List[TaskList]:
    stmt = select(TaskList).where(TaskList.user_id == user_id).order_by(TaskList.position, TaskList.id)
    return list((await db.execute(stmt)).scalars().all())


async def list_labels(db: AsyncSession, user_id: str) -> List[Label]:
    stmt = select(Label).where(Label.user_id == user_id).order_by(Label.position, Label.id)
    return list((await db.execute(stmt)).scalars().all())


async def max_list_position(db: AsyncSession, user_id: str) -> Optional[int]:
    stmt = select(func.max(TaskList.position)).where(TaskList.user_id == user_id)
    return (await db.execute(stmt)).scalar()


async def owned_ids(db: AsyncSession, model, user_id: str, ids: Iterable[int]) -> set:
    wanted = list(set(ids))
    if not wanted:
        return set()
    stmt = select(model.id).where(model.user_id == user_id, model.id.in_(wanted))
    return set((await db.execute(stmt)).scalars().all())


async def get_task_label_ids(db: AsyncSession, task_ids: Iterable[int]) -> Dict[int, List[int]]:
    wanted = list(set(task_ids))
    out: Dict[int, List[int]] = {task_id: [] for task_id in wanted}
    if not wanted:
        return out
    stmt = (
        select(TaskLabel.task_id, TaskLabel.label_id)
        .where(TaskLabel.task_id.in_(wanted))
        .order_by(TaskLabel.task_id, TaskLabel.label_id)
    )
    for task_id, label_id in (await db.execute(stmt)).all():
        out[task_id].append(label_id)
    return out


async def set_task_labels(db: AsyncSession, task_id: int, label_ids: Iterable[int]) -> bool:
    """Replace the label set of a task. Returns True when the set changed."""
    desired = sorted(set(label_ids))
    current = (await get_task_label_ids(db, [task_id])).get(task_id, [])
    if sorted(current) == desired:
        return False
    await db.execute(delete(TaskLabel).where(TaskLabel.task_id == task_id))
    for label_id in desired:
        db.add(TaskLabel(task_id=task_id, label_id=label_id))
    await db.flush()
    return True
