import asyncio

from common.mapping import (
    MappingEntry, create_list, create_mapping_list, load_mappings, resolve_external_id, resolve_local_id,
    set_label_mappings, set_project_mappings, slugify
)
from common.models import MappingEntityType, TaskList
from common.results import NOT_FOUND, VALIDATION_ERROR
from fakes import OTHER_USER, USER, memory_db


async def _lists(db, user_id=USER, names=("Groceries", "Work")):
    created = []
    for position, name in enumerate(names):
        task_list = TaskList(user_id=user_id, name=name, slug=slugify(name), position=position)
        db.add(task_list)
        created.append(task_list)
    await db.commit()
    return created


def test_project_mappings_replace_the_full_set():
    async def _run():
        async with memory_db() as session_factory:
            async with session_factory() as db:
                groceries, work = await _lists(db)

                result = await set_project_mappings(db, USER, [
                    MappingEntry("proj_1", groceries.id),
                    MappingEntry("proj_2", work.id),
                    MappingEntry("proj_3", None),
                ])
                assert result.success
                assert result.data["count"] == 3

                # Swap targets and drop proj_3 in one replacement.
                result = await set_project_mappings(db, USER, [
                    MappingEntry("proj_1", work.id),
                    MappingEntry("proj_2", groceries.id),
                ])
                assert result.success

                rows = {row.external_id: row.local_id for row in await load_mappings(db, USER, MappingEntityType.list)}
                assert rows == {"proj_1": work.id, "proj_2": groceries.id}
                assert await resolve_local_id(db, USER, "proj_1", MappingEntityType.list) == work.id
                assert await resolve_external_id(db, USER, groceries.id, MappingEntityType.list) == "proj_2"

    asyncio.run(_run())


def test_map_to_nothing_is_kept_distinct_from_unmapped():
    async def _run():
        async with memory_db() as session_factory:
            async with session_factory() as db:
                await set_project_mappings(db, USER, [MappingEntry("proj_1", None), MappingEntry("proj_2", None)])

                rows = await load_mappings(db, USER, MappingEntityType.list)
                assert [(row.external_id, row.local_id) for row in rows] == [("proj_1", None), ("proj_2", None)]
                assert await resolve_local_id(db, USER, "proj_1", MappingEntityType.list) is None
                assert await resolve_local_id(db, USER, "proj_9", MappingEntityType.list) is None

    asyncio.run(_run())


def test_duplicate_local_target_rejects_whole_set():
    async def _run():
        async with memory_db() as session_factory:
            async with session_factory() as db:
                groceries, work = await _lists(db)
                await set_project_mappings(db, USER, [MappingEntry("proj_1", work.id)])

                result = await set_project_mappings(db, USER, [
                    MappingEntry("proj_1", groceries.id),
                    MappingEntry("proj_2", groceries.id),
                ])
                assert not result.success
                assert result.code == VALIDATION_ERROR
                assert result.error == f"List {groceries.id} can only be mapped once."

                rows = await load_mappings(db, USER, MappingEntityType.list)
                assert [(row.external_id, row.local_id) for row in rows] == [("proj_1", work.id)]

    asyncio.run(_run())


def test_duplicate_remote_id_and_blank_id_are_rejected():
    async def _run():
        async with memory_db() as session_factory:
            async with session_factory() as db:
                groceries, work = await _lists(db)

                dup = await set_project_mappings(db, USER, [
                    MappingEntry("proj_1", groceries.id),
                    MappingEntry("proj_1", work.id),
                ])
                blank = await set_project_mappings(db, USER, [MappingEntry("  ", groceries.id)])

                assert dup.code == VALIDATION_ERROR
                assert blank.code == VALIDATION_ERROR
                assert await load_mappings(db, USER) == []

    asyncio.run(_run())


def test_mapping_to_another_users_list_is_not_found():
    async def _run():
        async with memory_db() as session_factory:
            async with session_factory() as db:
                (foreign,) = await _lists(db, user_id=OTHER_USER, names=("Secret",))

                result = await set_label_mappings(db, USER, [MappingEntry("label_1", foreign.id)])
                assert not result.success
                assert result.code == NOT_FOUND
                assert result.error == f"List {foreign.id} was not found."
                assert await load_mappings(db, USER) == []

    asyncio.run(_run())


def test_oversized_mapping_set_is_rejected():
    async def _run():
        from common.config import settings

        async with memory_db() as session_factory:
            async with session_factory() as db:
                entries = [MappingEntry(f"proj_{i}", None) for i in range(settings.MAPPING_MAX_ENTRIES + 1)]
                result = await set_project_mappings(db, USER, entries)
                assert result.code == VALIDATION_ERROR
                assert "Too many mappings" in result.error

    asyncio.run(_run())


def test_label_mappings_are_scoped_to_their_entity_type():
    async def _run():
        async with memory_db() as session_factory:
            async with session_factory() as db:
                groceries, work = await _lists(db)
                await set_project_mappings(db, USER, [MappingEntry("proj_1", groceries.id)])
                await set_label_mappings(db, USER, [MappingEntry("label_work", work.id)])

                # Replacing label mappings leaves project mappings alone.
                await set_label_mappings(db, USER, [])
                assert [row.external_id for row in await load_mappings(db, USER)] == ["proj_1"]

    asyncio.run(_run())


def test_create_mapping_list_slugs_and_positions():
    async def _run():
        async with memory_db() as session_factory:
            async with session_factory() as db:
                first = await create_mapping_list(db, USER, "  Side Projects ")
                second = await create_mapping_list(db, USER, "Side projects")
                blank = await create_mapping_list(db, USER, "   ")

                assert first.success and second.success
                assert first.data["list"].slug == "side-projects"
                assert first.data["list"].position == 0
                assert second.data["list"].slug == "side-projects-2"
                assert second.data["list"].position == 1
                assert blank.code == VALIDATION_ERROR
                assert blank.error == "List name is required."

    asyncio.run(_run())


def test_create_list_is_per_user():
    async def _run():
        async with memory_db() as session_factory:
            async with session_factory() as db:
                await _lists(db, user_id=OTHER_USER, names=("Inbox",))
                mine = await create_list(db, USER, "Inbox")
                await db.commit()
                assert mine.slug == "inbox"
                assert mine.position == 0

    asyncio.run(_run())


def test_slugify():
    assert slugify("Groceries & Errands!") == "groceries-errands"
    assert slugify("  __Work__ ") == "work"
    assert slugify("!!!") == ""
