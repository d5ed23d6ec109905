import asyncio

from sqlalchemy import select

from common.crypto import get_access_token, get_integration
from common.integrations import (
    connect_todoist, disconnect_todoist, get_mapping_data, get_sync_status, rotate_all_tokens
)
from common.mapping import MappingEntry, set_label_mappings, set_project_mappings
from common.models import ExternalEntityMap, ExternalSyncState, TaskList
from common.results import RECONNECT_REQUIRED, REMOTE_ERROR, VALIDATION_ERROR
from common.sync import run_sync_pass
from common.todoist import RemoteLabel, RemoteProject, TodoistAPIError, TodoistAuthError
from fakes import OTHER_USER, USER, FakeTodoistClient, connect, memory_db


def test_connect_validates_token_with_a_handshake():
    async def _run():
        async with memory_db() as session_factory:
            async with session_factory() as db:
                fake = FakeTodoistClient(projects=[RemoteProject(id="proj_1", name="Inbox")])

                blank = await connect_todoist(db, USER, "   ", client_factory=fake.factory)
                assert blank.code == VALIDATION_ERROR
                assert fake.calls == []

                result = await connect_todoist(db, USER, " tok_abc ", client_factory=fake.factory)
                assert result.success
                assert fake.tokens == ["tok_abc"]
                assert await get_access_token(db, USER) == "tok_abc"

                integration = await get_integration(db, USER)
                assert integration.access_token_encrypted != "tok_abc"
                assert "connected_at" in integration.metadata_json

                # Reconnecting replaces the stored credential in place.
                await connect_todoist(db, USER, "tok_new", client_factory=fake.factory)
                assert await get_access_token(db, USER) == "tok_new"

    asyncio.run(_run())


def test_connect_rejected_or_unreachable():
    async def _run():
        async with memory_db() as session_factory:
            async with session_factory() as db:
                rejected = FakeTodoistClient()
                rejected.failures["get_projects"] = TodoistAuthError("Todoist rejected the access token (401)", 401)
                down = FakeTodoistClient()
                down.failures["get_projects"] = TodoistAPIError("Todoist API error 503", 503)

                first = await connect_todoist(db, USER, "tok_bad", client_factory=rejected.factory)
                second = await connect_todoist(db, USER, "tok_any", client_factory=down.factory)

                assert first.code == VALIDATION_ERROR
                assert first.error == "Todoist rejected the API token."
                assert second.code == REMOTE_ERROR
                assert await get_integration(db, USER) is None

    asyncio.run(_run())


def test_disconnect_removes_only_that_users_rows():
    async def _run():
        async with memory_db() as session_factory:
            async with session_factory() as db:
                mine = TaskList(user_id=USER, name="Groceries", slug="groceries", position=0)
                theirs = TaskList(user_id=OTHER_USER, name="Groceries", slug="groceries", position=0)
                db.add_all([mine, theirs])
                await db.commit()
                for user_id, task_list in ((USER, mine), (OTHER_USER, theirs)):
                    await connect(db, user_id=user_id)
                    await set_project_mappings(db, user_id, [MappingEntry("proj_1", task_list.id)])
                    await run_sync_pass(db, user_id, client_factory=FakeTodoistClient().factory)

                result = await disconnect_todoist(db, USER)
                assert result.success

                assert await get_integration(db, USER) is None
                assert await get_integration(db, OTHER_USER) is not None
                users = (await db.execute(select(ExternalEntityMap.user_id))).scalars().all()
                assert set(users) == {OTHER_USER}
                states = (await db.execute(select(ExternalSyncState.user_id))).scalars().all()
                assert states == [OTHER_USER]

    asyncio.run(_run())


def test_mapping_data_lists_both_sides():
    async def _run():
        async with memory_db() as session_factory:
            async with session_factory() as db:
                await connect(db)
                groceries = TaskList(user_id=USER, name="Groceries", slug="groceries", position=0)
                work = TaskList(user_id=USER, name="Work", slug="work", position=1)
                db.add_all([groceries, work])
                await db.commit()
                await set_project_mappings(db, USER, [MappingEntry("proj_1", groceries.id), MappingEntry("proj_2", None)])
                await set_label_mappings(db, USER, [MappingEntry("lbl_work", work.id)])
                projects = [RemoteProject(id=f"proj_{i}", name=f"Project {i}") for i in range(1, 8)]
                fake = FakeTodoistClient(projects=projects, labels=[RemoteLabel(id="lbl_work", name="Work")])

                result = await get_mapping_data(db, USER, client_factory=fake.factory)

                assert result.success
                assert [p["id"] for p in result.data["projects"]] == ["proj_1", "proj_2", "proj_3", "proj_4", "proj_5"]
                assert result.data["labels"] == [{"id": "lbl_work", "name": "Work"}]
                assert [item["name"] for item in result.data["lists"]] == ["Groceries", "Work"]
                assert result.data["project_mappings"] == [
                    {"external_id": "proj_1", "local_id": groceries.id},
                    {"external_id": "proj_2", "local_id": None},
                ]
                assert result.data["label_mappings"] == [{"external_id": "lbl_work", "local_id": work.id}]

    asyncio.run(_run())


def test_mapping_data_requires_connection():
    async def _run():
        async with memory_db() as session_factory:
            async with session_factory() as db:
                result = await get_mapping_data(db, USER, client_factory=FakeTodoistClient().factory)
                assert result.code == RECONNECT_REQUIRED

    asyncio.run(_run())


def test_sync_status_before_and_after_a_pass():
    async def _run():
        async with memory_db() as session_factory:
            async with session_factory() as db:
                before = await get_sync_status(db, USER)
                assert before == {
                    "connected": False, "status": "idle", "last_synced_at": None,
                    "sync_started_at": None, "error": None, "pending_conflicts": 0,
                }

                await connect(db)
                await run_sync_pass(db, USER, client_factory=FakeTodoistClient().factory)
                after = await get_sync_status(db, USER)
                assert after["connected"] is True
                assert after["status"] == "idle"
                assert after["last_synced_at"] is not None

    asyncio.run(_run())


def test_rotate_all_counts_unreadable_credentials(keyring_env):
    async def _run():
        async with memory_db() as session_factory:
            async with session_factory() as db:
                await connect(db, user_id=USER)
                broken = await connect(db, user_id=OTHER_USER)
                broken.access_token_key_id = "retired"
                await db.commit()

                keyring_env.TODOIST_ENCRYPTION_KEYS = "v1:" + "11" * 32 + ",v2:" + "22" * 32
                keyring_env.TODOIST_ENCRYPTION_KEY_ID = "v2"

                counts = await rotate_all_tokens(db)
                assert counts == {"rotated": 1, "failed": 1}
                assert (await get_integration(db, USER)).access_token_key_id == "v2"

    asyncio.run(_run())
