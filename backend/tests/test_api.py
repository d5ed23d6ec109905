import asyncio
import json
from unittest.mock import patch

from httpx import ASGITransport, AsyncClient

from common.models import TaskList
from common.todoist import RemoteProject, RemoteTask
from fakes import OTHER_USER, USER, FakeTodoistClient, connect, memory_db

AUTH = {"Authorization": "Bearer test_token"}
OTHER_AUTH = {"Authorization": "Bearer test_user_2"}


def _client(app):
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def test_endpoints_require_auth(api_with_db):
    async def _run():
        async with memory_db() as session_factory:
            app = api_with_db(session_factory)
            async with _client(app) as client:
                missing = await client.get("/v1/integrations/todoist/status")
                wrong = await client.post(
                    "/v1/integrations/todoist/sync", headers={"Authorization": "Bearer nope"}
                )
            assert missing.status_code == 401
            assert wrong.status_code == 401

    asyncio.run(_run())


def test_bearer_tokens_resolve_users_from_configuration(api_with_db):
    from common.config import settings

    async def _run():
        async with memory_db() as session_factory:
            async with session_factory() as db:
                await connect(db)
            app = api_with_db(session_factory)
            async with _client(app) as client:
                default_user = await client.get("/v1/integrations/todoist/status", headers=AUTH)
                with patch.object(settings, "APP_DEFAULT_USER_ID", "usr_solo"):
                    other_default = await client.get("/v1/integrations/todoist/status", headers=AUTH)
                    with patch.object(settings, "APP_AUTH_TOKEN_USER_MAP", "test_token:" + USER):
                        mapped = await client.get("/v1/integrations/todoist/status", headers=AUTH)

            assert default_user.json()["connected"] is True
            assert other_default.json()["connected"] is False
            assert mapped.json()["connected"] is True

    asyncio.run(_run())


def test_health(api_with_db):
    async def _run():
        async with memory_db() as session_factory:
            app = api_with_db(session_factory)
            async with _client(app) as client:
                live = await client.get("/health/live")
                ready = await client.get("/health/ready")
            assert live.json() == {"status": "ok"}
            assert ready.json() == {"status": "ready"}
            assert "X-Request-ID" in ready.headers

    asyncio.run(_run())


def test_connect_then_status_then_disconnect(api_with_db):
    fake = FakeTodoistClient(projects=[RemoteProject(id="proj_1", name="Inbox")])

    async def _run():
        async with memory_db() as session_factory:
            app = api_with_db(session_factory)
            with patch("api.main.create_todoist_client", fake.factory):
                async with _client(app) as client:
                    blank = await client.post("/v1/integrations/todoist/connect", json={"token": " "}, headers=AUTH)
                    connected = await client.post("/v1/integrations/todoist/connect", json={"token": "tok_1"}, headers=AUTH)
                    mine = await client.get("/v1/integrations/todoist/status", headers=AUTH)
                    theirs = await client.get("/v1/integrations/todoist/status", headers=OTHER_AUTH)
                    removed = await client.delete("/v1/integrations/todoist", headers=AUTH)
                    after = await client.get("/v1/integrations/todoist/status", headers=AUTH)

            assert blank.status_code == 400
            assert blank.json()["code"] == "validation_error"
            assert connected.json() == {"success": True, "connected": True}
            assert mine.json()["connected"] is True
            assert theirs.json()["connected"] is False
            assert removed.json() == {"success": True, "disconnected": True}
            assert after.json()["connected"] is False

    asyncio.run(_run())


def test_mapping_endpoints(api_with_db):
    async def _run():
        async with memory_db() as session_factory:
            async with session_factory() as db:
                await connect(db)
                foreign = TaskList(user_id=OTHER_USER, name="Theirs", slug="theirs", position=0)
                db.add(foreign)
                await db.commit()
                foreign_id = foreign.id

            fake = FakeTodoistClient(projects=[RemoteProject(id="proj_1", name="Groceries")])
            app = api_with_db(session_factory)
            with patch("api.main.create_todoist_client", fake.factory):
                async with _client(app) as client:
                    created = await client.post(
                        "/v1/integrations/todoist/mapping_lists", json={"name": "Groceries"}, headers=AUTH
                    )
                    list_id = created.json()["list"]["id"]
                    saved = await client.put(
                        "/v1/integrations/todoist/mappings/projects",
                        json={"mappings": [{"external_id": "proj_1", "local_id": list_id}]},
                        headers=AUTH,
                    )
                    duplicate = await client.put(
                        "/v1/integrations/todoist/mappings/labels",
                        json={"mappings": [
                            {"external_id": "lbl_1", "local_id": list_id},
                            {"external_id": "lbl_2", "local_id": list_id},
                        ]},
                        headers=AUTH,
                    )
                    cross_tenant = await client.put(
                        "/v1/integrations/todoist/mappings/labels",
                        json={"mappings": [{"external_id": "lbl_1", "local_id": foreign_id}]},
                        headers=AUTH,
                    )
                    data = await client.get("/v1/integrations/todoist/mappings", headers=AUTH)

            assert created.status_code == 200
            assert created.json()["list"]["slug"] == "groceries"
            assert saved.json()["success"] is True
            assert duplicate.status_code == 400
            assert cross_tenant.status_code == 404
            body = data.json()
            assert body["projects"] == [{"id": "proj_1", "name": "Groceries"}]
            assert body["project_mappings"] == [{"external_id": "proj_1", "local_id": list_id}]
            assert body["label_mappings"] == []

    asyncio.run(_run())


def test_mapping_data_without_connection_is_409(api_with_db):
    async def _run():
        async with memory_db() as session_factory:
            app = api_with_db(session_factory)
            async with _client(app) as client:
                resp = await client.get("/v1/integrations/todoist/mappings", headers=AUTH)
            assert resp.status_code == 409
            assert resp.json()["code"] == "reconnect_required"

    asyncio.run(_run())


def test_sync_now_runs_a_pass_and_reports_conflicts(api_with_db):
    async def _run():
        async with memory_db() as session_factory:
            async with session_factory() as db:
                await connect(db)
                groceries = TaskList(user_id=USER, name="Groceries", slug="groceries", position=0)
                db.add(groceries)
                await db.commit()

            fake = FakeTodoistClient(
                projects=[RemoteProject(id="proj_1", name="Groceries")],
                tasks=[RemoteTask(id="rt_milk", content="Milk", project_id="proj_1")],
            )
            app = api_with_db(session_factory)
            with patch("api.main.create_todoist_client", fake.factory):
                async with _client(app) as client:
                    synced = await client.post("/v1/integrations/todoist/sync", headers=AUTH)
                    conflicts = await client.get("/v1/integrations/todoist/conflicts", headers=AUTH)
                    missing = await client.post(
                        "/v1/integrations/todoist/conflicts/42/resolve", json={"resolution": "local"}, headers=AUTH
                    )
                    bad = await client.post(
                        "/v1/integrations/todoist/conflicts/42/resolve", json={"resolution": "mine"}, headers=AUTH
                    )

            assert synced.status_code == 200
            body = synced.json()
            assert body["status"] == "ok"
            assert body["created_local"] == 1
            assert conflicts.json() == {"conflicts": []}
            assert missing.status_code == 404
            assert bad.status_code == 400

    asyncio.run(_run())


def test_sync_now_without_connection_is_409(api_with_db):
    async def _run():
        async with memory_db() as session_factory:
            app = api_with_db(session_factory)
            async with _client(app) as client:
                resp = await client.post("/v1/integrations/todoist/sync", headers=AUTH)
            assert resp.status_code == 409
            assert resp.json()["code"] == "reconnect_required"

    asyncio.run(_run())


def test_sync_now_is_rate_limited(api_with_db, mock_redis):
    mock_redis.incr.return_value = 7

    async def _run():
        async with memory_db() as session_factory:
            app = api_with_db(session_factory)
            async with _client(app) as client:
                resp = await client.post("/v1/integrations/todoist/sync", headers=AUTH)
            assert resp.status_code == 429
            assert "Retry in 59s" in resp.json()["detail"]

    asyncio.run(_run())


def test_enqueue_all_requires_cron_secret(api_with_db, mock_redis):
    async def _run():
        async with memory_db() as session_factory:
            async with session_factory() as db:
                await connect(db, user_id=USER)
                await connect(db, user_id=OTHER_USER)

            app = api_with_db(session_factory)
            async with _client(app) as client:
                missing = await client.post("/v1/sync/todoist/enqueue_all")
                wrong = await client.post("/v1/sync/todoist/enqueue_all", headers={"X-Cron-Secret": "guess"})
                ok = await client.post("/v1/sync/todoist/enqueue_all", headers={"X-Cron-Secret": "cron_secret"})

            assert missing.status_code == 401
            assert wrong.status_code == 401
            assert ok.status_code == 200
            assert ok.json()["enqueued"] == 2

            queued = [json.loads(call.args[1]) for call in mock_redis.rpush.await_args_list]
            assert [job["topic"] for job in queued] == ["sync.todoist", "sync.todoist"]
            assert sorted(job["payload"]["user_id"] for job in queued) == sorted([USER, OTHER_USER])

    asyncio.run(_run())
