"""
API tests for recurring crawl schedules.
"""

import uuid

import httpx
import pytest
import pytest_asyncio

from seo_crawler.main import create_application
from tests.fake_site import SITE


@pytest_asyncio.fixture
async def client(store):
    app = create_application()
    app.state.store = store
    app.state.cache = None
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as c:
        yield c


async def _create(client: httpx.AsyncClient, **body) -> dict:
    payload = {"name": "Weekly audit", "target_url": f"{SITE}/", "cron_expression": "0 3 * * 1"}
    payload.update(body)
    response = await client.post("/api/v1/schedules", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


class TestSchedulesAPI:

    @pytest.mark.asyncio
    async def test_create(self, client):
        schedule = await _create(client, config={"max_pages": 50, "include_css": True})

        assert schedule["is_active"] is True
        assert schedule["next_run_at"] is not None
        assert schedule["last_run_at"] is None
        assert schedule["config"]["max_pages"] == 50
        assert schedule["config"]["include_css"] is True
        # Defaults are filled in; the target lives on the schedule itself
        assert schedule["config"]["max_depth"] == 10
        assert "target_url" not in schedule["config"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"cron_expression": "every monday"},
            {"cron_expression": "61 * * * *"},
            {"target_url": "example.com"},
            {"config": {"max_pages": 0}},
            {"config": {"include_patterns": ["[bad"]}},
            {"name": ""},
        ],
    )
    async def test_create_rejects_invalid_input(self, client, body):
        payload = {"name": "x", "target_url": f"{SITE}/", **body}
        response = await client.post("/api/v1/schedules", json=payload)
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_list_and_get(self, client):
        active = await _create(client)
        paused = await _create(client, name="Paused", is_active=False)

        listed = (await client.get("/api/v1/schedules")).json()
        assert {s["id"] for s in listed} == {active["id"], paused["id"]}

        only_active = (await client.get("/api/v1/schedules", params={"active_only": True})).json()
        assert [s["id"] for s in only_active] == [active["id"]]

        fetched = (await client.get(f"/api/v1/schedules/{paused['id']}")).json()
        assert fetched["name"] == "Paused"
        assert (await client.get(f"/api/v1/schedules/{uuid.uuid4()}")).status_code == 404

    @pytest.mark.asyncio
    async def test_update_name_keeps_next_run(self, client):
        schedule = await _create(client)
        before = (await client.get(f"/api/v1/schedules/{schedule['id']}")).json()

        response = await client.patch(f"/api/v1/schedules/{schedule['id']}", json={"name": "Renamed"})

        assert response.status_code == 200
        assert response.json()["name"] == "Renamed"
        assert response.json()["next_run_at"] == before["next_run_at"]
        assert response.json()["cron_expression"] == "0 3 * * 1"

    @pytest.mark.asyncio
    async def test_update_cron_recomputes_next_run(self, client):
        schedule = await _create(client, cron_expression="0 3 1 1 *")
        before = (await client.get(f"/api/v1/schedules/{schedule['id']}")).json()

        response = await client.patch(
            f"/api/v1/schedules/{schedule['id']}", json={"cron_expression": "*/5 * * * *"}
        )

        assert response.status_code == 200
        assert response.json()["cron_expression"] == "*/5 * * * *"
        assert response.json()["next_run_at"] != before["next_run_at"]

    @pytest.mark.asyncio
    async def test_update_config(self, client):
        schedule = await _create(client)

        ok = await client.patch(f"/api/v1/schedules/{schedule['id']}", json={"config": {"max_pages": 10}})
        assert ok.status_code == 200
        assert ok.json()["config"]["max_pages"] == 10
        assert "target_url" not in ok.json()["config"]

        bad = await client.patch(f"/api/v1/schedules/{schedule['id']}", json={"config": {"concurrency": 0}})
        assert bad.status_code == 422

        bad_cron = await client.patch(f"/api/v1/schedules/{schedule['id']}", json={"cron_expression": "nope"})
        assert bad_cron.status_code == 422

    @pytest.mark.asyncio
    async def test_update_unknown(self, client):
        response = await client.patch(f"/api/v1/schedules/{uuid.uuid4()}", json={"name": "x"})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_delete(self, client):
        schedule = await _create(client)

        assert (await client.delete(f"/api/v1/schedules/{schedule['id']}")).status_code == 204
        assert (await client.get(f"/api/v1/schedules/{schedule['id']}")).status_code == 404
        assert (await client.delete(f"/api/v1/schedules/{schedule['id']}")).status_code == 404
