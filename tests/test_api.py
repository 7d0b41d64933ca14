"""API tests for the SLA routes and error mapping."""

import httpx
import pytest

from slaengine.main import create_app


@pytest.fixture
async def client(sla_engine, test_settings):
    app = create_app()
    app.state.sla_engine = sla_engine
    app.state.settings = test_settings
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def create_department(client, **policy):
    body = {"hotel_id": "H1", "code": "HOUSEKEEPING", "name": "Housekeeping", "department_id": "hk"}
    if policy:
        body["policy"] = policy
    return await client.post("/sla/departments", json=body)


class TestDepartmentRoutes:
    async def test_register_department_with_template(self, client):
        response = await create_department(client)

        assert response.status_code == 201
        data = response.json()
        assert data["department"]["code"] == "HOUSEKEEPING"
        assert data["policy"]["target_minutes"] == 30
        assert data["policy"]["is_current"] is True

    async def test_invalid_policy_is_422(self, client):
        await create_department(client)

        response = await client.put(
            "/sla/departments/hk/policy",
            json={"target_minutes": 10, "warn_minutes": 20},
        )

        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "ValidationException"
        assert "warn_minutes" in body["details"]

    async def test_stale_expected_version_is_409(self, client):
        await create_department(client)

        response = await client.put(
            "/sla/departments/hk/policy",
            json={"target_minutes": 45, "expected_current_id": "not-the-current-id"},
        )

        assert response.status_code == 409
        assert response.json()["error"] == "StaleWriteException"

    async def test_policy_history(self, client):
        created = (await create_department(client)).json()
        await client.put(
            "/sla/departments/hk/policy",
            json={"target_minutes": 45, "expected_current_id": created["policy"]["id"]},
        )

        current = (await client.get("/sla/departments/hk/policy")).json()
        history = (await client.get("/sla/departments/hk/policy/history")).json()

        assert current["version"] == 2
        assert [p["version"] for p in history] == [2, 1]

    async def test_unknown_department_is_404(self, client):
        response = await client.get("/sla/departments/nope/policy")

        assert response.status_code == 404
        assert response.json()["error"] == "ResourceNotFoundException"


class TestTicketRoutes:
    async def test_ticket_lifecycle(self, client):
        await create_department(client)

        created = await client.post("/sla/tickets", json={
            "ticket_id": "HK-1", "department_id": "hk", "service_key": "EXTRA_TOWELS",
        })
        assert created.status_code == 200
        assert created.json()["sla"]["classification"] == "NOT_STARTED"

        assigned = await client.post("/sla/tickets/HK-1/transitions", json={
            "to_status": "ASSIGNED", "assignee": "maria",
        })
        assert assigned.status_code == 200
        assert assigned.json()["sla"]["classification"] == "ON_TRACK"

        clock = await client.get("/sla/tickets/HK-1/clock")
        assert clock.json()["target_seconds"] == 1800

        events = await client.get("/sla/tickets/HK-1/events")
        assert [e["new_classification"] for e in events.json()] == ["NOT_STARTED", "ON_TRACK"]

    async def test_invalid_transition_is_409(self, client):
        await create_department(client)
        await client.post("/sla/tickets", json={
            "ticket_id": "HK-1", "department_id": "hk", "service_key": "EXTRA_TOWELS",
        })

        response = await client.post("/sla/tickets/HK-1/transitions", json={"to_status": "COMPLETED"})

        assert response.status_code == 409
        assert response.json()["details"]["from_status"] == "CREATED"

    async def test_block_without_reason_is_422(self, client):
        await create_department(client)
        await client.post("/sla/tickets", json={
            "ticket_id": "HK-1", "department_id": "hk", "service_key": "EXTRA_TOWELS",
        })
        await client.post("/sla/tickets/HK-1/transitions", json={"to_status": "ASSIGNED"})
        await client.post("/sla/tickets/HK-1/transitions", json={"to_status": "IN_PROGRESS"})

        response = await client.post("/sla/tickets/HK-1/transitions", json={"to_status": "BLOCKED"})

        assert response.status_code == 422
        assert response.json()["error"] == "ValidationException"

    async def test_unknown_block_reason_is_422(self, client):
        await create_department(client)
        await client.post("/sla/tickets", json={
            "ticket_id": "HK-1", "department_id": "hk", "service_key": "EXTRA_TOWELS",
        })
        await client.post("/sla/tickets/HK-1/transitions", json={"to_status": "ASSIGNED"})
        await client.post("/sla/tickets/HK-1/transitions", json={"to_status": "IN_PROGRESS"})

        rejected = await client.post("/sla/tickets/HK-1/transitions", json={
            "to_status": "BLOCKED", "block_reason": "napping",
        })
        assert rejected.status_code == 422
        assert rejected.json()["details"]["block_reason"] == "napping"

        blocked = await client.post("/sla/tickets/HK-1/transitions", json={
            "to_status": "BLOCKED", "block_reason": "ROOM_LOCKED",
        })
        assert blocked.status_code == 200

        groups = await client.get("/sla/departments/hk/blocked/by-reason")
        assert groups.status_code == 200
        assert groups.json()[0]["reason_code"] == "ROOM_LOCKED"
        assert groups.json()[0]["ticket_ids"] == ["HK-1"]

    async def test_unknown_status_is_422(self, client):
        response = await client.post("/sla/tickets/HK-1/transitions", json={"to_status": "FLYING"})
        assert response.status_code == 422

    async def test_unknown_ticket_is_404(self, client):
        response = await client.get("/sla/tickets/HK-404/clock")
        assert response.status_code == 404

    async def test_correlation_id_is_echoed(self, client):
        response = await client.get("/sla/tickets/HK-404/clock", headers={"X-Correlation-ID": "abc-123"})

        assert response.headers["X-Correlation-ID"] == "abc-123"
        assert response.json()["correlation_id"] == "abc-123"


class TestReportingRoutes:
    async def test_trend_and_impact(self, client):
        await create_department(client)

        trend = await client.get("/sla/hotels/H1/compliance-trend", params={"days": 3})
        impact = await client.get("/sla/hotels/H1/impact")

        assert trend.status_code == 200
        assert len(trend.json()) == 3
        assert trend.json()[0]["compliance_percent"] is None
        assert impact.status_code == 200
        assert impact.json()["departments"][0]["code"] == "HOUSEKEEPING"

    async def test_sweep(self, client, channel):
        await create_department(client)
        await client.post("/sla/tickets", json={
            "ticket_id": "HK-1", "department_id": "hk", "service_key": "EXTRA_TOWELS",
        })

        response = await client.post("/sla/sweep")

        assert response.status_code == 200
        assert response.json()["evaluated"] == 1
        assert response.json()["delivered"] == 1
        assert len(channel.delivered) == 1
