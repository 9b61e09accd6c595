import pytest
from httpx import AsyncClient
from sqlalchemy import select

from pulsewatch.models.check import Check
from pulsewatch.models.incident import Incident


async def create_monitor(client: AsyncClient, **fields) -> dict:
    data = {"name": "Nightly backup", "type": "heartbeat", "interval": 3600, **fields}
    res = await client.post("/api/monitors", json=data)
    assert res.status_code == 201, res.text
    return res.json()


async def monitor_checks(session_factory, monitor_id: str) -> list[Check]:
    async with session_factory() as db:
        result = await db.execute(
            select(Check).where(Check.monitor_id == monitor_id).order_by(Check.checked_at)
        )
        return list(result.scalars().all())


async def monitor_incidents(session_factory, monitor_id: str) -> list[Incident]:
    async with session_factory() as db:
        result = await db.execute(select(Incident).where(Incident.monitor_id == monitor_id))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_heartbeat_push_records_up_check(authenticated_client: AsyncClient, session_factory):
    monitor = await create_monitor(authenticated_client)

    response = await authenticated_client.post(f"/api/push/{monitor['push_token']}")
    assert response.status_code == 200
    assert response.json() == {"ok": True, "monitor_id": monitor["id"], "status": "up"}

    # GET works too, for cron one-liners
    response = await authenticated_client.get(f"/api/push/{monitor['push_token']}")
    assert response.status_code == 200

    checks = await monitor_checks(session_factory, monitor["id"])
    assert [(c.status, c.region) for c in checks] == [("up", "heartbeat"), ("up", "heartbeat")]

    response = await authenticated_client.get(f"/api/monitors/{monitor['id']}")
    assert response.json()["last_check_at"] is not None
    assert response.json()["uptime_percentage"] == 100.0


@pytest.mark.asyncio
async def test_push_requires_no_session(authenticated_client: AsyncClient):
    monitor = await create_monitor(authenticated_client)
    authenticated_client.cookies.clear()

    response = await authenticated_client.post(f"/api/push/{monitor['push_token']}")
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_push_unknown_token(client: AsyncClient):
    response = await client.post("/api/push/not-a-real-token")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_heartbeat_push_to_http_monitor_rejected(authenticated_client: AsyncClient):
    monitor = await create_monitor(
        authenticated_client, name="Site", type="http", url="https://example.com", interval=300
    )

    response = await authenticated_client.post(f"/api/push/{monitor['push_token']}")
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_inbound_down_check_opens_incident(authenticated_client: AsyncClient, session_factory):
    monitor = await create_monitor(
        authenticated_client, name="Edge", type="http", url="https://edge.example.com", interval=300
    )

    response = await authenticated_client.post(f"/api/push/{monitor['push_token']}/check", json={
        "status": "down",
        "status_code": 502,
        "response_time": 840,
        "error": "Bad gateway",
    })
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "down"
    assert data["check_id"]

    checks = await monitor_checks(session_factory, monitor["id"])
    assert len(checks) == 1
    assert checks[0].region == "webhook"
    assert checks[0].status_code == 502
    assert checks[0].error_message == "Bad gateway"

    incidents = await monitor_incidents(session_factory, monitor["id"])
    assert len(incidents) == 1
    assert incidents[0].status == "investigating"
    assert incidents[0].error_message == "Bad gateway"


@pytest.mark.asyncio
async def test_inbound_check_keeps_reported_region(authenticated_client: AsyncClient, session_factory):
    monitor = await create_monitor(
        authenticated_client, name="Edge", type="http", url="https://edge.example.com", interval=300
    )

    response = await authenticated_client.post(f"/api/push/{monitor['push_token']}/check", json={
        "status": "up",
        "response_time": 120,
        "region": "eu-west",
    })
    assert response.status_code == 200

    checks = await monitor_checks(session_factory, monitor["id"])
    assert checks[0].region == "eu-west"
    assert checks[0].response_time == 120


@pytest.mark.asyncio
async def test_inbound_check_validates_body(authenticated_client: AsyncClient):
    monitor = await create_monitor(authenticated_client)

    response = await authenticated_client.post(f"/api/push/{monitor['push_token']}/check", json={
        "status": "sideways",
    })
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_heartbeat_after_outage_resolves_incident(authenticated_client: AsyncClient, session_factory):
    monitor = await create_monitor(authenticated_client)
    token = monitor["push_token"]

    await authenticated_client.post(f"/api/push/{token}/check", json={
        "status": "down",
        "error": "No heartbeat received in the last 3600 seconds",
    })
    response = await authenticated_client.post(f"/api/push/{token}")
    assert response.json()["status"] == "up"

    incidents = await monitor_incidents(session_factory, monitor["id"])
    assert len(incidents) == 1
    assert incidents[0].status == "resolved"
    assert incidents[0].resolved_at is not None


@pytest.mark.asyncio
async def test_push_to_paused_monitor_does_not_change_status(authenticated_client: AsyncClient, session_factory):
    monitor = await create_monitor(authenticated_client)
    await authenticated_client.post(f"/api/monitors/{monitor['id']}/pause")

    response = await authenticated_client.post(f"/api/push/{monitor['push_token']}/check", json={
        "status": "down",
    })
    assert response.json()["status"] == "paused"
    assert await monitor_incidents(session_factory, monitor["id"]) == []
    assert len(await monitor_checks(session_factory, monitor["id"])) == 1


@pytest.mark.asyncio
async def test_recovery_after_pause_and_resume_resolves_incident(authenticated_client: AsyncClient, session_factory):
    monitor = await create_monitor(
        authenticated_client, name="Edge", type="http", url="https://edge.example.com", interval=300
    )
    check_url = f"/api/push/{monitor['push_token']}/check"

    await authenticated_client.post(check_url, json={"status": "down", "error": "Bad gateway"})
    await authenticated_client.post(f"/api/monitors/{monitor['id']}/pause")
    response = await authenticated_client.post(f"/api/monitors/{monitor['id']}/resume")
    assert response.json()["status"] == "down"

    response = await authenticated_client.post(check_url, json={"status": "up", "response_time": 90})
    assert response.json()["status"] == "up"

    incidents = await monitor_incidents(session_factory, monitor["id"])
    assert len(incidents) == 1
    assert incidents[0].status == "resolved"
