"""
Test pipeline and deal management endpoints
"""

from datetime import timedelta
from uuid import uuid4

from httpx import AsyncClient

from crm.app.core.clock import utcnow


async def test_seed_default_pipeline_is_idempotent(client: AsyncClient, pipeline_id: str):
    response = await client.post("/api/v1/pipelines/seed")
    assert response.status_code == 200

    data = response.json()["data"]
    assert data == {"created": False, "pipeline_id": pipeline_id}

    pipeline = (await client.get(f"/api/v1/pipelines/{pipeline_id}")).json()["data"]
    assert [stage["id"] for stage in pipeline["stages"]] == [
        "lead", "qualified", "proposal", "negotiation", "closed_won", "closed_lost"
    ]
    assert pipeline["is_default"] is True


async def test_create_pipeline_rejects_duplicate_stages(client: AsyncClient):
    stages = [
        {"id": "intro", "name": "Intro", "order": 0, "probability": 10},
        {"id": "intro", "name": "Intro again", "order": 1, "probability": 20},
    ]

    response = await client.post("/api/v1/pipelines/", json={"name": "Partners", "stages": stages})
    assert response.status_code == 400


async def test_create_deal_uses_stage_probability(client: AsyncClient, create_deal):
    deal = await create_deal(amount=25000)

    assert deal["status"] == "open"
    assert deal["probability"] == 50
    assert deal["weighted_value"] == 12500
    assert deal["stage_changed_at"] == deal["created_at"]


async def test_create_deal_validation(client: AsyncClient, pipeline_id: str):
    response = await client.post("/api/v1/deals/", json={
        "name": "Lost in space", "pipeline_id": str(uuid4()), "stage_id": "lead"
    })
    assert response.status_code == 400
    assert response.json()["detail"] == "Pipeline not found"

    response = await client.post("/api/v1/deals/", json={
        "name": "Nowhere", "pipeline_id": pipeline_id, "stage_id": "limbo"
    })
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid stage for this pipeline"


async def test_get_missing_deal(client: AsyncClient):
    response = await client.get(f"/api/v1/deals/{uuid4()}")
    assert response.status_code == 404


async def test_update_deal_only_touches_supplied_fields(client: AsyncClient, create_deal):
    deal = await create_deal(amount=25000, tags=["inbound"])
    close_date = (utcnow() + timedelta(days=45)).replace(microsecond=0)

    response = await client.patch(f"/api/v1/deals/{deal['id']}", json={
        "amount": 30000,
        "expected_close_date": close_date.isoformat(),
    })
    assert response.status_code == 200

    updated = response.json()["data"]
    assert updated["amount"] == 30000
    assert updated["expected_close_date"] == close_date.isoformat()
    assert updated["tags"] == ["inbound"]
    assert updated["probability"] == 50


async def test_move_deal_to_stage(client: AsyncClient, create_deal):
    deal = await create_deal()

    response = await client.post(f"/api/v1/deals/{deal['id']}/move", json={"stage_id": "negotiation"})
    assert response.status_code == 200

    moved = response.json()["data"]
    assert moved["stage_id"] == "negotiation"
    assert moved["probability"] == 75
    assert moved["stage_changed_at"] is not None

    response = await client.post(f"/api/v1/deals/{deal['id']}/move", json={"stage_id": "limbo"})
    assert response.status_code == 400


async def test_mark_won_and_lost(client: AsyncClient, create_deal):
    won = await create_deal(amount=10000)
    lost = await create_deal(amount=5000)

    response = await client.post(f"/api/v1/deals/{won['id']}/won")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "won"
    assert data["probability"] == 100
    assert data["actual_close_date"] is not None

    response = await client.post(f"/api/v1/deals/{lost['id']}/lost", json={"reason": "Budget cut"})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "lost"
    assert data["probability"] == 0
    assert data["lost_reason"] == "Budget cut"

    # Closed deals cannot move or close again
    response = await client.post(f"/api/v1/deals/{won['id']}/move", json={"stage_id": "lead"})
    assert response.status_code == 400
    response = await client.post(f"/api/v1/deals/{lost['id']}/won")
    assert response.status_code == 400
    assert response.json()["detail"] == "Deal is already lost"

    response = await client.get("/api/v1/deals/", params={"status": "won"})
    assert [d["id"] for d in response.json()["data"]["deals"]] == [won["id"]]


async def test_reopen_deal(client: AsyncClient, create_deal):
    deal = await create_deal()
    await client.post(f"/api/v1/deals/{deal['id']}/lost")

    response = await client.post(f"/api/v1/deals/{deal['id']}/reopen")
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "open"
    assert response.json()["data"]["actual_close_date"] is None

    response = await client.post(f"/api/v1/deals/{deal['id']}/reopen")
    assert response.status_code == 400


async def test_deal_events_queue_webhook_deliveries(client: AsyncClient, create_deal):
    response = await client.post("/api/v1/webhooks/", json={
        "name": "Revenue ops",
        "url": "https://hooks.example.com/crm",
        "events": ["deal.created", "deal.won"],
    })
    subscription_id = response.json()["data"]["id"]

    deal = await create_deal(amount=1000)
    await client.post(f"/api/v1/deals/{deal['id']}/move", json={"stage_id": "qualified"})
    await client.post(f"/api/v1/deals/{deal['id']}/won")

    response = await client.get(f"/api/v1/webhooks/{subscription_id}/deliveries")
    deliveries = response.json()["data"]["deliveries"]

    assert sorted(d["event"] for d in deliveries) == ["deal.created", "deal.won"]
    assert all(d["status"] == "pending" for d in deliveries)
