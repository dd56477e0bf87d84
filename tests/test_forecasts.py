"""
Test forecast endpoints
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from crm.app.core.clock import utcnow
from crm.app.models.forecasts import Forecast, ForecastPeriod, ForecastSnapshot
from crm.app.services import forecast_engine as engine
from crm.app.services.forecast_service import ForecastService


async def create_forecast(client: AsyncClient, start, end, **fields) -> dict:
    payload = {
        "name": "Test Forecast",
        "period": "monthly",
        "start_date": start.isoformat(),
        "end_date": end.isoformat(),
    }
    payload.update(fields)

    response = await client.post("/api/v1/forecasts/", json=payload)
    assert response.status_code == 201, response.text
    return response.json()["data"]


@pytest.fixture
async def forecast_window(client: AsyncClient, create_deal):
    """A forecast window with a committed, a pipeline, an out-of-window and a won deal."""
    now = utcnow()
    start, end = now - timedelta(days=10), now + timedelta(days=30)
    in_window = (now + timedelta(days=15)).isoformat()

    committed = await create_deal(
        name="Big logo", amount=100000, probability=95, expected_close_date=in_window
    )
    pipeline = await create_deal(
        name="Mid market", amount=50000, expected_close_date=in_window
    )
    await create_deal(
        name="Next quarter", amount=80000, probability=80,
        expected_close_date=(end + timedelta(days=30)).isoformat()
    )
    won = await create_deal(name="Closed already", amount=20000)
    await client.post(f"/api/v1/deals/{won['id']}/won")

    forecast = await create_forecast(client, start, end, target_revenue=200000)

    return {"forecast": forecast, "committed": committed, "pipeline": pipeline, "won": won}


async def test_calculate_forecast(client: AsyncClient, forecast_window):
    forecast_id = forecast_window["forecast"]["id"]

    response = await client.post(f"/api/v1/forecasts/{forecast_id}/calculate")
    assert response.status_code == 200

    result = response.json()["data"]
    assert result["committed"] == 100000
    assert result["best_case"] == 0
    assert result["pipeline"] == 50000
    assert result["closed"] == 20000
    assert result["weighted_pipeline"] == pytest.approx(95000 + 25000)
    assert result["predicted_revenue"] == pytest.approx(20000 + 95000 + 25000)
    # 50 + 2/3 * 40 + 0 + 2 * 0.5
    assert result["confidence"] == 78

    forecast = (await client.get(f"/api/v1/forecasts/{forecast_id}")).json()["data"]
    assert forecast["committed"] == 100000
    assert forecast["closed"] == 20000
    assert forecast["predicted_revenue"] == pytest.approx(140000)
    assert forecast["last_calculated_at"] is not None
    assert forecast["latest_snapshot"] is None


async def test_snapshot_matches_forecast(client: AsyncClient, forecast_window):
    forecast_id = forecast_window["forecast"]["id"]
    await client.post(f"/api/v1/forecasts/{forecast_id}/calculate")
    await client.post(f"/api/v1/forecasts/{forecast_id}/snapshots", json={"notes": "Week 1"})

    response = await client.post(f"/api/v1/forecasts/{forecast_id}/snapshots", json={"notes": "Week 2"})
    assert response.status_code == 201

    forecast = (await client.get(f"/api/v1/forecasts/{forecast_id}")).json()["data"]
    snapshots = (await client.get(f"/api/v1/forecasts/{forecast_id}/snapshots")).json()["data"]["snapshots"]

    assert [snapshot["notes"] for snapshot in snapshots] == ["Week 1", "Week 2"]

    latest = snapshots[-1]
    for field in ("committed", "best_case", "pipeline", "closed"):
        assert latest[field] == forecast[field]
    assert latest["predicted_total"] == forecast["predicted_revenue"]
    assert latest["confidence"] == forecast["confidence"]
    assert sorted(p["category"] for p in latest["predictions"]) == ["committed", "pipeline"]
    assert forecast["latest_snapshot"]["id"] == latest["id"]


async def test_latest_snapshot_breaks_date_ties_by_creation(db_session: AsyncSession):
    now = utcnow()
    forecast = Forecast(name="Tied", period="monthly", start_date=now, end_date=now + timedelta(days=30))
    db_session.add(forecast)
    await db_session.flush()

    earlier = ForecastSnapshot(forecast_id=forecast.id, snapshot_date=now, notes="First", created_at=now)
    later = ForecastSnapshot(
        forecast_id=forecast.id, snapshot_date=now, notes="Second", created_at=now + timedelta(seconds=1)
    )
    db_session.add_all([earlier, later])
    await db_session.commit()

    detail = await ForecastService(db_session).get_forecast_detail(forecast.id)

    assert detail["latest_snapshot"]["notes"] == "Second"
    assert [s["notes"] for s in detail["snapshots"]] == ["Second", "First"]


async def test_snapshot_of_uncalculated_forecast_uses_zeros(client: AsyncClient, forecast_window):
    forecast_id = forecast_window["forecast"]["id"]

    response = await client.post(f"/api/v1/forecasts/{forecast_id}/snapshots")
    assert response.status_code == 201

    snapshot = response.json()["data"]
    assert (snapshot["committed"], snapshot["best_case"], snapshot["pipeline"], snapshot["closed"]) == (0, 0, 0, 0)
    assert snapshot["predicted_total"] is None


async def test_generate_predictions(client: AsyncClient, forecast_window):
    forecast_id = forecast_window["forecast"]["id"]

    response = await client.post(f"/api/v1/forecasts/{forecast_id}/predictions")
    assert response.status_code == 200

    result = response.json()["data"]
    by_name = {p["deal_name"]: p for p in result["predictions"]}

    assert set(by_name) == {"Big logo", "Mid market"}
    # Fresh deals closing in two weeks carry no risk
    assert by_name["Big logo"]["ai_adjusted_probability"] == 95
    assert by_name["Mid market"]["risk_factors"] == []
    assert result["committed"] == 100000
    assert result["predicted_revenue"] == pytest.approx(140000)
    # committed ratio 0.5 gives no quality factor; 10 of 40 days elapsed
    assert result["prediction_factors"] == []
    assert result["confidence"] == 61

    forecast = (await client.get(f"/api/v1/forecasts/{forecast_id}")).json()["data"]
    assert forecast["confidence"] == 61
    assert forecast["prediction_factors"] == []


async def test_deals_by_forecast_category(client: AsyncClient, forecast_window):
    forecast_id = forecast_window["forecast"]["id"]

    response = await client.get(f"/api/v1/forecasts/{forecast_id}/categories")
    assert response.status_code == 200

    data = response.json()["data"]
    assert [d["id"] for d in data["deals"]["committed"]] == [forecast_window["committed"]["id"]]
    assert [d["id"] for d in data["deals"]["pipeline"]] == [forecast_window["pipeline"]["id"]]
    assert data["deals"]["best_case"] == []
    assert [d["id"] for d in data["closed_deals"]] == [forecast_window["won"]["id"]]
    assert data["totals"]["closed"] == 20000
    assert data["deal_counts"] == {"committed": 1, "best_case": 0, "pipeline": 1, "omitted": 0, "closed": 1}


async def test_forecast_pipeline_filter(client: AsyncClient, create_deal):
    now = utcnow()
    in_window = (now + timedelta(days=5)).isoformat()
    await create_deal(amount=1000, probability=90, expected_close_date=in_window)

    response = await client.post("/api/v1/pipelines/", json={
        "name": "Partners",
        "stages": [{"id": "intro", "name": "Intro", "order": 0, "probability": 30}],
    })
    other_pipeline = response.json()["data"]["id"]
    await client.post("/api/v1/deals/", json={
        "name": "Reseller", "pipeline_id": other_pipeline, "stage_id": "intro",
        "amount": 4000, "expected_close_date": in_window,
    })

    forecast = await create_forecast(
        client, now - timedelta(days=1), now + timedelta(days=10), pipeline_id=other_pipeline
    )
    result = (await client.post(f"/api/v1/forecasts/{forecast['id']}/calculate")).json()["data"]

    assert result["committed"] == 0
    assert result["pipeline"] == 4000
    assert result["weighted_pipeline"] == pytest.approx(1200)


async def test_historical_accuracy_only_counts_finished_forecasts(client: AsyncClient):
    now = utcnow()
    finished = await create_forecast(
        client, now - timedelta(days=60), now - timedelta(days=31), name="Last month", target_revenue=0
    )
    await create_forecast(client, now - timedelta(days=1), now + timedelta(days=29), name="This month")
    await client.post(f"/api/v1/forecasts/{finished['id']}/calculate")

    response = await client.get("/api/v1/forecasts/accuracy")
    assert response.status_code == 200

    data = response.json()["data"]
    assert [f["forecast_id"] for f in data["forecasts"]] == [finished["id"]]
    assert data["forecasts"][0]["target_attainment"] == 0
    assert data["forecasts"][0]["prediction_accuracy"] == 0
    assert data["aggregates"]["total_forecasts"] == 1


async def test_historical_accuracy_empty(client: AsyncClient):
    data = (await client.get("/api/v1/forecasts/accuracy")).json()["data"]
    assert data["forecasts"] == []
    assert data["aggregates"] == {"average_accuracy": 0, "average_attainment": 0, "total_forecasts": 0}


async def test_quick_forecast(client: AsyncClient):
    response = await client.post("/api/v1/forecasts/quick", json={"period": "quarterly", "target_revenue": 500000})
    assert response.status_code == 201

    forecast = response.json()["data"]
    _, _, expected_name = engine.period_bounds(ForecastPeriod.QUARTERLY, utcnow())
    assert forecast["name"] == expected_name
    assert forecast["period"] == "quarterly"
    assert forecast["is_active"] is True


async def test_forecast_summary(client: AsyncClient):
    response = await client.get("/api/v1/forecasts/summary")
    assert response.json()["data"] is None

    now = utcnow()
    await create_forecast(client, now - timedelta(days=40), now - timedelta(days=10), name="Older")
    current = await create_forecast(
        client, now - timedelta(days=10), now + timedelta(days=20), name="Current", target_revenue=1000
    )

    summary = (await client.get("/api/v1/forecasts/summary")).json()["data"]
    assert summary["forecast"]["id"] == current["id"]
    assert summary["previous_forecast"]["name"] == "Older"
    assert summary["progress"] == 0
    assert summary["total_days"] == 30
    assert summary["days_remaining"] == 20
    assert summary["pace_status"] == "at_risk"


async def test_list_update_and_delete_forecast(client: AsyncClient):
    now = utcnow()
    forecast = await create_forecast(client, now, now + timedelta(days=30))
    await create_forecast(client, now, now + timedelta(days=365), period="yearly")

    response = await client.get("/api/v1/forecasts/", params={"period": "monthly"})
    assert [f["id"] for f in response.json()["data"]["forecasts"]] == [forecast["id"]]

    response = await client.patch(f"/api/v1/forecasts/{forecast['id']}", json={"is_active": False, "name": "Renamed"})
    assert response.status_code == 200
    assert response.json()["data"]["name"] == "Renamed"
    assert response.json()["data"]["period"] == "monthly"

    response = await client.patch(
        f"/api/v1/forecasts/{forecast['id']}", json={"end_date": (now - timedelta(days=1)).isoformat()}
    )
    assert response.status_code == 400

    await client.post(f"/api/v1/forecasts/{forecast['id']}/snapshots")
    response = await client.delete(f"/api/v1/forecasts/{forecast['id']}")
    assert response.status_code == 200

    response = await client.get(f"/api/v1/forecasts/{forecast['id']}")
    assert response.status_code == 404


async def test_create_forecast_rejects_inverted_window(client: AsyncClient):
    now = utcnow()
    response = await client.post("/api/v1/forecasts/", json={
        "name": "Backwards",
        "period": "monthly",
        "start_date": now.isoformat(),
        "end_date": (now - timedelta(days=1)).isoformat(),
    })
    assert response.status_code == 400


async def test_missing_forecast(client: AsyncClient):
    forecast_id = uuid4()

    for method, path in (
        ("get", f"/api/v1/forecasts/{forecast_id}"),
        ("post", f"/api/v1/forecasts/{forecast_id}/calculate"),
        ("post", f"/api/v1/forecasts/{forecast_id}/predictions"),
        ("post", f"/api/v1/forecasts/{forecast_id}/snapshots"),
        ("get", f"/api/v1/forecasts/{forecast_id}/categories"),
    ):
        response = await getattr(client, method)(path)
        assert response.status_code == 404
        assert response.json()["detail"] == "Forecast not found"
