"""
Test the pure forecasting functions
"""

from datetime import datetime, timedelta

import pytest

from crm.app.models.forecasts import ForecastCategory, ForecastPeriod
from crm.app.services import forecast_engine as engine


@pytest.mark.parametrize("probability,expected", [
    (100, ForecastCategory.COMMITTED),
    (90, ForecastCategory.COMMITTED),
    (89.999, ForecastCategory.BEST_CASE),
    (70, ForecastCategory.BEST_CASE),
    (69.999, ForecastCategory.PIPELINE),
    (20, ForecastCategory.PIPELINE),
    (19.999, ForecastCategory.OMITTED),
    (0, ForecastCategory.OMITTED),
    (None, ForecastCategory.OMITTED),
])
def test_categorize_thresholds(probability, expected):
    """Bucket boundaries are inclusive lower bounds."""
    assert engine.categorize(probability) == expected


def test_filter_deals_in_window(make_deal, now):
    """Only deals expected to close inside the window are kept."""
    start, end = now - timedelta(days=10), now + timedelta(days=10)
    pipeline_a, pipeline_b = "a", "b"

    inside = make_deal(expected_close_date=now, pipeline_id=pipeline_a)
    on_boundary = make_deal(expected_close_date=end, pipeline_id=pipeline_b)
    outside = make_deal(expected_close_date=end + timedelta(seconds=1))
    undated = make_deal(expected_close_date=None)

    deals = [inside, on_boundary, outside, undated]

    assert engine.filter_deals_in_window(deals, start, end) == [inside, on_boundary]
    assert engine.filter_deals_in_window(deals, start, end, pipeline_id=pipeline_a) == [inside]


def test_committed_deal_contributes_weighted_value(make_deal):
    """A 95% deal of 100000 is committed and worth 95000."""
    deal = make_deal(amount=100000, probability=95)

    result = engine.calculate_base_forecast([deal], closed=0)

    assert result["committed"] == 100000
    assert result["best_case"] == 0
    assert result["pipeline"] == 0
    assert result["weighted_pipeline"] == 95000
    assert result["predicted_revenue"] == 95000


def test_predicted_revenue_adds_closed(make_deal):
    """Predicted revenue is closed plus the weighted open deals."""
    deals = [
        make_deal(amount=100000, probability=95),
        make_deal(amount=50000, probability=50),
        make_deal(amount=40000, probability=10),
        make_deal(amount=30000, probability=None),
        make_deal(amount=None, probability=80),
    ]

    result = engine.calculate_base_forecast(deals, closed=20000)

    assert result["committed"] == 100000
    assert result["pipeline"] == 50000
    assert result["omitted"] == 70000
    assert result["weighted_pipeline"] == pytest.approx(95000 + 25000 + 4000)
    assert result["predicted_revenue"] == pytest.approx(20000 + 124000)


def test_confidence_edge_cases():
    assert engine.calculate_confidence(0, 0, 0, 0) == 0
    # Only omitted deals
    assert engine.calculate_confidence(3, 0, 0, 0) == 50
    # All committed, 20+ deals: 50 + 40 + 10
    assert engine.calculate_confidence(25, 1000, 0, 0) == 100


def test_confidence_rounds_half_up():
    # 50 + 0.5 * 40 + 0 + 1 * 0.5 = 70.5
    assert engine.calculate_confidence(1, 500, 0, 500) == 71


def test_confidence_monotonic_in_committed_ratio():
    """Moving value from pipeline into committed never lowers confidence."""
    scores = [
        engine.calculate_confidence(10, committed, 0, 100 - committed)
        for committed in range(0, 101, 5)
    ]

    assert scores == sorted(scores)
    assert scores[0] < scores[-1]


def test_analyze_deal_stacks_penalties(make_deal, now):
    """Old, stale and large: three penalties in fixed order."""
    deal = make_deal(
        probability=25,
        amount=150000,
        created_at=now - timedelta(days=100),
        stage_changed_at=now - timedelta(days=40),
        expected_close_date=now + timedelta(days=30),
    )

    analysis = engine.analyze_deal(deal, now)

    assert analysis["adjusted_probability"] == 0
    assert analysis["risk_factors"] == [
        engine.RISK_DEAL_OLD,
        engine.RISK_STAGE_STALE,
        engine.RISK_LARGE_DEAL,
    ]

    deal.probability = 60
    assert engine.analyze_deal(deal, now)["adjusted_probability"] == 30


def test_analyze_deal_milder_penalties(make_deal, now):
    deal = make_deal(
        probability=50,
        created_at=now - timedelta(days=61),
        stage_changed_at=now - timedelta(days=15),
        expected_close_date=now + timedelta(days=30),
    )

    analysis = engine.analyze_deal(deal, now)

    assert analysis["adjusted_probability"] == 40
    assert analysis["risk_factors"] == [engine.RISK_DEAL_AGING, engine.RISK_STAGE_STAGNANT]


def test_imminent_close_only_penalizes_low_probability(make_deal, now):
    overdue = make_deal(probability=79, expected_close_date=now - timedelta(days=2))
    confident = make_deal(probability=80, expected_close_date=now + timedelta(days=2))

    assert engine.analyze_deal(overdue, now)["risk_factors"] == [engine.RISK_CLOSE_IMMINENT]
    assert engine.analyze_deal(overdue, now)["adjusted_probability"] == 69
    assert engine.analyze_deal(confident, now)["risk_factors"] == []


def test_analyze_deal_skips_missing_timestamps(make_deal, now):
    deal = make_deal(probability=50, created_at=None, stage_changed_at=None, expected_close_date=None)

    analysis = engine.analyze_deal(deal, now)

    assert analysis == {"adjusted_probability": 50, "risk_factors": []}


def test_generate_predictions_uses_adjusted_probabilities(make_deal, now):
    """Adjusted probabilities drive both buckets and weighting; an adjusted 0 counts as 0."""
    start, end = now - timedelta(days=5), now + timedelta(days=25)
    healthy = make_deal(amount=100000, probability=95)
    doomed = make_deal(
        amount=200000,
        probability=25,
        created_at=now - timedelta(days=100),
        stage_changed_at=now - timedelta(days=40),
    )

    result = engine.generate_predictions([healthy, doomed], 5000, start, end, now)

    assert result["committed"] == 100000
    assert result["pipeline"] == 0
    assert result["predicted_revenue"] == pytest.approx(5000 + 95000)

    doomed_prediction = result["predictions"][1]
    assert doomed_prediction["category"] == ForecastCategory.OMITTED.value
    assert doomed_prediction["ai_adjusted_probability"] == 0
    assert doomed_prediction["probability"] == 25
    assert len(doomed_prediction["risk_factors"]) == 3


def test_prediction_factors(now):
    start, end = now - timedelta(days=1), now + timedelta(days=29)
    predictions = [
        {"category": "committed", "risk_factors": ["x"]},
        {"category": "committed", "risk_factors": ["y"]},
        {"category": "pipeline", "risk_factors": []},
    ]

    factors = engine.generate_prediction_factors(predictions, start, end, now)

    assert [(f["factor"], f["impact"]) for f in factors] == [
        ("pipeline_quality", 15),
        ("deal_health", -15),
        ("time_available", 5),
    ]


def test_zero_length_period_counts_as_elapsed(now):
    factors = engine.generate_prediction_factors([], now, now, now)

    assert engine.period_progress(now, now, now) == 1.0
    assert ("time_pressure", -5) in [(f["factor"], f["impact"]) for f in factors]
    # No deals means a committed ratio of 0
    assert ("pipeline_quality", -10) in [(f["factor"], f["impact"]) for f in factors]


def test_ai_confidence():
    predictions = [
        {"probability": 50, "ai_adjusted_probability": 50},
        {"probability": 50, "ai_adjusted_probability": 50},
    ]
    factors = [{"impact": 15}, {"impact": 5}]

    # 60 + 10 + 1
    assert engine.calculate_ai_confidence(predictions, factors) == 71

    adjusted = [
        {"probability": 50, "ai_adjusted_probability": 40},
        {"probability": 50, "ai_adjusted_probability": 45},
    ]
    assert engine.calculate_ai_confidence(adjusted, factors) == 66

    assert engine.calculate_ai_confidence([], [{"impact": -200}]) == 0


@pytest.mark.parametrize("closed,target,elapsed,total,expected", [
    (0, 0, 10, 30, "on_track"),
    (0, 1000, 10, 0, "on_track"),
    (500, 1000, 0, 30, "ahead"),
    (0, 1000, 0, 30, "on_track"),
    (400, 1000, 10, 30, "ahead"),
    (310, 1000, 10, 30, "on_track"),
    (240, 1000, 10, 30, "behind"),
    (100, 1000, 10, 30, "at_risk"),
])
def test_pace_status(closed, target, elapsed, total, expected):
    assert engine.pace_status(closed, target, elapsed, total) == expected


def test_period_bounds():
    moment = datetime(2026, 10, 17, 12, 0)

    start, end, name = engine.period_bounds(ForecastPeriod.QUARTERLY, moment)
    assert (start, end, name) == (
        datetime(2026, 10, 1),
        datetime(2026, 12, 31, 23, 59, 59, 999000),
        "Q4 2026 Forecast",
    )

    start, end, name = engine.period_bounds(ForecastPeriod.MONTHLY, datetime(2024, 2, 10))
    assert end.day == 29
    assert name == "February 2024 Forecast"

    _, _, name = engine.period_bounds(ForecastPeriod.YEARLY, moment)
    assert name == "2026 Annual Forecast"


def test_forecast_accuracy():
    result = engine.forecast_accuracy(predicted=100000, actual=90000, target=120000)

    assert result["prediction_accuracy"] == pytest.approx(90)
    assert result["target_attainment"] == pytest.approx(75)
    assert result["variance"] == -10000
    assert result["variance_percentage"] == pytest.approx(-10)

    # Accuracy is only capped from above
    assert engine.forecast_accuracy(100, 250, 0)["prediction_accuracy"] == pytest.approx(-50)

    empty = engine.forecast_accuracy(predicted=0, actual=5000, target=0)
    assert empty == {
        "prediction_accuracy": 0.0,
        "target_attainment": 0.0,
        "variance": 5000,
        "variance_percentage": 0.0,
    }
