"""
Pipeline CRM Forecast Engine
Deal categorization, probability weighting, risk heuristics and confidence scoring

Everything here is a pure function over deal-like objects (anything with
``amount``, ``probability``, ``expected_close_date``, ``created_at``,
``stage_changed_at`` ...), so it can run against ORM rows or plain test
doubles alike. Database access lives in ``forecast_service``.
"""

import calendar
import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..core.clock import days_between
from ..models.forecasts import ForecastCategory, ForecastPeriod

# Category thresholds (inclusive lower bounds)
COMMITTED_THRESHOLD = 90
BEST_CASE_THRESHOLD = 70
PIPELINE_THRESHOLD = 20

LARGE_DEAL_AMOUNT = 100000

RISK_DEAL_OLD = "Deal is older than 90 days"
RISK_DEAL_AGING = "Deal is aging (60+ days)"
RISK_STAGE_STALE = "No stage movement in 30+ days"
RISK_STAGE_STAGNANT = "Stagnant stage progress"
RISK_CLOSE_IMMINENT = "Close date imminent but probability low"
RISK_LARGE_DEAL = "Large deal - typically longer sales cycle"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp(value: float, low: float = 0, high: float = 100) -> float:
    return max(low, min(high, value))


def deal_amount(deal) -> float:
    return float(deal.amount or 0)


def deal_probability(deal) -> float:
    return float(deal.probability or 0)


def categorize(probability: Optional[float]) -> ForecastCategory:
    """Bucket a win probability (0-100). Missing probability counts as 0."""
    probability = probability or 0
    if probability >= COMMITTED_THRESHOLD:
        return ForecastCategory.COMMITTED
    if probability >= BEST_CASE_THRESHOLD:
        return ForecastCategory.BEST_CASE
    if probability >= PIPELINE_THRESHOLD:
        return ForecastCategory.PIPELINE
    return ForecastCategory.OMITTED


def in_window(moment: Optional[datetime], start: datetime, end: datetime) -> bool:
    return moment is not None and start <= moment <= end


def filter_deals_in_window(
    deals: Iterable[Any],
    start: datetime,
    end: datetime,
    pipeline_id: Optional[Any] = None
) -> List[Any]:
    """Deals expected to close inside [start, end], optionally within one pipeline.

    Deals without an expected close date are excluded.
    """
    return [
        deal for deal in deals
        if in_window(deal.expected_close_date, start, end)
        and (pipeline_id is None or deal.pipeline_id == pipeline_id)
    ]


def closed_revenue(won_deals: Iterable[Any], start: datetime, end: datetime) -> float:
    """Sum of won deal amounts actually closed inside [start, end]"""
    return sum(
        deal_amount(deal) for deal in won_deals
        if in_window(deal.actual_close_date, start, end)
    )


def categorize_deals(deals: Iterable[Any]) -> Dict[ForecastCategory, List[Any]]:
    buckets: Dict[ForecastCategory, List[Any]] = {category: [] for category in ForecastCategory}
    for deal in deals:
        buckets[categorize(deal.probability)].append(deal)
    return buckets


def category_totals(deals: Iterable[Any]) -> Dict[str, float]:
    totals = {category.value: 0.0 for category in ForecastCategory}
    for deal in deals:
        totals[categorize(deal.probability).value] += deal_amount(deal)
    return totals


def weighted_pipeline(deals: Iterable[Any]) -> float:
    """Expected value of the deals: sum of amount x probability / 100"""
    return sum(deal_amount(deal) * deal_probability(deal) / 100 for deal in deals)


def calculate_confidence(deal_count: int, committed: float, best_case: float, pipeline: float) -> int:
    """Heuristic 0-100 confidence from bucket composition and deal count"""
    if deal_count == 0:
        return 0

    total = committed + best_case + pipeline
    if total == 0:
        return 50

    confidence = 50.0
    confidence += (committed / total) * 40
    confidence += (best_case / total) * 20
    confidence += min(10, deal_count * 0.5)

    return int(_clamp(_round_half_up(confidence)))


def calculate_base_forecast(deals: Sequence[Any], closed: float) -> Dict[str, Any]:
    """Bucket totals, weighted prediction and confidence for in-window open deals"""
    totals = category_totals(deals)
    weighted = weighted_pipeline(deals)

    return {
        "committed": totals[ForecastCategory.COMMITTED.value],
        "best_case": totals[ForecastCategory.BEST_CASE.value],
        "pipeline": totals[ForecastCategory.PIPELINE.value],
        "omitted": totals[ForecastCategory.OMITTED.value],
        "closed": closed,
        "weighted_pipeline": weighted,
        "predicted_revenue": closed + weighted,
        "confidence": calculate_confidence(
            len(deals),
            totals[ForecastCategory.COMMITTED.value],
            totals[ForecastCategory.BEST_CASE.value],
            totals[ForecastCategory.PIPELINE.value],
        ),
    }


def analyze_deal(deal, now: datetime) -> Dict[str, Any]:
    """Adjust a deal's probability for age, staleness, close proximity and size"""
    base_probability = deal_probability(deal)
    adjusted = base_probability
    risk_factors: List[str] = []

    if deal.created_at is not None:
        age_days = days_between(deal.created_at, now)
        if age_days > 90:
            adjusted -= 10
            risk_factors.append(RISK_DEAL_OLD)
        elif age_days > 60:
            adjusted -= 5
            risk_factors.append(RISK_DEAL_AGING)

    if deal.stage_changed_at is not None:
        stale_days = days_between(deal.stage_changed_at, now)
        if stale_days > 30:
            adjusted -= 15
            risk_factors.append(RISK_STAGE_STALE)
        elif stale_days > 14:
            adjusted -= 5
            risk_factors.append(RISK_STAGE_STAGNANT)

    if deal.expected_close_date is not None:
        days_until_close = days_between(now, deal.expected_close_date)
        if days_until_close < 7 and base_probability < 80:
            adjusted -= 10
            risk_factors.append(RISK_CLOSE_IMMINENT)

    if deal_amount(deal) > LARGE_DEAL_AMOUNT:
        adjusted -= 5
        risk_factors.append(RISK_LARGE_DEAL)

    return {
        "adjusted_probability": _clamp(adjusted),
        "risk_factors": risk_factors,
    }


def build_prediction(
    deal,
    category: ForecastCategory,
    adjusted_probability: Optional[float] = None,
    risk_factors: Optional[List[str]] = None
) -> Dict[str, Any]:
    prediction = {
        "deal_id": str(deal.id),
        "deal_name": deal.name,
        "amount": deal_amount(deal),
        "probability": deal_probability(deal),
        "predicted_close_date": deal.expected_close_date.isoformat() if deal.expected_close_date else None,
        "category": category.value,
    }
    if adjusted_probability is not None:
        prediction["ai_adjusted_probability"] = adjusted_probability
        prediction["risk_factors"] = risk_factors or []
    return prediction


def build_predictions(deals: Iterable[Any]) -> List[Dict[str, Any]]:
    """Per-deal predictions using the raw probabilities"""
    return [build_prediction(deal, categorize(deal.probability)) for deal in deals]


def period_progress(start: datetime, end: datetime, now: datetime) -> float:
    """Elapsed fraction of [start, end]; a zero-length period counts as over"""
    total = (end - start).total_seconds()
    if total <= 0:
        return 1.0
    return (now - start).total_seconds() / total


def generate_prediction_factors(
    predictions: Sequence[Dict[str, Any]],
    start: datetime,
    end: datetime,
    now: datetime
) -> List[Dict[str, Any]]:
    """Qualitative factors explaining the adjusted confidence"""
    factors: List[Dict[str, Any]] = []
    total_count = len(predictions)

    committed_count = len([p for p in predictions if p["category"] == ForecastCategory.COMMITTED.value])
    committed_ratio = committed_count / total_count if total_count > 0 else 0

    if committed_ratio > 0.5:
        factors.append({
            "factor": "pipeline_quality",
            "impact": 15,
            "description": "Strong pipeline with majority of deals in committed stage",
        })
    elif committed_ratio < 0.2:
        factors.append({
            "factor": "pipeline_quality",
            "impact": -10,
            "description": "Pipeline heavily weighted toward early-stage deals",
        })

    deals_with_risks = [p for p in predictions if p.get("risk_factors")]
    if len(deals_with_risks) > total_count * 0.5:
        factors.append({
            "factor": "deal_health",
            "impact": -15,
            "description": "Many deals showing risk indicators (stagnation, aging)",
        })

    progress = period_progress(start, end, now)
    if progress > 0.75:
        factors.append({
            "factor": "time_pressure",
            "impact": -5,
            "description": "Less than 25% of forecast period remaining",
        })
    elif progress < 0.25:
        factors.append({
            "factor": "time_available",
            "impact": 5,
            "description": "Significant time remaining in forecast period",
        })

    return factors


def calculate_ai_confidence(
    predictions: Sequence[Dict[str, Any]],
    factors: Sequence[Dict[str, Any]]
) -> int:
    confidence = 60.0

    for factor in factors:
        confidence += factor["impact"] * 0.5

    confidence += min(15, len(predictions) * 0.5)

    adjusted = [
        p for p in predictions
        if p.get("ai_adjusted_probability") is not None
        and p["ai_adjusted_probability"] != p["probability"]
    ]
    adjustment_ratio = len(adjusted) / len(predictions) if predictions else 0
    if adjustment_ratio > 0.5:
        confidence -= 5

    return int(_clamp(_round_half_up(confidence)))


def generate_predictions(
    deals: Sequence[Any],
    closed: float,
    start: datetime,
    end: datetime,
    now: datetime
) -> Dict[str, Any]:
    """Risk-adjusted forecast: re-bucket on adjusted probabilities and rescore"""
    predictions: List[Dict[str, Any]] = []
    totals = {category.value: 0.0 for category in ForecastCategory}
    weighted = 0.0

    for deal in deals:
        analysis = analyze_deal(deal, now)
        adjusted_probability = analysis["adjusted_probability"]
        category = categorize(adjusted_probability)
        amount = deal_amount(deal)

        totals[category.value] += amount
        weighted += amount * adjusted_probability / 100

        predictions.append(build_prediction(
            deal,
            category,
            adjusted_probability=adjusted_probability,
            risk_factors=analysis["risk_factors"],
        ))

    factors = generate_prediction_factors(predictions, start, end, now)

    return {
        "committed": totals[ForecastCategory.COMMITTED.value],
        "best_case": totals[ForecastCategory.BEST_CASE.value],
        "pipeline": totals[ForecastCategory.PIPELINE.value],
        "closed": closed,
        "predicted_revenue": closed + weighted,
        "confidence": calculate_ai_confidence(predictions, factors),
        "predictions": predictions,
        "prediction_factors": factors,
    }


def pace_status(closed: float, target: float, days_elapsed: int, total_days: int) -> str:
    """Compare closed revenue with a linear path to target"""
    if target == 0 or total_days == 0:
        return "on_track"

    expected_progress = (days_elapsed / total_days) * target
    if expected_progress == 0:
        return "ahead" if closed > 0 else "on_track"

    progress_ratio = closed / expected_progress
    if progress_ratio >= 1.1:
        return "ahead"
    if progress_ratio >= 0.9:
        return "on_track"
    if progress_ratio >= 0.7:
        return "behind"
    return "at_risk"


def period_bounds(period: ForecastPeriod, now: datetime) -> Tuple[datetime, datetime, str]:
    """Start, end and display name of the calendar period containing `now`"""
    year = now.year

    if period == ForecastPeriod.MONTHLY:
        last_day = calendar.monthrange(year, now.month)[1]
        start = datetime(year, now.month, 1)
        end = datetime(year, now.month, last_day, 23, 59, 59, 999000)
        name = f"{calendar.month_name[now.month]} {year} Forecast"
    elif period == ForecastPeriod.QUARTERLY:
        quarter = (now.month - 1) // 3
        first_month = quarter * 3 + 1
        last_month = first_month + 2
        last_day = calendar.monthrange(year, last_month)[1]
        start = datetime(year, first_month, 1)
        end = datetime(year, last_month, last_day, 23, 59, 59, 999000)
        name = f"Q{quarter + 1} {year} Forecast"
    else:
        start = datetime(year, 1, 1)
        end = datetime(year, 12, 31, 23, 59, 59, 999000)
        name = f"{year} Annual Forecast"

    return start, end, name


def forecast_accuracy(predicted: float, actual: float, target: float) -> Dict[str, float]:
    """Accuracy of a finished forecast against what actually closed"""
    if predicted > 0:
        prediction_accuracy = min(100.0, 100 - abs((actual - predicted) / predicted * 100))
        variance_percentage = (actual - predicted) / predicted * 100
    else:
        prediction_accuracy = 0.0
        variance_percentage = 0.0

    target_attainment = (actual / target) * 100 if target > 0 else 0.0

    return {
        "prediction_accuracy": prediction_accuracy,
        "target_attainment": target_attainment,
        "variance": actual - predicted,
        "variance_percentage": variance_percentage,
    }
