"""
Pipeline CRM Forecast Service
Forecast persistence, recalculation, snapshots and accuracy reporting
"""

import math
from datetime import datetime
from typing import Dict, Any, List, Optional, Tuple
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
import structlog

from ..core.clock import utcnow, as_naive_utc, SECONDS_PER_DAY
from ..core.errors import NotFoundError
from ..core.metrics import FORECAST_CALCULATIONS
from ..models.deals import Deal, DealStatus
from ..models.forecasts import Forecast, ForecastSnapshot, ForecastPeriod
from . import forecast_engine as engine
from .nats_client import publish_event

logger = structlog.get_logger()

UPDATABLE_FIELDS = (
    "name", "description", "target_revenue", "pipeline_id",
    "owner_id", "is_active", "start_date", "end_date",
)


class ForecastService:
    """Service for revenue forecasts"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_forecast(self, forecast_id: UUID) -> Forecast:
        forecast = await self.db.get(Forecast, forecast_id)
        if not forecast:
            raise NotFoundError("Forecast not found")
        return forecast

    async def list_forecasts(
        self,
        period: Optional[ForecastPeriod] = None,
        owner_id: Optional[UUID] = None,
        is_active: Optional[bool] = None,
        limit: int = 50
    ) -> List[Dict[str, Any]]:
        """List forecasts, newest first"""
        query = select(Forecast)

        if period:
            query = query.where(Forecast.period == ForecastPeriod(period).value)
        if owner_id:
            query = query.where(Forecast.owner_id == owner_id)
        if is_active is not None:
            query = query.where(Forecast.is_active == is_active)

        query = query.order_by(Forecast.created_at.desc()).limit(limit)
        result = await self.db.execute(query)

        return [forecast.to_dict() for forecast in result.scalars().all()]

    async def get_forecast_detail(self, forecast_id: UUID) -> Dict[str, Any]:
        """Forecast with its ten most recent snapshots, newest first"""
        forecast = await self.get_forecast(forecast_id)

        result = await self.db.execute(
            select(ForecastSnapshot)
            .where(ForecastSnapshot.forecast_id == forecast_id)
            .order_by(ForecastSnapshot.snapshot_date.desc(), ForecastSnapshot.created_at.desc())
            .limit(10)
        )
        snapshots = [snapshot.to_dict() for snapshot in result.scalars().all()]

        data = forecast.to_dict()
        data["latest_snapshot"] = snapshots[0] if snapshots else None
        data["snapshots"] = snapshots
        return data

    async def create_forecast(
        self,
        name: str,
        period: ForecastPeriod,
        start_date: datetime,
        end_date: datetime,
        target_revenue: Optional[float] = None,
        pipeline_id: Optional[UUID] = None,
        owner_id: Optional[UUID] = None,
        description: Optional[str] = None,
        created_by: Optional[UUID] = None
    ) -> Dict[str, Any]:
        """Create a forecast over [start_date, end_date]"""
        start_date = as_naive_utc(start_date)
        end_date = as_naive_utc(end_date)
        if end_date < start_date:
            raise ValueError("Forecast end date must not precede its start date")

        try:
            forecast = Forecast(
                name=name,
                description=description,
                period=ForecastPeriod(period).value,
                start_date=start_date,
                end_date=end_date,
                target_revenue=target_revenue,
                pipeline_id=pipeline_id,
                owner_id=owner_id,
                created_by=created_by,
                is_active=True,
            )
            self.db.add(forecast)
            await self.db.commit()
            await self.db.refresh(forecast)

            logger.info(
                "Forecast created",
                forecast_id=str(forecast.id),
                period=forecast.period,
                start_date=start_date.isoformat(),
                end_date=end_date.isoformat()
            )

            return forecast.to_dict()

        except Exception as e:
            await self.db.rollback()
            logger.error("Forecast creation failed", error=str(e))
            raise

    async def create_quick_forecast(
        self,
        period: ForecastPeriod,
        target_revenue: Optional[float] = None,
        pipeline_id: Optional[UUID] = None,
        owner_id: Optional[UUID] = None,
        created_by: Optional[UUID] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Forecast for the calendar month, quarter or year containing `now`"""
        start, end, name = engine.period_bounds(ForecastPeriod(period), now or utcnow())

        return await self.create_forecast(
            name=name,
            period=period,
            start_date=start,
            end_date=end,
            target_revenue=target_revenue,
            pipeline_id=pipeline_id,
            owner_id=owner_id,
            created_by=created_by,
        )

    async def update_forecast(self, forecast_id: UUID, **updates) -> Dict[str, Any]:
        """Apply only the supplied fields"""
        forecast = await self.get_forecast(forecast_id)

        for field in ("start_date", "end_date"):
            updates[field] = as_naive_utc(updates.get(field))

        for field in UPDATABLE_FIELDS:
            if updates.get(field) is not None:
                setattr(forecast, field, updates[field])

        if forecast.end_date < forecast.start_date:
            await self.db.rollback()
            raise ValueError("Forecast end date must not precede its start date")

        forecast.updated_at = utcnow()
        await self.db.commit()
        await self.db.refresh(forecast)

        logger.info("Forecast updated", forecast_id=str(forecast_id), fields=sorted(k for k, v in updates.items() if v is not None))
        return forecast.to_dict()

    async def delete_forecast(self, forecast_id: UUID) -> None:
        """Delete a forecast together with its snapshots"""
        forecast = await self.get_forecast(forecast_id)

        try:
            result = await self.db.execute(
                select(ForecastSnapshot).where(ForecastSnapshot.forecast_id == forecast_id)
            )
            for snapshot in result.scalars().all():
                await self.db.delete(snapshot)

            await self.db.delete(forecast)
            await self.db.commit()

            logger.info("Forecast deleted", forecast_id=str(forecast_id))

        except Exception as e:
            await self.db.rollback()
            logger.error("Forecast deletion failed", forecast_id=str(forecast_id), error=str(e))
            raise

    async def calculate_forecast(self, forecast_id: UUID, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Recompute the cached aggregates from the current deals"""
        forecast = await self.get_forecast(forecast_id)
        open_deals, closed = await self._load_window(forecast)

        result = engine.calculate_base_forecast(open_deals, closed)

        forecast.committed = result["committed"]
        forecast.best_case = result["best_case"]
        forecast.pipeline = result["pipeline"]
        forecast.closed = result["closed"]
        forecast.predicted_revenue = result["predicted_revenue"]
        forecast.confidence = result["confidence"]
        forecast.last_calculated_at = now or utcnow()

        await self._commit_calculation(forecast, "base")

        logger.info(
            "Forecast calculated",
            forecast_id=str(forecast_id),
            deal_count=len(open_deals),
            predicted_revenue=result["predicted_revenue"],
            confidence=result["confidence"]
        )

        await publish_event("forecasts.calculated", {
            "forecast_id": str(forecast_id),
            "predicted_revenue": result["predicted_revenue"],
            "confidence": result["confidence"],
        })

        return result

    async def generate_predictions(self, forecast_id: UUID, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Risk-adjusted recalculation with per-deal predictions"""
        now = now or utcnow()
        forecast = await self.get_forecast(forecast_id)
        open_deals, closed = await self._load_window(forecast)

        result = engine.generate_predictions(open_deals, closed, forecast.start_date, forecast.end_date, now)

        forecast.committed = result["committed"]
        forecast.best_case = result["best_case"]
        forecast.pipeline = result["pipeline"]
        forecast.closed = result["closed"]
        forecast.predicted_revenue = result["predicted_revenue"]
        forecast.confidence = result["confidence"]
        forecast.prediction_factors = result["prediction_factors"]
        forecast.last_calculated_at = now

        await self._commit_calculation(forecast, "predictions")

        logger.info(
            "Forecast predictions generated",
            forecast_id=str(forecast_id),
            deal_count=len(open_deals),
            predicted_revenue=result["predicted_revenue"],
            confidence=result["confidence"],
            factors=[factor["factor"] for factor in result["prediction_factors"]]
        )

        await publish_event("forecasts.predicted", {
            "forecast_id": str(forecast_id),
            "predicted_revenue": result["predicted_revenue"],
            "confidence": result["confidence"],
        })

        return result

    async def snapshot_forecast(self, forecast_id: UUID, notes: Optional[str] = None) -> Dict[str, Any]:
        """Freeze the forecast's cached aggregates and current deal list"""
        forecast = await self.get_forecast(forecast_id)
        open_deals, _ = await self._load_window(forecast, include_closed=False)

        try:
            snapshot = ForecastSnapshot(
                forecast_id=forecast.id,
                snapshot_date=utcnow(),
                committed=forecast.committed or 0,
                best_case=forecast.best_case or 0,
                pipeline=forecast.pipeline or 0,
                closed=forecast.closed or 0,
                predicted_total=forecast.predicted_revenue,
                confidence=forecast.confidence,
                predictions=engine.build_predictions(open_deals),
                notes=notes,
            )
            self.db.add(snapshot)
            await self.db.commit()
            await self.db.refresh(snapshot)

        except Exception as e:
            await self.db.rollback()
            logger.error("Forecast snapshot failed", forecast_id=str(forecast_id), error=str(e))
            raise

        logger.info("Forecast snapshot created", forecast_id=str(forecast_id), snapshot_id=str(snapshot.id))

        await publish_event("forecasts.snapshotted", {
            "forecast_id": str(forecast_id),
            "snapshot_id": str(snapshot.id),
        })

        return snapshot.to_dict()

    async def get_forecast_snapshots(self, forecast_id: UUID, limit: int = 30) -> List[Dict[str, Any]]:
        """The most recent `limit` snapshots in chronological order"""
        await self.get_forecast(forecast_id)

        result = await self.db.execute(
            select(ForecastSnapshot)
            .where(ForecastSnapshot.forecast_id == forecast_id)
            .order_by(ForecastSnapshot.snapshot_date.desc(), ForecastSnapshot.created_at.desc())
            .limit(limit)
        )
        snapshots = list(result.scalars().all())
        snapshots.reverse()

        return [snapshot.to_dict() for snapshot in snapshots]

    async def get_historical_accuracy(self, limit: int = 6, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Predicted vs actual for the most recently created finished forecasts"""
        now = now or utcnow()

        result = await self.db.execute(
            select(Forecast)
            .where(Forecast.end_date < now)
            .order_by(Forecast.created_at.desc())
            .limit(limit)
        )

        forecasts = []
        for forecast in result.scalars().all():
            predicted = forecast.predicted_revenue or 0
            actual = forecast.closed or 0
            target = forecast.target_revenue or 0

            forecasts.append({
                "forecast_id": str(forecast.id),
                "name": forecast.name,
                "period": forecast.period,
                "start_date": forecast.start_date.isoformat(),
                "end_date": forecast.end_date.isoformat(),
                "predicted": predicted,
                "actual": actual,
                "target": target,
                **engine.forecast_accuracy(predicted, actual, target),
            })

        count = len(forecasts)
        return {
            "forecasts": forecasts,
            "aggregates": {
                "average_accuracy": sum(f["prediction_accuracy"] for f in forecasts) / count if count else 0,
                "average_attainment": sum(f["target_attainment"] for f in forecasts) / count if count else 0,
                "total_forecasts": count,
            },
        }

    async def get_deals_by_forecast_category(self, forecast_id: UUID) -> Dict[str, Any]:
        """In-window open deals grouped by category, plus won deals closed in window"""
        forecast = await self.get_forecast(forecast_id)
        open_deals = await self._open_deals_in_window(forecast)
        won_deals = await self._won_deals_in_window(forecast)

        buckets = engine.categorize_deals(open_deals)

        totals = {category.value: sum(engine.deal_amount(d) for d in deals) for category, deals in buckets.items()}
        totals["closed"] = engine.closed_revenue(won_deals, forecast.start_date, forecast.end_date)

        deal_counts = {category.value: len(deals) for category, deals in buckets.items()}
        deal_counts["closed"] = len(won_deals)

        return {
            "deals": {category.value: [deal.to_dict() for deal in deals] for category, deals in buckets.items()},
            "closed_deals": [deal.to_dict() for deal in won_deals],
            "totals": totals,
            "deal_counts": deal_counts,
        }

    async def get_forecast_summary(self, owner_id: Optional[UUID] = None, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """Progress and pace of the most recent active forecast"""
        now = now or utcnow()

        query = select(Forecast).where(Forecast.is_active.is_(True))
        if owner_id:
            query = query.where(Forecast.owner_id == owner_id)
        result = await self.db.execute(query.order_by(Forecast.created_at.desc()).limit(2))
        active = result.scalars().all()

        if not active:
            return None

        current = active[0]
        previous = active[1] if len(active) > 1 else None

        closed = current.closed or 0
        target = current.target_revenue or 0
        progress = (closed / target) * 100 if target > 0 else 0

        days_remaining = max(0, math.ceil((current.end_date - now).total_seconds() / SECONDS_PER_DAY))
        total_days = math.ceil((current.end_date - current.start_date).total_seconds() / SECONDS_PER_DAY)
        days_elapsed = total_days - days_remaining

        return {
            "forecast": current.to_dict(),
            "previous_forecast": previous.to_dict() if previous else None,
            "progress": progress,
            "days_remaining": days_remaining,
            "days_elapsed": days_elapsed,
            "total_days": total_days,
            "pace_status": engine.pace_status(closed, target, days_elapsed, total_days),
        }

    async def _load_window(self, forecast: Forecast, include_closed: bool = True) -> Tuple[List[Deal], float]:
        open_deals = await self._open_deals_in_window(forecast)
        if not include_closed:
            return open_deals, 0.0

        won_deals = await self._won_deals_in_window(forecast)
        return open_deals, engine.closed_revenue(won_deals, forecast.start_date, forecast.end_date)

    async def _open_deals_in_window(self, forecast: Forecast) -> List[Deal]:
        query = select(Deal).where(
            Deal.status == DealStatus.OPEN.value,
            Deal.expected_close_date.is_not(None),
            Deal.expected_close_date >= forecast.start_date,
            Deal.expected_close_date <= forecast.end_date,
        )
        if forecast.pipeline_id:
            query = query.where(Deal.pipeline_id == forecast.pipeline_id)

        result = await self.db.execute(query.order_by(Deal.expected_close_date))
        return engine.filter_deals_in_window(
            result.scalars().all(), forecast.start_date, forecast.end_date, forecast.pipeline_id
        )

    async def _won_deals_in_window(self, forecast: Forecast) -> List[Deal]:
        # Closed revenue ignores the pipeline filter
        result = await self.db.execute(
            select(Deal).where(
                Deal.status == DealStatus.WON.value,
                Deal.actual_close_date.is_not(None),
                Deal.actual_close_date >= forecast.start_date,
                Deal.actual_close_date <= forecast.end_date,
            )
        )
        return list(result.scalars().all())

    async def _commit_calculation(self, forecast: Forecast, kind: str):
        try:
            forecast.updated_at = utcnow()
            await self.db.commit()
            FORECAST_CALCULATIONS.labels(kind=kind).inc()
        except Exception as e:
            await self.db.rollback()
            logger.error("Forecast calculation commit failed", forecast_id=str(forecast.id), kind=kind, error=str(e))
            raise
