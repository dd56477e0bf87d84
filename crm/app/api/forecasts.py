"""
Pipeline CRM Forecast API Endpoints
Revenue forecasts, predictions, snapshots and accuracy
"""

from typing import Optional
from uuid import UUID
from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
import structlog

from ..core.database import get_db
from ..core.errors import NotFoundError
from ..models.forecasts import ForecastPeriod
from ..services.forecast_service import ForecastService

logger = structlog.get_logger()
router = APIRouter(prefix="/forecasts", tags=["forecasts"])


class CreateForecastRequest(BaseModel):
    """Request model for creating a forecast"""
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    period: ForecastPeriod
    start_date: datetime
    end_date: datetime
    target_revenue: Optional[float] = Field(None, ge=0)
    pipeline_id: Optional[UUID] = None
    owner_id: Optional[UUID] = None
    created_by: Optional[UUID] = None


class QuickForecastRequest(BaseModel):
    """Request model for a forecast over the current calendar period"""
    period: ForecastPeriod
    target_revenue: Optional[float] = Field(None, ge=0)
    pipeline_id: Optional[UUID] = None
    owner_id: Optional[UUID] = None
    created_by: Optional[UUID] = None


class UpdateForecastRequest(BaseModel):
    """Request model for updating a forecast"""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    target_revenue: Optional[float] = Field(None, ge=0)
    pipeline_id: Optional[UUID] = None
    owner_id: Optional[UUID] = None
    is_active: Optional[bool] = None


class SnapshotRequest(BaseModel):
    """Request model for a forecast snapshot"""
    notes: Optional[str] = Field(None, max_length=2000)


@router.get("/")
async def list_forecasts(
    period: Optional[ForecastPeriod] = Query(None),
    owner_id: Optional[UUID] = Query(None),
    is_active: Optional[bool] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db)
):
    """List forecasts, newest first"""
    try:
        forecast_service = ForecastService(db)
        forecasts = await forecast_service.list_forecasts(
            period=period,
            owner_id=owner_id,
            is_active=is_active,
            limit=limit
        )

        return {
            "status": "success",
            "data": {"forecasts": forecasts, "total": len(forecasts)}
        }

    except Exception as e:
        logger.error("Forecast listing failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to list forecasts"
        )


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_forecast(
    request: CreateForecastRequest,
    db: AsyncSession = Depends(get_db)
):
    """Create a forecast over an explicit date window"""
    try:
        forecast_service = ForecastService(db)
        result = await forecast_service.create_forecast(**request.model_dump())

        return {
            "status": "success",
            "message": "Forecast created",
            "data": result
        }

    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    except Exception as e:
        logger.error("Forecast creation failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create forecast"
        )


@router.post("/quick", status_code=status.HTTP_201_CREATED)
async def create_quick_forecast(
    request: QuickForecastRequest,
    db: AsyncSession = Depends(get_db)
):
    """Create a forecast for the current month, quarter or year"""
    try:
        forecast_service = ForecastService(db)
        result = await forecast_service.create_quick_forecast(**request.model_dump())

        return {
            "status": "success",
            "message": "Forecast created",
            "data": result
        }

    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    except Exception as e:
        logger.error("Quick forecast creation failed", period=request.period, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create forecast"
        )


@router.get("/summary")
async def get_forecast_summary(
    owner_id: Optional[UUID] = Query(None),
    db: AsyncSession = Depends(get_db)
):
    """Progress and pace of the most recent active forecast"""
    try:
        forecast_service = ForecastService(db)
        summary = await forecast_service.get_forecast_summary(owner_id=owner_id)

        return {
            "status": "success",
            "data": summary
        }

    except Exception as e:
        logger.error("Forecast summary failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get forecast summary"
        )


@router.get("/accuracy")
async def get_historical_accuracy(
    limit: int = Query(6, ge=1, le=50),
    db: AsyncSession = Depends(get_db)
):
    """Predicted vs actual revenue of finished forecasts"""
    try:
        forecast_service = ForecastService(db)
        accuracy = await forecast_service.get_historical_accuracy(limit=limit)

        return {
            "status": "success",
            "data": accuracy
        }

    except Exception as e:
        logger.error("Historical accuracy failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get historical accuracy"
        )


@router.get("/{forecast_id}")
async def get_forecast(
    forecast_id: UUID,
    db: AsyncSession = Depends(get_db)
):
    """Get a forecast with its latest snapshots"""
    try:
        forecast_service = ForecastService(db)
        forecast = await forecast_service.get_forecast_detail(forecast_id)

        return {
            "status": "success",
            "data": forecast
        }

    except NotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )
    except Exception as e:
        logger.error("Forecast retrieval failed", forecast_id=str(forecast_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve forecast"
        )


@router.patch("/{forecast_id}")
async def update_forecast(
    forecast_id: UUID,
    request: UpdateForecastRequest,
    db: AsyncSession = Depends(get_db)
):
    """Update the supplied forecast fields"""
    try:
        forecast_service = ForecastService(db)
        result = await forecast_service.update_forecast(forecast_id, **request.model_dump(exclude_unset=True))

        return {
            "status": "success",
            "message": "Forecast updated",
            "data": result
        }

    except NotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    except Exception as e:
        logger.error("Forecast update failed", forecast_id=str(forecast_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update forecast"
        )


@router.delete("/{forecast_id}")
async def delete_forecast(
    forecast_id: UUID,
    db: AsyncSession = Depends(get_db)
):
    """Delete a forecast and its snapshots"""
    try:
        forecast_service = ForecastService(db)
        await forecast_service.delete_forecast(forecast_id)

        return {
            "status": "success",
            "message": "Forecast deleted"
        }

    except NotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )
    except Exception as e:
        logger.error("Forecast deletion failed", forecast_id=str(forecast_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to delete forecast"
        )


@router.post("/{forecast_id}/calculate")
async def calculate_forecast(
    forecast_id: UUID,
    db: AsyncSession = Depends(get_db)
):
    """Recompute the forecast from current deals"""
    try:
        forecast_service = ForecastService(db)
        result = await forecast_service.calculate_forecast(forecast_id)

        return {
            "status": "success",
            "message": "Forecast calculated",
            "data": result
        }

    except NotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )
    except Exception as e:
        logger.error("Forecast calculation failed", forecast_id=str(forecast_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to calculate forecast"
        )


@router.post("/{forecast_id}/predictions")
async def generate_predictions(
    forecast_id: UUID,
    db: AsyncSession = Depends(get_db)
):
    """Risk-adjusted forecast with per-deal predictions"""
    try:
        forecast_service = ForecastService(db)
        result = await forecast_service.generate_predictions(forecast_id)

        return {
            "status": "success",
            "message": "Predictions generated",
            "data": result
        }

    except NotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )
    except Exception as e:
        logger.error("Prediction generation failed", forecast_id=str(forecast_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to generate predictions"
        )


@router.post("/{forecast_id}/snapshots", status_code=status.HTTP_201_CREATED)
async def snapshot_forecast(
    forecast_id: UUID,
    request: Optional[SnapshotRequest] = None,
    db: AsyncSession = Depends(get_db)
):
    """Record a point-in-time copy of the forecast"""
    try:
        forecast_service = ForecastService(db)
        snapshot = await forecast_service.snapshot_forecast(
            forecast_id,
            notes=request.notes if request else None
        )

        return {
            "status": "success",
            "message": "Snapshot created",
            "data": snapshot
        }

    except NotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )
    except Exception as e:
        logger.error("Forecast snapshot failed", forecast_id=str(forecast_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create snapshot"
        )


@router.get("/{forecast_id}/snapshots")
async def get_forecast_snapshots(
    forecast_id: UUID,
    limit: int = Query(30, ge=1, le=365),
    db: AsyncSession = Depends(get_db)
):
    """Snapshots for trend charts, oldest first"""
    try:
        forecast_service = ForecastService(db)
        snapshots = await forecast_service.get_forecast_snapshots(forecast_id, limit=limit)

        return {
            "status": "success",
            "data": {"snapshots": snapshots, "total": len(snapshots)}
        }

    except NotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )
    except Exception as e:
        logger.error("Snapshot listing failed", forecast_id=str(forecast_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to list snapshots"
        )


@router.get("/{forecast_id}/categories")
async def get_deals_by_forecast_category(
    forecast_id: UUID,
    db: AsyncSession = Depends(get_db)
):
    """Deals in the forecast window grouped by category"""
    try:
        forecast_service = ForecastService(db)
        result = await forecast_service.get_deals_by_forecast_category(forecast_id)

        return {
            "status": "success",
            "data": result
        }

    except NotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )
    except Exception as e:
        logger.error("Forecast categories failed", forecast_id=str(forecast_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get forecast categories"
        )
