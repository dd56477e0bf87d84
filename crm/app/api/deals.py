"""
Pipeline CRM Deal API Endpoints
Deal lifecycle: create, update, stage moves, won and lost
"""

from typing import List, Optional
from uuid import UUID
from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
import structlog

from ..core.database import get_db
from ..core.errors import NotFoundError
from ..models.deals import DealStatus
from ..services.deal_service import DealService

logger = structlog.get_logger()
router = APIRouter(prefix="/deals", tags=["deals"])


class CreateDealRequest(BaseModel):
    """Request model for creating a deal"""
    name: str = Field(..., min_length=1, max_length=200)
    pipeline_id: UUID
    stage_id: str = Field(..., min_length=1, max_length=50)
    amount: Optional[float] = Field(None, ge=0)
    currency: str = Field("USD", pattern=r'^[A-Z]{3}$')
    probability: Optional[float] = Field(None, ge=0, le=100)
    expected_close_date: Optional[datetime] = None
    owner_id: Optional[UUID] = None
    tags: Optional[List[str]] = None


class UpdateDealRequest(BaseModel):
    """Request model for updating a deal"""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    amount: Optional[float] = Field(None, ge=0)
    currency: Optional[str] = Field(None, pattern=r'^[A-Z]{3}$')
    probability: Optional[float] = Field(None, ge=0, le=100)
    expected_close_date: Optional[datetime] = None
    owner_id: Optional[UUID] = None
    tags: Optional[List[str]] = None


class MoveStageRequest(BaseModel):
    """Request model for moving a deal to another stage"""
    stage_id: str = Field(..., min_length=1, max_length=50)
    pipeline_id: Optional[UUID] = None


class MarkLostRequest(BaseModel):
    """Request model for closing a deal as lost"""
    reason: Optional[str] = Field(None, max_length=500)


def _raise_for(e: Exception, action: str, deal_id: Optional[UUID] = None):
    if isinstance(e, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, ValueError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    logger.error(f"Deal {action} failed", deal_id=str(deal_id) if deal_id else None, error=str(e))
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action} deal"
    )


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_deal(
    request: CreateDealRequest,
    user_id: Optional[UUID] = Query(None, description="ID of user creating the deal"),
    db: AsyncSession = Depends(get_db)
):
    """Create an open deal in a pipeline stage"""
    try:
        result = await DealService(db).create_deal(**request.model_dump(), user_id=user_id)
        return {
            "status": "success",
            "message": "Deal created",
            "data": result
        }

    except Exception as e:
        _raise_for(e, "create")


@router.get("/")
async def list_deals(
    status_filter: Optional[DealStatus] = Query(None, alias="status", description="Filter by deal status"),
    pipeline_id: Optional[UUID] = Query(None, description="Filter by pipeline"),
    stage_id: Optional[str] = Query(None, description="Filter by stage"),
    owner_id: Optional[UUID] = Query(None, description="Filter by owner"),
    limit: int = Query(50, ge=1, le=100, description="Number of deals to return"),
    offset: int = Query(0, ge=0, description="Number of deals to skip"),
    db: AsyncSession = Depends(get_db)
):
    """List deals with filtering"""
    try:
        result = await DealService(db).list_deals(
            status=status_filter,
            pipeline_id=pipeline_id,
            stage_id=stage_id,
            owner_id=owner_id,
            limit=limit,
            offset=offset
        )
        return {
            "status": "success",
            "data": result
        }

    except Exception as e:
        _raise_for(e, "list")


@router.get("/{deal_id}")
async def get_deal(
    deal_id: UUID,
    db: AsyncSession = Depends(get_db)
):
    """Get deal by ID"""
    try:
        deal = await DealService(db).get_deal(deal_id)
        return {
            "status": "success",
            "data": deal.to_dict()
        }

    except Exception as e:
        _raise_for(e, "retrieve", deal_id)


@router.patch("/{deal_id}")
async def update_deal(
    deal_id: UUID,
    request: UpdateDealRequest,
    user_id: Optional[UUID] = Query(None, description="ID of user making the change"),
    db: AsyncSession = Depends(get_db)
):
    """Update the supplied deal fields"""
    try:
        result = await DealService(db).update_deal(
            deal_id, user_id=user_id, **request.model_dump(exclude_unset=True)
        )
        return {
            "status": "success",
            "message": "Deal updated",
            "data": result
        }

    except Exception as e:
        _raise_for(e, "update", deal_id)


@router.post("/{deal_id}/move")
async def move_deal_to_stage(
    deal_id: UUID,
    request: MoveStageRequest,
    user_id: Optional[UUID] = Query(None, description="ID of user making the change"),
    db: AsyncSession = Depends(get_db)
):
    """Move a deal to another stage"""
    try:
        result = await DealService(db).move_to_stage(
            deal_id,
            stage_id=request.stage_id,
            pipeline_id=request.pipeline_id,
            user_id=user_id
        )
        return {
            "status": "success",
            "message": "Deal stage changed",
            "data": result
        }

    except Exception as e:
        _raise_for(e, "move", deal_id)


@router.post("/{deal_id}/won")
async def mark_deal_won(
    deal_id: UUID,
    user_id: Optional[UUID] = Query(None, description="ID of user closing the deal"),
    db: AsyncSession = Depends(get_db)
):
    """Close a deal as won"""
    try:
        result = await DealService(db).mark_won(deal_id, user_id=user_id)
        return {
            "status": "success",
            "message": "Deal marked as won",
            "data": result
        }

    except Exception as e:
        _raise_for(e, "close", deal_id)


@router.post("/{deal_id}/lost")
async def mark_deal_lost(
    deal_id: UUID,
    request: Optional[MarkLostRequest] = None,
    user_id: Optional[UUID] = Query(None, description="ID of user closing the deal"),
    db: AsyncSession = Depends(get_db)
):
    """Close a deal as lost"""
    try:
        result = await DealService(db).mark_lost(
            deal_id,
            reason=request.reason if request else None,
            user_id=user_id
        )
        return {
            "status": "success",
            "message": "Deal marked as lost",
            "data": result
        }

    except Exception as e:
        _raise_for(e, "close", deal_id)


@router.post("/{deal_id}/reopen")
async def reopen_deal(
    deal_id: UUID,
    user_id: Optional[UUID] = Query(None, description="ID of user reopening the deal"),
    db: AsyncSession = Depends(get_db)
):
    """Reopen a won or lost deal"""
    try:
        result = await DealService(db).reopen(deal_id, user_id=user_id)
        return {
            "status": "success",
            "message": "Deal reopened",
            "data": result
        }

    except Exception as e:
        _raise_for(e, "reopen", deal_id)
