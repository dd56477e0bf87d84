"""
Pipeline CRM Pipeline API Endpoints
"""

from typing import List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
import structlog

from ..core.database import get_db
from ..core.errors import NotFoundError
from ..services.deal_service import PipelineService

logger = structlog.get_logger()
router = APIRouter(prefix="/pipelines", tags=["pipelines"])


class StageModel(BaseModel):
    """One stage of a pipeline"""
    id: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=100)
    color: str = Field("#6B7280", pattern=r'^#[0-9A-Fa-f]{6}$')
    order: int = Field(..., ge=0)
    probability: Optional[float] = Field(None, ge=0, le=100)


class CreatePipelineRequest(BaseModel):
    """Request model for creating a pipeline"""
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    stages: List[StageModel] = Field(..., min_length=1)
    is_default: bool = False


@router.get("/")
async def list_pipelines(db: AsyncSession = Depends(get_db)):
    """List pipelines, default first"""
    try:
        pipelines = await PipelineService(db).list_pipelines()
        return {
            "status": "success",
            "data": {"pipelines": pipelines, "total": len(pipelines)}
        }

    except Exception as e:
        logger.error("Pipeline listing failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to list pipelines"
        )


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_pipeline(
    request: CreatePipelineRequest,
    db: AsyncSession = Depends(get_db)
):
    """Create a pipeline with ordered stages"""
    try:
        result = await PipelineService(db).create_pipeline(
            name=request.name,
            description=request.description,
            stages=[stage.model_dump(exclude_none=True) for stage in request.stages],
            is_default=request.is_default
        )

        return {
            "status": "success",
            "message": "Pipeline created",
            "data": result
        }

    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    except Exception as e:
        logger.error("Pipeline creation failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create pipeline"
        )


@router.post("/seed")
async def seed_default_pipeline(db: AsyncSession = Depends(get_db)):
    """Create the default sales pipeline if no pipeline exists yet"""
    try:
        result = await PipelineService(db).seed_default_pipeline()
        return {
            "status": "success",
            "message": "Default pipeline created" if result["created"] else "Pipeline already exists",
            "data": result
        }

    except Exception as e:
        logger.error("Pipeline seeding failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to seed pipeline"
        )


@router.get("/{pipeline_id}")
async def get_pipeline(
    pipeline_id: UUID,
    db: AsyncSession = Depends(get_db)
):
    """Get a pipeline"""
    try:
        pipeline = await PipelineService(db).get_pipeline_detail(pipeline_id)
        return {
            "status": "success",
            "data": pipeline
        }

    except NotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )
    except Exception as e:
        logger.error("Pipeline retrieval failed", pipeline_id=str(pipeline_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve pipeline"
        )
