"""
Pipeline CRM Deal Service
Pipelines and the deal lifecycle that feeds revenue forecasts
"""

from typing import Dict, Any, List, Optional
from uuid import UUID
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
import structlog

from ..core.clock import utcnow, as_naive_utc
from ..core.errors import NotFoundError
from ..models.deals import Deal, DealStatus, Pipeline, DEFAULT_PIPELINE_STAGES
from .audit import log_activity, jsonable
from .nats_client import publish_event
from .webhook_service import WebhookService

logger = structlog.get_logger()

DEFAULT_PIPELINE_NAME = "Sales Pipeline"
DEFAULT_PIPELINE_DESCRIPTION = "Default sales pipeline for tracking deals"

DEAL_UPDATABLE_FIELDS = (
    "name", "amount", "currency", "probability", "expected_close_date", "owner_id", "tags",
)


class PipelineService:
    """Service for sales pipelines and their stages"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_pipeline(self, pipeline_id: UUID) -> Pipeline:
        pipeline = await self.db.get(Pipeline, pipeline_id)
        if not pipeline:
            raise NotFoundError("Pipeline not found")
        return pipeline

    async def list_pipelines(self) -> List[Dict[str, Any]]:
        """Default pipeline first, then by creation"""
        result = await self.db.execute(
            select(Pipeline).order_by(Pipeline.is_default.desc(), Pipeline.created_at)
        )
        return [self._to_dict(pipeline) for pipeline in result.scalars().all()]

    async def get_pipeline_detail(self, pipeline_id: UUID) -> Dict[str, Any]:
        return self._to_dict(await self.get_pipeline(pipeline_id))

    async def create_pipeline(
        self,
        name: str,
        stages: List[Dict[str, Any]],
        description: Optional[str] = None,
        is_default: bool = False
    ) -> Dict[str, Any]:
        """Create a pipeline; a new default replaces the previous one"""
        self._validate_stages(stages)

        try:
            if is_default:
                result = await self.db.execute(select(Pipeline).where(Pipeline.is_default.is_(True)))
                for existing in result.scalars().all():
                    existing.is_default = False

            pipeline = Pipeline(
                name=name,
                description=description,
                stages=sorted(stages, key=lambda stage: stage["order"]),
                is_default=is_default,
            )
            self.db.add(pipeline)
            await self.db.commit()
            await self.db.refresh(pipeline)

            logger.info("Pipeline created", pipeline_id=str(pipeline.id), stages=len(stages))
            return self._to_dict(pipeline)

        except Exception as e:
            await self.db.rollback()
            logger.error("Pipeline creation failed", error=str(e))
            raise

    async def seed_default_pipeline(self) -> Dict[str, Any]:
        """Create the default pipeline unless any pipeline already exists"""
        result = await self.db.execute(select(Pipeline).order_by(Pipeline.created_at).limit(1))
        existing = result.scalar_one_or_none()

        if existing:
            return {"created": False, "pipeline_id": str(existing.id)}

        pipeline = await self.create_pipeline(
            name=DEFAULT_PIPELINE_NAME,
            description=DEFAULT_PIPELINE_DESCRIPTION,
            stages=[dict(stage) for stage in DEFAULT_PIPELINE_STAGES],
            is_default=True,
        )
        return {"created": True, "pipeline_id": pipeline["id"]}

    def _validate_stages(self, stages: List[Dict[str, Any]]):
        if not stages:
            raise ValueError("A pipeline needs at least one stage")

        stage_ids = [stage["id"] for stage in stages]
        if len(set(stage_ids)) != len(stage_ids):
            raise ValueError("Stage ids must be unique within a pipeline")

    def _to_dict(self, pipeline: Pipeline) -> Dict[str, Any]:
        return {
            "id": str(pipeline.id),
            "name": pipeline.name,
            "description": pipeline.description,
            "stages": pipeline.stages or [],
            "is_default": pipeline.is_default,
            "created_at": pipeline.created_at.isoformat() if pipeline.created_at else None,
            "updated_at": pipeline.updated_at.isoformat() if pipeline.updated_at else None,
        }


class DealService:
    """Service for the deal lifecycle"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.webhooks = WebhookService(db)

    async def get_deal(self, deal_id: UUID) -> Deal:
        deal = await self.db.get(Deal, deal_id)
        if not deal:
            raise NotFoundError("Deal not found")
        return deal

    async def list_deals(
        self,
        status: Optional[DealStatus] = None,
        pipeline_id: Optional[UUID] = None,
        stage_id: Optional[str] = None,
        owner_id: Optional[UUID] = None,
        limit: int = 50,
        offset: int = 0
    ) -> Dict[str, Any]:
        """List deals, newest first"""
        query = select(Deal)

        if status:
            query = query.where(Deal.status == DealStatus(status).value)
        if pipeline_id:
            query = query.where(Deal.pipeline_id == pipeline_id)
        if stage_id:
            query = query.where(Deal.stage_id == stage_id)
        if owner_id:
            query = query.where(Deal.owner_id == owner_id)

        query = query.order_by(Deal.created_at.desc()).offset(offset).limit(limit)
        result = await self.db.execute(query)
        deals = result.scalars().all()

        return {
            "deals": [deal.to_dict() for deal in deals],
            "limit": limit,
            "offset": offset,
        }

    async def create_deal(
        self,
        name: str,
        pipeline_id: UUID,
        stage_id: str,
        amount: Optional[float] = None,
        currency: str = "USD",
        probability: Optional[float] = None,
        expected_close_date: Optional[datetime] = None,
        owner_id: Optional[UUID] = None,
        tags: Optional[List[str]] = None,
        user_id: Optional[UUID] = None
    ) -> Dict[str, Any]:
        """Create an open deal in a pipeline stage"""
        pipeline = await self.db.get(Pipeline, pipeline_id)
        if not pipeline:
            raise ValueError("Pipeline not found")

        stage = pipeline.get_stage(stage_id)
        if not stage:
            raise ValueError("Invalid stage for this pipeline")

        now = utcnow()

        try:
            deal = Deal(
                name=name,
                pipeline_id=pipeline.id,
                stage_id=stage_id,
                amount=amount,
                currency=currency,
                probability=probability if probability is not None else stage.get("probability"),
                status=DealStatus.OPEN.value,
                expected_close_date=as_naive_utc(expected_close_date),
                owner_id=owner_id,
                tags=tags or [],
                created_at=now,
                updated_at=now,
                stage_changed_at=now,
            )
            self.db.add(deal)
            await self.db.flush()

            log_activity(
                self.db,
                action="deal_created",
                entity_type="deal",
                entity_id=deal.id,
                user_id=user_id,
                metadata={"name": name, "amount": amount, "stage_id": stage_id},
            )
            await self.webhooks.trigger("deal.created", {"deal": deal.to_dict()})

            await self.db.commit()
            await self.db.refresh(deal)

        except Exception as e:
            await self.db.rollback()
            logger.error("Deal creation failed", error=str(e))
            raise

        logger.info("Deal created", deal_id=str(deal.id), pipeline_id=str(pipeline.id), stage_id=stage_id, amount=amount)
        await publish_event("deals.created", deal.to_dict())

        return deal.to_dict()

    async def update_deal(self, deal_id: UUID, user_id: Optional[UUID] = None, **updates) -> Dict[str, Any]:
        """Apply only the supplied fields"""
        deal = await self.get_deal(deal_id)

        if updates.get("expected_close_date") is not None:
            updates["expected_close_date"] = as_naive_utc(updates["expected_close_date"])

        changes = {}
        for field in DEAL_UPDATABLE_FIELDS:
            value = updates.get(field)
            if value is not None and value != getattr(deal, field):
                changes[field] = {"from": jsonable(getattr(deal, field)), "to": jsonable(value)}
                setattr(deal, field, value)

        if not changes:
            return deal.to_dict()

        try:
            deal.updated_at = utcnow()
            log_activity(
                self.db,
                action="deal_updated",
                entity_type="deal",
                entity_id=deal.id,
                user_id=user_id,
                changes=changes,
            )
            await self.webhooks.trigger("deal.updated", {
                "deal": deal.to_dict(),
                "changes": sorted(changes),
            })
            await self.db.commit()
            await self.db.refresh(deal)

        except Exception as e:
            await self.db.rollback()
            logger.error("Deal update failed", deal_id=str(deal_id), error=str(e))
            raise

        logger.info("Deal updated", deal_id=str(deal_id), fields=sorted(changes))
        await publish_event("deals.updated", {"deal_id": str(deal_id), "fields": sorted(changes)})

        return deal.to_dict()

    async def move_to_stage(
        self,
        deal_id: UUID,
        stage_id: str,
        pipeline_id: Optional[UUID] = None,
        user_id: Optional[UUID] = None
    ) -> Dict[str, Any]:
        """Move an open deal to a stage, resetting its probability to the stage default"""
        deal = await self.get_deal(deal_id)
        self._ensure_open(deal)

        target_pipeline_id = pipeline_id or deal.pipeline_id
        pipeline = await self.db.get(Pipeline, target_pipeline_id) if target_pipeline_id else None
        if not pipeline:
            raise ValueError("Pipeline not found")

        new_stage = pipeline.get_stage(stage_id)
        if not new_stage:
            raise ValueError("Invalid stage for this pipeline")

        old_stage_id = deal.stage_id
        old_stage = pipeline.get_stage(old_stage_id) if old_stage_id else None
        previous_stage = {"id": old_stage_id, "name": old_stage["name"] if old_stage else "Unknown"}
        next_stage = {"id": stage_id, "name": new_stage["name"]}

        now = utcnow()

        try:
            deal.stage_id = stage_id
            deal.pipeline_id = pipeline.id
            deal.stage_changed_at = now
            deal.updated_at = now
            if new_stage.get("probability") is not None:
                deal.probability = new_stage["probability"]

            log_activity(
                self.db,
                action="deal_stage_changed",
                entity_type="deal",
                entity_id=deal.id,
                user_id=user_id,
                system=user_id is None,
                changes={"from": previous_stage, "to": next_stage},
            )
            await self.webhooks.trigger("deal.stage_changed", {
                "deal": deal.to_dict(),
                "previous_stage": previous_stage,
                "new_stage": next_stage,
            })
            await self.db.commit()
            await self.db.refresh(deal)

        except Exception as e:
            await self.db.rollback()
            logger.error("Deal stage change failed", deal_id=str(deal_id), error=str(e))
            raise

        logger.info("Deal stage changed", deal_id=str(deal_id), from_stage=old_stage_id, to_stage=stage_id)
        await publish_event("deals.stage_changed", {
            "deal_id": str(deal_id),
            "previous_stage": previous_stage,
            "new_stage": next_stage,
        })

        return deal.to_dict()

    async def mark_won(self, deal_id: UUID, user_id: Optional[UUID] = None) -> Dict[str, Any]:
        """Close a deal as won at full probability"""
        deal = await self.get_deal(deal_id)
        self._ensure_open(deal)

        now = utcnow()

        try:
            deal.status = DealStatus.WON.value
            deal.actual_close_date = now
            deal.probability = 100
            deal.updated_at = now

            log_activity(
                self.db,
                action="deal_won",
                entity_type="deal",
                entity_id=deal.id,
                user_id=user_id,
                system=user_id is None,
                metadata={"amount": deal.amount},
            )
            await self.webhooks.trigger("deal.won", {"deal": deal.to_dict(), "amount": deal.amount})
            await self.db.commit()
            await self.db.refresh(deal)

        except Exception as e:
            await self.db.rollback()
            logger.error("Marking deal won failed", deal_id=str(deal_id), error=str(e))
            raise

        logger.info("Deal won", deal_id=str(deal_id), amount=deal.amount)
        await publish_event("deals.won", {"deal_id": str(deal_id), "amount": deal.amount})

        return deal.to_dict()

    async def mark_lost(self, deal_id: UUID, reason: Optional[str] = None, user_id: Optional[UUID] = None) -> Dict[str, Any]:
        """Close a deal as lost at zero probability"""
        deal = await self.get_deal(deal_id)
        self._ensure_open(deal)

        now = utcnow()

        try:
            deal.status = DealStatus.LOST.value
            deal.lost_reason = reason
            deal.actual_close_date = now
            deal.probability = 0
            deal.updated_at = now

            log_activity(
                self.db,
                action="deal_lost",
                entity_type="deal",
                entity_id=deal.id,
                user_id=user_id,
                system=user_id is None,
                metadata={"reason": reason, "amount": deal.amount},
            )
            await self.webhooks.trigger("deal.lost", {
                "deal": deal.to_dict(),
                "reason": reason,
                "amount": deal.amount,
            })
            await self.db.commit()
            await self.db.refresh(deal)

        except Exception as e:
            await self.db.rollback()
            logger.error("Marking deal lost failed", deal_id=str(deal_id), error=str(e))
            raise

        logger.info("Deal lost", deal_id=str(deal_id), reason=reason)
        await publish_event("deals.lost", {"deal_id": str(deal_id), "reason": reason, "amount": deal.amount})

        return deal.to_dict()

    async def reopen(self, deal_id: UUID, user_id: Optional[UUID] = None) -> Dict[str, Any]:
        """Return a won or lost deal to the open state"""
        deal = await self.get_deal(deal_id)
        if not deal.is_closed:
            raise ValueError("Deal is already open")

        previous_status = deal.status

        try:
            deal.status = DealStatus.OPEN.value
            deal.actual_close_date = None
            deal.lost_reason = None
            deal.updated_at = utcnow()

            log_activity(
                self.db,
                action="deal_reopened",
                entity_type="deal",
                entity_id=deal.id,
                user_id=user_id,
                system=user_id is None,
                metadata={"previous_status": previous_status},
            )
            await self.db.commit()
            await self.db.refresh(deal)

        except Exception as e:
            await self.db.rollback()
            logger.error("Deal reopen failed", deal_id=str(deal_id), error=str(e))
            raise

        logger.info("Deal reopened", deal_id=str(deal_id), previous_status=previous_status)
        await publish_event("deals.updated", {"deal_id": str(deal_id), "fields": ["status"]})

        return deal.to_dict()

    def _ensure_open(self, deal: Deal):
        if deal.is_closed:
            raise ValueError(f"Deal is already {deal.status}")
