"""
Food Express Order Service - Refunds API

Customers follow their own refunds; admins list every refund and settle them.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from food_express.api.deps import get_actor, get_refund_service
from food_express.core.security import Actor
from food_express.db.database import get_db
from food_express.domain.refunds import RefundService
from food_express.models.order import RefundStatus
from food_express.schemas.refund import ProcessRefundRequest, RefundSnapshot

router = APIRouter(prefix="/refunds", tags=["refunds"])


@router.get("", response_model=list[RefundSnapshot])
async def list_refunds(
    status: RefundStatus | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    actor: Actor = Depends(get_actor),
    refunds: RefundService = Depends(get_refund_service),
    db: AsyncSession = Depends(get_db),
):
    """Newest first. Customers only get their own."""
    return await refunds.list_refunds(db, actor, status=status, limit=limit)


@router.get("/{refund_id}", response_model=RefundSnapshot)
async def get_refund(
    refund_id: str,
    actor: Actor = Depends(get_actor),
    refunds: RefundService = Depends(get_refund_service),
    db: AsyncSession = Depends(get_db),
):
    return await refunds.get_refund(db, refund_id, actor)


@router.post("/{refund_id}/process", response_model=RefundSnapshot)
async def process_refund(
    refund_id: str,
    payload: ProcessRefundRequest,
    actor: Actor = Depends(get_actor),
    refunds: RefundService = Depends(get_refund_service),
    db: AsyncSession = Depends(get_db),
):
    """Approve, reject or complete a refund (admins only)."""
    return await refunds.process_refund(
        db, refund_id, payload.status, actor, note=payload.note, expected_status=payload.expected_status
    )
