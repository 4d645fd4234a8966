"""Purchase attribution endpoint for the confirmation page."""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..services.purchase_attribution_service import PurchaseAttributionService
from .. import schemas

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/purchases", tags=["Purchases"])


@router.get("/{company_id}", response_model=schemas.PurchasesResponse)
def get_purchases(
    company_id: str,
    member_id: str = Query(..., alias="memberId", min_length=1),
    flow_id: Optional[UUID] = Query(None, alias="flowId"),
    session_id: Optional[str] = Query(None, alias="sessionId"),
    db: Session = Depends(get_db),
):
    """Purchases from the buyer's current visit.

    Exact by `sessionId` when given, otherwise the recent-window heuristic.
    """
    summary = PurchaseAttributionService(db).get_purchases(
        company_id=company_id,
        member_id=member_id,
        flow_id=flow_id,
        session_id=session_id,
    )
    return schemas.PurchasesResponse(
        purchases=[
            schemas.PurchaseItemOut(
                id=item.id,
                flow_id=item.flow_id,
                plan_id=item.plan_id,
                purchase_type=item.purchase_type,
                node_id=item.node_id,
                name=item.name,
                amount=float(item.amount),
                currency=item.currency,
                purchased_at=item.purchased_at,
                session_id=item.session_id,
            )
            for item in summary.purchases
        ],
        total=float(summary.total),
        matched_by=summary.matched_by,
    )
