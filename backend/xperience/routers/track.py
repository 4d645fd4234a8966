"""Tracking endpoints (fire-and-forget writes from funnel pages).

WHAT: Records purchases and page visits
WHY: Conversion reporting; these calls must never break the buyer's flow,
     so a failed write still answers 200 with success=false
"""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..database import get_db
from ..services.tracking_service import TrackingService
from .. import schemas

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/track", tags=["Tracking"])


@router.post("/purchase", response_model=schemas.TrackResponse)
def track_purchase(payload: schemas.TrackPurchaseRequest, db: Session = Depends(get_db)):
    purchase = TrackingService(db).record_purchase(**payload.model_dump())
    return schemas.TrackResponse(success=purchase is not None, id=purchase.id if purchase else None)


@router.post("/visit", response_model=schemas.TrackResponse)
def track_visit(payload: schemas.TrackVisitRequest, request: Request, db: Session = Depends(get_db)):
    """Record a page view; user agent and IP default to the request's own."""
    data = payload.model_dump()
    data["user_agent"] = data.get("user_agent") or request.headers.get("user-agent")
    data["ip_address"] = data.get("ip_address") or (
        request.headers.get("x-forwarded-for", "").split(",")[0].strip()
        or (request.client.host if request.client else None)
    )
    visit = TrackingService(db).record_visit(**data)
    return schemas.TrackResponse(success=visit is not None, id=visit.id if visit else None)
