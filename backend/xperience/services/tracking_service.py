"""Purchase and visit tracking writes.

Both writes are fire-and-forget from the buyer's perspective: a failure is
logged, the session is rolled back, and None is returned. Routing never
waits on or fails because of tracking.
"""

import logging
from decimal import Decimal
from typing import Optional, Union
from uuid import UUID

from sqlalchemy.orm import Session

from xperience.models import FlowPurchase, FlowVisit, PageTypeEnum, PurchaseTypeEnum
from xperience.telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)


def _as_uuid(value: Optional[Union[str, UUID]]) -> Optional[UUID]:
    if value is None or isinstance(value, UUID):
        return value
    return UUID(str(value))


class TrackingService:
    def __init__(self, db: Session):
        self.db = db

    def record_purchase(
        self,
        *,
        flow_id: Union[str, UUID],
        company_id: str,
        member_id: str,
        plan_id: str,
        purchase_type: Union[str, PurchaseTypeEnum],
        node_id: Optional[Union[str, UUID]] = None,
        amount: Union[Decimal, float, int, None] = 0,
        currency: str = "usd",
        session_id: Optional[str] = None,
        payment_id: Optional[str] = None,
    ) -> Optional[FlowPurchase]:
        """Insert one FlowPurchase. Returns None if the write failed."""
        try:
            purchase = FlowPurchase(
                flow_id=_as_uuid(flow_id),
                company_id=company_id,
                member_id=member_id,
                plan_id=plan_id,
                purchase_type=PurchaseTypeEnum(getattr(purchase_type, "value", purchase_type)),
                node_id=_as_uuid(node_id),
                amount=Decimal(str(amount or 0)),
                currency=currency or "usd",
                session_id=session_id,
                payment_id=payment_id,
            )
            self.db.add(purchase)
            self.db.commit()
            self.db.refresh(purchase)
        except Exception as e:
            self.db.rollback()
            logger.error(f"[TRACK] Failed to record purchase for member {member_id} on flow {flow_id}: {e}")
            # The charge already went through; this row is what the receipt shows
            capture_exception(e, extra={"member_id": member_id, "flow_id": str(flow_id), "payment_id": payment_id})
            return None

        logger.info(
            f"[TRACK] Recorded {purchase.purchase_type.value} purchase {purchase.id} "
            f"(member={member_id}, session={session_id or '-'})"
        )
        return purchase

    def record_visit(
        self,
        *,
        flow_id: Union[str, UUID],
        company_id: str,
        page_type: Union[str, PageTypeEnum],
        session_id: Optional[str] = None,
        node_id: Optional[Union[str, UUID]] = None,
        user_agent: Optional[str] = None,
        referrer: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Optional[FlowVisit]:
        try:
            visit = FlowVisit(
                flow_id=_as_uuid(flow_id),
                company_id=company_id,
                page_type=PageTypeEnum(getattr(page_type, "value", page_type)),
                session_id=session_id,
                node_id=_as_uuid(node_id),
                user_agent=user_agent,
                referrer=referrer,
                ip_address=ip_address,
            )
            self.db.add(visit)
            self.db.commit()
            self.db.refresh(visit)
        except Exception as e:
            self.db.rollback()
            logger.error(f"[TRACK] Failed to record visit on flow {flow_id}: {e}")
            return None

        logger.debug(f"[TRACK] Visit {visit.page_type.value} on flow {flow_id}")
        return visit
