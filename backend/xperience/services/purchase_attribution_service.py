"""Purchase Attribution Reader.

WHAT:
    Returns the purchases that belong to one buyer visit, for the
    confirmation/receipt page.

WHY:
    The receipt should list exactly what the buyer bought in this funnel
    walk, not everything they ever bought from the merchant.

HOW:
    - Session id known -> purchases tagged with that session (exact)
    - No session id (cross-origin redirect chains lose client storage) ->
      purchases for member/flow in the last PURCHASE_WINDOW_MINUTES (30).
      Imprecise: concurrent sessions of the same member bleed together.
    - Ordered by purchased_at ascending
    - Each item gets a display name: node title, or the flow's initial
      product name for the initial purchase, else "Product"

REFERENCES:
    - xperience/routers/purchases.py
    - scripts/check_session_purchases.py
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from xperience.deps import get_settings
from xperience.models import CompanyFlow, FlowNode, FlowPurchase, PurchaseTypeEnum

logger = logging.getLogger(__name__)

PLACEHOLDER_NAME = "Product"


@dataclass(frozen=True)
class PurchaseItem:
    id: UUID
    flow_id: UUID
    plan_id: str
    purchase_type: str
    node_id: Optional[UUID]
    name: str
    amount: Decimal
    currency: str
    purchased_at: datetime
    session_id: Optional[str] = None
    payment_id: Optional[str] = None


@dataclass(frozen=True)
class PurchaseSummary:
    purchases: List[PurchaseItem] = field(default_factory=list)
    total: Decimal = Decimal("0")
    # "session" or "window", for diagnostics
    matched_by: str = "session"


class PurchaseAttributionService:
    def __init__(self, db: Session, window_minutes: Optional[int] = None):
        self.db = db
        self.window_minutes = window_minutes if window_minutes is not None else get_settings().PURCHASE_WINDOW_MINUTES

    def get_purchases(
        self,
        company_id: str,
        member_id: str,
        flow_id: Optional[UUID] = None,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PurchaseSummary:
        """Purchases for one buyer visit.

        Args:
            company_id: Merchant company
            member_id: Whop member id
            flow_id: Restrict to one flow (recommended)
            session_id: Session token; switches to exact matching
            now: Reference time for the window fallback (tests)
        """
        query = self.db.query(FlowPurchase).filter(
            FlowPurchase.company_id == company_id,
            FlowPurchase.member_id == member_id,
        )
        if flow_id is not None:
            query = query.filter(FlowPurchase.flow_id == flow_id)

        if session_id:
            query = query.filter(FlowPurchase.session_id == session_id)
            matched_by = "session"
        else:
            since = (now or datetime.utcnow()) - timedelta(minutes=self.window_minutes)
            query = query.filter(FlowPurchase.purchased_at >= since)
            matched_by = "window"

        rows = query.order_by(FlowPurchase.purchased_at.asc(), FlowPurchase.id.asc()).all()
        node_titles, initial_names = self._load_names(rows)

        items = []
        for row in rows:
            purchase_type = getattr(row.purchase_type, "value", row.purchase_type)
            if purchase_type == PurchaseTypeEnum.initial.value:
                name = initial_names.get(row.flow_id)
            else:
                name = node_titles.get(row.node_id)
            items.append(PurchaseItem(
                id=row.id,
                flow_id=row.flow_id,
                plan_id=row.plan_id,
                purchase_type=purchase_type,
                node_id=row.node_id,
                name=name or PLACEHOLDER_NAME,
                amount=Decimal(str(row.amount or 0)),
                currency=row.currency,
                purchased_at=row.purchased_at,
                session_id=row.session_id,
                payment_id=row.payment_id,
            ))

        total = sum((item.amount for item in items), Decimal("0"))
        logger.info(
            f"[PURCHASES] {len(items)} purchase(s) for {member_id} by {matched_by} "
            f"(flow={flow_id or '*'}, session={session_id or '-'})"
        )
        return PurchaseSummary(purchases=items, total=total, matched_by=matched_by)

    def _load_names(self, rows: List[FlowPurchase]):
        """Display names for nodes and initial products; failures degrade to {}."""
        node_ids = {r.node_id for r in rows if r.node_id is not None}
        flow_ids = {r.flow_id for r in rows}
        node_titles: Dict[UUID, str] = {}
        initial_names: Dict[UUID, str] = {}

        try:
            if node_ids:
                for node_id, title in self.db.query(FlowNode.id, FlowNode.title).filter(FlowNode.id.in_(node_ids)):
                    if title:
                        node_titles[node_id] = title
            if flow_ids:
                for fid, name in self.db.query(CompanyFlow.id, CompanyFlow.initial_product_name).filter(
                    CompanyFlow.id.in_(flow_ids)
                ):
                    if name:
                        initial_names[fid] = name
        except SQLAlchemyError as e:
            logger.warning(f"[PURCHASES] Product name lookup failed, using placeholders: {e}")
            self.db.rollback()

        return node_titles, initial_names
