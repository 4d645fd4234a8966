"""Charge Orchestrator.

WHAT:
    Handles one buyer action on a funnel step:
    - accept: charge the step's plan against the buyer's saved payment
      method, record the purchase, then ask the edge resolver where to go
    - decline: no charge, just ask the edge resolver

WHY:
    The buyer must never be routed onward on an unconfirmed charge, and a
    failed charge must leave them on the same offer so they can retry.
    Keeping charge + record + resolve in one place makes that ordering
    explicit and testable.

HOW (accept):
    1. Plan: node.plan_id, or the flow's initial plan for the initial step
    2. Payment method: explicit id, else identity's, else first on file
    3. POST /payments. Any failure -> charge_failed, resolver NOT called,
       nothing recorded
    4. Record FlowPurchase (session id + payment id). Failure is logged only
    5. offer_accepted analytics (non-blocking)
    6. resolve()

CONSTRAINTS:
    - No retries. A human re-clicks accept.
    - No dedup per (member, node): re-entering a node and accepting again
      charges again
    - Never raises for expected failures; returns AdvanceOutcome with error

REFERENCES:
    - xperience/services/whop_client.py
    - xperience/services/edge_resolver.py
    - xperience/services/tracking_service.py
"""

import enum
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union
from uuid import UUID

from xperience.models import EdgeActionEnum, PurchaseTypeEnum
from xperience.services import edge_resolver
from xperience.services.edge_resolver import RoutingDecision
from xperience.services.flow_graph import FlowGraph, NodeSnapshot
from xperience.services.identity_resolution_service import MemberIdentity, IdentityNotFound
from xperience.services.redirect_dispatcher import RedirectContext
from xperience.services.tracking_service import TrackingService
from xperience.services.whop_client import WhopClient, WhopAPIError
from xperience.telemetry import analytics
from xperience.telemetry.sentry import capture_message

logger = logging.getLogger(__name__)


class FunnelErrorKind(str, enum.Enum):
    configuration = "configuration"
    identity_timeout = "identity_timeout"
    charge_failed = "charge_failed"
    graph_integrity = "graph_integrity"


BUYER_MESSAGES = {
    FunnelErrorKind.configuration: "This offer isn't available right now.",
    FunnelErrorKind.identity_timeout: "We couldn't confirm your payment method. Please contact support.",
    FunnelErrorKind.charge_failed: "Failed to process payment",
    FunnelErrorKind.graph_integrity: "This offer isn't available right now.",
}

NO_PAYMENT_METHOD_MESSAGE = "No payment method found. Payment method should be saved by Whop after checkout."


@dataclass(frozen=True)
class FunnelError:
    """Buyer-facing failure.

    `message` is safe to show the buyer; `detail` is for logs and the merchant.
    """
    kind: FunnelErrorKind
    message: str
    detail: Optional[str] = None
    status_code: Optional[int] = None

    @classmethod
    def of(
        cls,
        kind: FunnelErrorKind,
        detail: Optional[str] = None,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> "FunnelError":
        return cls(kind=kind, message=message or BUYER_MESSAGES[kind], detail=detail, status_code=status_code)


@dataclass(frozen=True)
class AdvanceOutcome:
    """Result of one accept/decline.

    `decision` is None when the buyer must stay on the current step (the
    charge was never confirmed). A decision of kind `none` is returned
    together with an error describing why the funnel dead-ends.
    """
    decision: Optional[RoutingDecision]
    error: Optional[FunnelError] = None
    purchase_id: Optional[UUID] = None
    payment_id: Optional[str] = None

    @property
    def advanced(self) -> bool:
        return self.decision is not None and not self.decision.is_none

    @classmethod
    def failed(cls, error: FunnelError) -> "AdvanceOutcome":
        return cls(decision=None, error=error)


def _dead_end_error(decision: RoutingDecision) -> FunnelError:
    if decision.from_edge:
        return FunnelError.of(FunnelErrorKind.graph_integrity, detail=decision.reason)
    return FunnelError.of(FunnelErrorKind.configuration, detail=decision.reason)


class ChargeOrchestrator:
    """Accept/decline handling for one funnel step.

    Usage:
        orchestrator = ChargeOrchestrator(WhopClient(), TrackingService(db))
        outcome = await orchestrator.charge_and_advance(graph, node, identity, "accept", context)
        if outcome.error: show(outcome.error.message)
    """

    def __init__(self, whop: WhopClient, tracker: TrackingService):
        self.whop = whop
        self.tracker = tracker

    async def charge_and_advance(
        self,
        graph: FlowGraph,
        current: Optional[NodeSnapshot],
        identity: Union[MemberIdentity, IdentityNotFound, None],
        action,
        context: RedirectContext,
        payment_method_id: Optional[str] = None,
    ) -> AdvanceOutcome:
        """Run one buyer action.

        Args:
            graph: Flow snapshot
            current: Node the buyer is on, or None for the initial checkout
            identity: Resolved buyer (required for accept)
            action: "accept" / "decline"
            context: Carried identifiers; session_id tags the purchase
            payment_method_id: Explicit saved method, if the caller knows it
        """
        action_value = EdgeActionEnum(getattr(action, "value", action))

        if action_value == EdgeActionEnum.decline:
            return self._advance_after_decline(graph, current, identity)

        if not isinstance(identity, MemberIdentity) or not identity.member_id:
            logger.warning(f"[CHARGE] Accept on flow {graph.id} without a resolved member")
            return AdvanceOutcome.failed(FunnelError.of(
                FunnelErrorKind.identity_timeout,
                detail="member id unresolved",
                status_code=404,
            ))

        plan_id = current.plan_id if current is not None else graph.initial_product_plan_id
        if not plan_id:
            step = f"node {current.id}" if current is not None else "initial product"
            logger.error(f"[CHARGE] No plan configured for {step} on flow {graph.id}")
            return AdvanceOutcome.failed(FunnelError.of(FunnelErrorKind.configuration, detail=f"{step} has no plan"))

        if not self.whop.is_configured:
            logger.error("[CHARGE] Whop API key not configured")
            return AdvanceOutcome.failed(FunnelError.of(FunnelErrorKind.configuration, detail="Whop API key not configured"))

        method_id = (
            payment_method_id
            or identity.payment_method_id
            or await self.whop.first_payment_method_id(identity.member_id)
        )
        if not method_id:
            self._report_charge_failure(graph, current, identity, NO_PAYMENT_METHOD_MESSAGE, 400)
            return AdvanceOutcome.failed(FunnelError.of(
                FunnelErrorKind.charge_failed,
                message=NO_PAYMENT_METHOD_MESSAGE,
                detail="no saved payment method",
                status_code=400,
            ))

        try:
            payment = await self.whop.charge(
                company_id=graph.company_id,
                member_id=identity.member_id,
                payment_method_id=method_id,
                plan_id=plan_id,
            )
        except WhopAPIError as e:
            self._report_charge_failure(graph, current, identity, e.message, e.status_code)
            return AdvanceOutcome.failed(FunnelError.of(
                FunnelErrorKind.charge_failed,
                message=e.message or BUYER_MESSAGES[FunnelErrorKind.charge_failed],
                detail=str(e.payload) if e.payload else None,
                status_code=e.status_code,
            ))

        payment_id = payment.get("id")
        amount = self._amount_for(graph, current)
        purchase = self.tracker.record_purchase(
            flow_id=graph.id,
            company_id=graph.company_id,
            member_id=identity.member_id,
            plan_id=plan_id,
            purchase_type=current.node_type.value if current is not None else PurchaseTypeEnum.initial,
            node_id=current.id if current is not None else None,
            amount=amount,
            session_id=context.session_id,
            payment_id=payment_id,
        )

        analytics.track_offer_accepted(
            member_id=identity.member_id,
            company_id=graph.company_id,
            flow_id=str(graph.id),
            node_id=str(current.id) if current is not None else None,
            plan_id=plan_id,
            amount=float(amount),
        )

        decision = edge_resolver.resolve(graph, current, EdgeActionEnum.accept)
        logger.info(
            f"[CHARGE] Charged {plan_id} for {identity.member_id} (payment {payment_id}) -> {decision.kind.value}"
        )
        return AdvanceOutcome(
            decision=decision,
            error=_dead_end_error(decision) if decision.is_none else None,
            purchase_id=purchase.id if purchase is not None else None,
            payment_id=payment_id,
        )

    def _advance_after_decline(
        self,
        graph: FlowGraph,
        current: Optional[NodeSnapshot],
        identity: Union[MemberIdentity, IdentityNotFound, None],
    ) -> AdvanceOutcome:
        if isinstance(identity, MemberIdentity):
            analytics.track_offer_declined(
                member_id=identity.member_id,
                company_id=graph.company_id,
                flow_id=str(graph.id),
                node_id=str(current.id) if current is not None else None,
            )

        decision = edge_resolver.resolve(graph, current, EdgeActionEnum.decline)
        return AdvanceOutcome(decision=decision, error=_dead_end_error(decision) if decision.is_none else None)

    @staticmethod
    def _amount_for(graph: FlowGraph, current: Optional[NodeSnapshot]) -> Decimal:
        price = current.price if current is not None else graph.initial_product_price
        return Decimal(str(price)) if price is not None else Decimal("0")

    @staticmethod
    def _report_charge_failure(
        graph: FlowGraph,
        current: Optional[NodeSnapshot],
        identity: MemberIdentity,
        message: str,
        status_code: Optional[int],
    ) -> None:
        node_id = str(current.id) if current is not None else None
        logger.warning(
            f"[CHARGE] Charge failed for {identity.member_id} on flow {graph.id} node {node_id or 'initial'}: "
            f"{status_code} {message}"
        )
        capture_message(
            "Funnel charge failed",
            level="warning",
            extra={
                "company_id": graph.company_id,
                "flow_id": str(graph.id),
                "node_id": node_id,
                "member_id": identity.member_id,
                "status_code": status_code,
                "message": message,
            },
        )
        analytics.track_charge_failed(
            member_id=identity.member_id,
            company_id=graph.company_id,
            flow_id=str(graph.id),
            node_id=node_id,
            status_code=status_code,
        )
