"""Funnel navigation endpoints.

WHAT:
    - POST /funnel/{company_id}/identity: bounded identity resolution
    - POST /funnel/{company_id}/advance: accept/decline on a step, returns the
      routing decision plus a redirect plan for the browser to apply

WHY:
    One call per buyer click keeps the ordering guarantee on the server:
    identity -> charge -> resolve -> plan. The browser only executes the
    returned plan (navigate the frame or post the message to the parent).

Status mapping:
    configuration     -> 400
    identity_timeout  -> 404
    charge_failed     -> processor status, else 402
    graph_integrity   -> 200, decision "none" with an error body

REFERENCES:
    - xperience/services/charge_orchestrator.py
    - xperience/services/redirect_dispatcher.py
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import get_settings
from ..models import EdgeActionEnum
from ..services.charge_orchestrator import AdvanceOutcome, ChargeOrchestrator, FunnelError, FunnelErrorKind
from ..services.edge_resolver import RoutingDecision
from ..services.flow_graph import FlowGraphStore
from ..services.identity_resolution_service import (
    DatabasePendingIdentityLookup,
    IdentityResolutionService,
    MemberIdentity,
)
from ..services.redirect_dispatcher import RedirectContext, RedirectPlan, plan_redirect
from ..services.tracking_service import TrackingService
from ..services.whop_client import WhopClient
from ..telemetry import analytics
from ..telemetry.sentry import set_funnel_context
from .whop import get_whop_client
from .. import schemas

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/funnel",
    tags=["Funnel"],
    responses={
        400: {"description": "Offer misconfigured"},
        404: {"description": "Flow not found or identity unresolved"},
        402: {"description": "Charge failed"},
    },
)


def get_identity_service(db: Session = Depends(get_db)) -> IdentityResolutionService:
    """Database-backed resolution with configured delays and the Redis cache."""
    return IdentityResolutionService.from_settings(DatabasePendingIdentityLookup(db))


# =============================================================================
# HELPERS
# =============================================================================

def _status_for(error: FunnelError) -> int:
    if error.kind == FunnelErrorKind.configuration:
        return 400
    if error.kind == FunnelErrorKind.identity_timeout:
        return 404
    if error.kind == FunnelErrorKind.charge_failed:
        return error.status_code if error.status_code and error.status_code >= 400 else 402
    return 200


def _error_out(error: FunnelError) -> schemas.ErrorOut:
    return schemas.ErrorOut(kind=error.kind.value, message=error.message, detail=error.detail)


def _decision_out(decision: RoutingDecision) -> schemas.DecisionOut:
    return schemas.DecisionOut(
        kind=decision.kind.value,
        node_id=decision.target.id if decision.target is not None else None,
        url=decision.url,
        reason=decision.reason,
    )


def _plan_out(plan: RedirectPlan) -> schemas.RedirectPlanOut:
    return schemas.RedirectPlanOut(
        url=plan.url,
        relation=plan.relation.value,
        embedded=plan.embedded,
        action=plan.action.value,
        message=plan.message,
    )


def _json(status_code: int, body: BaseModel) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/{company_id}/identity", response_model=schemas.IdentityResponse)
async def resolve_identity(
    company_id: str,
    payload: schemas.IdentityRequest,
    identity_service: IdentityResolutionService = Depends(get_identity_service),
):
    """Resolve the buyer's member id, waiting at most the configured polling budget."""
    result = await identity_service.resolve_member(
        member_id=payload.member_id,
        checkout_config_id=payload.checkout_config_id,
        setup_intent_id=payload.setup_intent_id,
        email=payload.email,
    )

    if isinstance(result, MemberIdentity):
        return schemas.IdentityResponse(
            resolved=True,
            member_id=result.member_id,
            email=result.email,
            payment_method_id=result.payment_method_id,
            source=result.source,
        )

    analytics.track_identity_unresolved(result.checkout_config_id, company_id, result.attempts)
    error = FunnelError.of(FunnelErrorKind.identity_timeout, detail=f"unresolved after {result.attempts} attempts")
    return _json(404, schemas.IdentityResponse(resolved=False, attempts=result.attempts, error=_error_out(error)))


@router.post("/{company_id}/advance", response_model=schemas.AdvanceResponse)
async def advance(
    company_id: str,
    payload: schemas.AdvanceRequest,
    db: Session = Depends(get_db),
    whop: WhopClient = Depends(get_whop_client),
    identity_service: IdentityResolutionService = Depends(get_identity_service),
):
    """Accept or decline the current step and plan the redirect.

    `nodeId` omitted means the initial checkout step (accept charges the
    flow's initial product).
    """
    graph = FlowGraphStore(db).get_graph(company_id, payload.flow_id)
    if graph is None:
        raise HTTPException(status_code=404, detail="Flow not found")

    set_funnel_context(company_id, str(graph.id), payload.member_id)

    current = None
    if payload.node_id is not None:
        current = graph.get_node(payload.node_id)
        if current is None:
            logger.warning(f"[FUNNEL] Node {payload.node_id} is not part of flow {graph.id}")
            error = FunnelError.of(FunnelErrorKind.configuration, detail=f"node {payload.node_id} not in flow")
            return _json(400, schemas.AdvanceResponse(error=_error_out(error)))

    identity = None
    if payload.action == EdgeActionEnum.accept:
        result = await identity_service.resolve_member(
            member_id=payload.member_id,
            checkout_config_id=payload.checkout_config_id,
            setup_intent_id=payload.setup_intent_id,
            email=payload.email,
        )
        if not isinstance(result, MemberIdentity):
            analytics.track_identity_unresolved(result.checkout_config_id, company_id, result.attempts)
            error = FunnelError.of(FunnelErrorKind.identity_timeout, detail=f"unresolved after {result.attempts} attempts")
            return _json(404, schemas.AdvanceResponse(error=_error_out(error)))
        identity = result
    elif payload.member_id:
        identity = MemberIdentity(member_id=payload.member_id, source="explicit")

    context = RedirectContext(
        company_id=company_id,
        flow_id=str(graph.id),
        member_id=identity.member_id if identity else payload.member_id,
        session_id=payload.session_id,
        setup_intent_id=payload.setup_intent_id,
    )

    orchestrator = ChargeOrchestrator(whop, TrackingService(db))
    outcome: AdvanceOutcome = await orchestrator.charge_and_advance(
        graph,
        current,
        identity,
        payload.action,
        context,
        payment_method_id=payload.payment_method_id,
    )

    if outcome.decision is None:
        return _json(
            _status_for(outcome.error),
            schemas.AdvanceResponse(error=_error_out(outcome.error), member_id=context.member_id),
        )

    current_origin = payload.current_origin or get_settings().APP_BASE_URL
    plan = plan_redirect(outcome.decision, context, current_origin, payload.embedded, upsell_path=payload.upsell_path)

    return schemas.AdvanceResponse(
        decision=_decision_out(outcome.decision),
        redirect=_plan_out(plan) if plan is not None else None,
        error=_error_out(outcome.error) if outcome.error else None,
        member_id=context.member_id,
        purchase_id=outcome.purchase_id,
        payment_id=outcome.payment_id,
    )
