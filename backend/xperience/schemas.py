"""Pydantic schemas for request/response payloads.

Browser-facing payloads (checkout, charge, identity lookup, funnel) use
camelCase on the wire to match the query parameters carried between funnel
pages; Python code uses snake_case attribute names. Tracking payloads and
flow reads stay snake_case, matching the stored rows.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import EdgeActionEnum, EdgeTargetEnum, NodeTypeEnum, PageTypeEnum, PurchaseTypeEnum


class CamelModel(BaseModel):
    """Accepts both camelCase and snake_case; serializes camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])


class ErrorOut(BaseModel):
    """Buyer-facing failure. `message` is safe to display."""

    kind: str
    message: str
    detail: Optional[str] = None


# Flow graph -------------------------------------------------------------

class NodeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    flow_id: UUID
    node_type: NodeTypeEnum
    plan_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    original_price: Optional[float] = None
    redirect_url: Optional[str] = None
    order_index: int = 0
    created_at: Optional[datetime] = None


class FlowOut(BaseModel):
    """A flow with its nodes in fallback order."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: str
    name: Optional[str] = None
    initial_product_plan_id: Optional[str] = None
    initial_product_name: Optional[str] = None
    initial_product_price: Optional[float] = None
    confirmation_page_url: Optional[str] = None
    created_at: Optional[datetime] = None
    nodes: List[NodeOut] = Field(default_factory=list)


class EdgeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    flow_id: UUID
    from_node_id: UUID
    action: EdgeActionEnum
    target_type: EdgeTargetEnum
    to_node_id: Optional[UUID] = None
    target_url: Optional[str] = None
    created_at: Optional[datetime] = None


# Whop --------------------------------------------------------------------

class CheckoutConfigRequest(CamelModel):
    plan_id: str = Field(min_length=1, description="Initial product plan")
    user_email: Optional[str] = None
    company_id: Optional[str] = Field(default=None, description="Falls back to WHOP_COMPANY_ID")
    flow_id: Optional[str] = None


class CheckoutConfigResponse(CamelModel):
    checkout_config_id: str
    plan_id: Optional[str] = None
    purchase_url: Optional[str] = None


class ChargeRequest(CamelModel):
    """Direct charge of a plan against a saved payment method."""

    member_id: str = Field(min_length=1)
    plan_id: str = Field(min_length=1)
    # 0 is valid: free offers
    amount: Decimal = Field(ge=0)
    payment_method_id: Optional[str] = None
    currency: str = "usd"
    company_id: Optional[str] = None
    flow_id: Optional[str] = None
    node_id: Optional[str] = None
    purchase_type: PurchaseTypeEnum = PurchaseTypeEnum.upsell
    session_id: Optional[str] = None


class ChargeResponse(CamelModel):
    success: bool = True
    payment_id: Optional[str] = None
    status: Optional[str] = None
    requires_redirect: bool = False
    purchase_id: Optional[UUID] = None


class PendingIdentityOut(CamelModel):
    """Webhook-populated identity, as polled by the checkout page."""

    member_id: str
    checkout_config_id: Optional[str] = None
    email: Optional[str] = None
    setup_intent_id: Optional[str] = None
    payment_method_id: Optional[str] = None


class WebhookAck(BaseModel):
    status: str
    checkout_config_id: Optional[str] = None


# Purchases / tracking ------------------------------------------------------

class PurchaseItemOut(BaseModel):
    id: UUID
    flow_id: UUID
    plan_id: str
    purchase_type: str
    node_id: Optional[UUID] = None
    name: str
    amount: float
    currency: str
    purchased_at: datetime
    session_id: Optional[str] = None


class PurchasesResponse(BaseModel):
    purchases: List[PurchaseItemOut]
    total: float
    matched_by: str = Field(description="'session' when a session id was supplied, else 'window'")


class TrackPurchaseRequest(BaseModel):
    flow_id: UUID
    company_id: str = Field(min_length=1)
    member_id: str = Field(min_length=1)
    plan_id: str = Field(min_length=1)
    purchase_type: PurchaseTypeEnum
    node_id: Optional[UUID] = None
    amount: Decimal = Field(ge=0)
    currency: str = "usd"
    session_id: Optional[str] = None


class TrackVisitRequest(BaseModel):
    flow_id: UUID
    company_id: str = Field(min_length=1)
    page_type: PageTypeEnum
    session_id: Optional[str] = None
    node_id: Optional[UUID] = None
    user_agent: Optional[str] = None
    referrer: Optional[str] = None
    ip_address: Optional[str] = None


class TrackResponse(BaseModel):
    """Tracking never fails the caller; `success` reports whether the row landed."""

    success: bool
    id: Optional[UUID] = None


# Funnel --------------------------------------------------------------------

class IdentityRequest(CamelModel):
    member_id: Optional[str] = None
    checkout_config_id: Optional[str] = None
    setup_intent_id: Optional[str] = None
    email: Optional[str] = None


class IdentityResponse(BaseModel):
    resolved: bool
    member_id: Optional[str] = None
    email: Optional[str] = None
    payment_method_id: Optional[str] = None
    source: Optional[str] = None
    attempts: int = 0
    error: Optional[ErrorOut] = None


class AdvanceRequest(CamelModel):
    """One accept/decline on a funnel step.

    `node_id` omitted means the initial checkout step.
    """

    action: EdgeActionEnum
    flow_id: Optional[UUID] = None
    node_id: Optional[UUID] = None
    member_id: Optional[str] = None
    checkout_config_id: Optional[str] = None
    setup_intent_id: Optional[str] = None
    email: Optional[str] = None
    payment_method_id: Optional[str] = None
    session_id: Optional[str] = None
    current_origin: Optional[str] = Field(default=None, description="Origin of the page the buyer is on")
    embedded: bool = True
    upsell_path: str = "/upsell"


class DecisionOut(BaseModel):
    kind: str
    node_id: Optional[UUID] = None
    url: Optional[str] = None
    reason: str = ""


class RedirectPlanOut(BaseModel):
    url: str
    relation: str
    embedded: bool
    action: str
    message: Dict[str, Any]


class AdvanceResponse(BaseModel):
    decision: Optional[DecisionOut] = None
    redirect: Optional[RedirectPlanOut] = None
    error: Optional[ErrorOut] = None
    member_id: Optional[str] = None
    purchase_id: Optional[UUID] = None
    payment_id: Optional[str] = None


# Embed --------------------------------------------------------------------

class EmbedCodeResponse(CamelModel):
    """Snippet a merchant pastes into their own checkout/upsell/confirmation page."""

    embed_code: str
    instructions: str
