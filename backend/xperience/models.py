"""SQLAlchemy ORM models and enums.

This module defines the funnel schema using UUID primary keys for internal
rows. Processor-assigned identifiers (companies, members, plans, payments)
are stored as plain strings because Whop owns their format.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import Column, String, DateTime, Enum, Integer, ForeignKey, Numeric, Text, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class NodeTypeEnum(str, enum.Enum):
    upsell = "upsell"
    downsell = "downsell"
    cross_sell = "cross_sell"


class EdgeActionEnum(str, enum.Enum):
    accept = "accept"
    decline = "decline"


class EdgeTargetEnum(str, enum.Enum):
    node = "node"
    confirmation = "confirmation"
    external_url = "external_url"


class PurchaseTypeEnum(str, enum.Enum):
    """Which funnel step produced a purchase.

    `initial` purchases have no node; every other type mirrors the node kind.
    """
    initial = "initial"
    upsell = "upsell"
    downsell = "downsell"
    cross_sell = "cross_sell"


class PageTypeEnum(str, enum.Enum):
    checkout = "checkout"
    upsell = "upsell"
    downsell = "downsell"
    cross_sell = "cross_sell"
    confirmation = "confirmation"


def _enum_values(obj):
    return [e.value for e in obj]


# Flow graph -----------------------------------------------------

class CompanyFlow(Base):
    """A merchant's funnel.

    The initial checkout and confirmation steps are flow-level fields, not
    nodes. Nodes and edges belong to exactly one flow and are removed with it.
    """
    __tablename__ = "company_flows"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=True)

    initial_product_plan_id = Column(String, nullable=True)
    initial_product_name = Column(String, nullable=True)
    initial_product_price = Column(Numeric(12, 2), nullable=True)

    confirmation_page_url = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    nodes = relationship("FlowNode", back_populates="flow", cascade="all, delete-orphan")
    edges = relationship("FlowEdge", back_populates="flow", cascade="all, delete-orphan")

    def __str__(self):
        return self.name or str(self.id)


class FlowNode(Base):
    """One upsell/downsell/cross-sell offer step.

    `order_index` is only unique within (flow, node_type); ties fall back to
    `created_at`. Deleting a node removes every edge that starts or ends at it.
    """
    __tablename__ = "flow_nodes"
    __table_args__ = (
        Index("ix_flow_nodes_flow_type_order", "flow_id", "node_type", "order_index"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    flow_id = Column(UUID(as_uuid=True), ForeignKey("company_flows.id", ondelete="CASCADE"), nullable=False)
    node_type = Column(Enum(NodeTypeEnum, values_callable=_enum_values), nullable=False)
    plan_id = Column(String, nullable=True)
    title = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    price = Column(Numeric(12, 2), nullable=True)
    original_price = Column(Numeric(12, 2), nullable=True)
    redirect_url = Column(String, nullable=True)
    order_index = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

    flow = relationship("CompanyFlow", back_populates="nodes")
    # Incident edges go with the node, in either direction
    outgoing_edges = relationship("FlowEdge", foreign_keys="FlowEdge.from_node_id", cascade="all, delete")
    incoming_edges = relationship("FlowEdge", foreign_keys="FlowEdge.to_node_id", cascade="all, delete")

    def __str__(self):
        return f"{self.node_type.value if self.node_type else 'node'}#{self.order_index} ({self.title or self.id})"


class FlowEdge(Base):
    """A directed transition from a node, labelled by buyer action.

    `to_node_id` is set only for `target_type=node`; `target_url` only for
    confirmation/external targets.
    """
    __tablename__ = "flow_edges"
    __table_args__ = (
        Index("ix_flow_edges_flow_from_action", "flow_id", "from_node_id", "action"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    flow_id = Column(UUID(as_uuid=True), ForeignKey("company_flows.id", ondelete="CASCADE"), nullable=False)
    from_node_id = Column(UUID(as_uuid=True), ForeignKey("flow_nodes.id", ondelete="CASCADE"), nullable=False)
    action = Column(Enum(EdgeActionEnum, values_callable=_enum_values), nullable=False)
    target_type = Column(
        Enum(EdgeTargetEnum, values_callable=_enum_values),
        nullable=False,
        default=EdgeTargetEnum.node,
    )
    to_node_id = Column(UUID(as_uuid=True), ForeignKey("flow_nodes.id", ondelete="CASCADE"), nullable=True)
    target_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    flow = relationship("CompanyFlow", back_populates="edges")


# Funnel activity ------------------------------------------------

class FlowPurchase(Base):
    """Immutable record of one successful charge.

    Written once per charge and never updated. `session_id` ties the purchase
    to the buyer visit that produced it.
    """
    __tablename__ = "flow_purchases"
    __table_args__ = (
        Index("ix_flow_purchases_member_flow_time", "member_id", "flow_id", "purchased_at"),
        Index("ix_flow_purchases_session", "session_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    flow_id = Column(UUID(as_uuid=True), ForeignKey("company_flows.id", ondelete="CASCADE"), nullable=False)
    company_id = Column(String, nullable=False)
    member_id = Column(String, nullable=False)
    plan_id = Column(String, nullable=False)
    purchase_type = Column(Enum(PurchaseTypeEnum, values_callable=_enum_values), nullable=False)
    node_id = Column(UUID(as_uuid=True), nullable=True)  # No FK: the record outlives node edits
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String, nullable=False, default="usd")
    session_id = Column(String, nullable=True)
    payment_id = Column(String, nullable=True)
    purchased_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class FlowVisit(Base):
    """Page view within a funnel, used for conversion reporting."""
    __tablename__ = "flow_visits"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    flow_id = Column(UUID(as_uuid=True), ForeignKey("company_flows.id", ondelete="CASCADE"), nullable=False)
    company_id = Column(String, nullable=False)
    session_id = Column(String, nullable=True)
    page_type = Column(Enum(PageTypeEnum, values_callable=_enum_values), nullable=False)
    node_id = Column(UUID(as_uuid=True), nullable=True)
    user_agent = Column(String, nullable=True)
    referrer = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    visited_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class PendingIdentity(Base):
    """Webhook-populated mapping from a checkout configuration to a member.

    WHAT: Written by POST /whop/webhook when Whop confirms a saved card
    WHY: The buyer's browser needs the member id right after the save-card
         step, but Whop delivers it asynchronously. The engine only reads
         this table, polling until the row has a member id.
    """
    __tablename__ = "pending_identities"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    checkout_config_id = Column(String, unique=True, index=True, nullable=False)
    member_id = Column(String, nullable=True)
    email = Column(String, nullable=True, index=True)
    setup_intent_id = Column(String, nullable=True, index=True)
    payment_method_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __str__(self):
        return f"{self.checkout_config_id} -> {self.member_id or 'pending'}"
