"""Flow Graph Store.

WHAT:
    Loads a funnel (flow + nodes + edges) from the database into immutable
    snapshots that the edge resolver and charge orchestrator consume.

WHY:
    - The resolver must be pure: it never touches the session, so everything
      it needs is loaded up front and frozen.
    - Storage does not guarantee row order, so this module fixes it:
      nodes by (kind rank, order_index, created_at, id), edges by
      (created_at, id). "First matching edge wins" is therefore stable.

REFERENCES:
    - xperience/services/edge_resolver.py (consumer)
    - xperience/routers/flows.py (HTTP read surface)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple, List
from uuid import UUID

from sqlalchemy.orm import Session

from xperience.models import CompanyFlow, FlowNode, FlowEdge, NodeTypeEnum

logger = logging.getLogger(__name__)


# Fallback precedence between node kinds
NODE_TYPE_RANK = {
    NodeTypeEnum.upsell: 0,
    NodeTypeEnum.downsell: 1,
    NodeTypeEnum.cross_sell: 2,
}

_EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True)
class NodeSnapshot:
    id: UUID
    flow_id: UUID
    node_type: NodeTypeEnum
    plan_id: Optional[str]
    title: Optional[str]
    price: Optional[Decimal]
    original_price: Optional[Decimal]
    redirect_url: Optional[str]
    order_index: int
    created_at: Optional[datetime] = None
    description: Optional[str] = None

    @classmethod
    def from_model(cls, node: FlowNode) -> "NodeSnapshot":
        return cls(
            id=node.id,
            flow_id=node.flow_id,
            node_type=NodeTypeEnum(node.node_type),
            plan_id=node.plan_id,
            title=node.title,
            price=node.price,
            original_price=node.original_price,
            redirect_url=node.redirect_url,
            order_index=node.order_index or 0,
            created_at=node.created_at,
            description=node.description,
        )


@dataclass(frozen=True)
class EdgeSnapshot:
    id: UUID
    flow_id: UUID
    from_node_id: UUID
    action: str
    target_type: str
    to_node_id: Optional[UUID] = None
    target_url: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, edge: FlowEdge) -> "EdgeSnapshot":
        return cls(
            id=edge.id,
            flow_id=edge.flow_id,
            from_node_id=edge.from_node_id,
            action=getattr(edge.action, "value", edge.action),
            target_type=getattr(edge.target_type, "value", edge.target_type),
            to_node_id=edge.to_node_id,
            target_url=edge.target_url,
            created_at=edge.created_at,
        )


def node_sort_key(node: NodeSnapshot):
    """Total order used for fallback routing and for listing nodes."""
    return (
        NODE_TYPE_RANK.get(node.node_type, len(NODE_TYPE_RANK)),
        node.order_index,
        node.created_at or _EPOCH,
        str(node.id),
    )


def edge_sort_key(edge: EdgeSnapshot):
    return (edge.created_at or _EPOCH, str(edge.id))


@dataclass(frozen=True)
class FlowGraph:
    """Immutable view of one funnel.

    WHAT: Flow-level fields plus nodes (ordered) and edges (ordered)
    WHY: Identical snapshots always yield identical routing decisions
    """
    id: UUID
    company_id: str
    confirmation_page_url: Optional[str] = None
    initial_product_plan_id: Optional[str] = None
    initial_product_name: Optional[str] = None
    initial_product_price: Optional[Decimal] = None
    nodes: Tuple[NodeSnapshot, ...] = field(default_factory=tuple)
    edges: Tuple[EdgeSnapshot, ...] = field(default_factory=tuple)

    def __post_init__(self):
        # Normalize ordering regardless of how the caller built the tuples
        object.__setattr__(self, "nodes", tuple(sorted(self.nodes, key=node_sort_key)))
        object.__setattr__(self, "edges", tuple(sorted(self.edges, key=edge_sort_key)))

    def get_node(self, node_id) -> Optional[NodeSnapshot]:
        if node_id is None:
            return None
        wanted = str(node_id)
        for node in self.nodes:
            if str(node.id) == wanted:
                return node
        return None

    def edges_from(self, node_id, action: Optional[str] = None) -> List[EdgeSnapshot]:
        wanted = str(node_id)
        return [
            e for e in self.edges
            if str(e.from_node_id) == wanted and (action is None or e.action == action)
        ]

    @classmethod
    def from_model(cls, flow: CompanyFlow, edges: Optional[List[FlowEdge]] = None) -> "FlowGraph":
        edge_rows = flow.edges if edges is None else edges
        return cls(
            id=flow.id,
            company_id=flow.company_id,
            confirmation_page_url=flow.confirmation_page_url or None,
            initial_product_plan_id=flow.initial_product_plan_id,
            initial_product_name=flow.initial_product_name,
            initial_product_price=flow.initial_product_price,
            nodes=tuple(NodeSnapshot.from_model(n) for n in flow.nodes),
            edges=tuple(EdgeSnapshot.from_model(e) for e in edge_rows),
        )


class FlowGraphStore:
    """Read access to flow graphs.

    Write operations belong to the authoring dashboard; the only mutation
    exposed here is node deletion, which must take incident edges with it.

    Usage:
        store = FlowGraphStore(db)
        graph = store.get_graph(company_id="biz_123", flow_id=flow_uuid)
    """

    def __init__(self, db: Session):
        self.db = db

    def get_flow(self, company_id: str, flow_id: Optional[UUID] = None) -> Optional[CompanyFlow]:
        """Fetch a flow owned by `company_id`.

        Without `flow_id` the most recently created flow is returned, which
        keeps single-funnel embeds working.
        """
        query = self.db.query(CompanyFlow).filter(CompanyFlow.company_id == company_id)
        if flow_id is not None:
            return query.filter(CompanyFlow.id == flow_id).first()
        return query.order_by(CompanyFlow.created_at.desc()).first()

    def get_graph(self, company_id: str, flow_id: Optional[UUID] = None) -> Optional[FlowGraph]:
        flow = self.get_flow(company_id, flow_id)
        if not flow:
            logger.info(f"[FLOW_STORE] No flow for company {company_id} (flow_id={flow_id})")
            return None
        return FlowGraph.from_model(flow, edges=self._query_edges(flow.id))

    def list_nodes(self, flow_id: UUID) -> List[NodeSnapshot]:
        rows = self.db.query(FlowNode).filter(FlowNode.flow_id == flow_id).all()
        return sorted((NodeSnapshot.from_model(n) for n in rows), key=node_sort_key)

    def get_edges(self, flow_id: UUID, node_id: Optional[UUID] = None) -> List[EdgeSnapshot]:
        """Fetch edges for a flow, optionally only those leaving `node_id`."""
        return [EdgeSnapshot.from_model(e) for e in self._query_edges(flow_id, node_id)]

    def delete_node(self, node_id: UUID) -> bool:
        """Delete a node and every edge that starts or ends at it."""
        node = self.db.query(FlowNode).filter(FlowNode.id == node_id).first()
        if not node:
            return False

        # ORM-level cascade, so SQLite without the FK pragma behaves the same
        removed = len({e.id for e in node.outgoing_edges} | {e.id for e in node.incoming_edges})
        self.db.delete(node)
        self.db.commit()
        logger.info(f"[FLOW_STORE] Deleted node {node_id} and {removed} incident edge(s)")
        return True

    def _query_edges(self, flow_id: UUID, node_id: Optional[UUID] = None) -> List[FlowEdge]:
        query = self.db.query(FlowEdge).filter(FlowEdge.flow_id == flow_id)
        if node_id is not None:
            query = query.filter(FlowEdge.from_node_id == node_id)
        return query.order_by(FlowEdge.created_at.asc(), FlowEdge.id.asc()).all()
