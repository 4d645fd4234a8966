"""Edge Resolver.

WHAT:
    Maps (flow graph, current node or initial step, buyer action) to a
    routing decision: another node, the confirmation page, an external URL,
    or nowhere.

WHY:
    Every funnel step needs the same answer to "where does the buyer go
    next?". Keeping it a pure function over a FlowGraph snapshot makes the
    answer reproducible and testable without a database.

HOW:
    1. A configured edge for (node, action) wins. First edge in store order
       (created_at, id) if several exist.
    2. Otherwise the fallback sequence applies: all nodes ordered by kind
       (upsell < downsell < cross_sell), then order_index. The next node in
       the sequence is the target; past the end, the flow's confirmation page.

CONSTRAINTS:
    - No I/O. Identical snapshots always give identical decisions.
    - Authoring mistakes (edge to a missing node, self-referencing decline)
      are NOT corrected. A missing target resolves to `none`; loops are the
      caller's problem.

REFERENCES:
    - xperience/services/flow_graph.py (snapshots and ordering)
    - xperience/services/charge_orchestrator.py (caller)
"""

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from xperience.models import EdgeActionEnum, EdgeTargetEnum
from xperience.services.flow_graph import FlowGraph, NodeSnapshot, EdgeSnapshot

logger = logging.getLogger(__name__)


class DecisionKind(str, enum.Enum):
    node = "node"
    confirmation = "confirmation"
    external_url = "external_url"
    none = "none"


@dataclass(frozen=True)
class RoutingDecision:
    """Where the buyer goes next.

    `target` is set only for kind=node, `url` only for confirmation and
    external_url. `reason` is diagnostic text for logs.
    """
    kind: DecisionKind
    target: Optional[NodeSnapshot] = None
    url: Optional[str] = None
    reason: str = ""
    from_edge: bool = False

    @property
    def is_none(self) -> bool:
        return self.kind == DecisionKind.none

    @classmethod
    def to_node(cls, node: NodeSnapshot, reason: str, from_edge: bool = False) -> "RoutingDecision":
        return cls(kind=DecisionKind.node, target=node, reason=reason, from_edge=from_edge)

    @classmethod
    def nowhere(cls, reason: str, from_edge: bool = False) -> "RoutingDecision":
        return cls(kind=DecisionKind.none, reason=reason, from_edge=from_edge)


def _action_value(action) -> str:
    return EdgeActionEnum(getattr(action, "value", action)).value


def fallback_sequence(graph: FlowGraph) -> tuple:
    """All nodes in fallback order. FlowGraph keeps nodes pre-sorted."""
    return graph.nodes


def _confirmation_or_none(graph: FlowGraph, reason: str) -> RoutingDecision:
    if graph.confirmation_page_url:
        return RoutingDecision(
            kind=DecisionKind.confirmation,
            url=graph.confirmation_page_url,
            reason=reason,
        )
    return RoutingDecision.nowhere(f"{reason}; flow has no confirmation page")


def _translate_edge(graph: FlowGraph, edge: EdgeSnapshot) -> RoutingDecision:
    try:
        target_type = EdgeTargetEnum(edge.target_type)
    except ValueError:
        return RoutingDecision.nowhere(f"edge {edge.id} has unknown target_type {edge.target_type!r}", from_edge=True)

    if target_type == EdgeTargetEnum.node:
        target = graph.get_node(edge.to_node_id)
        if target is None:
            return RoutingDecision.nowhere(
                f"edge {edge.id} points to node {edge.to_node_id} which is not in flow {graph.id}",
                from_edge=True,
            )
        return RoutingDecision.to_node(target, reason=f"edge {edge.id}", from_edge=True)

    if target_type == EdgeTargetEnum.confirmation:
        url = edge.target_url or graph.confirmation_page_url
        if not url:
            return RoutingDecision.nowhere(f"edge {edge.id} targets confirmation but no URL is configured", from_edge=True)
        return RoutingDecision(kind=DecisionKind.confirmation, url=url, reason=f"edge {edge.id}", from_edge=True)

    # external_url
    if not edge.target_url:
        return RoutingDecision.nowhere(f"edge {edge.id} targets an external URL but has none", from_edge=True)
    return RoutingDecision(kind=DecisionKind.external_url, url=edge.target_url, reason=f"edge {edge.id}", from_edge=True)


def resolve_fallback(graph: FlowGraph, current: Optional[NodeSnapshot]) -> RoutingDecision:
    """Next step when no edge is configured.

    The initial step (current=None) leads to the first node in the sequence.
    """
    sequence = fallback_sequence(graph)

    if current is None:
        if sequence:
            return RoutingDecision.to_node(sequence[0], reason="fallback: first node after initial purchase")
        return _confirmation_or_none(graph, "fallback: flow has no offer nodes")

    position = next((i for i, n in enumerate(sequence) if str(n.id) == str(current.id)), None)
    if position is None:
        return RoutingDecision.nowhere(f"node {current.id} is not part of flow {graph.id}")

    if position + 1 < len(sequence):
        nxt = sequence[position + 1]
        return RoutingDecision.to_node(nxt, reason=f"fallback: {nxt.node_type.value}#{nxt.order_index}")

    return _confirmation_or_none(graph, "fallback: last node in flow")


def resolve(graph: FlowGraph, current: Optional[NodeSnapshot], action) -> RoutingDecision:
    """Resolve the buyer's next step.

    Args:
        graph: Flow snapshot with nodes and edges already loaded
        current: Node the buyer is on, or None for the initial checkout step
        action: "accept" / "decline" (or EdgeActionEnum)

    Returns:
        RoutingDecision; never raises for graph problems
    """
    action_value = _action_value(action)

    if current is not None:
        edges = graph.edges_from(current.id, action_value)
        if len(edges) > 1:
            logger.warning(
                f"[RESOLVER] {len(edges)} '{action_value}' edges on node {current.id}; using the first ({edges[0].id})"
            )
        if edges:
            decision = _translate_edge(graph, edges[0])
            if decision.is_none:
                logger.warning(f"[RESOLVER] {decision.reason}")
            return decision

    decision = resolve_fallback(graph, current)
    logger.debug(
        f"[RESOLVER] {action_value} on {current.id if current else 'initial'} -> {decision.kind.value} ({decision.reason})"
    )
    return decision
