"""
Edge Resolver Tests (Unit)
==========================

WHAT: Pure routing decisions over hand-built FlowGraph snapshots.
WHY: The resolver decides where every buyer goes next; it must be stable
     for identical snapshots and must not "fix" broken graphs.

NOTE:
These tests live outside `backend/xperience/tests/` to avoid loading the
integration-test `conftest.py`; the resolver needs no database.

REFERENCES:
- backend/xperience/services/edge_resolver.py
- backend/xperience/services/flow_graph.py
"""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from xperience.models import NodeTypeEnum
from xperience.services.edge_resolver import DecisionKind, resolve, resolve_fallback
from xperience.services.flow_graph import EdgeSnapshot, FlowGraph, NodeSnapshot

FLOW_ID = uuid.UUID("00000000-0000-0000-0000-00000000f10a")
CONFIRM = "https://merchant.example.com/thanks"
T0 = datetime(2026, 1, 1, 9, 0, 0)


def _node(node_type=NodeTypeEnum.upsell, order_index=0, created_offset=0, redirect_url=None) -> NodeSnapshot:
    return NodeSnapshot(
        id=uuid.uuid4(),
        flow_id=FLOW_ID,
        node_type=node_type,
        plan_id=f"plan_{uuid.uuid4().hex[:6]}",
        title=None,
        price=Decimal("10.00"),
        original_price=None,
        redirect_url=redirect_url,
        order_index=order_index,
        created_at=T0 + timedelta(seconds=created_offset),
    )


def _edge(source, action, target_type="node", to=None, url=None, created_offset=0) -> EdgeSnapshot:
    return EdgeSnapshot(
        id=uuid.uuid4(),
        flow_id=FLOW_ID,
        from_node_id=source.id,
        action=action,
        target_type=target_type,
        to_node_id=to.id if to is not None else None,
        target_url=url,
        created_at=T0 + timedelta(seconds=created_offset),
    )


def _graph(nodes, edges=(), confirmation=CONFIRM) -> FlowGraph:
    return FlowGraph(
        id=FLOW_ID,
        company_id="biz_unit",
        confirmation_page_url=confirmation,
        initial_product_plan_id="plan_initial",
        nodes=tuple(nodes),
        edges=tuple(edges),
    )


def test_configured_edge_wins_over_fallback() -> None:
    a, b, c = _node(order_index=0), _node(order_index=1), _node(order_index=2)
    graph = _graph([a, b, c], [_edge(a, "accept", to=c)])

    decision = resolve(graph, a, "accept")

    assert decision.kind == DecisionKind.node
    assert decision.target == c
    assert decision.from_edge is True


def test_first_edge_in_store_order_wins_when_duplicated() -> None:
    a, b, c = _node(order_index=0), _node(order_index=1), _node(order_index=2)
    later = _edge(a, "accept", to=b, created_offset=10)
    earlier = _edge(a, "accept", to=c, created_offset=1)
    graph = _graph([a, b, c], [later, earlier])

    assert resolve(graph, a, "accept").target == c


def test_edge_action_must_match() -> None:
    a, b = _node(order_index=0), _node(order_index=1)
    graph = _graph([a, b], [_edge(a, "decline", target_type="confirmation")])

    decision = resolve(graph, a, "accept")

    assert decision.kind == DecisionKind.node
    assert decision.target == b
    assert decision.from_edge is False


def test_confirmation_edge_prefers_its_own_url() -> None:
    a = _node()
    graph = _graph([a], [_edge(a, "decline", target_type="confirmation", url="https://merchant.example.com/special")])

    decision = resolve(graph, a, "decline")

    assert decision.kind == DecisionKind.confirmation
    assert decision.url == "https://merchant.example.com/special"


def test_confirmation_edge_without_any_url_is_none() -> None:
    a = _node()
    graph = _graph([a], [_edge(a, "decline", target_type="confirmation")], confirmation=None)

    decision = resolve(graph, a, "decline")

    assert decision.is_none
    assert decision.from_edge is True


def test_external_url_edge() -> None:
    a = _node()
    graph = _graph([a], [_edge(a, "accept", target_type="external_url", url="https://partner.example.org/offer")])

    decision = resolve(graph, a, "accept")

    assert decision.kind == DecisionKind.external_url
    assert decision.url == "https://partner.example.org/offer"


def test_edge_to_missing_node_is_not_corrected() -> None:
    a, b = _node(order_index=0), _node(order_index=1)
    ghost = _node(order_index=9)
    graph = _graph([a, b], [_edge(a, "accept", to=ghost)])

    decision = resolve(graph, a, "accept")

    assert decision.is_none
    assert decision.from_edge is True


def test_self_loop_is_returned_as_is() -> None:
    a, b = _node(order_index=0), _node(order_index=1)
    graph = _graph([a, b], [_edge(a, "decline", to=a)])

    assert resolve(graph, a, "decline").target == a


def test_fallback_order_is_kind_then_index_then_created() -> None:
    cross = _node(NodeTypeEnum.cross_sell, order_index=0)
    down = _node(NodeTypeEnum.downsell, order_index=0)
    up_second = _node(NodeTypeEnum.upsell, order_index=1)
    up_tie_late = _node(NodeTypeEnum.upsell, order_index=0, created_offset=5)
    up_tie_early = _node(NodeTypeEnum.upsell, order_index=0, created_offset=1)
    graph = _graph([cross, down, up_second, up_tie_late, up_tie_early])

    walk = []
    current = None
    while True:
        decision = resolve(graph, current, "accept")
        if decision.kind != DecisionKind.node:
            break
        walk.append(decision.target)
        current = decision.target

    assert walk == [up_tie_early, up_tie_late, up_second, down, cross]
    assert decision.kind == DecisionKind.confirmation


@pytest.mark.parametrize("action", ["accept", "decline"])
def test_fallback_successors_without_edges(action) -> None:
    up0 = _node(NodeTypeEnum.upsell, order_index=0)
    up1 = _node(NodeTypeEnum.upsell, order_index=1)
    down0 = _node(NodeTypeEnum.downsell, order_index=0)
    graph = _graph([down0, up1, up0])

    assert resolve(graph, up0, action).target == up1
    assert resolve(graph, up1, action).target == down0

    last = resolve(graph, down0, action)
    assert last.kind == DecisionKind.confirmation
    assert last.url == graph.confirmation_page_url


def test_initial_step_goes_to_first_node() -> None:
    a, b = _node(order_index=0), _node(order_index=1)
    graph = _graph([b, a])

    assert resolve(graph, None, "accept").target == a
    assert resolve(graph, None, "decline").target == a


def test_empty_flow_goes_to_confirmation_or_nowhere() -> None:
    assert resolve(_graph([]), None, "accept").kind == DecisionKind.confirmation

    decision = resolve(_graph([], confirmation=None), None, "accept")
    assert decision.is_none
    assert decision.from_edge is False


def test_last_node_without_confirmation_is_none() -> None:
    a = _node()

    assert resolve_fallback(_graph([a], confirmation=None), a).is_none


def test_identical_snapshots_give_identical_decisions() -> None:
    a, b = _node(order_index=0), _node(order_index=1)
    edges = [_edge(a, "accept", to=b)]

    first = resolve(_graph([a, b], edges), a, "accept")
    second = resolve(_graph([b, a], list(reversed(edges))), a, "accept")

    assert first == second
