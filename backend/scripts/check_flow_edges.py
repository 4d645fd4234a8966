#!/usr/bin/env python3
"""
Flow edge inspection script.

WHAT:
    Prints a flow's nodes in fallback order, its configured edges, and what
    the edge resolver decides for accept/decline on every node. Flags
    edges that point outside the flow and nodes with duplicate edges.

USAGE:
    python scripts/check_flow_edges.py --company biz_123
    python scripts/check_flow_edges.py --company biz_123 --flow <uuid>

REFERENCES:
    - backend/xperience/services/flow_graph.py
    - backend/xperience/services/edge_resolver.py
"""

import argparse
import os
import sys
from uuid import UUID

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from xperience.database import SessionLocal  # noqa: E402
from xperience.models import EdgeActionEnum  # noqa: E402
from xperience.services import edge_resolver  # noqa: E402
from xperience.services.flow_graph import FlowGraphStore  # noqa: E402


def describe(decision) -> str:
    if decision.kind == edge_resolver.DecisionKind.node:
        return f"node {decision.target.node_type.value}#{decision.target.order_index} ({decision.target.title or decision.target.id})"
    if decision.url:
        return f"{decision.kind.value} {decision.url}"
    return f"none ({decision.reason})"


def main():
    parser = argparse.ArgumentParser(description="Inspect a flow's edges and routing")
    parser.add_argument("--company", required=True, help="Whop company id (biz_...)")
    parser.add_argument("--flow", type=UUID, default=None, help="Flow id (defaults to latest flow)")
    args = parser.parse_args()

    db = SessionLocal()
    try:
        graph = FlowGraphStore(db).get_graph(args.company, args.flow)
        if graph is None:
            print(f"No flow found for company {args.company}")
            return 1

        print(f"Flow {graph.id}  confirmation={graph.confirmation_page_url or '-'}")
        print(f"Initial plan: {graph.initial_product_plan_id or '-'}")
        print("")

        problems = 0
        print("Initial step:")
        print(f"  accept  -> {describe(edge_resolver.resolve(graph, None, EdgeActionEnum.accept))}")

        for node in graph.nodes:
            print(f"{node.node_type.value}#{node.order_index}  {node.title or ''}  id={node.id}  plan={node.plan_id or '-'}")
            for action in EdgeActionEnum:
                edges = graph.edges_from(node.id, action.value)
                if len(edges) > 1:
                    problems += 1
                    print(f"  !! {len(edges)} {action.value} edges, first wins")
                for edge in edges:
                    target = edge.to_node_id or edge.target_url or "-"
                    print(f"  edge {edge.id}: {action.value} -> {edge.target_type} {target}")
                decision = edge_resolver.resolve(graph, node, action)
                if decision.is_none and decision.from_edge:
                    problems += 1
                    print(f"  !! {action.value} dead-ends: {decision.reason}")
                print(f"  {action.value:7} -> {describe(decision)}")

        print("")
        print(f"{problems} problem(s) found")
        return 1 if problems else 0
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
