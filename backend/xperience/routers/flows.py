"""Flow graph read endpoints.

WHAT: Serves a company's flow (nodes in fallback order) and its edges
WHY: Funnel pages render offers from the flow and inspect edges for
     diagnostics; authoring happens elsewhere, so these are read-only
REFERENCES:
    - xperience/services/flow_graph.py
"""

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..services.flow_graph import FlowGraphStore
from .. import schemas

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/flows",
    tags=["Flows"],
    responses={404: {"description": "Flow not found"}},
)


@router.get("/{company_id}", response_model=schemas.FlowOut)
def get_flow(
    company_id: str,
    flow_id: Optional[UUID] = Query(None, alias="flowId"),
    db: Session = Depends(get_db),
):
    """Fetch a flow with its nodes.

    Without `flowId` the company's most recent flow is returned.
    """
    store = FlowGraphStore(db)
    flow = store.get_flow(company_id, flow_id)
    if not flow:
        raise HTTPException(status_code=404, detail="Flow not found")

    out = schemas.FlowOut.model_validate(flow)
    # Relationship order is storage order; expose the fallback order instead
    out.nodes = [schemas.NodeOut.model_validate(n, from_attributes=True) for n in store.list_nodes(flow.id)]
    return out


@router.get("/{company_id}/edges", response_model=List[schemas.EdgeOut])
def get_edges(
    company_id: str,
    flow_id: UUID = Query(..., alias="flowId"),
    node_id: Optional[UUID] = Query(None, alias="nodeId"),
    db: Session = Depends(get_db),
):
    """Edges of a flow in resolution order, optionally only those leaving `nodeId`."""
    store = FlowGraphStore(db)
    if not store.get_flow(company_id, flow_id):
        raise HTTPException(status_code=404, detail="Flow not found")

    return [schemas.EdgeOut.model_validate(e, from_attributes=True) for e in store.get_edges(flow_id, node_id)]
