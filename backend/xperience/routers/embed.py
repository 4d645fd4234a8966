"""Merchant embed snippet endpoint.

WHAT: GET /embed/{company_id} returns the HTML a merchant pastes into a page
      on their own site to host a funnel step
WHY: Funnel pages run in an iframe created by our embed.js loader. The loader
     also relays `xperience-redirect` messages from the frame to the parent
     page, so every hosted step needs the same script tag and a container
     element that tells it which company, flow and step to load.
REFERENCES:
    - xperience/services/redirect_dispatcher.py (cross-frame message contract)
    - xperience/routers/flows.py
"""

import enum
import logging
from html import escape
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query

from ..deps import get_settings
from .. import schemas

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/embed",
    tags=["Embed"],
    responses={422: {"description": "Unknown embed type"}},
)


class EmbedType(str, enum.Enum):
    checkout = "checkout"
    upsell = "upsell"
    confirmation = "confirmation"


CONTAINER_STYLE = "width: 100%; height: 100%; min-width: 320px; min-height: 600px;"


def build_embed_code(base_url: str, company_id: str, embed_type: EmbedType, flow_id: Optional[UUID] = None) -> str:
    """Script tag for the loader followed by the container it fills.

    Attribute values are HTML-escaped; company ids come straight from the URL.
    """
    script = f'<script async defer src="{escape(base_url.rstrip("/"))}/embed.js"></script>'

    attrs = [f"data-xperience-{embed_type.value}", f'data-company-id="{escape(company_id)}"']
    if flow_id is not None:
        attrs.append(f'data-flow-id="{flow_id}"')
    container = f'<div {" ".join(attrs)} style="{CONTAINER_STYLE}"></div>'

    lines = [script, container]
    if embed_type == EmbedType.upsell:
        # Offer pages learn their node from the redirect URL the engine builds
        lines.append("<!-- Note: flowId and nodeId can be passed via URL params or data attributes -->")
    return "\n".join(lines)


@router.get("/{company_id}", response_model=schemas.EmbedCodeResponse)
def get_embed_code(
    company_id: str,
    embed_type: EmbedType = Query(EmbedType.checkout, alias="type"),
    flow_id: Optional[UUID] = Query(None, alias="flowId"),
):
    """Embed snippet for one funnel step.

    `type` picks the step (checkout, upsell, confirmation; default checkout).
    Without `flowId` the embedded page loads the company's latest flow.
    The loader script is served from APP_BASE_URL.
    """
    embed_code = build_embed_code(get_settings().APP_BASE_URL, company_id, embed_type, flow_id)
    logger.info(f"[EMBED] Snippet for {company_id} type={embed_type.value} flow={flow_id or 'latest'}")

    return schemas.EmbedCodeResponse(
        embed_code=embed_code,
        instructions=(
            f"Copy and paste this code into your {embed_type.value} page "
            "where you want the checkout flow to appear."
        ),
    )
