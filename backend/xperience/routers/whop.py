"""Whop payment endpoints.

WHAT:
    - POST /whop/checkout-config: setup-mode checkout configuration (save card)
    - POST /whop/charge: charge a saved payment method, record the purchase
    - POST /whop/webhook: Whop webhook receiver, populates PendingIdentity
    - GET  /whop/webhook: PendingIdentity lookup polled by the checkout page

WHY:
    Whop confirms the saved card asynchronously. The webhook writes the
    member id keyed by checkout configuration; the buyer's page polls the
    GET endpoint until it appears (see identity_resolution_service).

REFERENCES:
    - https://docs.whop.com/api-reference
    - https://www.standardwebhooks.com/ (signature scheme)
    - xperience/services/whop_client.py
"""

import base64
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import get_settings
from ..models import PendingIdentity
from ..services.identity_resolution_service import DatabasePendingIdentityLookup
from ..services.tracking_service import TrackingService
from ..services.whop_client import WhopAPIError, WhopClient
from ..telemetry.sentry import capture_message
from .. import schemas

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/whop",
    tags=["Whop"],
    responses={
        400: {"description": "Invalid request"},
        500: {"description": "Whop not configured"},
    },
)

# Reject webhooks older than this (replay protection)
WEBHOOK_TOLERANCE_SECONDS = 300


def get_whop_client() -> WhopClient:
    """Dependency so tests can swap in a client with a mock transport."""
    return WhopClient()


# =============================================================================
# CHECKOUT CONFIGURATION
# =============================================================================

@router.post("/checkout-config", response_model=schemas.CheckoutConfigResponse)
async def create_checkout_config(
    payload: schemas.CheckoutConfigRequest,
    whop: WhopClient = Depends(get_whop_client),
):
    """Create a setup-mode checkout configuration.

    The card is saved, not charged. The initial product is charged afterwards
    against the saved method, followed by any accepted offers.
    """
    if not whop.is_configured:
        raise HTTPException(status_code=500, detail="Whop API key not configured")

    company_id = payload.company_id or get_settings().WHOP_COMPANY_ID
    if not company_id:
        raise HTTPException(status_code=500, detail="Company ID not provided and WHOP_COMPANY_ID not configured")

    metadata = {
        "userEmail": payload.user_email or "",
        "planId": payload.plan_id,
        "companyId": company_id,
        "flowId": payload.flow_id or "",
        "source": "whop_checkout_flow",
    }
    try:
        config = await whop.create_checkout_configuration(company_id=company_id, metadata=metadata)
    except WhopAPIError as e:
        raise HTTPException(status_code=e.status_code or 502, detail=e.message or "Failed to create checkout configuration")

    return schemas.CheckoutConfigResponse(
        checkout_config_id=config["id"],
        plan_id=(config.get("plan") or {}).get("id") or payload.plan_id,
        purchase_url=config.get("purchase_url"),
    )


# =============================================================================
# DIRECT CHARGE
# =============================================================================

@router.post("/charge", response_model=schemas.ChargeResponse)
async def charge(
    payload: schemas.ChargeRequest,
    db: Session = Depends(get_db),
    whop: WhopClient = Depends(get_whop_client),
):
    """Charge a plan against the member's saved payment method.

    Falls back to the first method on file when none is given. The purchase
    is recorded when flow and company are known; recording failures never
    fail the charge.
    """
    if not whop.is_configured:
        raise HTTPException(status_code=500, detail="Whop API key not configured")

    company_id = payload.company_id or get_settings().WHOP_COMPANY_ID
    if not company_id:
        raise HTTPException(
            status_code=400,
            detail="Company ID is required. Provide companyId or set WHOP_COMPANY_ID.",
        )

    method_id = payload.payment_method_id or await whop.first_payment_method_id(payload.member_id)
    if not method_id:
        raise HTTPException(
            status_code=400,
            detail="No payment method found. Payment method should be saved by Whop after checkout.",
        )

    try:
        payment = await whop.charge(
            company_id=company_id,
            member_id=payload.member_id,
            payment_method_id=method_id,
            plan_id=payload.plan_id,
        )
    except WhopAPIError as e:
        capture_message(
            "Direct charge failed",
            level="warning",
            extra={"member_id": payload.member_id, "plan_id": payload.plan_id, "status_code": e.status_code},
        )
        raise HTTPException(status_code=e.status_code or 402, detail=e.message or "Failed to charge payment method")

    purchase_id = None
    if payload.flow_id and payload.company_id:
        purchase = TrackingService(db).record_purchase(
            flow_id=payload.flow_id,
            company_id=payload.company_id,
            member_id=payload.member_id,
            plan_id=payload.plan_id,
            purchase_type=payload.purchase_type,
            node_id=payload.node_id,
            amount=payload.amount,
            currency=payload.currency,
            session_id=payload.session_id,
            payment_id=payment.get("id"),
        )
        purchase_id = purchase.id if purchase is not None else None

    return schemas.ChargeResponse(
        success=True,
        payment_id=payment.get("id"),
        status=payment.get("status"),
        purchase_id=purchase_id,
    )


# =============================================================================
# WEBHOOK
# =============================================================================

def verify_whop_signature(
    payload: bytes,
    webhook_id: str,
    webhook_timestamp: str,
    webhook_signature: str,
    secret: str,
) -> bool:
    """Verify a Standard Webhooks signature.

    WHAT: HMAC-SHA256 over "{id}.{timestamp}.{body}", base64 encoded
    WHY: Only Whop may populate PendingIdentity; a forged webhook could
         bind a checkout to someone else's member id

    The secret may be prefixed with "whsec_" and is base64 encoded; a raw
    secret that does not decode is used as-is. The signature header may
    carry several space-separated "v1,<sig>" entries.
    """
    if secret.startswith("whsec_"):
        secret = secret[len("whsec_"):]
    try:
        secret_bytes = base64.b64decode(secret, validate=True)
    except ValueError:
        secret_bytes = secret.encode("utf-8")

    signed_payload = f"{webhook_id}.{webhook_timestamp}.".encode("utf-8") + payload
    expected = base64.b64encode(
        hmac.new(secret_bytes, signed_payload, hashlib.sha256).digest()
    ).decode("utf-8")

    for sig in webhook_signature.split(" "):
        version, _, value = sig.partition(",")
        if version == "v1" and hmac.compare_digest(expected, value):
            return True
    return False


def _first(*values: Any) -> Optional[str]:
    for value in values:
        if value:
            return str(value)
    return None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def extract_identity(event: Dict[str, Any]) -> Optional[Dict[str, Optional[str]]]:
    """Pull identity fields out of a Whop event.

    Whop nests objects (`member`, `payment_method`, `checkout_configuration`)
    in some events and flattens ids in others, so both shapes are read.
    Nested values of the wrong type are treated as absent. Returns None when
    the event carries no checkout configuration id.
    """
    data = _as_dict(event.get("data"))
    metadata = _as_dict(data.get("metadata"))
    member = _as_dict(data.get("member"))
    user = _as_dict(data.get("user"))
    method = _as_dict(data.get("payment_method"))
    config = data.get("checkout_configuration")
    if isinstance(config, dict):
        config = config.get("id")
    elif not isinstance(config, str):
        config = None

    checkout_config_id = _first(
        data.get("checkout_configuration_id"),
        config,
        metadata.get("checkout_config_id"),
    )
    if not checkout_config_id:
        return None

    event_type = event.get("type") or ""
    if not isinstance(event_type, str):
        event_type = ""
    return {
        "checkout_config_id": checkout_config_id,
        "member_id": _first(data.get("member_id"), member.get("id")),
        "email": _first(member.get("email"), user.get("email"), data.get("email"), metadata.get("userEmail")),
        "setup_intent_id": _first(
            data.get("setup_intent_id"),
            data.get("id") if event_type.startswith("setup_intent") else None,
        ),
        "payment_method_id": _first(data.get("payment_method_id"), method.get("id")),
    }


def _apply_identity(row: PendingIdentity, fields: Dict[str, Optional[str]]) -> None:
    # Later events fill gaps; they never blank out a known value
    for key, value in fields.items():
        if value:
            setattr(row, key, value)


def _find_pending_identity(db: Session, checkout_config_id: str) -> Optional[PendingIdentity]:
    return db.query(PendingIdentity).filter(PendingIdentity.checkout_config_id == checkout_config_id).first()


def _upsert_pending_identity(db: Session, checkout_config_id: str, fields: Dict[str, Optional[str]]) -> PendingIdentity:
    """Insert or update the PendingIdentity row for a checkout configuration.

    Whop may deliver two events for a new configuration at once. The loser
    of the insert race hits the unique constraint, rolls back and updates
    the row the winner created.
    """
    row = _find_pending_identity(db, checkout_config_id)
    if row is not None:
        _apply_identity(row, fields)
        db.commit()
        return row

    row = PendingIdentity(checkout_config_id=checkout_config_id)
    _apply_identity(row, fields)
    db.add(row)
    try:
        db.commit()
        return row
    except IntegrityError:
        db.rollback()
        logger.info(f"[WEBHOOK] Concurrent insert for {checkout_config_id}, updating existing row")

    row = _find_pending_identity(db, checkout_config_id)
    _apply_identity(row, fields)
    db.commit()
    return row


@router.post("/webhook", response_model=schemas.WebhookAck)
async def receive_webhook(
    request: Request,
    db: Session = Depends(get_db),
    webhook_id: Optional[str] = Header(None, alias="webhook-id"),
    webhook_timestamp: Optional[str] = Header(None, alias="webhook-timestamp"),
    webhook_signature: Optional[str] = Header(None, alias="webhook-signature"),
):
    """Receive Whop events and upsert PendingIdentity.

    Every event must be signed. Events without a checkout configuration are
    acknowledged and ignored so Whop does not retry them.

    Raises:
        HTTPException 400: Missing/invalid signature, stale timestamp, bad payload
        HTTPException 500: Webhook secret not configured
    """
    secret = get_settings().WHOP_WEBHOOK_SECRET
    if not secret:
        logger.error("[WEBHOOK] Webhook secret not configured")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    body = await request.body()

    if not all([webhook_id, webhook_timestamp, webhook_signature]):
        logger.warning("[WEBHOOK] Missing signature headers")
        raise HTTPException(status_code=400, detail="Missing webhook signature headers")

    try:
        age_seconds = abs(int(time.time()) - int(webhook_timestamp))
    except (ValueError, TypeError):
        logger.warning(f"[WEBHOOK] Invalid timestamp format: {webhook_timestamp}")
        raise HTTPException(status_code=400, detail="Invalid webhook timestamp")
    if age_seconds > WEBHOOK_TOLERANCE_SECONDS:
        logger.warning(f"[WEBHOOK] Stale webhook rejected: age={age_seconds}s")
        raise HTTPException(status_code=400, detail="Webhook timestamp too old")

    if not verify_whop_signature(body, webhook_id, webhook_timestamp, webhook_signature, secret):
        logger.warning("[WEBHOOK] Invalid webhook signature")
        capture_message("Rejected Whop webhook with invalid signature", level="warning")
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    try:
        event = json.loads(body)
    except json.JSONDecodeError:
        logger.error("[WEBHOOK] Invalid JSON payload")
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    if not isinstance(event, dict):
        logger.error(f"[WEBHOOK] Payload is a JSON {type(event).__name__}, expected an object")
        raise HTTPException(status_code=400, detail="Webhook payload must be a JSON object")
    if event.get("data") is not None and not isinstance(event["data"], dict):
        logger.error("[WEBHOOK] Event data is not an object")
        raise HTTPException(status_code=400, detail="Webhook event data must be a JSON object")

    event_type = event.get("type")
    fields = extract_identity(event)
    if not fields:
        logger.info(f"[WEBHOOK] Ignoring {event_type}: no checkout configuration")
        return schemas.WebhookAck(status="ignored")

    checkout_config_id = fields.pop("checkout_config_id")
    row = _upsert_pending_identity(db, checkout_config_id, fields)

    logger.info(f"[WEBHOOK] {event_type} stored for {checkout_config_id} (member={row.member_id or 'pending'})")
    return schemas.WebhookAck(status="stored", checkout_config_id=checkout_config_id)


@router.get(
    "/webhook",
    response_model=schemas.PendingIdentityOut,
    responses={404: {"description": "Not populated yet"}},
)
async def lookup_pending_identity(
    checkout_config_id: Optional[str] = Query(None, alias="checkoutConfigId"),
    email: Optional[str] = Query(None),
    setup_intent_id: Optional[str] = Query(None, alias="setupIntentId"),
    db: Session = Depends(get_db),
):
    """Single lookup of a webhook-populated identity.

    With `email` the lookup is by email (narrowed by `checkoutConfigId` when
    both are given); otherwise by checkout configuration, then setup intent.
    404 until a member id is known. Callers poll; this endpoint never waits.
    """
    if not any([checkout_config_id, email, setup_intent_id]):
        raise HTTPException(status_code=400, detail="checkoutConfigId, email or setupIntentId is required")

    lookup = DatabasePendingIdentityLookup(db)
    if email:
        identity = await lookup.by_email(email, checkout_config_id)
    elif checkout_config_id:
        identity = await lookup.by_checkout_config(checkout_config_id)
    else:
        identity = await lookup.by_setup_intent(setup_intent_id)

    if identity is None:
        raise HTTPException(status_code=404, detail="Identity not resolved yet")

    return schemas.PendingIdentityOut(
        member_id=identity.member_id,
        checkout_config_id=checkout_config_id,
        email=identity.email,
        setup_intent_id=identity.setup_intent_id,
        payment_method_id=identity.payment_method_id,
    )
