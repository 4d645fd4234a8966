"""Whop REST API client.

WHAT:
    Wrapper for the Whop API v1 endpoints the funnel needs:
    - checkout configurations in "setup" mode (save card, no charge)
    - saved payment methods by member
    - one-click charges of a plan against a saved payment method

WHY:
    Encapsulates all processor interaction so the charge orchestrator and
    routers never build HTTP requests themselves, and so tests can swap the
    transport for httpx.MockTransport.

CONSTRAINTS:
    - Charges are NOT retried here. A failed charge is surfaced to the buyer,
      who decides whether to click accept again.
    - Amount 0 is a valid charge (free offers).

REFERENCES:
    - https://docs.whop.com/api-reference
    - xperience/services/charge_orchestrator.py (consumer)
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from xperience.deps import get_settings

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class WhopAPIError(Exception):
    """Custom exception for Whop API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload or {}


def _error_message(payload: Any) -> Optional[str]:
    """Pull a human-readable message out of a Whop error body.

    Whop returns either {"message": "..."} or {"error": {"message": "..."}}.
    """
    if not isinstance(payload, dict):
        return None
    if payload.get("message"):
        return str(payload["message"])
    error = payload.get("error")
    if isinstance(error, dict):
        return error.get("message")
    if error:
        return str(error)
    return None


class WhopClient:
    """HTTP client for the Whop API.

    WHAT: Handles checkout configuration, payment method lookup and charging
    WHY: Centralized processor access with consistent error handling

    Usage:
        client = WhopClient(api_key="...")
        config = await client.create_checkout_configuration(company_id="biz_x", metadata={...})
        payment = await client.charge(company_id="biz_x", member_id="mber_x",
                                      payment_method_id="pm_x", plan_id="plan_x")
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        """Initialize Whop client.

        Args:
            api_key: Whop API key (defaults to WHOP_API_KEY)
            base_url: API root (defaults to WHOP_API_URL)
            transport: Optional httpx transport (tests inject MockTransport)
            timeout: Request timeout in seconds
        """
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.WHOP_API_KEY
        self.base_url = (base_url or settings.WHOP_API_URL).rstrip("/")
        self._transport = transport
        self._timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Send one request and decode the JSON body.

        Raises:
            WhopAPIError: Non-2xx response, transport failure or missing API key
        """
        if not self.is_configured:
            raise WhopAPIError("Whop API key not configured", status_code=500)

        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.request(method, url, json=json, params=params, headers=self._headers())
        except httpx.RequestError as e:
            logger.warning(f"[WHOP_CLIENT] Request error on {method} {path}: {e}")
            raise WhopAPIError(f"Could not reach payment processor: {e}") from e

        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = {"message": response.text}
            message = _error_message(payload) or f"Whop API returned {response.status_code}"
            logger.error(f"[WHOP_CLIENT] {method} {path} failed: {response.status_code} {payload}")
            raise WhopAPIError(message, status_code=response.status_code, payload=payload)

        if not response.content:
            return {}
        return response.json()

    # =========================================================================
    # CHECKOUT CONFIGURATIONS
    # =========================================================================

    async def create_checkout_configuration(
        self,
        company_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Create a setup-mode checkout configuration.

        WHAT: Saves the buyer's card without charging it
        WHY: The initial product and every accepted offer are charged later
             against the saved payment method; the webhook for this
             configuration is what populates PendingIdentity

        Returns:
            dict with id, purchase_url, ...
        """
        body = {
            "mode": "setup",
            "company_id": company_id,
            "metadata": metadata or {},
        }
        data = await self._request("POST", "/checkout_configurations", json=body)
        logger.info(f"[WHOP_CLIENT] Created setup checkout configuration {data.get('id')} for {company_id}")
        return data

    # =========================================================================
    # PAYMENT METHODS
    # =========================================================================

    async def list_payment_methods(self, member_id: str) -> List[Dict[str, Any]]:
        """Return the member's saved payment methods (newest first per Whop)."""
        data = await self._request("GET", "/payment_methods", params={"member_id": member_id})
        return data.get("data") or []

    async def first_payment_method_id(self, member_id: str) -> Optional[str]:
        """Id of the first saved method on file, or None.

        A listing failure is logged and treated as "none found"; the caller
        reports the missing method to the buyer.
        """
        try:
            methods = await self.list_payment_methods(member_id)
        except WhopAPIError as e:
            logger.warning(f"[WHOP_CLIENT] Could not list payment methods for {member_id}: {e.message}")
            return None
        if not methods:
            return None
        return methods[0].get("id")

    # =========================================================================
    # CHARGES
    # =========================================================================

    async def charge(
        self,
        company_id: str,
        member_id: str,
        payment_method_id: str,
        plan_id: str,
    ) -> Dict[str, Any]:
        """Charge a saved payment method for a plan.

        Works for one-time and subscription plans; Whop creates the
        membership when the plan is recurring.

        Returns:
            dict with id and status
        """
        body = {
            "company_id": company_id,
            "member_id": member_id,
            "payment_method_id": payment_method_id,
            # camelCase at top level reuses the existing plan for both
            # one-time and recurring plans
            "planId": plan_id,
        }
        data = await self._request("POST", "/payments", json=body)
        logger.info(
            f"[WHOP_CLIENT] Charged plan {plan_id} for member {member_id}",
            extra={"payment_id": data.get("id"), "status": data.get("status")},
        )
        return data
