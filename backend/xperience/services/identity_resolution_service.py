"""Identity Resolution Service.

WHAT:
    Resolves the buyer's Whop member id for a checkout configuration by
    polling the webhook-populated PendingIdentity record, with a bounded
    number of attempts and a final lookup by email.

WHY:
    Whop confirms the saved card via webhook on its own schedule, but the
    buyer's next step (charging the initial product) needs the member id
    right away. Polling with a bounded wait bridges that race without ever
    hanging the buyer indefinitely.

HOW:
    1. Redis cache hit by checkout configuration id -> return immediately
    2. Up to N attempts (default 10). Wait 2s before the first (the webhook
       has had the least time to land), 1s before each later one
    3. First record with a member id wins; it is cached for later steps
    4. All attempts exhausted -> one lookup by (email, checkout config id)
    5. Still nothing -> IdentityNotFound. Callers show a "contact support"
       message and never route the buyer forward

CONSTRAINTS:
    - Worst-case wait is initial + (N - 1) * retry seconds (11s by default)
    - The wait is an asyncio sleep: cancelling the awaiting task (buyer
      navigates away, request disconnects) stops polling with no timer left

REFERENCES:
    - xperience/routers/whop.py (webhook receiver that writes PendingIdentity)
    - xperience/routers/funnel.py (consumer)
"""

import asyncio
import json
import logging
from dataclasses import dataclass, asdict
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union

import httpx
from sqlalchemy.orm import Session

from xperience.deps import get_settings
from xperience.models import PendingIdentity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MemberIdentity:
    """A resolved buyer.

    `source` records which path produced it (explicit, cache, checkout_config,
    setup_intent, email) for logs and debugging.
    """
    member_id: str
    email: Optional[str] = None
    setup_intent_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    source: str = "checkout_config"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source: Optional[str] = None) -> "MemberIdentity":
        return cls(
            member_id=data["member_id"],
            email=data.get("email"),
            setup_intent_id=data.get("setup_intent_id"),
            payment_method_id=data.get("payment_method_id"),
            source=source or data.get("source") or "checkout_config",
        )


@dataclass(frozen=True)
class IdentityNotFound:
    """Explicit failure marker: every attempt and the email fallback came up empty."""
    checkout_config_id: Optional[str]
    attempts: int
    email_tried: bool = False


IdentityResult = Union[MemberIdentity, IdentityNotFound]


class PendingIdentityLookup(Protocol):
    """Transport for reading PendingIdentity records."""

    async def by_checkout_config(self, checkout_config_id: str) -> Optional[MemberIdentity]: ...

    async def by_setup_intent(self, setup_intent_id: str) -> Optional[MemberIdentity]: ...

    async def by_email(self, email: str, checkout_config_id: Optional[str] = None) -> Optional[MemberIdentity]: ...


# =============================================================================
# LOOKUP TRANSPORTS
# =============================================================================

def _identity_from_row(row: Optional[PendingIdentity], source: str) -> Optional[MemberIdentity]:
    if row is None or not row.member_id:
        return None
    return MemberIdentity(
        member_id=row.member_id,
        email=row.email,
        setup_intent_id=row.setup_intent_id,
        payment_method_id=row.payment_method_id,
        source=source,
    )


class DatabasePendingIdentityLookup:
    """Reads PendingIdentity rows directly (server-side resolution)."""

    def __init__(self, db: Session):
        self.db = db

    async def by_checkout_config(self, checkout_config_id: str) -> Optional[MemberIdentity]:
        # Each poll must see rows committed by the webhook since the last one
        self.db.expire_all()
        row = (
            self.db.query(PendingIdentity)
            .filter(PendingIdentity.checkout_config_id == checkout_config_id)
            .first()
        )
        return _identity_from_row(row, "checkout_config")

    async def by_setup_intent(self, setup_intent_id: str) -> Optional[MemberIdentity]:
        row = (
            self.db.query(PendingIdentity)
            .filter(
                PendingIdentity.setup_intent_id == setup_intent_id,
                PendingIdentity.member_id.isnot(None),
            )
            .order_by(PendingIdentity.updated_at.desc())
            .first()
        )
        return _identity_from_row(row, "setup_intent")

    async def by_email(self, email: str, checkout_config_id: Optional[str] = None) -> Optional[MemberIdentity]:
        """Prefer the row for this exact checkout, else the newest resolved row for the email."""
        base = self.db.query(PendingIdentity).filter(
            PendingIdentity.email == email,
            PendingIdentity.member_id.isnot(None),
        )
        row = None
        if checkout_config_id:
            row = base.filter(PendingIdentity.checkout_config_id == checkout_config_id).first()
        if row is None:
            row = base.order_by(PendingIdentity.updated_at.desc()).first()
        return _identity_from_row(row, "email")


class HttpPendingIdentityLookup:
    """Polls GET /whop/webhook on a running funnel API (client-side resolution).

    A 404 means "not populated yet"; any other error is raised so the retry
    loop logs it and moves on to the next attempt.
    """

    def __init__(self, base_url: str, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self._timeout = timeout

    async def _get(self, params: Dict[str, str], source: str) -> Optional[MemberIdentity]:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.get(f"{self.base_url}/whop/webhook", params=params)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        data = response.json()
        if not data.get("memberId"):
            return None
        return MemberIdentity(
            member_id=data["memberId"],
            email=data.get("email"),
            setup_intent_id=data.get("setupIntentId"),
            payment_method_id=data.get("paymentMethodId"),
            source=source,
        )

    async def by_checkout_config(self, checkout_config_id: str) -> Optional[MemberIdentity]:
        return await self._get({"checkoutConfigId": checkout_config_id}, "checkout_config")

    async def by_setup_intent(self, setup_intent_id: str) -> Optional[MemberIdentity]:
        return await self._get({"setupIntentId": setup_intent_id}, "setup_intent")

    async def by_email(self, email: str, checkout_config_id: Optional[str] = None) -> Optional[MemberIdentity]:
        params = {"email": email}
        if checkout_config_id:
            params["checkoutConfigId"] = checkout_config_id
        return await self._get(params, "email")


# =============================================================================
# SERVICE
# =============================================================================

class IdentityResolutionService:
    """Bounded-retry member id resolution.

    Usage:
        ```python
        service = IdentityResolutionService.from_settings(DatabasePendingIdentityLookup(db))
        result = await service.resolve_identity("ch_cfg_123", email_fallback="buyer@example.com")
        if isinstance(result, MemberIdentity):
            charge(result.member_id)
        ```
    """

    CACHE_PREFIX = "identity:"

    def __init__(
        self,
        lookup: PendingIdentityLookup,
        max_attempts: int = 10,
        initial_delay: float = 2.0,
        retry_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        cache: Optional[Any] = None,
        cache_ttl: int = 3600,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.lookup = lookup
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.retry_delay = retry_delay
        self._sleep = sleep
        self.cache = cache
        self.cache_ttl = cache_ttl

    @classmethod
    def from_settings(cls, lookup: PendingIdentityLookup) -> "IdentityResolutionService":
        """Build with configured delays and the shared Redis client."""
        from xperience import state as app_state

        settings = get_settings()
        return cls(
            lookup=lookup,
            max_attempts=settings.IDENTITY_MAX_ATTEMPTS,
            initial_delay=settings.IDENTITY_INITIAL_DELAY_SECONDS,
            retry_delay=settings.IDENTITY_RETRY_DELAY_SECONDS,
            cache=app_state.redis_client,
            cache_ttl=settings.IDENTITY_CACHE_TTL_SECONDS,
        )

    @property
    def max_wait_seconds(self) -> float:
        """Upper bound on time spent sleeping in resolve_identity."""
        return self.initial_delay + (self.max_attempts - 1) * self.retry_delay

    def delay_for_attempt(self, attempt: int) -> float:
        """Delay before `attempt` (1-based)."""
        return self.initial_delay if attempt == 1 else self.retry_delay

    async def resolve_identity(
        self,
        checkout_config_id: Optional[str],
        email_fallback: Optional[str] = None,
    ) -> IdentityResult:
        """Resolve the member behind a checkout configuration.

        Args:
            checkout_config_id: Whop checkout configuration id from the save-card step
            email_fallback: Email captured earlier in the funnel, if any

        Returns:
            MemberIdentity on success, IdentityNotFound otherwise
        """
        attempts = 0

        if checkout_config_id:
            cached = self._get_from_cache(checkout_config_id)
            if cached:
                logger.debug(f"[IDENTITY] Cache hit for {checkout_config_id}")
                return cached

            while attempts < self.max_attempts:
                attempts += 1
                await self._sleep(self.delay_for_attempt(attempts))

                try:
                    identity = await self.lookup.by_checkout_config(checkout_config_id)
                except Exception as e:
                    logger.warning(
                        f"[IDENTITY] Lookup error for {checkout_config_id} "
                        f"(attempt {attempts}/{self.max_attempts}): {e}"
                    )
                    continue

                if identity and identity.member_id:
                    logger.info(
                        f"[IDENTITY] Resolved {checkout_config_id} to member {identity.member_id} "
                        f"on attempt {attempts}"
                    )
                    self._save_to_cache(checkout_config_id, identity)
                    return identity

            logger.warning(f"[IDENTITY] {checkout_config_id} unresolved after {attempts} attempts")

        if email_fallback:
            try:
                identity = await self.lookup.by_email(email_fallback, checkout_config_id)
            except Exception as e:
                logger.warning(f"[IDENTITY] Email fallback lookup failed: {e}")
                identity = None

            if identity and identity.member_id:
                logger.info(f"[IDENTITY] Resolved member {identity.member_id} via email fallback")
                if checkout_config_id:
                    self._save_to_cache(checkout_config_id, identity)
                return identity

        return IdentityNotFound(
            checkout_config_id=checkout_config_id,
            attempts=attempts,
            email_tried=bool(email_fallback),
        )

    async def resolve_member(
        self,
        member_id: Optional[str] = None,
        checkout_config_id: Optional[str] = None,
        setup_intent_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> IdentityResult:
        """Resolve a buyer from whatever the current step carries.

        Order: explicit member id -> checkout configuration polling ->
        setup intent id (one lookup) -> email (one lookup).
        """
        if member_id:
            return MemberIdentity(member_id=member_id, email=email, setup_intent_id=setup_intent_id, source="explicit")

        attempts = 0
        if checkout_config_id:
            result = await self.resolve_identity(checkout_config_id)
            if isinstance(result, MemberIdentity):
                return result
            attempts = result.attempts

        if setup_intent_id:
            try:
                identity = await self.lookup.by_setup_intent(setup_intent_id)
            except Exception as e:
                logger.warning(f"[IDENTITY] Setup intent lookup failed for {setup_intent_id}: {e}")
                identity = None
            if identity and identity.member_id:
                if checkout_config_id:
                    self._save_to_cache(checkout_config_id, identity)
                return identity

        if email:
            # Narrowed by checkout so a reused email cannot pick another buyer's row
            try:
                identity = await self.lookup.by_email(email, checkout_config_id)
            except Exception as e:
                logger.warning(f"[IDENTITY] Email lookup failed for {email}: {e}")
                identity = None
            if identity and identity.member_id:
                if checkout_config_id:
                    self._save_to_cache(checkout_config_id, identity)
                return identity

        return IdentityNotFound(
            checkout_config_id=checkout_config_id,
            attempts=attempts,
            email_tried=bool(email),
        )

    def _get_from_cache(self, checkout_config_id: str) -> Optional[MemberIdentity]:
        """Read a previously resolved identity; cache failures are non-fatal."""
        if not self.cache:
            return None
        try:
            cached_json = self.cache.get(f"{self.CACHE_PREFIX}{checkout_config_id}")
            if cached_json:
                return MemberIdentity.from_dict(json.loads(cached_json), source="cache")
            return None
        except Exception as e:
            logger.debug(f"[IDENTITY] Cache read error: {e}")
            return None

    def _save_to_cache(self, checkout_config_id: str, identity: MemberIdentity) -> None:
        if not self.cache:
            return
        try:
            self.cache.setex(
                f"{self.CACHE_PREFIX}{checkout_config_id}",
                self.cache_ttl,
                json.dumps(identity.to_dict()),
            )
        except Exception as e:
            logger.debug(f"[IDENTITY] Cache write error: {e}")
