"""Redirect Dispatcher.

WHAT:
    Turns a RoutingDecision into a concrete next URL (with the funnel context
    carried forward as query parameters) and decides HOW the buyer gets
    there: navigate the current frame, or ask the hosting parent page to
    navigate.

WHY:
    The funnel runs inside an iframe on arbitrary merchant pages. When the
    next step is our own hosted page, navigating the iframe is enough. When
    it is the merchant's own page (cross-origin), navigating the iframe
    would trap the merchant's site inside our frame, so the parent must be
    told to navigate instead.

HOW:
    1. build_next_url(): decision + context -> URL
    2. classify_origin(): SAME_ORIGIN / CROSS_ORIGIN, computed once per plan
    3. plan_redirect(): cross-origin AND embedded -> redirect-parent,
       anything else -> update-iframe
    4. dispatch(): applies the plan to a FrameEnvironment. The message is
       always posted ({type: 'xperience-redirect', url, action}, target "*")
       because embed scripts listen for it even when it is not needed

CONSTRAINTS:
    - Context is an explicit immutable value, never ambient storage
    - The message carries no secret, only the destination URL, so the
      wildcard target origin is acceptable
    - A top-level navigation from a cross-origin child may be blocked by the
      browser; the message is the reliable channel

REFERENCES:
    - xperience/services/edge_resolver.py (produces decisions)
    - xperience/routers/funnel.py (returns plans to the browser as JSON)
"""

import enum
import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Protocol, Tuple
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

from xperience.services.edge_resolver import DecisionKind, RoutingDecision

logger = logging.getLogger(__name__)

MESSAGE_TYPE = "xperience-redirect"
MESSAGE_TARGET_ORIGIN = "*"
DEFAULT_UPSELL_PATH = "/upsell"


@dataclass(frozen=True)
class RedirectContext:
    """Identifiers carried from one funnel step to the next."""
    company_id: str
    flow_id: Optional[str] = None
    member_id: Optional[str] = None
    session_id: Optional[str] = None
    setup_intent_id: Optional[str] = None

    def with_member(self, member_id: Optional[str]) -> "RedirectContext":
        return replace(self, member_id=member_id)


class OriginRelation(str, enum.Enum):
    same_origin = "same_origin"
    cross_origin = "cross_origin"


class RedirectAction(str, enum.Enum):
    redirect_parent = "redirect-parent"
    update_iframe = "update-iframe"


@dataclass(frozen=True)
class RedirectPlan:
    url: str
    relation: OriginRelation
    embedded: bool
    action: RedirectAction

    @property
    def message(self) -> Dict[str, str]:
        """Payload posted to the parent window."""
        return {"type": MESSAGE_TYPE, "url": self.url, "action": self.action.value}

    @property
    def escapes_frame(self) -> bool:
        return self.action == RedirectAction.redirect_parent


class FrameEnvironment(Protocol):
    """Capabilities of the document the funnel step runs in."""

    origin: str

    def is_embedded(self) -> bool: ...

    def post_message(self, message: Dict[str, Any], target_origin: str) -> None: ...

    def navigate(self, url: str) -> None: ...

    def navigate_top(self, url: str) -> None: ...


# =============================================================================
# URL HELPERS
# =============================================================================

def origin_of(url: Optional[str]) -> Optional[str]:
    """scheme://host[:port] of an absolute URL, lower-cased; None if relative."""
    if not url:
        return None
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}"


def _absolute(url: str, current_origin: str) -> str:
    if origin_of(url):
        return url
    return urljoin(current_origin.rstrip("/") + "/", url)


def _set_params(url: str, params: List[Tuple[str, Optional[str]]], drop: Tuple[str, ...] = ()) -> str:
    """Set query parameters on `url`, replacing existing values.

    Parameters whose value is empty are skipped; names in `drop` are removed.
    """
    parts = urlsplit(url)
    to_set = [(k, str(v)) for k, v in params if v not in (None, "")]
    replaced = {k for k, _ in to_set} | set(drop)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in replaced]
    query.extend(to_set)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def classify_origin(url: str, current_origin: str) -> OriginRelation:
    """Relative URLs are same-origin by definition."""
    target = origin_of(url)
    if target is None or target == origin_of(current_origin):
        return OriginRelation.same_origin
    return OriginRelation.cross_origin


# =============================================================================
# PLANNING
# =============================================================================

def build_next_url(
    decision: RoutingDecision,
    context: RedirectContext,
    current_origin: str,
    upsell_path: str = DEFAULT_UPSELL_PATH,
) -> Optional[str]:
    """Concrete URL for a decision, or None when there is nowhere to go."""
    if decision.kind == DecisionKind.node and decision.target is not None:
        node = decision.target
        # A node hosted on the merchant's own site keeps its page; anything
        # else renders on our hosted offer page
        if node.redirect_url and classify_origin(node.redirect_url, current_origin) == OriginRelation.cross_origin:
            base = node.redirect_url
        else:
            base = f"{current_origin.rstrip('/')}{upsell_path}"
        return _set_params(base, [
            ("companyId", context.company_id),
            ("flowId", context.flow_id),
            ("nodeId", str(node.id)),
            ("memberId", context.member_id),
            ("sessionId", context.session_id),
            ("setupIntentId", context.setup_intent_id),
        ])

    if decision.kind == DecisionKind.confirmation and decision.url:
        base = _absolute(decision.url, current_origin)
        same = classify_origin(base, current_origin) == OriginRelation.same_origin
        params = [
            ("companyId", context.company_id),
            ("memberId", context.member_id),
            ("sessionId", context.session_id),
        ]
        if same:
            params.append(("flowId", context.flow_id))
        else:
            params.append(("confirmation", "true"))
        return _set_params(base, params, drop=("nodeId",))

    if decision.kind == DecisionKind.external_url and decision.url:
        return _set_params(_absolute(decision.url, current_origin), [
            ("companyId", context.company_id),
            ("flowId", context.flow_id),
            ("memberId", context.member_id),
        ])

    return None


def plan_redirect(
    decision: RoutingDecision,
    context: RedirectContext,
    current_origin: str,
    embedded: bool,
    upsell_path: str = DEFAULT_UPSELL_PATH,
) -> Optional[RedirectPlan]:
    """Decide how to reach the next step. None when the decision is `none`."""
    url = build_next_url(decision, context, current_origin, upsell_path=upsell_path)
    if url is None:
        return None

    relation = classify_origin(url, current_origin)
    if relation == OriginRelation.cross_origin and embedded:
        action = RedirectAction.redirect_parent
    else:
        action = RedirectAction.update_iframe

    return RedirectPlan(url=url, relation=relation, embedded=embedded, action=action)


def dispatch(
    decision: RoutingDecision,
    context: RedirectContext,
    env: FrameEnvironment,
    upsell_path: str = DEFAULT_UPSELL_PATH,
) -> Optional[RedirectPlan]:
    """Plan the redirect and apply it to `env`.

    Returns:
        The applied plan, or None when the decision leads nowhere (the buyer
        stays on the current page).
    """
    plan = plan_redirect(decision, context, env.origin, env.is_embedded(), upsell_path=upsell_path)
    if plan is None:
        logger.warning(f"[REDIRECT] Nothing to dispatch for decision {decision.kind.value} ({decision.reason})")
        return None

    if plan.escapes_frame:
        env.post_message(plan.message, MESSAGE_TARGET_ORIGIN)
        try:
            env.navigate_top(plan.url)
        except Exception as e:
            # Blocked by the browser's cross-origin rules; the parent handles the message
            logger.debug(f"[REDIRECT] Top-level navigation blocked: {e}")
        logger.info(f"[REDIRECT] Asked parent frame to navigate to {plan.url}")
        return plan

    try:
        env.post_message(plan.message, MESSAGE_TARGET_ORIGIN)
    except Exception as e:
        logger.debug(f"[REDIRECT] Courtesy message failed: {e}")
    env.navigate(plan.url)
    logger.info(f"[REDIRECT] Navigated frame to {plan.url} ({plan.relation.value})")
    return plan
