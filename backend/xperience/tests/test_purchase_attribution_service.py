"""Tests for PurchaseAttributionService.

WHAT: Session-exact matching, the 30-minute window fallback, ordering and
      display names on the receipt
REFERENCES:
    - xperience/services/purchase_attribution_service.py
"""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from xperience.models import FlowNode, FlowPurchase, PurchaseTypeEnum
from xperience.services.purchase_attribution_service import PLACEHOLDER_NAME, PurchaseAttributionService

NOW = datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture
def add_purchase(test_db_session, funnel_flow):
    def _add(minutes_ago, purchase_type=PurchaseTypeEnum.upsell, node_id=None, amount="10.00",
             session_id=None, member_id="mber_buyer", plan_id="plan_x"):
        row = FlowPurchase(
            flow_id=funnel_flow.flow_id,
            company_id=funnel_flow.company_id,
            member_id=member_id,
            plan_id=plan_id,
            purchase_type=purchase_type,
            node_id=node_id,
            amount=Decimal(amount),
            session_id=session_id,
            purchased_at=NOW - timedelta(minutes=minutes_ago),
        )
        test_db_session.add(row)
        test_db_session.commit()
        return row.id
    return _add


def _service(db):
    return PurchaseAttributionService(db, window_minutes=30)


def test_session_id_matches_exactly(test_db_session, funnel_flow, add_purchase):
    mine = add_purchase(5, session_id="sess_mine")
    add_purchase(3, session_id="sess_other")
    add_purchase(2)

    summary = _service(test_db_session).get_purchases(
        funnel_flow.company_id, "mber_buyer", flow_id=funnel_flow.flow_id, session_id="sess_mine", now=NOW,
    )

    assert summary.matched_by == "session"
    assert [p.id for p in summary.purchases] == [mine]


def test_session_match_ignores_the_window(test_db_session, funnel_flow, add_purchase):
    old = add_purchase(240, session_id="sess_slow")

    summary = _service(test_db_session).get_purchases(
        funnel_flow.company_id, "mber_buyer", session_id="sess_slow", now=NOW,
    )

    assert [p.id for p in summary.purchases] == [old]


def test_window_fallback_without_session(test_db_session, funnel_flow, add_purchase):
    recent = add_purchase(10, session_id="sess_a")
    other_session = add_purchase(20, session_id="sess_b")
    add_purchase(31)
    add_purchase(5, member_id="mber_someone_else")

    summary = _service(test_db_session).get_purchases(
        funnel_flow.company_id, "mber_buyer", flow_id=funnel_flow.flow_id, now=NOW,
    )

    assert summary.matched_by == "window"
    # Concurrent sessions of one member are not separated in window mode
    assert {p.id for p in summary.purchases} == {recent, other_session}


def test_ordered_oldest_first_and_totalled(test_db_session, funnel_flow, add_purchase):
    second = add_purchase(2, amount="19.00")
    first = add_purchase(8, purchase_type=PurchaseTypeEnum.initial, amount="49.00")
    third = add_purchase(1, amount="0")

    summary = _service(test_db_session).get_purchases(funnel_flow.company_id, "mber_buyer", now=NOW)

    assert [p.id for p in summary.purchases] == [first, second, third]
    assert summary.total == Decimal("68.00")


def test_display_names(test_db_session, funnel_flow, add_purchase):
    add_purchase(3, purchase_type=PurchaseTypeEnum.initial)
    add_purchase(2, node_id=funnel_flow.a_id)
    add_purchase(1, node_id=uuid.uuid4())

    summary = _service(test_db_session).get_purchases(funnel_flow.company_id, "mber_buyer", now=NOW)

    assert [p.name for p in summary.purchases] == ["Starter Course", "Upsell A", PLACEHOLDER_NAME]


def test_untitled_node_gets_placeholder(test_db_session, funnel_flow, add_purchase):
    node = test_db_session.get(FlowNode, funnel_flow.b_id)
    node.title = None
    test_db_session.commit()
    add_purchase(1, node_id=funnel_flow.b_id)

    summary = _service(test_db_session).get_purchases(funnel_flow.company_id, "mber_buyer", now=NOW)

    assert summary.purchases[0].name == PLACEHOLDER_NAME


def test_no_purchases(test_db_session, funnel_flow):
    summary = _service(test_db_session).get_purchases(funnel_flow.company_id, "mber_nobody", now=NOW)

    assert summary.purchases == []
    assert summary.total == Decimal("0")
