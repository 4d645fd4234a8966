"""Tests for IdentityResolutionService.

WHAT: Bounded polling, cache behavior, email fallback and cancellation
WHY: The buyer waits on this loop between the save-card step and the first
     charge; it must never wait longer than the configured budget and must
     never report success without a member id
REFERENCES:
    - xperience/services/identity_resolution_service.py
"""

import asyncio
import json

import httpx
import pytest

from xperience.services.identity_resolution_service import (
    DatabasePendingIdentityLookup,
    HttpPendingIdentityLookup,
    IdentityNotFound,
    IdentityResolutionService,
    MemberIdentity,
)


class _FakeLookup:
    """Scripted lookup: `config_results` is consumed one entry per poll."""

    def __init__(self, config_results=None, email_result=None, setup_intent_result=None):
        self.config_results = list(config_results or [])
        self.email_result = email_result
        self.setup_intent_result = setup_intent_result
        self.config_calls = 0
        self.email_calls = []
        self.setup_intent_calls = []

    async def by_checkout_config(self, checkout_config_id):
        self.config_calls += 1
        if self.config_results:
            result = self.config_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return None

    async def by_setup_intent(self, setup_intent_id):
        self.setup_intent_calls.append(setup_intent_id)
        return self.setup_intent_result

    async def by_email(self, email, checkout_config_id=None):
        self.email_calls.append((email, checkout_config_id))
        return self.email_result


class _FakeCache:
    def __init__(self, fail=False):
        self.store = {}
        self.fail = fail

    def get(self, key):
        if self.fail:
            raise ConnectionError("redis down")
        return self.store.get(key)

    def setex(self, key, ttl, value):
        if self.fail:
            raise ConnectionError("redis down")
        self.store[key] = value


def _service(lookup, sleep, **kwargs):
    return IdentityResolutionService(lookup, sleep=sleep, **kwargs)


def test_exhausts_exactly_max_attempts_with_bounded_delays(recording_sleep):
    lookup = _FakeLookup()
    service = _service(lookup, recording_sleep)

    result = asyncio.run(service.resolve_identity("ch_cfg_1"))

    assert isinstance(result, IdentityNotFound)
    assert result.attempts == 10
    assert result.email_tried is False
    assert lookup.config_calls == 10
    assert recording_sleep.delays == [2.0] + [1.0] * 9
    assert sum(recording_sleep.delays) == service.max_wait_seconds == 11.0
    assert lookup.email_calls == []


def test_returns_first_member_and_stops_polling(recording_sleep):
    found = MemberIdentity(member_id="mber_1", payment_method_id="pm_1")
    lookup = _FakeLookup(config_results=[None, None, found])
    service = _service(lookup, recording_sleep)

    result = asyncio.run(service.resolve_identity("ch_cfg_1"))

    assert result == found
    assert lookup.config_calls == 3
    assert recording_sleep.delays == [2.0, 1.0, 1.0]


def test_record_without_member_id_keeps_polling(recording_sleep):
    lookup = _FakeLookup(config_results=[MemberIdentity(member_id=""), MemberIdentity(member_id="mber_2")])
    service = _service(lookup, recording_sleep, max_attempts=5)

    result = asyncio.run(service.resolve_identity("ch_cfg_1"))

    assert result.member_id == "mber_2"
    assert lookup.config_calls == 2


def test_lookup_errors_count_as_attempts_and_polling_continues(recording_sleep):
    lookup = _FakeLookup(config_results=[RuntimeError("db hiccup"), MemberIdentity(member_id="mber_3")])
    service = _service(lookup, recording_sleep, max_attempts=3)

    result = asyncio.run(service.resolve_identity("ch_cfg_1"))

    assert result.member_id == "mber_3"
    assert lookup.config_calls == 2


def test_email_fallback_after_polling_exhausted(recording_sleep):
    by_email = MemberIdentity(member_id="mber_email", email="buyer@example.com", source="email")
    lookup = _FakeLookup(email_result=by_email)
    service = _service(lookup, recording_sleep, max_attempts=2)

    result = asyncio.run(service.resolve_identity("ch_cfg_1", email_fallback="buyer@example.com"))

    assert result == by_email
    assert lookup.config_calls == 2
    assert lookup.email_calls == [("buyer@example.com", "ch_cfg_1")]


def test_email_fallback_miss_reports_email_tried(recording_sleep):
    service = _service(_FakeLookup(), recording_sleep, max_attempts=1)

    result = asyncio.run(service.resolve_identity("ch_cfg_1", email_fallback="buyer@example.com"))

    assert isinstance(result, IdentityNotFound)
    assert result.email_tried is True
    assert result.attempts == 1


def test_cache_hit_skips_lookup_and_sleep(recording_sleep):
    cache = _FakeCache()
    cache.store["identity:ch_cfg_1"] = json.dumps({"member_id": "mber_cached", "email": "c@example.com"})
    lookup = _FakeLookup()
    service = _service(lookup, recording_sleep, cache=cache)

    result = asyncio.run(service.resolve_identity("ch_cfg_1"))

    assert result.member_id == "mber_cached"
    assert result.source == "cache"
    assert lookup.config_calls == 0
    assert recording_sleep.delays == []


def test_resolved_identity_is_cached(recording_sleep):
    cache = _FakeCache()
    lookup = _FakeLookup(config_results=[MemberIdentity(member_id="mber_4", payment_method_id="pm_4")])
    service = _service(lookup, recording_sleep, cache=cache)

    asyncio.run(service.resolve_identity("ch_cfg_4"))

    stored = json.loads(cache.store["identity:ch_cfg_4"])
    assert stored["member_id"] == "mber_4"
    assert stored["payment_method_id"] == "pm_4"


def test_cache_failures_do_not_break_resolution(recording_sleep):
    lookup = _FakeLookup(config_results=[MemberIdentity(member_id="mber_5")])
    service = _service(lookup, recording_sleep, cache=_FakeCache(fail=True))

    result = asyncio.run(service.resolve_identity("ch_cfg_5"))

    assert result.member_id == "mber_5"


def test_cancellation_stops_polling():
    lookup = _FakeLookup()
    service = IdentityResolutionService(lookup, initial_delay=10.0, retry_delay=10.0)

    async def run():
        task = asyncio.ensure_future(service.resolve_identity("ch_cfg_slow"))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(run())
    assert lookup.config_calls == 0


def test_rejects_non_positive_attempts():
    with pytest.raises(ValueError):
        IdentityResolutionService(_FakeLookup(), max_attempts=0)


class TestResolveMember:
    def test_explicit_member_id_wins(self, recording_sleep):
        lookup = _FakeLookup()
        service = _service(lookup, recording_sleep)

        result = asyncio.run(service.resolve_member(member_id="mber_x", checkout_config_id="ch_cfg_1"))

        assert result.member_id == "mber_x"
        assert result.source == "explicit"
        assert lookup.config_calls == 0

    def test_setup_intent_after_polling(self, recording_sleep):
        lookup = _FakeLookup(setup_intent_result=MemberIdentity(member_id="mber_si", source="setup_intent"))
        service = _service(lookup, recording_sleep, max_attempts=2)

        result = asyncio.run(service.resolve_member(checkout_config_id="ch_cfg_1", setup_intent_id="sint_1"))

        assert result.member_id == "mber_si"
        assert lookup.config_calls == 2
        assert lookup.setup_intent_calls == ["sint_1"]

    def test_email_last(self, recording_sleep):
        lookup = _FakeLookup(email_result=MemberIdentity(member_id="mber_em", source="email"))
        service = _service(lookup, recording_sleep, max_attempts=2)

        result = asyncio.run(service.resolve_member(
            checkout_config_id="ch_cfg_1",
            setup_intent_id="sint_1",
            email="buyer@example.com",
        ))

        assert result.member_id == "mber_em"
        assert lookup.setup_intent_calls == ["sint_1"]
        assert lookup.email_calls == [("buyer@example.com", "ch_cfg_1")]

    def test_email_fallback_prefers_this_checkouts_row(self, recording_sleep, test_db_session):
        from datetime import datetime
        from xperience.models import PendingIdentity

        class _ConfigNeverResolves(DatabasePendingIdentityLookup):
            async def by_checkout_config(self, checkout_config_id):
                return None

        test_db_session.add_all([
            PendingIdentity(checkout_config_id="ch_cfg_1", member_id="mber_this", email="shared@example.com",
                            updated_at=datetime(2026, 1, 1)),
            PendingIdentity(checkout_config_id="ch_cfg_other", member_id="mber_other", email="shared@example.com",
                            updated_at=datetime(2026, 3, 1)),
        ])
        test_db_session.commit()
        service = _service(_ConfigNeverResolves(test_db_session), recording_sleep, max_attempts=1)

        result = asyncio.run(service.resolve_member(checkout_config_id="ch_cfg_1", email="shared@example.com"))

        assert result.member_id == "mber_this"

    def test_nothing_resolves(self, recording_sleep):
        service = _service(_FakeLookup(), recording_sleep, max_attempts=3)

        result = asyncio.run(service.resolve_member(checkout_config_id="ch_cfg_1", email="buyer@example.com"))

        assert isinstance(result, IdentityNotFound)
        assert result.attempts == 3
        assert result.email_tried is True


class TestDatabaseLookup:
    def test_pending_row_without_member_is_not_resolved(self, test_db_session):
        from xperience.models import PendingIdentity

        test_db_session.add(PendingIdentity(checkout_config_id="ch_cfg_pending", email="late@example.com"))
        test_db_session.commit()

        lookup = DatabasePendingIdentityLookup(test_db_session)
        assert asyncio.run(lookup.by_checkout_config("ch_cfg_pending")) is None

    def test_lookups_by_each_key(self, test_db_session, pending_identity):
        lookup = DatabasePendingIdentityLookup(test_db_session)

        by_config = asyncio.run(lookup.by_checkout_config("ch_cfg_ready"))
        by_intent = asyncio.run(lookup.by_setup_intent("sint_ready"))
        by_email = asyncio.run(lookup.by_email("buyer@example.com", "ch_cfg_other"))

        assert by_config.member_id == "mber_ready"
        assert by_config.payment_method_id == "pm_ready"
        assert by_intent.source == "setup_intent"
        # Falls back to the newest row for the email when the config does not match
        assert by_email.member_id == "mber_ready"
        assert asyncio.run(lookup.by_email("nobody@example.com")) is None


class TestHttpLookup:
    def test_404_means_not_yet_and_200_resolves(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(dict(request.url.params))
            if request.url.params.get("checkoutConfigId") == "ch_cfg_ready":
                return httpx.Response(200, json={"memberId": "mber_http", "paymentMethodId": "pm_http"})
            return httpx.Response(404, json={"detail": "Identity not resolved yet"})

        lookup = HttpPendingIdentityLookup("https://funnel.example.com/", transport=httpx.MockTransport(handler))

        assert asyncio.run(lookup.by_checkout_config("ch_cfg_missing")) is None
        found = asyncio.run(lookup.by_checkout_config("ch_cfg_ready"))

        assert found.member_id == "mber_http"
        assert found.payment_method_id == "pm_http"
        assert seen[0] == {"checkoutConfigId": "ch_cfg_missing"}

    def test_server_error_raises_for_retry_loop(self):
        lookup = HttpPendingIdentityLookup(
            "https://funnel.example.com",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )

        with pytest.raises(httpx.HTTPStatusError):
            asyncio.run(lookup.by_email("buyer@example.com", "ch_cfg_1"))
