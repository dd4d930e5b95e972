"""Client-side pieces: entitlement cache, API client, manage-screen branching."""

import httpx
import pytest

from hfe_api.entitlements.store import EntitlementStore
from hfe_api.entitlements.transitions import EntitlementEvent, EventType
from hfe_api.sdk.cache import EntitlementCache
from hfe_api.sdk.client import EntitlementApiClient
from hfe_api.sdk.manage import (
    CANCELLATION_WARNING,
    CARD_CANCEL_NOTE,
    PLATFORM_INSTRUCTIONS,
    PLATFORM_MANAGE_URL,
    PLATFORM_NOTE,
    format_period_date,
    management_options,
    open_platform_subscription_settings,
)

from billing_fixtures import TEST_USER_ID, card_rail, platform_rail, purchase

PREMIUM_VIEW = {
    "status": "premium",
    "paymentMethod": "cardProvider",
    "renewalDate": "2026-11-18T00:00:00+00:00",
    "cancelsAtPeriodEnd": False,
    "totalUsageCount": 3,
    "canAnalyze": True,
}


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class CountingFetcher:
    def __init__(self, *views):
        self.views = list(views) or [PREMIUM_VIEW]
        self.calls = 0

    async def __call__(self, user_id):
        view = self.views[min(self.calls, len(self.views) - 1)]
        self.calls += 1
        return view


# ── EntitlementCache ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_cache_serves_within_ttl_without_backend_call():
    fetcher, clock = CountingFetcher(), FakeClock()
    cache = EntitlementCache(fetcher, ttl=300, clock=clock)

    await cache.query(TEST_USER_ID)
    clock.now += 299
    view = await cache.query(TEST_USER_ID)

    assert view == PREMIUM_VIEW
    assert fetcher.calls == 1


@pytest.mark.asyncio
async def test_cache_refetches_once_ttl_elapses():
    fetcher = CountingFetcher(PREMIUM_VIEW, {**PREMIUM_VIEW, "status": "free"})
    clock = FakeClock()
    cache = EntitlementCache(fetcher, ttl=60, clock=clock)

    await cache.query(TEST_USER_ID)
    clock.now += 60
    view = await cache.query(TEST_USER_ID)

    assert view["status"] == "free"
    assert fetcher.calls == 2


@pytest.mark.asyncio
async def test_force_refresh_and_invalidate_bypass_cache():
    fetcher = CountingFetcher()
    cache = EntitlementCache(fetcher, ttl=300, clock=FakeClock())

    await cache.query(TEST_USER_ID)
    await cache.query(TEST_USER_ID, force_refresh=True)
    cache.invalidate(TEST_USER_ID)
    await cache.query(TEST_USER_ID)

    assert fetcher.calls == 3


@pytest.mark.asyncio
async def test_entries_are_per_user():
    fetcher = CountingFetcher()
    cache = EntitlementCache(fetcher, ttl=300, clock=FakeClock())

    await cache.query("user-a")
    await cache.query("user-b")
    cache.clear()
    await cache.query("user-a")

    assert fetcher.calls == 3


@pytest.mark.asyncio
async def test_fetch_error_keeps_previous_entry():
    clock = FakeClock()
    calls = {"n": 0}

    async def flaky(user_id):
        calls["n"] += 1
        if calls["n"] > 1:
            raise httpx.ConnectError("offline")
        return PREMIUM_VIEW

    cache = EntitlementCache(flaky, ttl=60, clock=clock)
    await cache.query(TEST_USER_ID)

    with pytest.raises(httpx.ConnectError):
        await cache.query(TEST_USER_ID, force_refresh=True)
    assert await cache.query(TEST_USER_ID) == PREMIUM_VIEW


@pytest.mark.parametrize("ttl", [59, 301])
def test_ttl_outside_bounds_is_rejected(ttl):
    with pytest.raises(ValueError):
        EntitlementCache(CountingFetcher(), ttl=ttl)


def test_default_ttl_comes_from_environment(monkeypatch):
    monkeypatch.setenv("ENTITLEMENT_CACHE_TTL_SECONDS", "120")
    assert EntitlementCache(CountingFetcher()).ttl == 120

    monkeypatch.setenv("ENTITLEMENT_CACHE_TTL_SECONDS", "9999")
    assert EntitlementCache(CountingFetcher()).ttl == 300


# ── EntitlementApiClient ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_api_client_sends_bearer_token():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json=PREMIUM_VIEW)

    client = EntitlementApiClient(
        "https://api.test/", token_provider=lambda: "jwt-abc", transport=httpx.MockTransport(handler)
    )

    view = await client.fetch_entitlement(TEST_USER_ID)

    assert view == PREMIUM_VIEW
    assert seen == {"path": "/v1/entitlements/me", "auth": "Bearer jwt-abc"}


@pytest.mark.asyncio
async def test_api_client_raises_on_error_status():
    transport = httpx.MockTransport(lambda request: httpx.Response(401, json={"status": 401}))
    client = EntitlementApiClient("https://api.test", token_provider=lambda: "expired", transport=transport)

    with pytest.raises(httpx.HTTPStatusError):
        await client.fetch_entitlement(TEST_USER_ID)


@pytest.mark.asyncio
async def test_api_client_plugs_into_cache():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=PREMIUM_VIEW))
    client = EntitlementApiClient("https://api.test", token_provider=lambda: "t", transport=transport)
    cache = EntitlementCache(client, ttl=300, clock=FakeClock())

    assert (await cache.query(TEST_USER_ID))["paymentMethod"] == "cardProvider"


# ── Manage screen ────────────────────────────────────────────────────────────


def test_card_renewing_shows_cancel_button():
    options = management_options(PREMIUM_VIEW)

    assert options["showCancelButton"] is True
    assert options["showCancellationWarning"] is False
    assert options["showSettingsLink"] is False
    assert options["renewsOn"] == PREMIUM_VIEW["renewalDate"]
    assert options["note"] == CARD_CANCEL_NOTE


def test_card_cancelling_shows_warning_instead_of_button():
    options = management_options({**PREMIUM_VIEW, "cancelsAtPeriodEnd": True})

    assert options["showCancelButton"] is False
    assert options["showCancellationWarning"] is True
    assert options["expiresOn"] == PREMIUM_VIEW["renewalDate"]
    assert options["renewsOn"] is None
    assert options["note"] == CANCELLATION_WARNING


def test_platform_shows_settings_link_only():
    options = management_options({**PREMIUM_VIEW, "paymentMethod": "platformIAP"})

    assert options["showCancelButton"] is False
    assert options["showSettingsLink"] is True
    assert options["note"] == PLATFORM_NOTE
    assert options["instructions"] == PLATFORM_INSTRUCTIONS


def test_free_user_gets_no_actions():
    options = management_options({"status": "free", "paymentMethod": "none", "renewalDate": None})

    assert not any(options[k] for k in ("showCancelButton", "showCancellationWarning", "showSettingsLink"))
    assert options["note"] is None


def test_format_period_date():
    assert format_period_date("2026-11-18T00:00:00+00:00") == "November 18, 2026"
    assert format_period_date(None) is None


def test_deep_link_opened():
    shown = []

    assert open_platform_subscription_settings(lambda url: url == PLATFORM_MANAGE_URL, shown.append) is True
    assert shown == []


def test_deep_link_failure_falls_back_to_instructions():
    shown = []

    def broken_opener(url):
        raise OSError("no handler for scheme")

    assert open_platform_subscription_settings(broken_opener, shown.append) is False
    assert open_platform_subscription_settings(lambda url: False, shown.append) is False
    assert shown == [PLATFORM_INSTRUCTIONS, PLATFORM_INSTRUCTIONS]


def test_manage_endpoint_for_cancelling_card_user(test_client, db_session):
    purchase(db_session, TEST_USER_ID, card_rail())
    EntitlementStore(db_session).apply(
        EntitlementEvent(
            type=EventType.CANCELLATION,
            user_id=TEST_USER_ID,
            occurred_at_ms=1_700_000_001_000,
            rail=card_rail(),
        ),
        source="test",
    )

    response = test_client.get("/v1/subscription/manage")

    assert response.status_code == 200
    body = response.json()
    assert body["paymentMethod"] == "cardProvider"
    assert body["showCancelButton"] is False
    assert body["showCancellationWarning"] is True
    assert body["expiresOn"] is not None


def test_manage_endpoint_for_platform_user(test_client, db_session):
    purchase(db_session, TEST_USER_ID, platform_rail())

    body = test_client.get("/v1/subscription/manage").json()

    assert body["showSettingsLink"] is True
    assert body["instructions"] == PLATFORM_INSTRUCTIONS
