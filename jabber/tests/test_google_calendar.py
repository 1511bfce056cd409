import asyncio
import time
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from jabber.errors import NotAuthenticated, NotConfigured, StorageError, UpstreamError
from jabber.google_calendar import (
    CALENDAR_SCOPES,
    GOOGLE_TOKEN_URL,
    CalendarClientProvider,
    OAuthClient,
    OAuthClientFactory,
    build_event_body,
)
from jabber.storage import Credential, TokenStore

FACTORY = OAuthClientFactory("client-id", "client-secret", "http://localhost:3000/oauth2callback")


class RecordingStore:
    def __init__(self, credential=None, fail_on_save=False) -> None:
        self.credential = credential
        self.fail_on_save = fail_on_save
        self.loads = 0
        self.merged = []

    def load(self):
        self.loads += 1
        return self.credential

    def merge(self, fields):
        if self.fail_on_save:
            raise StorageError("disk full")
        self.merged.append(fields)
        return fields


def _run(coro):
    return asyncio.run(coro)


def _expired_credential() -> Credential:
    return Credential(
        access_token="stale-access",
        refresh_token="refresh-1",
        scope="https://www.googleapis.com/auth/calendar",
        token_type="Bearer",
        expiry_date=int(time.time() * 1000) - 1000,
    )


def test_factory_returns_none_when_any_setting_is_missing() -> None:
    assert OAuthClientFactory(None, "secret", "http://x/cb").create() is None
    assert OAuthClientFactory("id", None, "http://x/cb").create() is None
    assert OAuthClientFactory("id", "secret", "").create() is None
    assert isinstance(FACTORY.create(), OAuthClient)


def test_auth_url_requests_offline_access_and_consent() -> None:
    url = FACTORY.create().generate_auth_url(CALENDAR_SCOPES)
    query = parse_qs(urlparse(url).query)
    assert query["access_type"] == ["offline"]
    assert query["prompt"] == ["consent"]
    assert query["scope"] == CALENDAR_SCOPES
    assert query["redirect_uri"] == ["http://localhost:3000/oauth2callback"]


def test_provider_reports_not_configured_before_reading_tokens(upstream) -> None:
    store = RecordingStore(Credential(access_token="token"))
    provider = CalendarClientProvider(OAuthClientFactory(None, None, None), store)

    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as http:
            with pytest.raises(NotConfigured):
                provider.get_client(http)

    _run(scenario())
    assert store.loads == 0
    assert upstream.requests == []


def test_provider_reports_not_authenticated_without_network(upstream, database) -> None:
    provider = CalendarClientProvider(FACTORY, TokenStore(database))

    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as http:
            with pytest.raises(NotAuthenticated):
                provider.get_client(http)

    _run(scenario())
    assert upstream.requests == []


def test_refreshed_token_is_persisted_keeping_refresh_token_and_scope(upstream, database) -> None:
    store = TokenStore(database)
    store.save(_expired_credential())
    provider = CalendarClientProvider(FACTORY, store)

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == GOOGLE_TOKEN_URL:
            return httpx.Response(200, json={"access_token": "fresh-access", "expires_in": 3600})
        assert request.headers["Authorization"] == "Bearer fresh-access"
        return httpx.Response(200, json={"items": []})

    upstream.handler = handler

    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as http:
            calendar = provider.get_client(http)
            await calendar.list_events("2024-01-01T00:00:00Z", "2024-01-08T00:00:00Z")

    _run(scenario())

    token_request = upstream.requests[0]
    assert upstream.form_body(token_request)["grant_type"] == "refresh_token"
    assert upstream.form_body(token_request)["refresh_token"] == "refresh-1"
    stored = store.load()
    assert stored.access_token == "fresh-access"
    assert stored.expiry_date > int(time.time() * 1000)
    assert stored.refresh_token == "refresh-1"
    assert stored.scope == "https://www.googleapis.com/auth/calendar"


def test_unauthorized_response_triggers_one_refresh_and_retry(upstream) -> None:
    store = RecordingStore(Credential(access_token="revoked", refresh_token="refresh-1"))
    provider = CalendarClientProvider(FACTORY, store)
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == GOOGLE_TOKEN_URL:
            return httpx.Response(200, json={"access_token": "fresh-access", "expires_in": 3600})
        calls.append(request.headers["Authorization"])
        if request.headers["Authorization"] == "Bearer revoked":
            return httpx.Response(401, json={"error": {"message": "Invalid Credentials"}})
        return httpx.Response(200, json={"id": "evt-1", "summary": "Standup"})

    upstream.handler = handler

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as http:
            return await provider.get_client(http).patch_event("evt-1", {"summary": "Standup"})

    event = _run(scenario())
    assert event.id == "evt-1"
    assert calls == ["Bearer revoked", "Bearer fresh-access"]
    assert [fields.access_token for fields in store.merged] == ["fresh-access"]


def test_refresh_persistence_failure_is_swallowed(upstream) -> None:
    store = RecordingStore(_expired_credential(), fail_on_save=True)
    provider = CalendarClientProvider(FACTORY, store)

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == GOOGLE_TOKEN_URL:
            return httpx.Response(200, json={"access_token": "fresh-access", "expires_in": 3600})
        return httpx.Response(204)

    upstream.handler = handler

    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as http:
            await provider.get_client(http).delete_event("evt-1")

    _run(scenario())
    assert upstream.requests[-1].method == "DELETE"
    assert upstream.requests[-1].url.path.endswith("/calendars/primary/events/evt-1")


def test_code_exchange_failure_raises_upstream_error(upstream) -> None:
    upstream.handler = lambda request: httpx.Response(
        400, json={"error": "invalid_grant", "error_description": "Bad Request"}
    )

    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as http:
            await FACTORY.create(http).get_token("expired-code")

    with pytest.raises(UpstreamError, match="invalid_grant"):
        _run(scenario())


def test_malformed_calendar_response_fails_fast(upstream) -> None:
    store = RecordingStore(Credential(access_token="token"))
    provider = CalendarClientProvider(FACTORY, store)
    upstream.handler = lambda request: httpx.Response(200, json={"summary": "no id"})

    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as http:
            await provider.get_client(http).insert_event(
                build_event_body("Standup", "2024-01-01T09:00:00Z", "2024-01-01T09:15:00Z", "UTC")
            )

    with pytest.raises(UpstreamError, match="Malformed calendar response"):
        _run(scenario())


def test_build_event_body_maps_fields() -> None:
    body = build_event_body(
        "Standup",
        "2024-01-01T09:00:00Z",
        "2024-01-01T09:15:00Z",
        "Europe/Berlin",
        description="Daily sync",
    )
    assert body == {
        "summary": "Standup",
        "description": "Daily sync",
        "start": {"dateTime": "2024-01-01T09:00:00Z", "timeZone": "Europe/Berlin"},
        "end": {"dateTime": "2024-01-01T09:15:00Z", "timeZone": "Europe/Berlin"},
    }
