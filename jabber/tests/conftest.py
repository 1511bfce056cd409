from contextlib import ExitStack
import json
from typing import Callable, Iterator, List, Optional
from urllib.parse import parse_qs

import httpx
import pytest
from fastapi.testclient import TestClient

from jabber.main import Settings, create_app
from jabber.storage import SQLiteDatabase


class Upstream:
    """Stand-in for every remote service, recording what the app sends."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.handler: Optional[Callable[[httpx.Request], httpx.Response]] = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        request.read()
        self.requests.append(request)
        if self.handler is None:
            raise AssertionError(f"Unexpected upstream call: {request.method} {request.url}")
        return self.handler(request)

    @staticmethod
    def json_body(request: httpx.Request) -> dict:
        return json.loads(request.content)

    @staticmethod
    def form_body(request: httpx.Request) -> dict:
        return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}


@pytest.fixture()
def upstream() -> Upstream:
    return Upstream()


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(sqlite_path=str(tmp_path / "jabber.db"))


@pytest.fixture()
def configured_settings(settings: Settings) -> Settings:
    return settings.model_copy(
        update={
            "openai_api_key": "sk-test",
            "google_client_id": "client-id",
            "google_client_secret": "client-secret",
            "google_redirect_uri": "http://localhost:3000/oauth2callback",
        }
    )


@pytest.fixture()
def make_client(upstream: Upstream) -> Iterator[Callable[[Settings], TestClient]]:
    with ExitStack() as stack:

        def _make(app_settings: Settings) -> TestClient:
            app = create_app(app_settings, transport=httpx.MockTransport(upstream))
            return stack.enter_context(TestClient(app))

        yield _make


@pytest.fixture()
def client(make_client, settings: Settings) -> TestClient:
    return make_client(settings)


@pytest.fixture()
def configured_client(make_client, configured_settings: Settings) -> TestClient:
    return make_client(configured_settings)


@pytest.fixture()
def database(settings: Settings) -> SQLiteDatabase:
    db = SQLiteDatabase(settings.sqlite_path)
    db.initialize()
    return db
