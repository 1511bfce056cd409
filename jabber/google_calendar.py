"""Google OAuth2 token lifecycle and Calendar v3 access over httpx."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Type, TypeVar
from urllib.parse import quote, urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from jabber.errors import NotAuthenticated, NotConfigured, StorageError, UpstreamError
from jabber.storage import Credential, TokenStore

LOGGER = logging.getLogger("jabber.calendar")

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"
CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar"]
EXPIRY_SKEW_SECONDS = 60

TokenListener = Callable[[Credential], None]
ModelT = TypeVar("ModelT", bound=BaseModel)


class EventDateTime(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    date_time: Optional[str] = Field(default=None, alias="dateTime")
    date: Optional[str] = None
    time_zone: Optional[str] = Field(default=None, alias="timeZone")


class CalendarEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    status: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    html_link: Optional[str] = Field(default=None, alias="htmlLink")
    created: Optional[str] = None
    updated: Optional[str] = None
    start: Optional[EventDateTime] = None
    end: Optional[EventDateTime] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class CalendarEventList(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: List[CalendarEvent] = Field(default_factory=list)
    time_zone: Optional[str] = Field(default=None, alias="timeZone")
    next_page_token: Optional[str] = Field(default=None, alias="nextPageToken")


def _now_millis() -> int:
    return int(time.time() * 1000)


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _provider_error_message(data: Dict[str, Any], status_code: int, fallback: str) -> str:
    error = data.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str):
        description = data.get("error_description")
        return f"{error}: {description}" if description else error
    return f"{fallback} (status {status_code})."


def _credential_from_token_response(data: Dict[str, Any]) -> Credential:
    expires_in = data.get("expires_in")
    expiry_date = _now_millis() + int(expires_in) * 1000 if expires_in else None
    return Credential(
        access_token=data.get("access_token"),
        refresh_token=data.get("refresh_token"),
        scope=data.get("scope"),
        token_type=data.get("token_type"),
        expiry_date=expiry_date,
    )


class OAuthClient:
    """OAuth2 client for one registered Google application.

    Refreshed tokens are announced to every listener registered with
    :meth:`on_tokens`; the listener receives only the fields the token
    endpoint returned.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.http = http
        self.credentials = Credential()
        self._listeners: List[TokenListener] = []

    def generate_auth_url(
        self,
        scopes: Sequence[str],
        access_type: str = "offline",
        prompt: str = "consent",
        state: Optional[str] = None,
    ) -> str:
        query = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(scopes),
            "access_type": access_type,
            "prompt": prompt,
        }
        if state:
            query["state"] = state
        return f"{GOOGLE_AUTH_URL}?{urlencode(query)}"

    def set_credentials(self, credential: Credential) -> None:
        self.credentials = credential

    def on_tokens(self, listener: TokenListener) -> None:
        self._listeners.append(listener)

    def is_expired(self) -> bool:
        expiry_date = self.credentials.expiry_date
        if not expiry_date:
            return False
        return expiry_date <= _now_millis() + EXPIRY_SKEW_SECONDS * 1000

    async def _post_token(self, payload: Dict[str, str]) -> Dict[str, Any]:
        try:
            response = await self.http.post(
                GOOGLE_TOKEN_URL,
                data=payload,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(f"OAuth token request failed: {exc}") from exc
        data = _json_or_empty(response)
        if response.status_code >= 400:
            raise UpstreamError(
                _provider_error_message(data, response.status_code, "OAuth token request failed"),
                status_code=response.status_code,
            )
        if not data.get("access_token"):
            raise UpstreamError("OAuth access token missing.")
        return data

    async def get_token(self, code: str) -> Credential:
        data = await self._post_token(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
            }
        )
        return _credential_from_token_response(data)

    async def refresh_access_token(self) -> Credential:
        refresh_token = self.credentials.refresh_token
        if not refresh_token:
            raise UpstreamError("No refresh token is available.")
        data = await self._post_token(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            }
        )
        tokens = _credential_from_token_response(data)
        self.credentials = self.credentials.model_copy(
            update=tokens.model_dump(exclude_none=True)
        )
        for listener in self._listeners:
            listener(tokens)
        return tokens

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {self.credentials.access_token}",
            "Accept": "application/json",
        }
        try:
            return await self.http.request(method, url, params=params, json=json, headers=headers)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Calendar request failed: {exc}") from exc

    async def request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        if self.is_expired() and self.credentials.refresh_token:
            await self.refresh_access_token()
        response = await self._send(method, url, params=params, json=json)
        if response.status_code == 401 and self.credentials.refresh_token:
            await self.refresh_access_token()
            response = await self._send(method, url, params=params, json=json)
        return response


class OAuthClientFactory:
    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: Optional[str],
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def create(self, http: Optional[httpx.AsyncClient] = None) -> Optional[OAuthClient]:
        if not self.configured:
            return None
        return OAuthClient(self.client_id, self.client_secret, self.redirect_uri, http)


class CalendarHandle:
    """Authenticated access to one Google calendar."""

    def __init__(self, client: OAuthClient, calendar_id: str = "primary") -> None:
        self.client = client
        self.calendar_id = calendar_id

    @property
    def events_url(self) -> str:
        return f"{CALENDAR_API_BASE}/calendars/{quote(self.calendar_id, safe='')}/events"

    def _event_url(self, event_id: str) -> str:
        return f"{self.events_url}/{quote(event_id, safe='')}"

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        data = _json_or_empty(response)
        message = _provider_error_message(data, response.status_code, "Calendar request failed")
        LOGGER.error("calendar_request_failed status=%s error=%s", response.status_code, message)
        raise UpstreamError(message, status_code=response.status_code)

    @staticmethod
    def _decode(model: Type[ModelT], response: httpx.Response) -> ModelT:
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise UpstreamError(f"Malformed calendar response: {exc}") from exc

    async def insert_event(self, body: Dict[str, Any]) -> CalendarEvent:
        response = await self.client.request("POST", self.events_url, json=body)
        self._raise_for_status(response)
        return self._decode(CalendarEvent, response)

    async def list_events(
        self,
        time_min: str,
        time_max: str,
        max_results: int = 250,
    ) -> CalendarEventList:
        params = {
            "timeMin": time_min,
            "timeMax": time_max,
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": max_results,
        }
        response = await self.client.request("GET", self.events_url, params=params)
        self._raise_for_status(response)
        return self._decode(CalendarEventList, response)

    async def patch_event(self, event_id: str, body: Dict[str, Any]) -> CalendarEvent:
        response = await self.client.request("PATCH", self._event_url(event_id), json=body)
        self._raise_for_status(response)
        return self._decode(CalendarEvent, response)

    async def delete_event(self, event_id: str) -> None:
        response = await self.client.request("DELETE", self._event_url(event_id))
        self._raise_for_status(response)


def build_event_body(
    title: str,
    start: str,
    end: str,
    timezone: str,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "summary": title,
        "start": {"dateTime": start, "timeZone": timezone},
        "end": {"dateTime": end, "timeZone": timezone},
    }
    if description:
        body["description"] = description
    return body


class CalendarClientProvider:
    """Hands out calendar handles wired to the stored credential.

    Each handle's OAuth client writes refreshed tokens back to the token store,
    so callers never deal with expiry themselves.
    """

    def __init__(self, factory: OAuthClientFactory, store: TokenStore) -> None:
        self.factory = factory
        self.store = store

    def get_client(self, http: httpx.AsyncClient) -> CalendarHandle:
        client = self.factory.create(http)
        if client is None:
            raise NotConfigured(
                "Google Calendar is not configured. Set GOOGLE_CLIENT_ID, "
                "GOOGLE_CLIENT_SECRET and GOOGLE_REDIRECT_URI."
            )
        credential = self.store.load()
        if credential is None or not credential.access_token:
            raise NotAuthenticated(
                "Google Calendar is not connected. Visit /auth/google to authorize."
            )
        client.set_credentials(credential)
        client.on_tokens(self._persist_refreshed_tokens)
        return CalendarHandle(client)

    def _persist_refreshed_tokens(self, tokens: Credential) -> None:
        try:
            self.store.merge(tokens)
        except StorageError as exc:
            LOGGER.warning("token_refresh_persist_failed error=%s", exc)
            return
        LOGGER.info("token_refresh_persisted expiry_date=%s", tokens.expiry_date)
