from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import os
import secrets
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
import httpx
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from jabber.errors import CalendarError, StorageError, UpstreamError
from jabber.google_calendar import (
    CALENDAR_SCOPES,
    CalendarClientProvider,
    OAuthClientFactory,
    build_event_body,
)
from jabber.storage import (
    Database,
    EventRecord,
    MemoryRecord,
    MessageRecord,
    TokenStore,
    create_event,
    create_memory,
    list_events,
    list_memories,
    list_messages,
    open_database,
    parse_timestamp,
    store_message,
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
DEFAULT_STATIC_DIR = os.path.join(os.path.dirname(__file__), "public")
CHAT_NOT_CONFIGURED_REPLY = "Set OPENAI_API_KEY to enable chat replies."
CHAT_SYSTEM_PROMPT = (
    "You are Jabber, a friendly personal assistant. "
    "Keep answers short and use what you know about the user when it helps."
)

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
LOGGER = logging.getLogger("jabber")


class Settings(BaseModel):
    port: int = 3000
    openai_api_key: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_chat_model: str = "gpt-3.5-turbo"
    openai_image_model: str = "dall-e-3"
    openai_search_model: str = "gpt-4o-mini"
    http_timeout_seconds: float = 30.0
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    google_redirect_uri: Optional[str] = None
    default_timezone: str = "UTC"
    db_backend: str = "sqlite"
    sqlite_path: str = "jabber.db"
    mysql_host: str = "localhost"
    mysql_port: int = 3306
    mysql_user: str = "jabber"
    mysql_password: str = "jabber_password"
    mysql_database: str = "jabber"
    chat_history_limit: int = 8
    oauth_state_ttl_seconds: int = 600
    static_dir: str = DEFAULT_STATIC_DIR

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            port=int(os.getenv("PORT", "3000")),
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            openai_chat_model=os.getenv("OPENAI_CHAT_MODEL", "gpt-3.5-turbo"),
            openai_image_model=os.getenv("OPENAI_IMAGE_MODEL", "dall-e-3"),
            openai_search_model=os.getenv("OPENAI_SEARCH_MODEL", "gpt-4o-mini"),
            http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "30")),
            google_client_id=os.getenv("GOOGLE_CLIENT_ID") or None,
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET") or None,
            google_redirect_uri=os.getenv("GOOGLE_REDIRECT_URI") or None,
            default_timezone=os.getenv("DEFAULT_TIMEZONE", "UTC"),
            db_backend=os.getenv("DB_BACKEND", "sqlite").lower(),
            sqlite_path=os.getenv("SQLITE_PATH", "jabber.db"),
            mysql_host=os.getenv("MYSQL_HOST", "localhost"),
            mysql_port=int(os.getenv("MYSQL_PORT", "3306")),
            mysql_user=os.getenv("MYSQL_USER", "jabber"),
            mysql_password=os.getenv("MYSQL_PASSWORD", "jabber_password"),
            mysql_database=os.getenv("MYSQL_DATABASE", "jabber"),
            chat_history_limit=int(os.getenv("CHAT_HISTORY_LIMIT", "8")),
            oauth_state_ttl_seconds=int(os.getenv("OAUTH_STATE_TTL_SECONDS", "600")),
            static_dir=os.getenv("STATIC_DIR", DEFAULT_STATIC_DIR),
        )


class ChatRequest(BaseModel):
    message: Optional[str] = None


class ChatResponse(BaseModel):
    reply: str


class MemoryCreateRequest(BaseModel):
    key: Optional[str] = None
    value: Optional[str] = None


class MemoryListResponse(BaseModel):
    memories: List[MemoryRecord]


class EventCreateRequest(BaseModel):
    title: Optional[str] = None
    start: Optional[str] = None
    end: Optional[str] = None
    description: Optional[str] = None
    timezone: Optional[str] = None


class EventListResponse(BaseModel):
    events: List[EventRecord]


class MessageListResponse(BaseModel):
    messages: List[MessageRecord]


class CalendarCreateRequest(BaseModel):
    title: Optional[str] = None
    start: Optional[str] = None
    end: Optional[str] = None
    description: Optional[str] = None
    timezone: Optional[str] = None


class CalendarStatusResponse(BaseModel):
    configured: bool
    authenticated: bool
    expiry_date: Optional[int] = None


class ImageRequest(BaseModel):
    prompt: Optional[str] = None
    size: Optional[str] = None
    n: Optional[int] = Field(default=None, ge=1, le=10)


class SearchSource(BaseModel):
    title: str = ""
    url: str


class SearchResponse(BaseModel):
    query: str
    answer: str
    sources: List[SearchSource] = Field(default_factory=list)


class OpenAIClient:
    def __init__(self, http: httpx.AsyncClient, api_key: str, base_url: str) -> None:
        self.http = http
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _post(self, path: str, request_body: Dict[str, object]) -> httpx.Response:
        try:
            return await self.http.post(
                f"{self.base_url}{path}",
                json=request_body,
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            LOGGER.error("upstream_failure path=%s error=%s", path, exc)
            raise UpstreamError("Failed to connect to AI.") from exc

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = {}
        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        return f"AI request failed with status {response.status_code}."

    async def _post_json(self, path: str, request_body: Dict[str, object]) -> Dict[str, Any]:
        response = await self._post(path, request_body)
        if response.status_code >= 400:
            message = self._error_message(response)
            LOGGER.error(
                "upstream_failure path=%s status=%s error=%s",
                path,
                response.status_code,
                message,
            )
            raise UpstreamError(message, status_code=response.status_code)
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError("AI response was not valid JSON.") from exc

    async def chat_completion(self, messages: List[Dict[str, str]], model: str) -> str:
        data = await self._post_json(
            "/chat/completions",
            {"model": model, "messages": messages},
        )
        reply = (
            (data.get("choices") or [{}])[0].get("message", {}).get("content") or ""
        ).strip()
        if not reply:
            raise UpstreamError("AI response was empty.")
        return reply

    async def generate_image(self, request_body: Dict[str, object]) -> httpx.Response:
        return await self._post("/images/generations", request_body)

    async def web_search(self, query: str, model: str) -> Tuple[str, List[SearchSource]]:
        data = await self._post_json(
            "/responses",
            {
                "model": model,
                "tools": [{"type": "web_search_preview"}],
                "input": query,
            },
        )
        texts: List[str] = []
        sources: List[SearchSource] = []
        for item in data.get("output") or []:
            if item.get("type") != "message":
                continue
            for part in item.get("content") or []:
                if part.get("type") != "output_text":
                    continue
                texts.append(part.get("text", ""))
                for annotation in part.get("annotations") or []:
                    if annotation.get("type") == "url_citation" and annotation.get("url"):
                        sources.append(
                            SearchSource(
                                title=annotation.get("title") or "",
                                url=annotation["url"],
                            )
                        )
        answer = "\n".join(texts).strip()
        if not answer:
            raise UpstreamError("Search response was empty.")
        return answer, sources


def _format_memory_preamble(memories: List[MemoryRecord]) -> str:
    if not memories:
        return "You do not know any saved facts about the user yet."
    lines = [f"- {memory.key}: {memory.value}" for memory in memories]
    return "Saved facts about the user:\n" + "\n".join(lines)


def _rfc3339(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_token_store(database: Database = Depends(get_database)) -> TokenStore:
    return TokenStore(database)


def get_oauth_factory(settings: Settings = Depends(get_settings)) -> OAuthClientFactory:
    return OAuthClientFactory(
        settings.google_client_id,
        settings.google_client_secret,
        settings.google_redirect_uri,
    )


def get_calendar_provider(
    factory: OAuthClientFactory = Depends(get_oauth_factory),
    store: TokenStore = Depends(get_token_store),
) -> CalendarClientProvider:
    return CalendarClientProvider(factory, store)


async def get_http_client(request: Request) -> AsyncIterator[httpx.AsyncClient]:
    settings: Settings = request.app.state.settings
    async with httpx.AsyncClient(
        timeout=settings.http_timeout_seconds,
        transport=request.app.state.http_transport,
    ) as client:
        yield client


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code)


async def _validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse({"error": "Invalid request body."}, status_code=400)


async def _storage_exception_handler(request: Request, exc: StorageError) -> JSONResponse:
    return JSONResponse({"error": f"Storage failure: {exc}"}, status_code=500)


async def _upstream_exception_handler(request: Request, exc: UpstreamError) -> JSONResponse:
    return JSONResponse({"error": str(exc)}, status_code=500)


async def _calendar_exception_handler(request: Request, exc: CalendarError) -> JSONResponse:
    return JSONResponse({"error": str(exc), "code": exc.code}, status_code=500)


router = APIRouter()


@router.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@router.post("/api/chat", response_model=ChatResponse)
@router.post("/chat", response_model=ChatResponse)
async def chat(
    payload: ChatRequest,
    settings: Settings = Depends(get_settings),
    database: Database = Depends(get_database),
    http: httpx.AsyncClient = Depends(get_http_client),
) -> ChatResponse:
    message = (payload.message or "").strip()
    if not message:
        raise HTTPException(status_code=400, detail="message required")
    memories = list_memories(database)
    stored = store_message(database, "user", message)
    if not settings.openai_api_key:
        return ChatResponse(reply=CHAT_NOT_CONFIGURED_REPLY)

    history = [
        record
        for record in list_messages(database, limit=settings.chat_history_limit + 1)
        if record.id != stored.id
    ]
    messages = [
        {
            "role": "system",
            "content": f"{CHAT_SYSTEM_PROMPT}\n\n{_format_memory_preamble(memories)}",
        }
    ]
    messages.extend({"role": record.role, "content": record.content} for record in history)
    messages.append({"role": "user", "content": message})

    client = OpenAIClient(http, settings.openai_api_key, settings.openai_base_url)
    reply = await client.chat_completion(messages, settings.openai_chat_model)
    store_message(database, "assistant", reply)
    return ChatResponse(reply=reply)


@router.get("/api/messages", response_model=MessageListResponse)
def messages_list(
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    database: Database = Depends(get_database),
) -> MessageListResponse:
    return MessageListResponse(messages=list_messages(database, limit=limit))


@router.post("/api/memories", response_model=MemoryRecord)
def memory_add(
    payload: MemoryCreateRequest,
    database: Database = Depends(get_database),
) -> MemoryRecord:
    if not payload.key or not payload.value:
        raise HTTPException(status_code=400, detail="key and value required")
    return create_memory(database, payload.key, payload.value)


@router.get("/api/memories", response_model=MemoryListResponse)
def memory_list(database: Database = Depends(get_database)) -> MemoryListResponse:
    return MemoryListResponse(memories=list_memories(database))


@router.post("/api/events", response_model=EventRecord)
def event_add(
    payload: EventCreateRequest,
    database: Database = Depends(get_database),
) -> EventRecord:
    if not payload.title or not payload.start:
        raise HTTPException(status_code=400, detail="title and start required")
    return create_event(
        database,
        title=payload.title,
        start=payload.start,
        end=payload.end or "",
        description=payload.description or "",
        timezone=payload.timezone or "",
    )


@router.get("/api/events", response_model=EventListResponse)
def event_list(database: Database = Depends(get_database)) -> EventListResponse:
    return EventListResponse(events=list_events(database))


def _issue_oauth_state(app: FastAPI, ttl_seconds: int) -> str:
    now = int(time.time())
    states: Dict[str, int] = app.state.oauth_states
    for stale in [key for key, created_at in states.items() if now - created_at > ttl_seconds]:
        states.pop(stale, None)
    state = secrets.token_urlsafe(16)
    states[state] = now
    return state


def _consume_oauth_state(app: FastAPI, state: Optional[str], ttl_seconds: int) -> None:
    created_at = app.state.oauth_states.pop(state, None) if state else None
    if created_at is None:
        raise HTTPException(status_code=400, detail="Invalid OAuth state.")
    if int(time.time()) - created_at > ttl_seconds:
        raise HTTPException(status_code=400, detail="OAuth state expired.")


@router.get("/auth/google")
def auth_google(
    request: Request,
    settings: Settings = Depends(get_settings),
    factory: OAuthClientFactory = Depends(get_oauth_factory),
) -> RedirectResponse:
    client = factory.create()
    if client is None:
        raise HTTPException(
            status_code=500,
            detail="Google OAuth is not configured. Set GOOGLE_CLIENT_ID, "
            "GOOGLE_CLIENT_SECRET and GOOGLE_REDIRECT_URI.",
        )
    state = _issue_oauth_state(request.app, settings.oauth_state_ttl_seconds)
    return RedirectResponse(
        url=client.generate_auth_url(
            CALENDAR_SCOPES, access_type="offline", prompt="consent", state=state
        )
    )


@router.get("/oauth2callback")
async def oauth2_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    settings: Settings = Depends(get_settings),
    factory: OAuthClientFactory = Depends(get_oauth_factory),
    store: TokenStore = Depends(get_token_store),
    http: httpx.AsyncClient = Depends(get_http_client),
) -> HTMLResponse:
    if not code:
        raise HTTPException(status_code=400, detail="Missing authorization code.")
    client = factory.create(http)
    if client is None:
        raise HTTPException(status_code=400, detail="Google OAuth client is not configured.")
    _consume_oauth_state(request.app, state, settings.oauth_state_ttl_seconds)
    try:
        tokens = await client.get_token(code)
    except UpstreamError as exc:
        LOGGER.error("oauth_exchange_failed error=%s", exc)
        raise HTTPException(status_code=500, detail=f"Token exchange failed: {exc}") from exc
    store.merge(tokens)
    LOGGER.info("oauth_exchange_succeeded expiry_date=%s", tokens.expiry_date)
    return HTMLResponse(
        "<html><body>"
        "<h3>Google Calendar connected.</h3>"
        "<p>You can close this window and return to Jabber.</p>"
        "</body></html>"
    )


@router.get("/api/calendar/status", response_model=CalendarStatusResponse)
def calendar_status(
    factory: OAuthClientFactory = Depends(get_oauth_factory),
    store: TokenStore = Depends(get_token_store),
) -> CalendarStatusResponse:
    credential = store.load()
    return CalendarStatusResponse(
        configured=factory.configured,
        authenticated=bool(credential and credential.access_token),
        expiry_date=credential.expiry_date if credential else None,
    )


@router.get("/api/calendar/list")
async def calendar_list(
    time_min: Optional[str] = Query(default=None, alias="timeMin"),
    time_max: Optional[str] = Query(default=None, alias="timeMax"),
    provider: CalendarClientProvider = Depends(get_calendar_provider),
    http: httpx.AsyncClient = Depends(get_http_client),
) -> Dict[str, List[Dict[str, Any]]]:
    calendar = provider.get_client(http)
    now = datetime.now(timezone.utc)
    result = await calendar.list_events(
        time_min or _rfc3339(now),
        time_max or _rfc3339(now + timedelta(days=7)),
    )
    return {"events": [event.to_payload() for event in result.items]}


@router.post("/api/calendar/create")
async def calendar_create(
    payload: CalendarCreateRequest,
    settings: Settings = Depends(get_settings),
    provider: CalendarClientProvider = Depends(get_calendar_provider),
    http: httpx.AsyncClient = Depends(get_http_client),
) -> Dict[str, Any]:
    if not payload.title or not payload.start or not payload.end:
        raise HTTPException(status_code=400, detail="title, start, end required")
    if parse_timestamp(payload.start) is None or parse_timestamp(payload.end) is None:
        raise HTTPException(status_code=400, detail="start and end must be ISO-8601 timestamps")
    calendar = provider.get_client(http)
    body = build_event_body(
        payload.title,
        payload.start,
        payload.end,
        payload.timezone or settings.default_timezone,
        payload.description,
    )
    event = await calendar.insert_event(body)
    LOGGER.info("calendar_event action=create event_id=%s", event.id)
    return event.to_payload()


@router.patch("/api/calendar/update/{event_id}")
async def calendar_update(
    event_id: str,
    payload: Dict[str, Any] = Body(...),
    provider: CalendarClientProvider = Depends(get_calendar_provider),
    http: httpx.AsyncClient = Depends(get_http_client),
) -> Dict[str, Any]:
    calendar = provider.get_client(http)
    event = await calendar.patch_event(event_id, payload)
    LOGGER.info("calendar_event action=update event_id=%s", event.id)
    return event.to_payload()


@router.delete("/api/calendar/delete/{event_id}")
async def calendar_delete(
    event_id: str,
    provider: CalendarClientProvider = Depends(get_calendar_provider),
    http: httpx.AsyncClient = Depends(get_http_client),
) -> Dict[str, Any]:
    calendar = provider.get_client(http)
    await calendar.delete_event(event_id)
    LOGGER.info("calendar_event action=delete event_id=%s", event_id)
    return {"success": True, "id": event_id}


@router.post("/api/images")
async def image_generate(
    payload: ImageRequest,
    settings: Settings = Depends(get_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
) -> JSONResponse:
    prompt = (payload.prompt or "").strip()
    if not prompt:
        raise HTTPException(status_code=400, detail="prompt required")
    if not settings.openai_api_key:
        raise HTTPException(
            status_code=400, detail="Set OPENAI_API_KEY to enable image generation."
        )
    request_body: Dict[str, object] = {"model": settings.openai_image_model, "prompt": prompt}
    if payload.size:
        request_body["size"] = payload.size
    if payload.n is not None:
        request_body["n"] = payload.n
    client = OpenAIClient(http, settings.openai_api_key, settings.openai_base_url)
    response = await client.generate_image(request_body)
    try:
        content = response.json()
    except ValueError as exc:
        raise UpstreamError("Image response was not valid JSON.") from exc
    return JSONResponse(content=content, status_code=response.status_code)


@router.get("/api/search", response_model=SearchResponse)
async def search(
    q: Optional[str] = None,
    settings: Settings = Depends(get_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
) -> SearchResponse:
    query = (q or "").strip()
    if not query:
        raise HTTPException(status_code=400, detail="q required")
    if not settings.openai_api_key:
        raise HTTPException(
            status_code=500, detail="Search is not configured. Set OPENAI_API_KEY."
        )
    client = OpenAIClient(http, settings.openai_api_key, settings.openai_base_url)
    answer, sources = await client.web_search(query, settings.openai_search_model)
    return SearchResponse(query=query, answer=answer, sources=sources)


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(title="Jabber", version="0.1.0")
    app.state.settings = settings
    app.state.http_transport = transport
    app.state.oauth_states = {}
    app.state.database = open_database(
        settings.db_backend,
        path=settings.sqlite_path,
        host=settings.mysql_host,
        port=settings.mysql_port,
        user=settings.mysql_user,
        password=settings.mysql_password,
        database=settings.mysql_database,
    )

    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    app.add_exception_handler(StorageError, _storage_exception_handler)
    app.add_exception_handler(UpstreamError, _upstream_exception_handler)
    app.add_exception_handler(CalendarError, _calendar_exception_handler)

    @app.on_event("startup")
    def _open_database() -> None:
        app.state.database.initialize()
        LOGGER.info(
            "startup backend=%s ai_configured=%s calendar_configured=%s",
            settings.db_backend,
            bool(settings.openai_api_key),
            bool(
                settings.google_client_id
                and settings.google_client_secret
                and settings.google_redirect_uri
            ),
        )

    @app.on_event("shutdown")
    def _close_database() -> None:
        app.state.database.close()

    app.include_router(router)
    if os.path.isdir(settings.static_dir):
        app.mount("/", StaticFiles(directory=settings.static_dir, html=True), name="static")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
