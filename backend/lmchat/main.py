from __future__ import annotations

import asyncio
import contextlib
import json
import time
import uuid
from collections import OrderedDict
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from .chat import Conversation
from .config import LOG_LEVEL, MAX_SESSIONS, SETTINGS_PATH
from .lmstudio import StreamChunk, list_models, test_model_availability
from .local_search import search_documents, validate_path
from .logging_utils import configure_logging, get_logger
from .research import WebResearcher
from .schemas import (
    ChatFinal,
    ChatRequest,
    LocalSearchHit,
    LocalSearchRequest,
    LocalSearchResponse,
    ModelEntry,
    ModelsResponse,
    ModelTestRequest,
    ModelTestResponse,
    SettingsResponse,
    SettingsUpdateRequest,
    StopRequest,
    StopResponse,
    ValidatePathRequest,
    ValidatePathResponse,
    WebSource,
)
from .settings import ChatSettings, SettingsError, load_settings, save_settings
from .web_tools import build_search_transport

log = get_logger(__name__)

app = FastAPI(title="lmchat-backend")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

_state: dict[str, Any] = {}
# Least recently used first.
_sessions: OrderedDict[str, Conversation] = OrderedDict()


def _settings() -> ChatSettings:
    settings = _state.get("settings")
    if settings is None:
        settings = ChatSettings()
        _state["settings"] = settings
    return settings


def _web_client() -> httpx.AsyncClient:
    client = _state.get("web_client")
    if client is None:
        client = httpx.AsyncClient(timeout=httpx.Timeout(15.0), follow_redirects=True)
        _state["web_client"] = client
    return client


@app.on_event("startup")
def _startup() -> None:
    configure_logging(LOG_LEVEL)
    try:
        _state["settings"] = load_settings(SETTINGS_PATH)
    except SettingsError as e:
        log.error("%s; using defaults", e)
        _state["settings"] = ChatSettings()


@app.on_event("shutdown")
async def _shutdown() -> None:
    for conv in _sessions.values():
        conv.stop()
    client = _state.pop("web_client", None)
    if client is not None:
        await client.aclose()


def _evict_sessions(keep: str) -> None:
    while len(_sessions) > max(MAX_SESSIONS, 1):
        others = [sid for sid in _sessions if sid != keep]
        idle = [sid for sid in others if not _sessions[sid].is_busy]
        sid = idle[0] if idle else others[0]
        conv = _sessions.pop(sid)
        conv.stop()
        log.info("Evicted chat session %s (%d kept)", sid, len(_sessions))


def _conversation(session_id: str | None) -> tuple[str, Conversation]:
    if session_id:
        conv = _sessions.get(session_id)
        if conv is None:
            raise HTTPException(status_code=404, detail="Session not found")
        _sessions.move_to_end(session_id)
        return session_id, conv

    client = _web_client()
    researcher = WebResearcher(build_search_transport(client), client)
    new_id = uuid.uuid4().hex
    _sessions[new_id] = Conversation(_settings(), researcher)
    _evict_sessions(keep=new_id)
    return new_id, _sessions[new_id]


def _settings_response(s: ChatSettings) -> SettingsResponse:
    return SettingsResponse(**s.to_dict())


@app.get("/health")
def health() -> dict[str, Any]:
    s = _settings()
    return {"ok": True, "server_url": s.server_url, "sessions": len(_sessions)}


@app.get("/settings", response_model=SettingsResponse)
def get_settings() -> SettingsResponse:
    return _settings_response(_settings())


@app.post("/settings", response_model=SettingsResponse)
def update_settings(req: SettingsUpdateRequest) -> SettingsResponse:
    s = _settings()
    try:
        if req.reset_server_url:
            s.reset_server_url()
        elif req.server_url is not None:
            s.set_server_url(req.server_url)
        if req.clear_server_history:
            s.clear_server_history()
        if req.search_paths is not None:
            s.search_paths = [p for p in req.search_paths if p.strip()]
        if req.file_types is not None:
            s.file_types = list(dict.fromkeys(t.strip().lower() for t in req.file_types))
        if req.last_model is not None:
            s.last_model = req.last_model or None
        save_settings(s, SETTINGS_PATH)
    except SettingsError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return _settings_response(s)


@app.get("/models", response_model=ModelsResponse)
async def models() -> ModelsResponse:
    found = await list_models(_settings().server_url)
    return ModelsResponse(data=[ModelEntry(id=m.id, object=m.object, owned_by=m.owned_by) for m in found])


@app.post("/models/test", response_model=ModelTestResponse)
async def models_test(req: ModelTestRequest) -> ModelTestResponse:
    ok = await test_model_availability(req.model, _settings().server_url)
    return ModelTestResponse(model=req.model, available=ok)


@app.post("/chat/stop", response_model=StopResponse)
def chat_stop(req: StopRequest) -> StopResponse:
    conv = _sessions.get(req.session_id)
    if conv is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return StopResponse(stopped=conv.stop())


@app.post("/chat/stream")
async def chat_stream(req: ChatRequest) -> StreamingResponse:
    session_id, conv = _conversation(req.session_id)
    model_id = (req.model or "").strip() or _settings().last_model

    def sse(event: str, data: Any) -> bytes:
        payload = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
        return f"event: {event}\ndata: {payload}\n\n".encode("utf-8")

    async def gen() -> Any:
        q: asyncio.Queue[StreamChunk] = asyncio.Queue()
        started = time.monotonic()
        yield sse("status", {"phase": "starting", "session_id": session_id})

        task = asyncio.create_task(conv.send(req.message, model_id, on_chunk=q.put_nowait))
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(q.get(), timeout=3.0)
                except asyncio.TimeoutError:
                    if task.done() and q.empty():
                        break
                    yield sse("ping", {"elapsed_s": int(time.monotonic() - started)})
                    continue
                yield sse("delta", {"content": chunk.content, "done": chunk.done})
                if chunk.done:
                    break

            result = await task
            if result.error:
                yield sse("error", {"error": result.status.value, "detail": result.error})
            yield sse(
                "final",
                ChatFinal(
                    session_id=session_id,
                    answer=result.turn.content,
                    status=result.status.value,
                    error=result.error,
                    sources=[WebSource(title=r.title, url=r.url) for r in result.sources],
                ).model_dump(),
            )
        except Exception as e:
            log.exception("Chat stream error")
            yield sse("error", {"error": "Chat stream failed", "detail": str(e)})
        finally:
            # Client went away or the generator failed: abort the turn.
            if not task.done():
                conv.stop()
                with contextlib.suppress(Exception):
                    await task

    return StreamingResponse(
        gen(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


@app.post("/api/validate-path", response_model=ValidatePathResponse)
def api_validate_path(req: ValidatePathRequest) -> ValidatePathResponse:
    ok = validate_path(req.path) if req.path else False
    log.info("Path %s validation result: %s", req.path, ok)
    return ValidatePathResponse(is_valid=ok)


@app.post("/api/search", response_model=LocalSearchResponse)
async def api_search(req: LocalSearchRequest) -> LocalSearchResponse:
    if not req.query or req.search_paths is None or req.file_types is None:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "Invalid request parameters",
                "queryPresent": bool(req.query),
                "searchPathsValid": req.search_paths is not None,
                "fileTypesValid": req.file_types is not None,
            },
        )
    log.info("Searching for %r in %d path(s)", req.query, len(req.search_paths))
    results, valid_paths = await asyncio.to_thread(search_documents, req.query, req.search_paths, req.file_types)
    return LocalSearchResponse(
        results=[
            LocalSearchHit(
                file_path=r.file_path,
                file_name=r.file_name,
                file_type=r.file_type,
                snippet=r.snippet,
                last_modified=r.last_modified,
                relevance_score=r.relevance_score,
                match_type=r.match_type,
            )
            for r in results
        ],
        search_paths=valid_paths,
    )


def run() -> None:
    import uvicorn

    uvicorn.run("lmchat.main:app", host="127.0.0.1", port=3001)
