from __future__ import annotations

import asyncio
import codecs
import contextlib
import enum
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Sequence

import httpx

from .cancellation import CancellationToken, TurnAborted
from .config import LMSTUDIO_BASE_URL, LMSTUDIO_MODEL
from .logging_utils import get_logger
from .research import ResearchResult

log = get_logger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class LMStudioError(RuntimeError):
    pass


class StreamTransportError(LMStudioError):
    pass


class StreamState(str, enum.Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass(frozen=True)
class StreamChunk:
    content: str
    done: bool


ChunkSink = Callable[[StreamChunk], None]


@dataclass(frozen=True)
class ModelInfo:
    id: str
    object: str = "model"
    owned_by: str = ""


_model_cache_lock = asyncio.Lock()
_cached_model_ids: dict[str, str] = {}


def _error_detail(e: httpx.HTTPError) -> str:
    detail = None
    if isinstance(e, httpx.HTTPStatusError):
        try:
            detail = e.response.text
        except httpx.ResponseNotRead:
            detail = None
    msg = str(e).strip() or repr(e)
    return f"{msg} {detail or ''}".strip()


async def list_models(base_url: str = LMSTUDIO_BASE_URL, client: httpx.AsyncClient | None = None) -> list[ModelInfo]:
    """Models loaded in LM Studio; an unreachable server yields an empty list."""
    try:
        async with contextlib.AsyncExitStack() as stack:
            if client is None:
                client = await stack.enter_async_context(httpx.AsyncClient(timeout=10.0))
            resp = await client.get(f"{base_url}/v1/models")
            resp.raise_for_status()
            data = resp.json()
    except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
        log.error("Error fetching models from %s: %s", base_url, e)
        return []

    out: list[ModelInfo] = []
    for m in data.get("data") or []:
        model_id = str(m.get("id") or "").strip()
        if not model_id:
            continue
        out.append(ModelInfo(id=model_id, object=str(m.get("object") or "model"), owned_by=str(m.get("owned_by") or "")))
    return out


async def get_model_id(base_url: str = LMSTUDIO_BASE_URL, client: httpx.AsyncClient | None = None) -> str:
    if LMSTUDIO_MODEL:
        return LMSTUDIO_MODEL

    if base_url in _cached_model_ids:
        return _cached_model_ids[base_url]

    async with _model_cache_lock:
        if base_url in _cached_model_ids:
            return _cached_model_ids[base_url]
        models = await list_models(base_url, client=client)
        for m in models:
            low = m.id.lower()
            if "embedding" in low or low.startswith("text-embedding"):
                continue
            _cached_model_ids[base_url] = m.id
            return m.id
    raise LMStudioError("No chat/LLM model found in LM Studio /v1/models. Load a non-embedding model, or set LMSTUDIO_MODEL.")


async def test_model_availability(
    model_id: str,
    base_url: str = LMSTUDIO_BASE_URL,
    client: httpx.AsyncClient | None = None,
    timeout_s: float = 120.0,
) -> bool:
    """Send a one-token request so LM Studio loads the model; True on HTTP 200."""
    payload = {
        "model": model_id,
        "messages": [{"role": "user", "content": "test"}],
        "stream": False,
        "max_tokens": 1,
    }
    try:
        async with contextlib.AsyncExitStack() as stack:
            if client is None:
                client = await stack.enter_async_context(httpx.AsyncClient(timeout=httpx.Timeout(timeout_s)))
            resp = await client.post(f"{base_url}/v1/chat/completions", json=payload)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        log.error("Error testing model %s: %s", model_id, e)
        return False
    return resp.status_code == 200


class SSEDecoder:
    """Incremental line splitter for ``data:`` event streams.

    Bytes may split anywhere, including inside a UTF-8 sequence; the trailing
    partial line is held until the next ``feed``.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    @staticmethod
    def _payload(line: str) -> str | None:
        s = line.strip()
        if not s.startswith(DATA_PREFIX):
            return None
        data = s[len(DATA_PREFIX) :].strip()
        return data or None

    def _payloads(self, lines: list[str]) -> list[str]:
        return [p for p in (self._payload(line) for line in lines) if p is not None]

    def feed(self, data: bytes) -> list[str]:
        self._buffer += self._decoder.decode(data)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._payloads(lines)

    def flush(self) -> list[str]:
        self._buffer += self._decoder.decode(b"", final=True)
        lines = self._buffer.split("\n")
        self._buffer = ""
        return self._payloads(lines)


def apply_frame(payload: str, text: str) -> str:
    try:
        data = json.loads(payload)
        content = data["choices"][0]["delta"]["content"]
    except (ValueError, KeyError, IndexError, TypeError):
        return text
    if not isinstance(content, str) or not content:
        return text
    return text + content


def format_sources(results: Sequence[ResearchResult]) -> str:
    lines = [f"- [{r.title}]({r.url})\n" for r in results]
    return "\n\n## Sources\n" + "".join(lines)


def chat_payload(
    messages: list[dict[str, Any]],
    model: str,
    *,
    temperature: float = 0.3,
    max_tokens: int = 2000,
    top_p: float = 1,
) -> dict[str, Any]:
    return {
        "model": model,
        "messages": messages,
        "stream": True,
        "temperature": temperature,
        "max_tokens": max_tokens,
        "presence_penalty": 0.0,
        "frequency_penalty": 0.0,
        "top_p": top_p,
    }


async def _next_chunk(chunks: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


class StreamConsumer:
    """Drives one streamed completion and reports ``StreamChunk`` notifications to ``on_chunk``.

    Exactly one ``done=True`` chunk is delivered unless the stream fails, in
    which case ``StreamTransportError`` is raised and ``text`` keeps whatever was
    received.
    """

    def __init__(
        self,
        on_chunk: ChunkSink,
        token: CancellationToken,
        results: Sequence[ResearchResult] = (),
    ) -> None:
        self.on_chunk = on_chunk
        self.token = token
        self.results = list(results)
        self.state = StreamState.IDLE
        self.text = ""
        self._decoder = SSEDecoder()
        self._finished = False

    def _emit(self, done: bool) -> None:
        if self._finished:
            return
        if done:
            self._finished = True
        self.on_chunk(StreamChunk(content=self.text, done=done))

    def _process(self, payloads: list[str]) -> None:
        for payload in payloads:
            if self.token.is_aborted:
                return
            if payload == DONE_SENTINEL:
                break
            updated = apply_frame(payload, self.text)
            if updated != self.text:
                self.text = updated
                self._emit(done=False)

    def _abort(self) -> str:
        self.state = StreamState.ABORTED
        log.info("Stream aborted after %d chars", len(self.text))
        self._emit(done=True)
        return self.text

    async def run(self, client: httpx.AsyncClient, url: str, payload: dict[str, Any]) -> str:
        if self.state is not StreamState.IDLE:
            raise LMStudioError("StreamConsumer instances are single-use")

        self.state = StreamState.REQUESTING
        try:
            request = client.build_request("POST", url, json=payload)
            resp = await self.token.race(client.send(request, stream=True))
        except TurnAborted:
            return self._abort()
        except httpx.TimeoutException as e:
            self.state = StreamState.FAILED
            raise StreamTransportError(f"LM Studio request timed out ({type(e).__name__}).") from e
        except httpx.HTTPError as e:
            self.state = StreamState.FAILED
            raise StreamTransportError(f"LM Studio request failed ({type(e).__name__}): {_error_detail(e)}") from e
        except httpx.InvalidURL as e:
            self.state = StreamState.FAILED
            raise StreamTransportError(f"Invalid LM Studio URL {url}: {e}") from e

        chunks = resp.aiter_bytes()
        try:
            if resp.status_code < 200 or resp.status_code >= 300:
                self.state = StreamState.FAILED
                body = await resp.aread()
                detail = body.decode("utf-8", errors="replace").strip()[:400]
                raise StreamTransportError(
                    f"LM Studio request failed ({resp.status_code} {resp.reason_phrase}): {detail}".strip()
                )

            self.state = StreamState.STREAMING
            while True:
                try:
                    data = await self.token.race(_next_chunk(chunks))
                except TurnAborted:
                    return self._abort()
                except httpx.HTTPError as e:
                    self.state = StreamState.FAILED
                    raise StreamTransportError(f"LM Studio stream failed ({type(e).__name__}): {e}") from e
                if self.token.is_aborted:
                    return self._abort()
                if data is None:
                    break
                self._process(self._decoder.feed(data))
                if self.token.is_aborted:
                    return self._abort()

            self._process(self._decoder.flush())
            if self.token.is_aborted:
                return self._abort()
            if self.results:
                self.text += format_sources(self.results)
                self._emit(done=False)
            self.state = StreamState.COMPLETED
            self.token.complete()
            self._emit(done=True)
            return self.text
        finally:
            with contextlib.suppress(Exception):
                await chunks.aclose()
            await resp.aclose()


async def stream_chat(
    messages: list[dict[str, Any]],
    *,
    on_chunk: ChunkSink,
    token: CancellationToken,
    model: str | None = None,
    results: Sequence[ResearchResult] = (),
    base_url: str = LMSTUDIO_BASE_URL,
    client: httpx.AsyncClient | None = None,
    temperature: float = 0.3,
    max_tokens: int = 2000,
    top_p: float = 1,
    timeout_s: float = 120.0,
) -> str:
    consumer = StreamConsumer(on_chunk, token, results)

    # For streaming, read timeout is per-chunk; keep it generous.
    timeout = httpx.Timeout(timeout_s, connect=10.0, read=timeout_s, write=10.0, pool=10.0)
    async with contextlib.AsyncExitStack() as stack:
        if client is None:
            client = await stack.enter_async_context(httpx.AsyncClient(timeout=timeout))
        model_id = str(model).strip() if isinstance(model, str) and model.strip() else None
        if not model_id:
            model_id = await get_model_id(base_url, client=client)
        payload = chat_payload(messages, model_id, temperature=temperature, max_tokens=max_tokens, top_p=top_p)
        log.info("Streaming completion from %s (%s)", base_url, model_id)
        return await consumer.run(client, f"{base_url}/v1/chat/completions", payload)
