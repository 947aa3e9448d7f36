from __future__ import annotations

import asyncio
import json
from typing import AsyncIterator, Iterable

import httpx
import pytest

from lmchat.lmstudio import StreamChunk


def sse_frame(content: str) -> bytes:
    payload = {"choices": [{"delta": {"content": content}}]}
    return f"data: {json.dumps(payload)}\n\n".encode("utf-8")


def stream_client(
    chunks: Iterable[bytes],
    *,
    status_code: int = 200,
    hold_open: asyncio.Event | None = None,
    seen: list[httpx.Request] | None = None,
) -> httpx.AsyncClient:
    """An AsyncClient whose chat endpoint streams ``chunks``; ``hold_open`` keeps the stream pending."""
    body = list(chunks)

    async def content() -> AsyncIterator[bytes]:
        for c in body:
            yield c
            await asyncio.sleep(0)
        if hold_open is not None:
            await hold_open.wait()

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if status_code != 200:
            return httpx.Response(status_code, text="model not loaded")
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=content())

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class ChunkRecorder:
    def __init__(self) -> None:
        self.chunks: list[StreamChunk] = []

    def __call__(self, chunk: StreamChunk) -> None:
        self.chunks.append(chunk)

    @property
    def final(self) -> list[StreamChunk]:
        return [c for c in self.chunks if c.done]


@pytest.fixture
def recorder() -> ChunkRecorder:
    return ChunkRecorder()
