from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Callable, Literal

import httpx

from .cancellation import CancellationToken, TurnAborted, TurnGuard
from .classifier import classify
from .lmstudio import ChunkSink, LMStudioError, StreamChunk, stream_chat
from .logging_utils import get_logger
from .prompting import build_messages, compose
from .research import ResearchError, ResearchResult, WebResearcher
from .settings import ChatSettings

log = get_logger(__name__)

MODEL_ERROR_MESSAGE = "Sorry, an error occurred while processing your message."


def research_error_message(detail: str) -> str:
    detail = str(detail or "").strip().rstrip(".") or "Unknown error"
    return f"Sorry, I encountered an error while searching: {detail}. Please try again later."


@dataclass
class ChatTurn:
    role: Literal["user", "assistant"]
    content: str
    model_id: str | None = None
    is_streaming: bool = False


class TurnStatus(str, enum.Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"
    RESEARCH_FAILED = "research_failed"
    MODEL_FAILED = "model_failed"


@dataclass
class TurnResult:
    turn: ChatTurn
    status: TurnStatus
    error: str | None = None
    sources: list[ResearchResult] = field(default_factory=list)


class Conversation:
    """One chat session: the turn list plus at most one in-flight model stream."""

    def __init__(
        self,
        settings: ChatSettings,
        researcher: WebResearcher,
        *,
        client: httpx.AsyncClient | None = None,
        temperature: float = 0.3,
        max_tokens: int = 2000,
    ) -> None:
        self.settings = settings
        self.researcher = researcher
        self.client = client
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.turns: list[ChatTurn] = []
        self._guard = TurnGuard()

    @property
    def is_busy(self) -> bool:
        token = self._guard.current
        return token is not None and token.is_active

    def stop(self) -> bool:
        return self._guard.stop()

    async def send(self, text: str, model_id: str | None = None, on_chunk: ChunkSink | None = None) -> TurnResult:
        token = self._guard.start()
        user_turn = ChatTurn(role="user", content=text)
        assistant = ChatTurn(role="assistant", content="", model_id=model_id, is_streaming=True)
        self.turns.extend([user_turn, assistant])

        def relay(chunk: StreamChunk) -> None:
            if not assistant.is_streaming:
                return
            assistant.content = chunk.content
            assistant.is_streaming = not chunk.done
            if on_chunk is not None:
                on_chunk(chunk)

        def finish(content: str) -> None:
            relay(StreamChunk(content=content, done=True))

        try:
            return await self._run_turn(text, model_id, token, assistant, relay, finish)
        finally:
            self._guard.release(token)

    async def _run_turn(
        self,
        text: str,
        model_id: str | None,
        token: CancellationToken,
        assistant: ChatTurn,
        relay: ChunkSink,
        finish: Callable[[str], None],
    ) -> TurnResult:
        classification = classify(text)
        results: list[ResearchResult] = []

        if classification.wants_research:
            try:
                results = await token.race(self.researcher.research(classification))
            except TurnAborted:
                log.info("Turn aborted during web research")
                finish(assistant.content)
                return TurnResult(turn=assistant, status=TurnStatus.ABORTED)
            except ResearchError as e:
                log.error("Web research failed: %s", e)
                finish(research_error_message(str(e)))
                return TurnResult(turn=assistant, status=TurnStatus.RESEARCH_FAILED, error=str(e))

        prompt = compose(classification, results)
        try:
            await stream_chat(
                build_messages(prompt),
                on_chunk=relay,
                token=token,
                model=model_id,
                results=results,
                base_url=self.settings.server_url,
                client=self.client,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except LMStudioError as e:
            log.exception("Model request failed")
            finish(assistant.content or MODEL_ERROR_MESSAGE)
            return TurnResult(turn=assistant, status=TurnStatus.MODEL_FAILED, error=str(e), sources=results)

        status = TurnStatus.ABORTED if token.is_aborted else TurnStatus.COMPLETED
        return TurnResult(turn=assistant, status=status, sources=results)
