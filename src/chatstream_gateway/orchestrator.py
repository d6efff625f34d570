from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from contextlib import aclosing
from enum import Enum

import structlog

from .adapters import ProviderAdapter
from .contracts import (
    ChatTurnMessage,
    ContentPart,
    GroundingMetadata,
    GroundingSource,
    NormalizedChunk,
    ProviderRequest,
    TextPart,
)
from .credentials import CredentialResolver
from .errors import (
    AuthenticationError,
    ConfigurationError,
    CredentialMissingError,
    ProviderError,
    RequestTimeoutError,
    UserResolutionError,
    classify_error,
)
from .files import FilePreprocessor
from .metrics import TokenMeter, requests_total, stream_errors_total, time_to_first_token_seconds
from .routing import ProviderKind, ProviderTarget, select_provider
from .schemas import ChatMessage, CompletionRequest
from .search import WebSearchService, enhanced_prompt, to_grounding
from .stores import UserRecord, UserStore
from .wire import WireEncoder, error_frame

log = structlog.get_logger()


class RequestPhase(str, Enum):
    AUTHENTICATING = "authenticating"
    RESOLVING_USER = "resolving_user"
    RESOLVING_CREDENTIAL = "resolving_credential"
    PREPROCESSING_FILES = "preprocessing_files"
    DISPATCHING = "dispatching"
    STREAMING = "streaming"
    DONE = "done"
    ERROR = "error"


def build_messages(messages: Sequence[ChatMessage], parts: Sequence[ContentPart]) -> list[ChatTurnMessage]:
    """Normalize the conversation; attachment parts join the final user turn."""
    out: list[ChatTurnMessage] = []
    last = len(messages) - 1
    for i, m in enumerate(messages):
        if i == last and m.role == "user" and parts:
            content: list[ContentPart] = []
            if m.content.strip():
                content.append(TextPart(text=m.content))
            content.extend(parts)
            out.append(ChatTurnMessage(role=m.role, content=content))
        else:
            out.append(ChatTurnMessage(role=m.role, content=m.content))
    return out


def _replace_user_text(message: ChatTurnMessage, text: str) -> ChatTurnMessage:
    if isinstance(message.content, str):
        return ChatTurnMessage(role=message.role, content=text)
    parts = list(message.content)
    if parts and isinstance(parts[0], TextPart):
        parts = parts[1:]
    return ChatTurnMessage(role=message.role, content=[TextPart(text=text), *parts])


class ChatOrchestrator:
    """Runs one chat turn from caller identity to the last wire frame."""

    def __init__(
        self,
        *,
        users: UserStore,
        credentials: CredentialResolver | None,
        files: FilePreprocessor,
        adapters: Mapping[ProviderKind, ProviderAdapter],
        search: WebSearchService | None = None,
        default_temperature: float | None = 0.7,
        max_output_tokens: int | None = None,
        stream_idle_timeout_seconds: float = 0,
        stream_total_timeout_seconds: float = 0,
        clock: Callable[[], float] | None = None,
    ):
        self.users = users
        self.credentials = credentials
        self.files = files
        self.adapters = adapters
        self.search = search
        self.default_temperature = default_temperature
        self.max_output_tokens = max_output_tokens
        self.stream_idle_timeout_seconds = max(0.0, float(stream_idle_timeout_seconds or 0))
        self.stream_total_timeout_seconds = max(0.0, float(stream_total_timeout_seconds or 0))
        self.clock: Callable[[], float] = clock or time.monotonic

    async def begin(self, auth_id: str | None, request: CompletionRequest) -> ChatTurn:
        """Authenticate and resolve the user. Raises before any response is started."""
        turn = ChatTurn(self, request)
        if not auth_id:
            turn.phase = RequestPhase.ERROR
            raise AuthenticationError("Missing or invalid authentication token.")

        turn.phase = RequestPhase.RESOLVING_USER
        try:
            user = await self.users.get_by_auth_id(auth_id)
            if user is None:
                user = await self.users.create(auth_id)
                log.info("user_created", auth_id=auth_id, user_id=user.id)
        except Exception as e:
            turn.phase = RequestPhase.ERROR
            log.error("user_resolution_failed", auth_id=auth_id, error=type(e).__name__)
            raise UserResolutionError("Failed to get or create user.") from e
        if user is None:
            turn.phase = RequestPhase.ERROR
            raise UserResolutionError("Failed to get or create user.")
        turn.user = user
        return turn


class ChatTurn:
    def __init__(self, orchestrator: ChatOrchestrator, request: CompletionRequest):
        self._o = orchestrator
        self.request = request
        self.target: ProviderTarget = select_provider(request.model)
        self.phase = RequestPhase.AUTHENTICATING
        self.user: UserRecord | None = None
        self.encoder: WireEncoder | None = None
        self.meter: TokenMeter | None = None

    @property
    def provider(self) -> str:
        return self.target.provider.value

    async def frames(self) -> AsyncIterator[str]:
        """Wire frames for this turn. Every failure ends in exactly one error frame."""
        if self.user is None:
            raise RuntimeError("ChatTurn.frames() called before ChatOrchestrator.begin() succeeded.")
        started = self._o.clock()
        log.info(
            "request_started",
            model=self.request.model,
            provider=self.provider,
            messages=len(self.request.messages),
            files=len(self.request.files),
            thread_id=self.request.thread_id,
        )
        try:
            async with aclosing(self._run(started)) as frames:
                async for frame in frames:
                    yield frame
            self.phase = RequestPhase.DONE
            requests_total.labels(provider=self.provider, status="success").inc()
        except (asyncio.CancelledError, GeneratorExit):
            log.info("client_disconnected", provider=self.provider, phase=self.phase.value)
            self.phase = RequestPhase.ERROR
            requests_total.labels(provider=self.provider, status="cancelled").inc()
            raise
        except Exception as e:
            failed_in = self.phase
            self.phase = RequestPhase.ERROR
            error_type, message = classify_error(e)
            requests_total.labels(provider=self.provider, status="error").inc()
            stream_errors_total.labels(type=error_type).inc()
            if isinstance(e, ProviderError):
                log.warning(
                    "stream_failed",
                    provider=self.provider,
                    phase=failed_in.value,
                    error_type=error_type,
                    error=str(e),
                    status_code=e.status_code,
                    body=(e.body or "")[:500],
                )
            elif error_type == "unknown":
                log.exception("stream_failed", provider=self.provider, phase=failed_in.value, error_type=error_type)
            else:
                log.warning("stream_failed", provider=self.provider, phase=failed_in.value, error_type=error_type, error=str(e))
            yield error_frame(message)

    async def _run(self, started: float) -> AsyncIterator[str]:
        o = self._o
        assert self.user is not None

        self.phase = RequestPhase.RESOLVING_CREDENTIAL
        if o.credentials is None:
            raise ConfigurationError("Credential decryption key is not configured.")
        api_key = await o.credentials.resolve(self.user.id, self.provider)
        if api_key is None:
            raise CredentialMissingError(self.provider)
        log.info("credential_resolved", provider=self.provider)

        adapter = o.adapters[self.target.provider]

        self.phase = RequestPhase.PREPROCESSING_FILES
        parts = await o.files.process(self.request.files)
        messages = build_messages(self.request.messages, parts)

        grounding: GroundingMetadata | None = None
        if self.request.search_grounding and not adapter.supports_grounding and o.search is not None:
            messages, grounding = await self._web_ground(messages)

        self.phase = RequestPhase.DISPATCHING
        provider_request = ProviderRequest(
            model=self.target.model_id,
            messages=messages,
            grounding=self.request.search_grounding and adapter.supports_grounding,
            temperature=o.default_temperature,
            max_output_tokens=o.max_output_tokens,
        )
        log.info("provider_stream_started", provider=self.provider, model=self.target.model_id, parts=len(parts))

        self.meter = TokenMeter(self.provider, clock=o.clock)
        self.encoder = WireEncoder()
        self.encoder.grounding = grounding

        self.phase = RequestPhase.STREAMING
        async with aclosing(adapter.stream_response(provider_request, api_key)) as upstream, aclosing(
            self._observe(upstream)
        ) as observed, aclosing(self._with_deadlines(observed)) as timed, aclosing(
            self.encoder.frames(timed)
        ) as frames:
            async for frame in frames:
                yield frame

        self.meter.finish()
        log.info(
            "stream_completed",
            provider=self.provider,
            chunks=self.encoder.content_chunks,
            characters=self.encoder.length,
            completed=self.encoder.completed,
            grounded=self.encoder.grounding is not None,
            total_ms=int((o.clock() - started) * 1000),
        )

    async def _web_ground(
        self, messages: list[ChatTurnMessage]
    ) -> tuple[list[ChatTurnMessage], GroundingMetadata | None]:
        o = self._o
        assert o.search is not None
        idx = next((i for i in range(len(messages) - 1, -1, -1) if messages[i].role == "user"), None)
        if idx is None:
            return messages, None
        question = self.request.messages[idx].content
        if not question.strip():
            return messages, None
        try:
            sources: list[GroundingSource] = await o.search.search(question)
        except Exception as e:
            log.warning("web_search_failed", provider=self.provider, error=str(e))
            return messages, None
        if not sources:
            return messages, None
        log.info("web_search_grounding", provider=self.provider, sources=len(sources))
        updated = list(messages)
        updated[idx] = _replace_user_text(messages[idx], enhanced_prompt(question, sources))
        return updated, to_grounding(sources)

    async def _observe(self, chunks: AsyncIterator[NormalizedChunk]) -> AsyncIterator[NormalizedChunk]:
        assert self.meter is not None
        dispatched = self._o.clock()
        first_seen = False
        async for chunk in chunks:
            if chunk.token_usage is not None:
                self.meter.update(chunk.token_usage)
            if chunk.content and not first_seen:
                first_seen = True
                ttft = max(0.0, self._o.clock() - dispatched)
                time_to_first_token_seconds.labels(provider=self.provider).observe(ttft)
                log.info("first_chunk", provider=self.provider, ttft_ms=int(ttft * 1000))
            yield chunk

    async def _with_deadlines(self, chunks: AsyncIterator[NormalizedChunk]) -> AsyncIterator[NormalizedChunk]:
        """Idle and total deadlines around chunk reads.

        A deadline cancels the pending read inside the upstream generator,
        which closes the upstream response the same way a client disconnect does.
        """
        idle = self._o.stream_idle_timeout_seconds
        total = self._o.stream_total_timeout_seconds
        loop = asyncio.get_running_loop()
        started = loop.time()
        it = chunks.__aiter__()
        while True:
            timeout: float | None = idle if idle > 0 else None
            if total > 0:
                remaining = total - (loop.time() - started)
                if remaining <= 0:
                    raise RequestTimeoutError("Streaming request timed out.")
                timeout = remaining if timeout is None else min(timeout, remaining)
            try:
                async with asyncio.timeout(timeout):
                    chunk = await anext(it)
            except StopAsyncIteration:
                return
            except TimeoutError as e:
                raise RequestTimeoutError("Streaming request timed out.") from e
            yield chunk
