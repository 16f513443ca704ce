"""
One chat turn, end to end, streamed over an SSEStream.

    resolve model → memory lookup → history → prompt → provider stream
    → usage → usage / memory / done events → close → background recording

The orchestrator owns the event order on the wire. Everything after the
stream is closed (telemetry, transcript, memory-service writes) runs on the
BackgroundRunner so the client never waits on it.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone

from loguru import logger

from app.config import Settings
from app.core.background import BackgroundRunner
from app.core.errors import ErrorKind, ProviderError, user_facing
from app.core.memory import MemoryContextResolver
from app.core.prompt import PromptAssembler, PromptPlan
from app.core.provider import (
    OpenAIProvider,
    ProviderMetrics,
    StreamFailed,
    StreamFinished,
    TokenChunk,
    UsageReport,
)
from app.core.registry import ModelRegistry
from app.core.sse import SSEStream
from app.core.telemetry import TurnRecord, TurnRecorder
from app.core.usage import UsageCalculator
from app.db.stores import TranscriptStore
from app.models.chat import ChatRequest
from app.models.memory import MemoryLookup
from app.models.usage import ProviderUsage


@dataclass
class ChatServices:
    settings: Settings
    registry: ModelRegistry
    memory: MemoryContextResolver
    assembler: PromptAssembler
    provider: OpenAIProvider
    usage: UsageCalculator
    transcripts: TranscriptStore
    recorder: TurnRecorder
    background: BackgroundRunner


@dataclass
class _Generation:
    output: str
    finish_reason: str
    metrics: ProviderMetrics
    provider_usage: ProviderUsage | None = None
    error: ProviderError | None = None


class ChatOrchestrator:
    def __init__(self, services: ChatServices) -> None:
        self.services = services

    async def run(self, body: ChatRequest, user_id: str, request_id: str, stream: SSEStream) -> None:
        svc = self.services
        log = logger.bind(req_id=request_id)
        started = time.monotonic()
        started_at = datetime.now(timezone.utc)
        start_ms = int(time.time() * 1000)
        lookup: MemoryLookup | None = None
        model: str | None = None

        try:
            resolution = await svc.registry.resolve(body.model)
            model = resolution.model

            if body.use_memory:
                lookup = await svc.memory.resolve(
                    user_id,
                    body.session_id,
                    body.message,
                    body.context_mode,
                    body.graph_search_params,
                    persist_row=not body.testing_mode,
                )

            history = await self._history(body, user_id)
            plan = svc.assembler.assemble(
                body.system_prompt or svc.settings.default_system_prompt,
                lookup.candidates if lookup is not None and lookup.used else [],
                history,
                body.message,
            )

            if body.assistant_output is not None:
                generation = self._replay(body.assistant_output, stream)
            else:
                generation = await self._generate(plan, model, stream)

            if generation.error is not None:
                if generation.error.kind is ErrorKind.CANCELLED:
                    log.info("[chat] client went away after {} chars, nothing recorded", len(generation.output))
                    return
                self._fail(body, user_id, request_id, stream, generation.error, lookup, model)
                return

            if generation.provider_usage is not None:
                usage = await svc.usage.from_provider(generation.provider_usage, model)
            else:
                usage = await svc.usage.estimate(plan.as_text(), generation.output, model)

            stream.send_event(
                "usage",
                {
                    "tokens_in": usage.tokens_in,
                    "tokens_out": usage.tokens_out,
                    "cost_usd": usage.cost_display(),
                    "model": model,
                },
            )
            if body.return_memory:
                self._send_memory(stream, lookup)
            stream.send_event(
                "done",
                {
                    "finish_reason": generation.finish_reason,
                    "ttft_ms": generation.metrics.ttft_ms,
                    "provider_ms": generation.metrics.provider_ms,
                },
            )
            stream.close()

            total_ms = int((time.monotonic() - started) * 1000)
            log.info(
                "[chat] {} done in {}ms, {} in / {} out tokens, ${}",
                model,
                total_ms,
                usage.tokens_in,
                usage.tokens_out,
                usage.cost_display(),
            )

            if body.testing_mode:
                return
            # Provider finished cleanly, so the turn is recorded even if the client left after the last token
            svc.background.spawn(
                svc.recorder.record_turn(
                    TurnRecord(
                        request_id=request_id,
                        user_id=user_id,
                        session_id=body.session_id,
                        message=body.message,
                        output=generation.output,
                        resolution=resolution,
                        usage=usage,
                        metrics=generation.metrics,
                        plan=plan,
                        finish_reason=generation.finish_reason,
                        started_at=started_at,
                        start_ms=start_ms,
                        total_ms=total_ms,
                        context_mode=body.context_mode,
                        lookup=lookup,
                        save_to_memory=body.save_to_memory,
                    )
                ),
                name=f"record-turn-{request_id}",
            )
        except Exception as e:
            log.exception("[chat] request {} failed: {}", request_id, e)
            self._fail(body, user_id, request_id, stream, e, lookup, model)
        finally:
            stream.close()

    async def _history(self, body: ChatRequest, user_id: str) -> list[dict]:
        if not body.session_id or body.past_messages_count <= 0:
            return []
        try:
            return await self.services.transcripts.recent(
                body.session_id, user_id, body.past_messages_count * 2
            )
        except Exception as e:
            logger.warning("[chat] could not load history for {}: {}", body.session_id, e)
            return []

    def _replay(self, text: str, stream: SSEStream) -> _Generation:
        """Stream a caller-supplied answer instead of calling the provider."""
        stream.send_event("token", {"text": text})
        return _Generation(output=text, finish_reason="stop", metrics=ProviderMetrics(ttft_ms=0))

    async def _generate(self, plan: PromptPlan, model: str, stream: SSEStream) -> _Generation:
        parts: list[str] = []
        provider_usage: ProviderUsage | None = None

        async for event in self.services.provider.stream(plan.as_payload(), model, stream.cancelled):
            if isinstance(event, TokenChunk):
                parts.append(event.text)
                stream.send_event("token", {"text": event.text})
            elif isinstance(event, UsageReport):
                provider_usage = event.usage
            elif isinstance(event, StreamFinished):
                return _Generation(
                    output="".join(parts),
                    finish_reason=event.finish_reason,
                    metrics=event.metrics,
                    provider_usage=provider_usage,
                )
            elif isinstance(event, StreamFailed):
                return _Generation(
                    output="".join(parts),
                    finish_reason="error",
                    metrics=event.metrics,
                    error=event.error,
                )

        raise RuntimeError("provider stream ended without a terminal event")

    def _send_memory(self, stream: SSEStream, lookup: MemoryLookup | None) -> None:
        stream.send_event(
            "memory",
            {
                "results": lookup.block if lookup is not None and lookup.block else "",
                "memoryMs": lookup.elapsed_ms if lookup is not None else 0,
            },
        )

    def _fail(
        self,
        body: ChatRequest,
        user_id: str,
        request_id: str,
        stream: SSEStream,
        error: BaseException,
        lookup: MemoryLookup | None,
        model: str | None,
    ) -> None:
        code, message = user_facing(error)
        if body.return_memory:
            self._send_memory(stream, lookup)
        stream.send_event("error", {"message": message, "code": code})
        stream.send_event("done", {"finish_reason": "error", "ttft_ms": None, "provider_ms": None})
        stream.close()

        if not body.testing_mode:
            self.services.background.spawn(
                self.services.recorder.record_error(request_id, user_id, body.session_id, error, model),
                name=f"record-error-{request_id}",
            )
