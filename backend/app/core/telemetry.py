"""
Post-stream recording of a completed turn.

TurnRecorder runs on the BackgroundRunner after the client already has its
answer. Steps run in causal order and each one is isolated: a failed
telemetry insert never prevents the transcript from being written.

    message_sent → memory_search → provider_call
    → memory-service append + memory_upsert → cache write-back
    → transcript rows (user, memory snapshot, assistant)
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from loguru import logger
from pydantic import BaseModel

from app.core.errors import ProviderError
from app.core.memory import MemoryContextResolver
from app.core.prompt import PromptPlan
from app.core.provider import ProviderMetrics
from app.db.stores import TelemetryStore, TranscriptStore
from app.db.zep import ZepClient
from app.models.chat import ContextMode, TranscriptMessage
from app.models.memory import MemoryLookup
from app.models.telemetry import (
    ErrorPayload,
    MemorySearchPayload,
    MemoryUpsertPayload,
    MessageSentPayload,
    ProviderCallPayload,
    TelemetryEvent,
    TelemetryEventType,
)
from app.models.usage import ModelResolution, UsageCalculation


@dataclass
class TurnRecord:
    """Everything the recorder needs about one finished turn."""

    request_id: str
    user_id: str
    session_id: str | None
    message: str
    output: str
    resolution: ModelResolution
    usage: UsageCalculation
    metrics: ProviderMetrics
    plan: PromptPlan
    finish_reason: str
    started_at: datetime
    start_ms: int
    total_ms: int
    context_mode: ContextMode = ContextMode.BASIC
    lookup: MemoryLookup | None = None
    save_to_memory: bool = True
    finished_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def thread_id(self) -> str:
        return self.session_id or self.request_id


class TurnRecorder:
    def __init__(
        self,
        telemetry: TelemetryStore,
        transcripts: TranscriptStore,
        zep: ZepClient,
        memory: MemoryContextResolver,
        refresh_on_store: bool = False,
    ) -> None:
        self.telemetry = telemetry
        self.transcripts = transcripts
        self.zep = zep
        self.memory = memory
        self.refresh_on_store = refresh_on_store

    async def _emit(
        self,
        event_type: TelemetryEventType,
        user_id: str,
        session_id: str | None,
        payload: BaseModel,
    ) -> bool:
        try:
            await self.telemetry.insert(TelemetryEvent.build(event_type, user_id, session_id, payload))
            return True
        except Exception as e:
            logger.error("[telemetry] {} event for user {} not recorded: {}", event_type, user_id, e)
            return False

    async def record_turn(self, turn: TurnRecord) -> None:
        log = logger.bind(req_id=turn.request_id)

        await self._emit(
            "message_sent",
            turn.user_id,
            turn.session_id,
            MessageSentPayload(duration_ms=turn.total_ms, message_length=len(turn.message)),
        )

        lookup = turn.lookup
        if lookup is not None:
            await self._emit(
                "memory_search",
                turn.user_id,
                turn.session_id,
                MemorySearchPayload(
                    memory_ms=lookup.elapsed_ms,
                    results_length=len(lookup.block or ""),
                    context_from_cache=lookup.source == "cache",
                    context_mode=turn.context_mode.value,
                ),
            )

        await self._emit(
            "provider_call",
            turn.user_id,
            turn.session_id,
            ProviderCallPayload(
                model=turn.resolution.model,
                requested_model=turn.resolution.requested,
                tokens_in=turn.usage.tokens_in,
                tokens_out=turn.usage.tokens_out,
                cost_usd=turn.usage.cost_display(),
                has_provider_usage=turn.usage.has_provider_usage,
                ttft_ms=turn.metrics.ttft_ms,
                provider_ms=turn.metrics.provider_ms,
                retry_count=turn.metrics.retry_count,
                finish_reason=turn.finish_reason,
                prompt_plan=turn.plan.summary(),
            ),
        )

        if turn.save_to_memory and turn.session_id and turn.output and turn.finish_reason == "stop":
            await self._store_in_memory(turn)

        if lookup is not None and lookup.cache_miss and lookup.block and not turn.context_mode.is_query_driven:
            try:
                await self.memory.write_back(turn.user_id, turn.session_id, lookup.block, turn.context_mode)
            except Exception as e:
                log.error("[telemetry] memory cache write-back failed for user {}: {}", turn.user_id, e)

        try:
            await self.transcripts.insert_many(self._transcript_rows(turn))
        except Exception as e:
            log.error("[telemetry] transcript write failed for request {}: {}", turn.request_id, e)
            return

        log.info(
            "[telemetry] recorded turn thread={} tokens={}/{} cost=${}",
            turn.thread_id,
            turn.usage.tokens_in,
            turn.usage.tokens_out,
            turn.usage.cost_display(),
        )

    async def _store_in_memory(self, turn: TurnRecord) -> None:
        started = time.monotonic()
        success = True
        try:
            await self.zep.add_turn(turn.user_id, turn.session_id, turn.message, turn.output)
        except Exception as e:
            success = False
            logger.error("[telemetry] memory service append failed for thread {}: {}", turn.session_id, e)

        await self._emit(
            "memory_upsert",
            turn.user_id,
            turn.session_id,
            MemoryUpsertPayload(memory_ms=int((time.monotonic() - started) * 1000), success=success),
        )

        if success and self.refresh_on_store and not turn.context_mode.is_query_driven:
            try:
                await self.memory.refresh(turn.user_id, turn.session_id, turn.context_mode)
            except Exception as e:
                logger.warning("[telemetry] memory cache refresh failed for user {}: {}", turn.user_id, e)

    def _transcript_rows(self, turn: TurnRecord) -> list[TranscriptMessage]:
        common = {
            "request_id": turn.request_id,
            "thread_id": turn.thread_id,
            "user_id": turn.user_id,
            "start_ms": turn.start_ms,
        }
        rows = [TranscriptMessage(role="user", content=turn.message, created_at=turn.started_at, **common)]

        if turn.lookup is not None and turn.lookup.block:
            rows.append(
                TranscriptMessage(
                    role="memory",
                    content=turn.lookup.block,
                    created_at=turn.started_at + timedelta(microseconds=1),
                    request_id=turn.request_id,
                    thread_id=turn.thread_id,
                    user_id=turn.user_id,
                    start_ms=turn.lookup.started_at_ms,
                    total_ms=turn.lookup.elapsed_ms,
                )
            )

        rows.append(
            TranscriptMessage(
                role="assistant",
                content=turn.output,
                created_at=turn.finished_at,
                ttft_ms=turn.metrics.ttft_ms,
                total_ms=turn.total_ms,
                tokens_in=turn.usage.tokens_in,
                tokens_out=turn.usage.tokens_out,
                price=turn.usage.cost_for_storage(),
                model=turn.resolution.model,
                prompt=turn.plan.as_payload(),
                **common,
            )
        )
        return rows

    async def record_error(
        self,
        request_id: str,
        user_id: str,
        session_id: str | None,
        error: BaseException,
        model: str | None = None,
    ) -> None:
        if isinstance(error, ProviderError):
            detail, status_code = error.to_payload(), error.status_code
        else:
            detail, status_code = {"message": str(error), "kind": error.__class__.__name__}, None
        await self._emit(
            "error",
            user_id,
            session_id,
            ErrorPayload(error=detail, model=model, request_id=request_id, status_code=status_code),
        )
