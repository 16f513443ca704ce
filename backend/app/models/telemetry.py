from pydantic import BaseModel, Field
from typing import Any, Literal
from datetime import datetime, timezone

TelemetryEventType = Literal["message_sent", "provider_call", "memory_search", "memory_upsert", "error"]


class MessageSentPayload(BaseModel):
    duration_ms: int
    message_length: int


class MemorySearchPayload(BaseModel):
    memory_ms: int
    results_length: int
    context_from_cache: bool
    context_mode: str


class ProviderCallPayload(BaseModel):
    model: str
    requested_model: str | None
    tokens_in: int
    tokens_out: int
    cost_usd: float
    has_provider_usage: bool
    ttft_ms: int | None
    provider_ms: int
    retry_count: int
    finish_reason: str
    prompt_plan: dict[str, Any] | None = None


class MemoryUpsertPayload(BaseModel):
    memory_ms: int
    success: bool


class ErrorPayload(BaseModel):
    error: dict[str, Any]
    model: str | None = None
    request_id: str | None = None
    status_code: int | None = None


PAYLOAD_SCHEMAS: dict[str, type[BaseModel]] = {
    "message_sent": MessageSentPayload,
    "provider_call": ProviderCallPayload,
    "memory_search": MemorySearchPayload,
    "memory_upsert": MemoryUpsertPayload,
    "error": ErrorPayload,
}


class TelemetryEvent(BaseModel):
    type: TelemetryEventType
    user_id: str
    session_id: str | None = None
    payload: dict[str, Any]
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def build(
        cls,
        type: TelemetryEventType,
        user_id: str,
        session_id: str | None,
        payload: BaseModel,
    ) -> "TelemetryEvent":
        expected = PAYLOAD_SCHEMAS[type]
        if not isinstance(payload, expected):
            raise TypeError(f"{type} events take {expected.__name__}, got {payload.__class__.__name__}")
        return cls(type=type, user_id=user_id, session_id=session_id, payload=payload.model_dump(mode="json"))
