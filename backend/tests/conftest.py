"""Shared fixtures: in-memory stores, a fake memory service and provider wiring."""

import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from app.config import Settings
from app.core.background import BackgroundRunner
from app.core.memory import MemoryContextResolver
from app.core.pipeline import ChatServices
from app.core.prompt import PromptAssembler, PromptBudget
from app.core.provider import OpenAIProvider
from app.core.registry import ModelRegistry
from app.core.telemetry import TurnRecorder
from app.core.usage import UsageCalculator
from app.models.chat import MessageOut
from app.models.memory import MemoryContextRecord
from app.models.usage import PricingRecord


# ── Helpers ─────────────────────────────────────────────────────────────────────

def sse_body(tokens: list[str], usage: dict | None = None, finish_reason: str = "stop") -> bytes:
    """An OpenAI-style streamed completion body."""
    lines = []
    for token in tokens:
        lines.append({"choices": [{"index": 0, "delta": {"content": token}, "finish_reason": None}]})
    lines.append({"choices": [{"index": 0, "delta": {}, "finish_reason": finish_reason}]})
    if usage is not None:
        lines.append({"choices": [], "usage": usage})
    return "".join(f"data: {json.dumps(line)}\n\n" for line in lines).encode() + b"data: [DONE]\n\n"


def parse_sse(raw: str) -> list[tuple[str, object]]:
    """Split SSE text into (event, data) pairs. Comments come back as ('comment', text)."""
    events = []
    for block in raw.split("\n\n"):
        if not block.strip():
            continue
        if block.startswith(":"):
            events.append(("comment", block[1:].strip()))
            continue
        event_type, data = "message", None
        for line in block.split("\n"):
            if line.startswith("event: "):
                event_type = line[len("event: "):]
            elif line.startswith("data: "):
                payload = line[len("data: "):]
                data = payload if payload == "[DONE]" else json.loads(payload)
        events.append((event_type, data))
    return events


async def collect(frames) -> str:
    return "".join([frame async for frame in frames])


async def no_sleep(_delay: float) -> None:
    await asyncio.sleep(0)


# ── Fakes ───────────────────────────────────────────────────────────────────────

class FakeContextStore:
    def __init__(self) -> None:
        self.rows: dict[str, MemoryContextRecord] = {}
        self.upserts: list[str] = []

    async def find(self, user_id):
        await asyncio.sleep(0)
        return self.rows.get(user_id)

    async def get_or_create(self, user_id):
        await asyncio.sleep(0)
        # Check-and-insert with no await in between, like ON CONFLICT DO NOTHING
        if user_id in self.rows:
            return self.rows[user_id], False
        record = MemoryContextRecord(user_id=user_id)
        self.rows[user_id] = record
        return record, True

    async def upsert(self, user_id, context_block, parameters, session_id=None):
        await asyncio.sleep(0)
        existing = self.rows.get(user_id)
        version = existing.version + 1 if existing else 1
        self.rows[user_id] = MemoryContextRecord(
            user_id=user_id,
            context_block=context_block,
            parameters=parameters,
            version=version,
            last_session_id=session_id,
        )
        self.upserts.append(user_id)
        return version


class FakeTranscriptStore:
    def __init__(self, history: list[dict] | None = None) -> None:
        self.rows = []
        self.history = history or []
        self.fail_recent = False

    async def insert_many(self, messages):
        seen = {(r.request_id, r.role) for r in self.rows}
        self.rows.extend(m for m in messages if (m.request_id, m.role) not in seen)

    async def recent(self, thread_id, user_id, limit):
        if self.fail_recent:
            raise RuntimeError("database unavailable")
        return self.history[-limit:]

    async def list_for_thread(self, thread_id, user_id):
        return [
            MessageOut(
                thread_id=r.thread_id,
                role=r.role,
                content=r.content,
                model=r.model,
                ttft_ms=r.ttft_ms,
                total_ms=r.total_ms,
                tokens_in=r.tokens_in,
                tokens_out=r.tokens_out,
                price=r.price,
                created_at=r.created_at,
            )
            for r in self.rows
            if r.thread_id == thread_id and r.user_id == user_id
        ]


class FakeTelemetryStore:
    def __init__(self) -> None:
        self.events = []

    @property
    def types(self) -> list[str]:
        return [e.type for e in self.events]

    async def insert(self, event):
        self.events.append(event)


class FakePricingStore:
    def __init__(self, records: list[PricingRecord] | None = None) -> None:
        self.records = records if records is not None else default_pricing_rows()
        self.calls = 0
        self.fail = False

    async def all(self):
        self.calls += 1
        if self.fail:
            raise RuntimeError("pricing table unreachable")
        return list(self.records)


class FakeZep:
    def __init__(self) -> None:
        self.blocks: dict[str, str] = {}
        self.search_hits: dict[str, list[dict]] = {}
        self.context_calls: list[tuple[str, str]] = []
        self.search_calls: list[dict] = []
        self.turns: list[tuple[str, str, str, str]] = []
        self.fail = False

    async def get_context_block(self, thread_id, mode="basic"):
        self.context_calls.append((thread_id, mode))
        if self.fail:
            raise httpx.ConnectError("memory service down")
        return self.blocks.get(thread_id)

    async def graph_search(self, user_id, query, scope, limit=10, reranker=None, search_filters=None):
        self.search_calls.append({"user_id": user_id, "query": query, "scope": scope, "limit": limit})
        if self.fail:
            raise httpx.ConnectError("memory service down")
        return self.search_hits.get(scope, [])

    async def add_turn(self, user_id, thread_id, user_message, assistant_message):
        self.turns.append((user_id, thread_id, user_message, assistant_message))

    async def ping(self):
        return not self.fail

    async def aclose(self):
        pass


def default_pricing_rows() -> list[PricingRecord]:
    return [
        PricingRecord(model="gpt-4o-mini", input_per_mtok=Decimal("0.15"), output_per_mtok=Decimal("0.60")),
        PricingRecord(
            model="gpt-4o",
            input_per_mtok=Decimal("2.50"),
            output_per_mtok=Decimal("10.00"),
            cached_input_per_mtok=Decimal("1.25"),
        ),
    ]


# ── Fixtures ────────────────────────────────────────────────────────────────────

@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        openai_api_key="sk-test",
        openai_base_url="https://provider.test/v1",
        zep_api_key="zep-test",
        provider_connect_timeout_s=0.5,
        provider_timeout_s=2.0,
        provider_max_attempts=3,
        provider_retry_base_delay_s=0.0,
        provider_retry_jitter_s=0.0,
        sse_heartbeat_s=0,
    )


@pytest.fixture
def context_store() -> FakeContextStore:
    return FakeContextStore()


@pytest.fixture
def transcripts() -> FakeTranscriptStore:
    return FakeTranscriptStore()


@pytest.fixture
def telemetry_store() -> FakeTelemetryStore:
    return FakeTelemetryStore()


@pytest.fixture
def pricing_store() -> FakePricingStore:
    return FakePricingStore()


@pytest.fixture
def zep() -> FakeZep:
    return FakeZep()


@pytest.fixture
def provider_calls() -> list[dict]:
    return []


@pytest.fixture
def provider_responses() -> list:
    """(status, body) pairs or exceptions served in order; the last one repeats."""
    return [(200, sse_body(["Hello", " there", "!"]))]


@pytest.fixture
def provider(settings, provider_calls, provider_responses) -> OpenAIProvider:
    def handler(request: httpx.Request) -> httpx.Response:
        provider_calls.append(json.loads(request.content))
        index = min(len(provider_calls), len(provider_responses)) - 1
        response = provider_responses[index]
        if isinstance(response, Exception):
            raise response
        status, body = response
        return httpx.Response(status, content=body)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAIProvider(settings, client=client, sleep=no_sleep)


@pytest.fixture
def services(settings, context_store, transcripts, telemetry_store, pricing_store, zep, provider) -> ChatServices:
    registry = ModelRegistry(pricing_store, settings.default_model, settings.pricing_cache_ttl_s)
    memory = MemoryContextResolver(zep, context_store)
    return ChatServices(
        settings=settings,
        registry=registry,
        memory=memory,
        assembler=PromptAssembler(PromptBudget.from_settings(settings)),
        provider=provider,
        usage=UsageCalculator(registry),
        transcripts=transcripts,
        recorder=TurnRecorder(telemetry_store, transcripts, zep, memory),
        background=BackgroundRunner(),
    )
