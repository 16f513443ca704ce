"""
Table-level access for the chat pipeline.

Each store wraps one table and speaks in pydantic models. All SQL goes
through the pool helpers in app.db.postgres.
"""

import json

from app.db import postgres
from app.models.chat import MessageOut, TranscriptMessage
from app.models.memory import MemoryContextRecord
from app.models.telemetry import TelemetryEvent
from app.models.usage import PricingRecord

_CONTEXT_COLUMNS = "user_id, context_block, parameters, version, last_session_id, created_at, updated_at"


def _context_record(row) -> MemoryContextRecord:
    data = dict(row)
    params = data.get("parameters")
    if isinstance(params, str):
        data["parameters"] = json.loads(params)
    return MemoryContextRecord(**data)


class MemoryContextStore:
    async def find(self, user_id: str) -> MemoryContextRecord | None:
        row = await postgres.fetch_one(
            f"SELECT {_CONTEXT_COLUMNS} FROM memory_context WHERE user_id = $1",
            user_id,
        )
        return _context_record(row) if row else None

    async def get_or_create(self, user_id: str) -> tuple[MemoryContextRecord, bool]:
        """
        Return (record, created). created=True means the row did not exist
        before this call, so the caller must fetch live context.
        ON CONFLICT keeps creation idempotent when requests race.
        """
        row = await postgres.fetch_one(
            f"""INSERT INTO memory_context (user_id) VALUES ($1)
               ON CONFLICT (user_id) DO NOTHING
               RETURNING {_CONTEXT_COLUMNS}""",
            user_id,
        )
        if row:
            return _context_record(row), True

        row = await postgres.fetch_one(
            f"SELECT {_CONTEXT_COLUMNS} FROM memory_context WHERE user_id = $1",
            user_id,
        )
        return _context_record(row), False

    async def upsert(
        self,
        user_id: str,
        context_block: str,
        parameters: dict,
        session_id: str | None = None,
    ) -> int:
        """Write the cached block, bumping version. Last write wins."""
        row = await postgres.fetch_one(
            """INSERT INTO memory_context (user_id, context_block, parameters, last_session_id)
               VALUES ($1, $2, $3::jsonb, $4)
               ON CONFLICT (user_id) DO UPDATE SET
                   context_block   = EXCLUDED.context_block,
                   parameters      = EXCLUDED.parameters,
                   last_session_id = COALESCE(EXCLUDED.last_session_id, memory_context.last_session_id),
                   version         = memory_context.version + 1,
                   updated_at      = NOW()
               RETURNING version""",
            user_id,
            context_block,
            json.dumps(parameters),
            session_id,
        )
        return row["version"]


class TranscriptStore:
    async def insert_many(self, messages: list[TranscriptMessage]) -> None:
        if not messages:
            return
        await postgres.execute_many(
            """INSERT INTO messages (
                   request_id, thread_id, user_id, role, content, created_at,
                   start_ms, ttft_ms, total_ms, tokens_in, tokens_out, price, model, prompt
               ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14::jsonb)
               ON CONFLICT (request_id, role) DO NOTHING""",
            [
                (
                    m.request_id,
                    m.thread_id,
                    m.user_id,
                    m.role,
                    m.content,
                    m.created_at,
                    m.start_ms,
                    m.ttft_ms,
                    m.total_ms,
                    m.tokens_in,
                    m.tokens_out,
                    m.price,
                    m.model,
                    json.dumps(m.prompt) if m.prompt is not None else None,
                )
                for m in messages
            ],
        )

    async def recent(self, thread_id: str, user_id: str, limit: int) -> list[dict[str, str]]:
        """Last `limit` user/assistant rows for a thread, oldest first."""
        rows = await postgres.fetch_all(
            """SELECT role, content FROM messages
               WHERE thread_id = $1 AND user_id = $2 AND role IN ('user', 'assistant')
               ORDER BY created_at DESC
               LIMIT $3""",
            thread_id,
            user_id,
            limit,
        )
        return [{"role": r["role"], "content": r["content"]} for r in reversed(rows)]

    async def list_for_thread(self, thread_id: str, user_id: str) -> list[MessageOut]:
        rows = await postgres.fetch_all(
            """SELECT thread_id, role, content, model, ttft_ms, total_ms,
                      tokens_in, tokens_out, price, created_at
               FROM messages WHERE thread_id = $1 AND user_id = $2
               ORDER BY created_at ASC""",
            thread_id,
            user_id,
        )
        return [MessageOut(**dict(r)) for r in rows]


class PricingStore:
    async def all(self) -> list[PricingRecord]:
        rows = await postgres.fetch_all(
            """SELECT model, input_per_mtok, output_per_mtok, cached_input_per_mtok, updated_at
               FROM models_pricing ORDER BY model"""
        )
        return [PricingRecord(**dict(r)) for r in rows]


class TelemetryStore:
    async def insert(self, event: TelemetryEvent) -> None:
        await postgres.execute(
            """INSERT INTO telemetry_events (user_id, session_id, type, payload_json, created_at)
               VALUES ($1, $2, $3, $4::jsonb, $5)""",
            event.user_id,
            event.session_id,
            event.type,
            json.dumps(event.payload),
            event.created_at,
        )
