"""
Memory context: get a recalled-context block for a user before prompting.

basic / summarized  → cache-first. One row per user in memory_context; a
                      hit costs zero calls to the memory service. A miss does
                      one live fetch and the row is filled after the stream.
*_search            → live graph search with the user's message as query.
                      Never cached; the answer depends on the query.

Nothing in here may fail a chat request. Every error degrades to "no context".
"""

import time

from loguru import logger

from app.db.stores import MemoryContextStore
from app.db.zep import ZepClient
from app.models.chat import ContextMode, GraphSearchParams
from app.models.memory import MemoryCandidate, MemoryLookup


def _now_ms() -> int:
    return int(time.time() * 1000)


def _format_graph_result(scope: str, hit: dict) -> MemoryCandidate | None:
    if scope == "edges":
        text = hit.get("fact")
    elif scope == "nodes":
        name, summary = hit.get("name"), hit.get("summary")
        text = f"{name}: {summary}" if name and summary else (summary or name)
    else:
        text = hit.get("content")
    if not text:
        return None
    return MemoryCandidate(text=text, score=float(hit.get("score") or 0.0), source_type=scope.rstrip("s"))


def format_context_block(candidates: list[MemoryCandidate]) -> str:
    return "\n".join(f"- {c.text}" for c in candidates)


class MemoryContextResolver:
    def __init__(self, zep: ZepClient, store: MemoryContextStore) -> None:
        self.zep = zep
        self.store = store

    async def resolve(
        self,
        user_id: str,
        session_id: str | None,
        query: str,
        mode: ContextMode,
        params: GraphSearchParams | None = None,
        persist_row: bool = True,
    ) -> MemoryLookup:
        """
        persist_row=False (testing mode) reads the cache without creating a row.
        """
        started = time.monotonic()
        started_at_ms = _now_ms()
        try:
            if mode.is_query_driven:
                lookup = await self._search(user_id, query, mode, params or GraphSearchParams())
            else:
                lookup = await self._cached_block(user_id, session_id, mode, persist_row)
        except Exception as e:
            logger.warning("[memory] lookup failed for user {}, continuing without context: {}", user_id, e)
            lookup = MemoryLookup.empty()

        lookup.elapsed_ms = int((time.monotonic() - started) * 1000)
        lookup.started_at_ms = started_at_ms
        logger.debug(
            "[memory] user={} mode={} source={} chars={} in {}ms",
            user_id,
            mode.value,
            lookup.source,
            len(lookup.block or ""),
            lookup.elapsed_ms,
        )
        return lookup

    async def _cached_block(
        self,
        user_id: str,
        session_id: str | None,
        mode: ContextMode,
        persist_row: bool,
    ) -> MemoryLookup:
        try:
            if persist_row:
                record, created = await self.store.get_or_create(user_id)
            else:
                record = await self.store.find(user_id)
                created = record is None
        except Exception as e:
            logger.warning("[memory] cache lookup failed for user {}: {}", user_id, e)
            record, created = None, True

        if record is not None and not created and record.has_content:
            logger.info("[memory] cache hit for user {} (version {})", user_id, record.version)
            return MemoryLookup(
                block=record.context_block,
                candidates=[MemoryCandidate(text=record.context_block, score=1.0)],
                source="cache",
            )

        if not session_id:
            logger.info("[memory] cache miss for user {} but no session to fetch from", user_id)
            return MemoryLookup(cache_miss=True)

        block = await self.zep.get_context_block(session_id, mode.value)
        if not block:
            return MemoryLookup(source="live", cache_miss=True)
        return MemoryLookup(
            block=block,
            candidates=[MemoryCandidate(text=block, score=1.0)],
            source="live",
            cache_miss=True,
        )

    async def _search(
        self,
        user_id: str,
        query: str,
        mode: ContextMode,
        params: GraphSearchParams,
    ) -> MemoryLookup:
        scope = mode.search_scope
        scope_params = params.for_scope(scope)
        hits = await self.zep.graph_search(
            user_id,
            query,
            scope,
            limit=scope_params.limit,
            reranker=scope_params.reranker,
            search_filters=params.search_filters,
        )
        candidates = [c for c in (_format_graph_result(scope, h) for h in hits) if c]
        if not candidates:
            return MemoryLookup(source="live")
        return MemoryLookup(block=format_context_block(candidates), candidates=candidates, source="live")

    async def write_back(
        self,
        user_id: str,
        session_id: str | None,
        block: str,
        mode: ContextMode,
    ) -> int:
        """Fill the user's cache row after a miss. Returns the new version."""
        version = await self.store.upsert(user_id, block, {"mode": mode.value}, session_id)
        logger.info("[memory] cache row written for user {} (version {}, {} chars)", user_id, version, len(block))
        return version

    async def refresh(self, user_id: str, session_id: str, mode: ContextMode) -> int | None:
        """Re-fetch the block from the memory service and overwrite the cache row."""
        block = await self.zep.get_context_block(session_id, mode.value)
        if not block:
            return None
        return await self.write_back(user_id, session_id, block, mode)
