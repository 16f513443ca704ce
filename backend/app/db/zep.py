"""
Thin async client for the Zep memory service REST API using httpx.
Covers only what the chat pipeline needs: thread context, graph search,
and appending a turn.
"""
import httpx
from loguru import logger
from app.config import Settings

# Zep rejects graph search queries longer than this
MAX_QUERY_CHARS = 400

CONTEXT_MODES = {"basic": "basic", "summarized": "summary"}


class ZepClient:
    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self.base = settings.zep_api_url
        self._client = client or httpx.AsyncClient(timeout=settings.zep_timeout_s)
        self._headers = {"Authorization": f"Api-Key {settings.zep_api_key}"}

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        return await self._client.request(method, f"{self.base}{path}", headers=self._headers, **kwargs)

    async def get_context_block(self, thread_id: str, mode: str = "basic") -> str | None:
        """Return the thread's user context block, or None if there is none yet."""
        resp = await self._request(
            "GET",
            f"/threads/{thread_id}/context",
            params={"mode": CONTEXT_MODES.get(mode, "basic")},
        )
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json().get("context") or None

    async def graph_search(
        self,
        user_id: str,
        query: str,
        scope: str,
        limit: int = 10,
        reranker: str | None = None,
        search_filters: dict | None = None,
    ) -> list[dict]:
        """
        Search the user's knowledge graph. scope is nodes, edges or episodes.
        Returns the raw result dicts for that scope.
        """
        body: dict = {
            "user_id": user_id,
            "query": query[:MAX_QUERY_CHARS],
            "scope": scope,
            "limit": limit,
        }
        if reranker:
            body["reranker"] = reranker
        if search_filters:
            body["search_filters"] = search_filters

        resp = await self._request("POST", "/graph/search", json=body)
        resp.raise_for_status()
        return resp.json().get(scope) or []

    async def ensure_user(self, user_id: str) -> None:
        resp = await self._request("GET", f"/users/{user_id}")
        if resp.status_code == 404:
            resp = await self._request("POST", "/users", json={"user_id": user_id})
            logger.info("[zep] created user {}", user_id)
        resp.raise_for_status()

    async def ensure_thread(self, user_id: str, thread_id: str) -> None:
        resp = await self._request("GET", f"/threads/{thread_id}")
        if resp.status_code == 404:
            await self.ensure_user(user_id)
            resp = await self._request(
                "POST", "/threads", json={"thread_id": thread_id, "user_id": user_id}
            )
            logger.info("[zep] created thread {} for user {}", thread_id, user_id)
        resp.raise_for_status()

    async def add_turn(
        self,
        user_id: str,
        thread_id: str,
        user_message: str,
        assistant_message: str,
    ) -> None:
        """Append one user/assistant exchange to the thread."""
        await self.ensure_thread(user_id, thread_id)
        resp = await self._request(
            "POST",
            f"/threads/{thread_id}/messages",
            json={
                "messages": [
                    {"role": "user", "content": user_message},
                    {"role": "assistant", "content": assistant_message},
                ]
            },
        )
        resp.raise_for_status()
        logger.debug("[zep] stored turn for thread {}", thread_id)

    async def ping(self) -> bool:
        try:
            resp = await self._request("GET", "/users", params={"pageSize": 1})
            return resp.status_code < 500
        except httpx.HTTPError as e:
            logger.warning("[zep] health check failed: {}", e)
            return False
