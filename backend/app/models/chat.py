from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Any, Literal
from datetime import datetime
from decimal import Decimal
from enum import Enum


class ContextMode(str, Enum):
    BASIC = "basic"
    SUMMARIZED = "summarized"
    NODE_SEARCH = "node_search"
    EDGE_SEARCH = "edge_search"
    EPISODE_SEARCH = "episode_search"

    @property
    def is_query_driven(self) -> bool:
        return self in (ContextMode.NODE_SEARCH, ContextMode.EDGE_SEARCH, ContextMode.EPISODE_SEARCH)

    @property
    def search_scope(self) -> str:
        return self.value.removesuffix("_search") + "s"


class ScopeParams(BaseModel):
    limit: int = Field(10, ge=1, le=50)
    reranker: str | None = None


class GraphSearchParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    nodes: ScopeParams | None = None
    edges: ScopeParams | None = None
    episodes: ScopeParams | None = None
    search_filters: dict[str, Any] | None = None

    def for_scope(self, scope: str) -> ScopeParams:
        return getattr(self, scope, None) or ScopeParams()


class ChatRequest(BaseModel):
    """Inbound chat body. Accepts camelCase keys; frozen once accepted."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    message: str = Field(..., min_length=1)
    session_id: str | None = None
    model: str | None = None
    system_prompt: str | None = None
    use_memory: bool = False
    return_memory: bool = False
    testing_mode: bool = False
    save_to_memory: bool = True
    context_mode: ContextMode = ContextMode.BASIC
    past_messages_count: int = Field(4, ge=0)
    graph_search_params: GraphSearchParams | None = None
    assistant_output: str | None = None


class MessageOut(BaseModel):
    thread_id: str
    role: str
    content: str
    model: str | None
    ttft_ms: int | None
    total_ms: int | None
    tokens_in: int | None
    tokens_out: int | None
    price: Decimal | None
    created_at: datetime


class TranscriptMessage(BaseModel):
    """One stored turn part (user, memory snapshot or assistant)."""

    request_id: str
    thread_id: str
    user_id: str
    role: Literal["user", "assistant", "memory"]
    content: str
    created_at: datetime
    start_ms: int | None = None
    ttft_ms: int | None = None
    total_ms: int | None = None
    tokens_in: int | None = None
    tokens_out: int | None = None
    price: Decimal | None = None
    model: str | None = None
    prompt: list[dict[str, str]] | None = None
