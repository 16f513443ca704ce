from pydantic import BaseModel, Field
from typing import Any, Literal
from datetime import datetime


class MemoryContextRecord(BaseModel):
    user_id: str
    context_block: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    version: int = 1
    last_session_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_content(self) -> bool:
        return bool(self.context_block)


class MemoryCandidate(BaseModel):
    text: str
    score: float = 0.0
    source_type: str = "context"


class MemoryLookup(BaseModel):
    """Result of one memory resolution for a request."""

    block: str | None = None
    candidates: list[MemoryCandidate] = Field(default_factory=list)
    source: Literal["cache", "live", "none"] = "none"
    cache_miss: bool = False
    elapsed_ms: int = 0
    started_at_ms: int = 0

    @property
    def used(self) -> bool:
        return bool(self.block)

    @classmethod
    def empty(cls, elapsed_ms: int = 0, started_at_ms: int = 0) -> "MemoryLookup":
        return cls(elapsed_ms=elapsed_ms, started_at_ms=started_at_ms)
