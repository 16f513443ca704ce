import time
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

T = TypeVar("T")

Clock = Callable[[], float]


@dataclass
class _Entry(Generic[T]):
    value: T
    expires_at: float


class TtlCache(Generic[T]):
    """Single-value cache with an expiry. The clock is injectable so tests can move time."""

    def __init__(self, ttl_seconds: float, clock: Clock = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entry: _Entry[T] | None = None

    def get(self) -> T | None:
        entry = self._entry
        if entry is None or entry.expires_at <= self._clock():
            return None
        return entry.value

    def set(self, value: T) -> None:
        self._entry = _Entry(value=value, expires_at=self._clock() + self.ttl_seconds)

    def invalidate(self) -> None:
        self._entry = None

    @property
    def expired(self) -> bool:
        return self.get() is None
