"""
Streaming chat completions from an OpenAI-compatible provider.

stream() is an async iterator of discriminated events:

    TokenChunk      a non-empty content fragment (first=True on the first one)
    UsageReport     provider-reported token usage, authoritative when present
    StreamFinished  clean end with a finish_reason and metrics
    StreamFailed    terminal failure (after retries) or cancellation

It never raises for provider problems; failures arrive as StreamFailed so the
caller handles every outcome in one loop.

Retry policy: 4xx is terminal, 5xx and dropped connections are retried up to
max_attempts with base delay + random jitter. Once a token has been emitted
the attempt is never retried, since the client already has partial output.
"""

import asyncio
import json
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, TypeVar, Union

import httpx
from loguru import logger

from app.config import Settings
from app.core.errors import ErrorKind, ProviderError
from app.models.usage import ProviderUsage

T = TypeVar("T")


# ── Events ──────────────────────────────────────────────────────────────────────

@dataclass
class ProviderMetrics:
    ttft_ms: int | None = None
    provider_ms: int = 0
    attempts: int = 0
    retry_count: int = 0
    transitions: list["RetryState"] = field(default_factory=list)


@dataclass
class TokenChunk:
    text: str
    first: bool = False


@dataclass
class UsageReport:
    usage: ProviderUsage


@dataclass
class StreamFinished:
    finish_reason: str
    metrics: ProviderMetrics


@dataclass
class StreamFailed:
    error: ProviderError
    metrics: ProviderMetrics


ProviderEvent = Union[TokenChunk, UsageReport, StreamFinished, StreamFailed]


# ── Retry policy ────────────────────────────────────────────────────────────────

class RetryState(str, Enum):
    IDLE = "idle"
    ATTEMPTING = "attempting"
    RETRYING = "retrying"
    TERMINAL = "terminal"


def should_retry(status: int | None, attempt: int, max_attempts: int) -> bool:
    """
    Pure retry decision. status=None means the request never got a response
    (reset, abort, connect timeout). attempt is 1-based.
    """
    if attempt >= max_attempts:
        return False
    if status is None:
        return True
    return status >= 500


def retry_delay(base: float, jitter: float) -> float:
    return base + random.uniform(0, jitter)


# ── Provider ────────────────────────────────────────────────────────────────────

@dataclass
class _Attempt:
    usage: ProviderUsage | None = None
    finish_reason: str = "stop"


def parse_usage(raw: dict) -> ProviderUsage:
    details = raw.get("prompt_tokens_details") or {}
    return ProviderUsage(
        prompt_tokens=int(raw.get("prompt_tokens") or 0),
        completion_tokens=int(raw.get("completion_tokens") or 0),
        cached_tokens=int(details.get("cached_tokens") or 0),
    )


async def _next_line(lines: AsyncIterator[str]) -> str | None:
    try:
        return await lines.__anext__()
    except StopAsyncIteration:
        return None


class OpenAIProvider:
    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.url = settings.chat_completions_url
        self.api_key = settings.openai_api_key
        self.connect_timeout = settings.provider_connect_timeout_s
        self.timeout = settings.provider_timeout_s
        self.max_attempts = max(1, settings.provider_max_attempts)
        self.retry_base_delay = settings.provider_retry_base_delay_s
        self.retry_jitter = settings.provider_retry_jitter_s
        self.temperature = settings.provider_temperature
        self.max_tokens = settings.provider_max_tokens
        # Phase deadlines are enforced in _race; httpx only bounds the TCP connect
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(None, connect=self.connect_timeout)
        )
        self._sleep = sleep
        self._clock = clock

    async def aclose(self) -> None:
        await self._client.aclose()

    async def ping(self) -> bool:
        try:
            resp = await self._client.get(
                self.url.rsplit("/chat/completions", 1)[0] + "/models",
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=2.0,
            )
            return resp.status_code == 200
        except httpx.HTTPError as e:
            logger.warning("[provider] health check failed: {}", e)
            return False

    def _payload(self, messages: list[dict], model: str) -> dict:
        return {
            "model": model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
        }

    async def stream(
        self,
        messages: list[dict],
        model: str,
        cancel: asyncio.Event,
    ) -> AsyncIterator[ProviderEvent]:
        metrics = ProviderMetrics()
        started = self._clock()
        payload = self._payload(messages, model)
        state = RetryState.IDLE
        emitted = False
        outcome: ProviderEvent | None = None

        def advance(to: RetryState) -> RetryState:
            metrics.transitions.append(to)
            return to

        while state is not RetryState.TERMINAL:
            state = advance(RetryState.ATTEMPTING)
            metrics.attempts += 1
            attempt = _Attempt()
            try:
                async for event in self._attempt(payload, cancel, started, metrics, attempt):
                    if isinstance(event, TokenChunk):
                        emitted = True
                    yield event
                if attempt.usage is not None:
                    yield UsageReport(usage=attempt.usage)
            except ProviderError as e:
                error = e
            else:
                state = advance(RetryState.TERMINAL)
                metrics.provider_ms = self._elapsed_ms(started)
                logger.info(
                    "[provider] {} finished ({}) ttft={}ms total={}ms attempts={}",
                    model,
                    attempt.finish_reason,
                    metrics.ttft_ms,
                    metrics.provider_ms,
                    metrics.attempts,
                )
                outcome = StreamFinished(finish_reason=attempt.finish_reason, metrics=metrics)
                continue

            if cancel.is_set() and error.kind is not ErrorKind.CANCELLED:
                error = ProviderError(ErrorKind.CANCELLED, "Stream cancelled by client")

            retry = (
                error.retryable
                and not emitted
                and should_retry(error.status_code, metrics.attempts, self.max_attempts)
            )
            if not retry:
                state = advance(RetryState.TERMINAL)
                metrics.provider_ms = self._elapsed_ms(started)
                if error.kind is ErrorKind.CANCELLED:
                    logger.info("[provider] {} stream cancelled after {}ms", model, metrics.provider_ms)
                else:
                    logger.error(
                        "[provider] {} failed after {} attempt(s): {}", model, metrics.attempts, error
                    )
                outcome = StreamFailed(error=error, metrics=metrics)
                continue

            state = advance(RetryState.RETRYING)
            metrics.retry_count += 1
            delay = retry_delay(self.retry_base_delay, self.retry_jitter)
            logger.warning(
                "[provider] attempt {} failed ({}), {} in {:.2f}s",
                metrics.attempts,
                error,
                state.value,
                delay,
            )
            if await self._cancellable_sleep(delay, cancel):
                state = advance(RetryState.TERMINAL)
                metrics.provider_ms = self._elapsed_ms(started)
                outcome = StreamFailed(
                    error=ProviderError(ErrorKind.CANCELLED, "Stream cancelled by client"),
                    metrics=metrics,
                )

        yield outcome

    async def _attempt(
        self,
        payload: dict,
        cancel: asyncio.Event,
        started: float,
        metrics: ProviderMetrics,
        attempt: _Attempt,
    ) -> AsyncIterator[TokenChunk]:
        request = self._client.build_request(
            "POST",
            self.url,
            json=payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        attempt_started = self._clock()

        try:
            response = await self._race(
                self._client.send(request, stream=True), cancel, self.connect_timeout, "connect"
            )
        except httpx.TimeoutException as e:
            raise ProviderError(ErrorKind.TIMEOUT, f"Provider connect timeout: {e}", retryable=True) from e
        except httpx.TransportError as e:
            raise ProviderError(ErrorKind.NETWORK, f"Provider connection failed: {e}", retryable=True) from e

        try:
            if response.status_code >= 400:
                body = (await response.aread()).decode(errors="replace")[:500]
                raise ProviderError.from_status(response.status_code, body)

            lines = response.aiter_lines()
            while True:
                remaining = self.timeout - (self._clock() - attempt_started)
                line = await self._race(_next_line(lines), cancel, remaining, "overall")
                if line is None:
                    break
                line = line.strip()
                if not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                if data == "[DONE]":
                    break
                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("[provider] skipping unparseable stream line: {!r}", data[:200])
                    continue

                if chunk.get("usage"):
                    attempt.usage = parse_usage(chunk["usage"])

                choices = chunk.get("choices") or []
                if not choices:
                    continue
                content = (choices[0].get("delta") or {}).get("content")
                if content:
                    first = False
                    if metrics.ttft_ms is None and content.strip():
                        metrics.ttft_ms = self._elapsed_ms(started)
                        first = True
                        logger.info("[provider] first token after {}ms", metrics.ttft_ms)
                    yield TokenChunk(text=content, first=first)
                if choices[0].get("finish_reason"):
                    attempt.finish_reason = choices[0]["finish_reason"]
        except httpx.TimeoutException as e:
            raise ProviderError(ErrorKind.TIMEOUT, f"Provider read timeout: {e}") from e
        except httpx.TransportError as e:
            raise ProviderError(ErrorKind.NETWORK, f"Provider stream interrupted: {e}", retryable=True) from e
        finally:
            await response.aclose()

    async def _race(self, awaitable: Awaitable[T], cancel: asyncio.Event, timeout: float, phase: str) -> T:
        """Await `awaitable` unless the cancel event fires or `timeout` elapses first."""
        if timeout <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise ProviderError(ErrorKind.TIMEOUT, f"Provider {phase} timeout")

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            pass
        if waiter in done:
            raise ProviderError(ErrorKind.CANCELLED, "Stream cancelled by client")
        raise ProviderError(
            ErrorKind.TIMEOUT,
            f"Provider {phase} timeout after {timeout:.1f}s",
            retryable=phase == "connect",
        )

    async def _cancellable_sleep(self, delay: float, cancel: asyncio.Event) -> bool:
        """Sleep for delay; return True if cancelled meanwhile."""
        if cancel.is_set():
            return True
        sleeper = asyncio.ensure_future(self._sleep(delay))
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            waiter.cancel()
        return cancel.is_set()

    def _elapsed_ms(self, since: float) -> int:
        return int((self._clock() - since) * 1000)
