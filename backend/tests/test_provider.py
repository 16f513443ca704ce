"""Tests for the streaming provider adapter: retries, timeouts and cancellation."""

import asyncio
import json

import httpx
import pytest

from app.core.errors import ErrorKind
from app.core.provider import (
    OpenAIProvider,
    RetryState,
    StreamFailed,
    StreamFinished,
    TokenChunk,
    UsageReport,
    parse_usage,
    retry_delay,
    should_retry,
)
from conftest import sse_body

MESSAGES = [{"role": "system", "content": "S."}, {"role": "user", "content": "hi"}]


def make_provider(settings, handler, sleep=None, **overrides) -> OpenAIProvider:
    if overrides:
        settings = settings.model_copy(update=overrides)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

    async def instant(_delay):
        await asyncio.sleep(0)

    return OpenAIProvider(settings, client=client, sleep=sleep or instant)


async def run(provider, cancel=None) -> list:
    return [e async for e in provider.stream(MESSAGES, "gpt-4o-mini", cancel or asyncio.Event())]


def tokens(events) -> list[str]:
    return [e.text for e in events if isinstance(e, TokenChunk)]


class TestShouldRetry:
    """Tests for the pure retry decision."""

    @pytest.mark.parametrize(
        "status,attempt,max_attempts,expected",
        [
            (500, 1, 3, True),
            (503, 2, 3, True),
            (502, 3, 3, False),
            (None, 1, 3, True),
            (None, 1, 1, False),
            (400, 1, 3, False),
            (401, 1, 3, False),
            (404, 1, 3, False),
            (429, 1, 3, False),
        ],
    )
    def test_decision_table(self, status, attempt, max_attempts, expected):
        assert should_retry(status, attempt, max_attempts) is expected

    def test_delay_within_jitter(self):
        for _ in range(50):
            assert 1.0 <= retry_delay(1.0, 0.5) <= 1.5


class TestStreaming:
    """Tests for the happy path and event shapes."""

    @pytest.mark.asyncio
    async def test_tokens_usage_and_finish(self, settings):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers["authorization"]
            return httpx.Response(
                200,
                content=sse_body(
                    ["Hel", "lo"],
                    usage={"prompt_tokens": 12, "completion_tokens": 2, "prompt_tokens_details": {"cached_tokens": 4}},
                ),
            )

        events = await run(make_provider(settings, handler))

        assert tokens(events) == ["Hel", "lo"]
        assert [e.first for e in events if isinstance(e, TokenChunk)] == [True, False]
        usage = next(e for e in events if isinstance(e, UsageReport)).usage
        assert (usage.prompt_tokens, usage.completion_tokens, usage.cached_tokens) == (12, 2, 4)
        finished = events[-1]
        assert isinstance(finished, StreamFinished)
        assert finished.finish_reason == "stop"
        assert finished.metrics.attempts == 1
        assert finished.metrics.retry_count == 0
        assert finished.metrics.ttft_ms is not None

        assert seen["body"]["stream"] is True
        assert seen["body"]["stream_options"] == {"include_usage": True}
        assert seen["body"]["model"] == "gpt-4o-mini"
        assert seen["body"]["messages"] == MESSAGES
        assert seen["auth"] == "Bearer sk-test"

    @pytest.mark.asyncio
    async def test_no_usage_chunk_means_no_report(self, settings):
        events = await run(make_provider(settings, lambda r: httpx.Response(200, content=sse_body(["ok"]))))

        assert not any(isinstance(e, UsageReport) for e in events)
        assert isinstance(events[-1], StreamFinished)

    @pytest.mark.asyncio
    async def test_whitespace_chunk_is_not_first_token(self, settings):
        events = await run(make_provider(settings, lambda r: httpx.Response(200, content=sse_body(["  ", "Hi"]))))
        chunks = [e for e in events if isinstance(e, TokenChunk)]

        assert [c.first for c in chunks] == [False, True]

    @pytest.mark.asyncio
    async def test_length_finish_reason(self, settings):
        events = await run(
            make_provider(settings, lambda r: httpx.Response(200, content=sse_body(["a"], finish_reason="length")))
        )
        assert events[-1].finish_reason == "length"

    def test_parse_usage_without_details(self):
        usage = parse_usage({"prompt_tokens": 3, "completion_tokens": 1})
        assert usage.cached_tokens == 0


class TestRetries:
    """Tests for retry policy against provider status codes."""

    @pytest.mark.asyncio
    async def test_500_then_200_succeeds(self, settings):
        calls = []
        delays = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(500, text="upstream exploded")
            return httpx.Response(200, content=sse_body(["recovered"]))

        async def sleep(delay):
            delays.append(delay)

        provider = make_provider(
            settings, handler, sleep=sleep, provider_retry_base_delay_s=1.0, provider_retry_jitter_s=0.5
        )
        events = await run(provider)

        assert len(calls) == 2
        assert tokens(events) == ["recovered"]
        assert events[-1].metrics.retry_count == 1
        assert events[-1].metrics.attempts == 2
        assert len(delays) == 1 and 1.0 <= delays[0] <= 1.5
        assert events[-1].metrics.transitions == [
            RetryState.ATTEMPTING,
            RetryState.RETRYING,
            RetryState.ATTEMPTING,
            RetryState.TERMINAL,
        ]

    @pytest.mark.asyncio
    async def test_401_never_retried(self, settings):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, json={"error": {"message": "bad key"}})

        events = await run(make_provider(settings, handler))

        assert len(calls) == 1
        failed = events[-1]
        assert isinstance(failed, StreamFailed)
        assert failed.error.kind is ErrorKind.CLIENT
        assert failed.error.status_code == 401
        assert failed.metrics.retry_count == 0
        assert failed.metrics.transitions == [RetryState.ATTEMPTING, RetryState.TERMINAL]

    @pytest.mark.asyncio
    async def test_429_never_retried(self, settings):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(429, text="slow down")

        events = await run(make_provider(settings, handler))

        assert len(calls) == 1
        assert events[-1].error.kind is ErrorKind.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_persistent_5xx_gives_up(self, settings):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, text="unavailable")

        events = await run(make_provider(settings, handler, provider_max_attempts=3))

        assert len(calls) == 3
        failed = events[-1]
        assert isinstance(failed, StreamFailed)
        assert failed.error.kind is ErrorKind.SERVER
        assert failed.metrics.retry_count == 2

    @pytest.mark.asyncio
    async def test_connection_reset_retried(self, settings):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection reset by peer")
            return httpx.Response(200, content=sse_body(["ok"]))

        events = await run(make_provider(settings, handler))

        assert len(calls) == 2
        assert tokens(events) == ["ok"]

    @pytest.mark.asyncio
    async def test_no_retry_after_first_token(self, settings):
        calls = []

        async def broken_body():
            yield b'data: {"choices":[{"delta":{"content":"partial"}}]}\n\n'
            raise httpx.ReadError("connection dropped")

        def handler(request):
            calls.append(request)
            return httpx.Response(200, content=broken_body())

        events = await run(make_provider(settings, handler))

        assert len(calls) == 1
        assert tokens(events) == ["partial"]
        failed = events[-1]
        assert isinstance(failed, StreamFailed)
        assert failed.error.kind is ErrorKind.NETWORK


class TestTimeoutsAndCancellation:
    """Tests for connect/overall deadlines and client cancellation."""

    @pytest.mark.asyncio
    async def test_connect_timeout(self, settings):
        async def handler(request):
            await asyncio.sleep(5)
            return httpx.Response(200, content=sse_body(["late"]))

        provider = make_provider(settings, handler, provider_connect_timeout_s=0.05, provider_max_attempts=1)
        events = await run(provider)

        failed = events[-1]
        assert isinstance(failed, StreamFailed)
        assert failed.error.kind is ErrorKind.TIMEOUT
        assert failed.error.retryable

    @pytest.mark.asyncio
    async def test_connect_timeout_is_retried(self, settings):
        calls = []

        async def handler(request):
            calls.append(request)
            if len(calls) == 1:
                await asyncio.sleep(5)
            return httpx.Response(200, content=sse_body(["second try"]))

        provider = make_provider(settings, handler, provider_connect_timeout_s=0.05)
        events = await run(provider)

        assert len(calls) == 2
        assert tokens(events) == ["second try"]

    @pytest.mark.asyncio
    async def test_overall_timeout_is_terminal(self, settings):
        calls = []

        async def stalled_body():
            yield b'data: {"choices":[{"delta":{"content":"start"}}]}\n\n'
            await asyncio.sleep(5)

        def handler(request):
            calls.append(request)
            return httpx.Response(200, content=stalled_body())

        provider = make_provider(settings, handler, provider_timeout_s=0.1)
        events = await run(provider)

        assert len(calls) == 1
        assert tokens(events) == ["start"]
        assert events[-1].error.kind is ErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_cancel_stops_stream(self, settings):
        cancel = asyncio.Event()

        async def endless_body():
            yield b'data: {"choices":[{"delta":{"content":"one"}}]}\n\n'
            await asyncio.sleep(5)
            yield b'data: {"choices":[{"delta":{"content":"two"}}]}\n\n'

        provider = make_provider(settings, lambda r: httpx.Response(200, content=endless_body()))
        events = []
        async for event in provider.stream(MESSAGES, "gpt-4o-mini", cancel):
            events.append(event)
            if isinstance(event, TokenChunk):
                cancel.set()

        assert tokens(events) == ["one"]
        assert isinstance(events[-1], StreamFailed)
        assert events[-1].error.kind is ErrorKind.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self, settings):
        cancel = asyncio.Event()

        async def sleep(delay):
            cancel.set()
            await asyncio.sleep(5)

        provider = make_provider(settings, lambda r: httpx.Response(500, text="boom"), sleep=sleep)
        events = await run(provider, cancel)

        assert len(events) == 1
        assert events[0].error.kind is ErrorKind.CANCELLED
        assert events[0].metrics.attempts == 1
        assert events[0].metrics.transitions == [
            RetryState.ATTEMPTING,
            RetryState.RETRYING,
            RetryState.TERMINAL,
        ]
