"""Tests for the chat-completion provider client."""

import asyncio
import json

import httpx
import pytest

from backend.llm_client import PydanticSchemaValidator, ProviderClient, build_response_format
from backend.llm_types import ChatMessage, ProviderConfig, ProviderError, ProviderErrorKind
from backend.services.providers import CandidateListSchema

# --- Helpers ---


def _completion(content: str, model: str = "openai/gpt-4o-mini") -> dict:
    return {"model": model, "choices": [{"message": {"role": "assistant", "content": content}}]}


class _Upstream:
    """Records requests and answers them from a list of responses (last one repeats)."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests), len(self.responses)) - 1
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _make_client(handler, **config) -> tuple[ProviderClient, _RecordingSleep]:
    values = {"api_key": "sk-test", "default_model": "openai/gpt-4o-mini", "retry_backoff_ms": 100}
    values.update(config)
    sleep = _RecordingSleep()
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ProviderClient(ProviderConfig(**values), http_client=http, sleep=sleep), sleep


_MESSAGES = [{"role": "user", "content": "Ping"}]


# --- Construction ---


class TestConfiguration:
    def test_missing_api_key_is_config_error(self) -> None:
        with pytest.raises(ProviderError) as exc_info:
            ProviderClient(ProviderConfig(api_key="   "))
        assert exc_info.value.kind == ProviderErrorKind.CONFIG

    def test_with_defaults_returns_new_client(self) -> None:
        client, _ = _make_client(_Upstream(httpx.Response(200, json=_completion("ok"))))
        other = client.with_defaults(default_model="anthropic/claude-3-haiku")
        assert other is not client
        assert other.config.default_model == "anthropic/claude-3-haiku"
        assert client.config.default_model == "openai/gpt-4o-mini"


# --- Validation ---


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "messages",
        [
            [],
            [{"role": "robot", "content": "hi"}],
            [{"role": "user", "content": "   "}],
            [{"role": "user", "content": 42}],
            [{"content": "no role"}],
        ],
    )
    async def test_bad_messages_never_reach_network(self, messages: list) -> None:
        upstream = _Upstream(httpx.Response(200, json=_completion("ok")))
        client, _ = _make_client(upstream)
        with pytest.raises(ProviderError) as exc_info:
            await client.chat(messages)
        assert exc_info.value.kind == ProviderErrorKind.VALIDATION
        assert exc_info.value.retryable is False
        assert upstream.requests == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [float("nan"), float("inf"), True, "0.3"])
    async def test_non_finite_params_rejected(self, value: object) -> None:
        upstream = _Upstream(httpx.Response(200, json=_completion("ok")))
        client, _ = _make_client(upstream)
        with pytest.raises(ProviderError) as exc_info:
            await client.chat(_MESSAGES, params={"temperature": value})
        assert exc_info.value.kind == ProviderErrorKind.VALIDATION
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_model_outside_allowlist_rejected(self) -> None:
        upstream = _Upstream(httpx.Response(200, json=_completion("ok")))
        client, _ = _make_client(upstream, model_allowlist=("openai/gpt-4o-mini",))
        with pytest.raises(ProviderError) as exc_info:
            await client.chat(_MESSAGES, model="some/other-model")
        assert exc_info.value.kind == ProviderErrorKind.VALIDATION
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_malformed_response_format_rejected(self) -> None:
        upstream = _Upstream(httpx.Response(200, json=_completion("ok")))
        client, _ = _make_client(upstream)
        with pytest.raises(ProviderError) as exc_info:
            await client.chat(_MESSAGES, response_format={"type": "json_object"})
        assert exc_info.value.kind == ProviderErrorKind.VALIDATION

    @pytest.mark.asyncio
    async def test_input_length_limit(self) -> None:
        upstream = _Upstream(httpx.Response(200, json=_completion("ok")))
        client, _ = _make_client(upstream, max_input_characters=10)
        with pytest.raises(ProviderError) as exc_info:
            await client.chat([{"role": "user", "content": "x" * 11}])
        assert exc_info.value.kind == ProviderErrorKind.VALIDATION

    def test_stream_validates_eagerly(self) -> None:
        client, _ = _make_client(_Upstream(httpx.Response(200)))
        with pytest.raises(ProviderError):
            client.chat_stream([])


# --- Requests and retries ---


class TestChat:
    @pytest.mark.asyncio
    async def test_success_builds_expected_request(self) -> None:
        upstream = _Upstream(httpx.Response(200, json=_completion("Pong")))
        client, _ = _make_client(upstream)

        result = await client.chat(
            [ChatMessage(role="user", content="  Ping  ")],
            params={"temperature": 0.2, "max_tokens": None},
            headers={"X-Title": "StudyCards"},
        )

        assert result.content == "Pong"
        assert result.model == "openai/gpt-4o-mini"
        request = upstream.requests[0]
        assert str(request.url) == "https://openrouter.ai/api/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        assert request.headers["x-title"] == "StudyCards"
        body = json.loads(request.content)
        assert body == {
            "model": "openai/gpt-4o-mini",
            "messages": [{"role": "user", "content": "Ping"}],
            "temperature": 0.2,
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_retries_exactly_max_retries_then_raises(self, status: int) -> None:
        upstream = _Upstream(httpx.Response(status, headers={"retry-after": "3"}))
        client, sleep = _make_client(upstream, max_retries=2)

        with pytest.raises(ProviderError) as exc_info:
            await client.chat(_MESSAGES)

        assert len(upstream.requests) == 3
        assert exc_info.value.kind == ProviderErrorKind.HTTP
        assert exc_info.value.status == status
        assert exc_info.value.retry_after == 3.0
        assert sleep.delays == pytest.approx([0.1, 0.2])

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self) -> None:
        upstream = _Upstream(
            httpx.Response(502),
            httpx.ConnectError("connection reset"),
            httpx.Response(200, json=_completion("ok")),
        )
        client, sleep = _make_client(upstream, max_retries=2)

        result = await client.chat(_MESSAGES)

        assert result.content == "ok"
        assert len(upstream.requests) == 3
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "kind"),
        [(401, ProviderErrorKind.AUTH), (403, ProviderErrorKind.AUTH), (400, ProviderErrorKind.HTTP)],
    )
    async def test_client_errors_not_retried(self, status: int, kind: ProviderErrorKind) -> None:
        upstream = _Upstream(httpx.Response(status))
        client, sleep = _make_client(upstream, max_retries=2)

        with pytest.raises(ProviderError) as exc_info:
            await client.chat(_MESSAGES)

        assert exc_info.value.kind == kind
        assert len(upstream.requests) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_network_errors_classified_and_retried(self) -> None:
        upstream = _Upstream(httpx.ConnectError("refused"))
        client, _ = _make_client(upstream, max_retries=1)

        with pytest.raises(ProviderError) as exc_info:
            await client.chat(_MESSAGES)

        assert exc_info.value.kind == ProviderErrorKind.NETWORK
        assert len(upstream.requests) == 2

    @pytest.mark.asyncio
    async def test_attempt_timeout(self) -> None:
        calls = 0

        async def slow(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            await asyncio.sleep(1)
            return httpx.Response(200, json=_completion("late"))

        client, _ = _make_client(slow, timeout_seconds=0.05, max_retries=1)

        with pytest.raises(ProviderError) as exc_info:
            await client.chat(_MESSAGES)

        assert exc_info.value.kind == ProviderErrorKind.TIMEOUT
        assert calls == 2

    @pytest.mark.asyncio
    async def test_cancel_before_dispatch_is_aborted(self) -> None:
        upstream = _Upstream(httpx.Response(200, json=_completion("ok")))
        client, _ = _make_client(upstream)
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(ProviderError) as exc_info:
            await client.chat(_MESSAGES, cancel_event=cancel)

        assert exc_info.value.kind == ProviderErrorKind.ABORTED
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_cancel_during_request_is_aborted(self) -> None:
        cancel = asyncio.Event()

        async def hang(request: httpx.Request) -> httpx.Response:
            cancel.set()
            await asyncio.sleep(5)
            return httpx.Response(200, json=_completion("late"))

        client, _ = _make_client(hang)

        with pytest.raises(ProviderError) as exc_info:
            await client.chat(_MESSAGES, cancel_event=cancel)

        assert exc_info.value.kind == ProviderErrorKind.ABORTED

    @pytest.mark.asyncio
    async def test_missing_content_is_validation_error(self) -> None:
        upstream = _Upstream(httpx.Response(200, json={"model": "m", "choices": []}))
        client, _ = _make_client(upstream)
        with pytest.raises(ProviderError) as exc_info:
            await client.chat(_MESSAGES)
        assert exc_info.value.kind == ProviderErrorKind.VALIDATION


# --- Structured output ---


class TestStructuredOutput:
    def _format(self) -> dict:
        return build_response_format("flashcard_candidates", CandidateListSchema.model_json_schema())

    @pytest.mark.asyncio
    async def test_parses_json_content(self) -> None:
        payload = {"flashcard_candidates": [{"front": "Q?", "back": "A."}]}
        upstream = _Upstream(httpx.Response(200, json=_completion(json.dumps(payload))))
        client, _ = _make_client(upstream, schema_validator=PydanticSchemaValidator(CandidateListSchema))

        result = await client.chat(_MESSAGES, response_format=self._format())

        assert result.content == payload
        assert json.loads(upstream.requests[0].content)["response_format"]["type"] == "json_schema"

    @pytest.mark.asyncio
    async def test_unparseable_json_is_schema_error(self) -> None:
        upstream = _Upstream(httpx.Response(200, json=_completion("Here are your flashcards: ...")))
        client, _ = _make_client(upstream)

        with pytest.raises(ProviderError) as exc_info:
            await client.chat(_MESSAGES, response_format=self._format())

        assert exc_info.value.kind == ProviderErrorKind.SCHEMA
        assert len(upstream.requests) == 1

    @pytest.mark.asyncio
    async def test_validator_errors_attached(self) -> None:
        payload = {"flashcard_candidates": [{"front": "Q?"}]}
        upstream = _Upstream(httpx.Response(200, json=_completion(json.dumps(payload))))
        client, _ = _make_client(upstream, schema_validator=PydanticSchemaValidator(CandidateListSchema))

        with pytest.raises(ProviderError) as exc_info:
            await client.chat(_MESSAGES, response_format=self._format())

        assert exc_info.value.kind == ProviderErrorKind.SCHEMA
        assert any("back" in error for error in exc_info.value.details)

    def test_build_response_format_requires_name(self) -> None:
        with pytest.raises(ProviderError):
            build_response_format(" ", {"type": "object"})


# --- Streaming ---


def _sse(*frames: str) -> bytes:
    return "".join(f"{frame}\n\n" for frame in frames).encode()


def _delta(text: str) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"content": text}}]})


class _StalledStream(httpx.AsyncByteStream):
    """Sends one delta, then the read times out."""

    async def __aiter__(self):
        yield _sse(_delta("Hel"))
        raise httpx.ReadTimeout("stalled")


class TestStreaming:
    @pytest.mark.asyncio
    async def test_yields_deltas_then_done(self) -> None:
        body = _sse(": keep-alive", _delta("Hel"), "data: {not json", _delta("lo"), "data: [DONE]", _delta("!"))
        upstream = _Upstream(httpx.Response(200, content=body, headers={"content-type": "text/event-stream"}))
        client, _ = _make_client(upstream)

        chunks = [chunk async for chunk in client.chat_stream(_MESSAGES)]

        assert [c.delta for c in chunks if not c.done] == ["Hel", "lo"]
        assert chunks[-1].done is True
        assert chunks[-1].accumulated == "Hello"
        assert json.loads(upstream.requests[0].content)["stream"] is True

    @pytest.mark.asyncio
    async def test_stream_without_done_marker_still_finishes(self) -> None:
        upstream = _Upstream(httpx.Response(200, content=_sse(_delta("only"))))
        client, _ = _make_client(upstream)

        chunks = [chunk async for chunk in client.chat_stream(_MESSAGES)]

        assert len(chunks) == 2
        assert chunks[-1].done is True
        assert chunks[-1].accumulated == "only"

    @pytest.mark.asyncio
    async def test_stream_error_status_raises(self) -> None:
        upstream = _Upstream(httpx.Response(401))
        client, _ = _make_client(upstream)

        with pytest.raises(ProviderError) as exc_info:
            async for _ in client.chat_stream(_MESSAGES):
                pass

        assert exc_info.value.kind == ProviderErrorKind.AUTH

    @pytest.mark.asyncio
    async def test_read_timeout_mid_stream_is_timeout(self) -> None:
        client, _ = _make_client(lambda request: httpx.Response(200, stream=_StalledStream()))
        deltas: list[str] = []

        with pytest.raises(ProviderError) as exc_info:
            async for chunk in client.chat_stream(_MESSAGES):
                deltas.append(chunk.delta)

        assert deltas == ["Hel"]
        assert exc_info.value.kind == ProviderErrorKind.TIMEOUT
