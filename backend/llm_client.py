"""Chat-completion client for OpenRouter-compatible APIs.

Wraps a single ``POST /chat/completions`` call with:
- strict request validation before any network I/O
- a per-attempt timeout and optional caller cancellation (``asyncio.Event``)
- bounded retries with exponential backoff on 429/5xx/network/timeout
- structured (``json_schema``) output parsing and optional validation
- server-sent-event streaming as a lazy async iterator

Usage:
    client = ProviderClient(ProviderConfig(api_key=key, default_model="openai/gpt-4o-mini"))
    result = await client.chat([{"role": "user", "content": "Ping"}])

    async for chunk in client.chat_stream([{"role": "user", "content": "Tell me a story."}]):
        if chunk.delta:
            print(chunk.delta, end="")
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import math
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence
from dataclasses import replace
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from backend.llm_types import (
    ChatChunk,
    ChatMessage,
    ChatResult,
    ChatRole,
    ProviderConfig,
    ProviderError,
    ProviderErrorKind,
)

logger = logging.getLogger(__name__)

_VALID_ROLES = frozenset(role.value for role in ChatRole)

Sleep = Callable[[float], Awaitable[None]]


def _validation_error(message: str) -> ProviderError:
    return ProviderError(ProviderErrorKind.VALIDATION, message)


def build_response_format(name: str, schema: dict) -> dict:
    """Build a strict ``json_schema`` response format for structured output."""
    if not isinstance(name, str) or not name.strip():
        raise _validation_error("Schema name is required.")
    if not isinstance(schema, dict):
        raise _validation_error("Schema must be an object.")
    return {
        "type": "json_schema",
        "json_schema": {"name": name.strip(), "strict": True, "schema": schema},
    }


class PydanticSchemaValidator:
    """Schema validator backed by Pydantic models.

    Models are looked up by the ``title`` of the JSON schema they produce, so
    a response format built from ``Model.model_json_schema()`` is validated
    with ``Model.model_validate``.
    """

    def __init__(self, *models: type[BaseModel]) -> None:
        self._models = {model.model_json_schema().get("title", model.__name__): model for model in models}

    def validate(self, schema: dict, data: Any) -> list[str]:
        model = self._models.get(schema.get("title", ""))
        if model is None:
            logger.debug("No model registered for schema %r; skipping validation", schema.get("title"))
            return []
        try:
            model.model_validate(data)
        except ValidationError as exc:
            return [
                f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}"
                for err in exc.errors()
            ]
        return []


def _first_choice(data: Any) -> dict:
    if not isinstance(data, dict):
        return {}
    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return {}


def _content_of(part: Any) -> Any:
    return part.get("content") if isinstance(part, dict) else None


def _retry_after_seconds(response: httpx.Response) -> float | None:
    header = response.headers.get("retry-after")
    if not header:
        return None
    try:
        seconds = float(header)
    except ValueError:
        return None
    return seconds if math.isfinite(seconds) else None


def _estimate_tokens(messages: list[dict[str, str]]) -> int:
    total_chars = sum(len(m["content"]) for m in messages)
    return max(1, math.ceil(total_chars / 4))


class ProviderClient:
    """Hardened wrapper around a chat-completion HTTP API.

    Configuration is fixed at construction; use ``with_defaults`` to derive
    a client with different settings.
    """

    def __init__(
        self,
        config: ProviderConfig,
        http_client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if not config.api_key or not config.api_key.strip():
            raise ProviderError(ProviderErrorKind.CONFIG, "Missing provider API key.")
        self.config = replace(config, api_key=config.api_key.strip())
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(self.config.timeout_seconds))
        self._sleep = sleep

        self._base_headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {self.config.api_key}",
        }
        for key, value in self.config.headers.items():
            if value:
                self._base_headers[key] = value

        logger.debug("ProviderClient initialized for %s", self.config.base_url)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> ProviderClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def with_defaults(self, **overrides: Any) -> ProviderClient:
        """Return a new client with some configuration fields replaced."""
        return ProviderClient(replace(self.config, **overrides), http_client=self._http, sleep=self._sleep)

    # --- Public API ---

    async def chat(
        self,
        messages: Sequence[ChatMessage | Mapping[str, Any]],
        *,
        model: str | None = None,
        params: Mapping[str, Any] | None = None,
        response_format: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ChatResult:
        """Run a non-streaming completion.

        Returns the message text, or the parsed JSON object when
        ``response_format`` requests a JSON schema.
        """
        payload = self._build_payload(messages, model, params, response_format, stream=False)
        response = await self._execute(payload, extra_headers=headers, cancel_event=cancel_event, stream=False)
        return self._normalize_response(response, response_format)

    def chat_stream(
        self,
        messages: Sequence[ChatMessage | Mapping[str, Any]],
        *,
        model: str | None = None,
        params: Mapping[str, Any] | None = None,
        response_format: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[ChatChunk]:
        """Start a streaming completion.

        Validation happens here, before the iterator is returned. The
        iterator yields deltas as they arrive and always ends with a single
        ``ChatChunk(done=True)``. It cannot be restarted.
        """
        payload = self._build_payload(messages, model, params, response_format, stream=True)
        return self._stream(payload, headers, cancel_event)

    # --- Request building ---

    def _validate_message(self, message: Any) -> dict[str, str]:
        if isinstance(message, ChatMessage):
            role, content = message.role, message.content
        elif isinstance(message, Mapping):
            role, content = message.get("role"), message.get("content")
        else:
            raise _validation_error("Each message must include a role and content.")

        if not role or content is None:
            raise _validation_error("Each message must include a role and content.")
        if not isinstance(content, str) or not content.strip():
            raise _validation_error("Message content must be a non-empty string.")
        if not isinstance(role, str) or role not in _VALID_ROLES:
            raise _validation_error(f"Unsupported message role: {role}")
        return {"role": str(role), "content": content.strip()}

    def _validate_response_format(self, response_format: Any) -> None:
        if not isinstance(response_format, Mapping) or response_format.get("type") != "json_schema":
            raise _validation_error("Only json_schema response_format is supported.")
        json_schema = response_format.get("json_schema")
        if not isinstance(json_schema, Mapping):
            raise _validation_error("response_format.json_schema must be provided.")
        name = json_schema.get("name")
        if not isinstance(name, str) or not name.strip():
            raise _validation_error("response_format.json_schema.name must be a non-empty string.")
        if not isinstance(json_schema.get("schema"), dict):
            raise _validation_error("response_format.json_schema.schema must be an object.")

    def _build_payload(
        self,
        messages: Any,
        model: str | None,
        params: Mapping[str, Any] | None,
        response_format: Mapping[str, Any] | None,
        stream: bool,
    ) -> dict[str, Any]:
        resolved_model = model or self.config.default_model
        if not resolved_model:
            raise _validation_error("Model is required.")
        if self.config.model_allowlist and resolved_model not in self.config.model_allowlist:
            raise _validation_error(f'Model "{resolved_model}" is not allowed.')

        if isinstance(messages, (str, bytes)) or not isinstance(messages, Sequence) or not messages:
            raise _validation_error("At least one message is required.")
        cleaned_messages = [self._validate_message(m) for m in messages]

        cleaned_params: dict[str, Any] = {}
        for key, value in (params or {}).items():
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                raise _validation_error(f'Parameter "{key}" must be a finite number.')
            cleaned_params[key] = value

        if response_format is not None:
            self._validate_response_format(response_format)

        total_chars = sum(len(m["content"]) for m in cleaned_messages)
        max_input = self.config.max_input_characters
        if max_input and total_chars > max_input:
            raise _validation_error(f"Input too long ({total_chars} chars). Limit is {max_input}.")

        logger.debug(
            "Provider input prepared: model=%s messages=%d chars=%d tokens~%d stream=%s",
            resolved_model,
            len(cleaned_messages),
            total_chars,
            _estimate_tokens(cleaned_messages),
            stream,
        )

        payload: dict[str, Any] = {"model": resolved_model, "messages": cleaned_messages}
        if response_format is not None:
            payload["response_format"] = dict(response_format)
        if stream:
            payload["stream"] = True
        payload.update(cleaned_params)
        return payload

    def _build_headers(self, extra: Mapping[str, str] | None) -> dict[str, str]:
        headers = dict(self._base_headers)
        for key, value in (extra or {}).items():
            if value:
                headers[key] = value
        return headers

    # --- Execution ---

    async def _execute(
        self,
        payload: dict[str, Any],
        *,
        extra_headers: Mapping[str, str] | None,
        cancel_event: asyncio.Event | None,
        stream: bool,
    ) -> httpx.Response:
        headers = self._build_headers(extra_headers)
        body = json.dumps(payload).encode("utf-8")
        url = f"{self.config.base_url.rstrip('/')}/chat/completions"

        async def backoff(seconds: float) -> None:
            if cancel_event is None:
                await self._sleep(seconds)
                return
            # Wake early on cancellation; the next attempt then raises ABORTED
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(cancel_event.wait(), timeout=seconds)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_retries + 1),
            wait=wait_exponential(multiplier=self.config.retry_backoff_ms / 1000, min=0),
            retry=retry_if_exception(lambda exc: isinstance(exc, ProviderError) and exc.retryable),
            sleep=backoff,
            before_sleep=self._log_retry,
            reraise=True,
        )

        response: httpx.Response | None = None
        try:
            async for attempt in retrying:
                with attempt:
                    request = self._http.build_request("POST", url, headers=headers, content=body)
                    response = await self._attempt(
                        request,
                        cancel_event=cancel_event,
                        stream=stream,
                        attempt=attempt.retry_state.attempt_number - 1,
                        model=payload["model"],
                        request_bytes=len(body),
                    )
        except ProviderError as exc:
            logger.error(
                "Provider request failed: kind=%s status=%s retry_after=%s model=%s: %s",
                exc.kind.value,
                exc.status,
                exc.retry_after,
                payload["model"],
                exc.message,
            )
            raise

        if response is None:
            raise ProviderError(ProviderErrorKind.UNKNOWN, "Unknown provider error.")
        return response

    async def _attempt(
        self,
        request: httpx.Request,
        *,
        cancel_event: asyncio.Event | None,
        stream: bool,
        attempt: int,
        model: str,
        request_bytes: int,
    ) -> httpx.Response:
        if cancel_event is not None and cancel_event.is_set():
            raise ProviderError(ProviderErrorKind.ABORTED, "Request aborted by caller signal.")

        started = time.perf_counter()
        try:
            async with asyncio.timeout(self.config.timeout_seconds):
                response = await self._send(request, stream=stream, cancel_event=cancel_event)
        except ProviderError:
            raise
        except (TimeoutError, httpx.TimeoutException) as exc:
            raise ProviderError(ProviderErrorKind.TIMEOUT, "Provider request timed out.") from exc
        except httpx.TransportError as exc:
            raise ProviderError(ProviderErrorKind.NETWORK, str(exc) or type(exc).__name__) from exc
        except Exception as exc:
            raise ProviderError(ProviderErrorKind.UNKNOWN, "Unknown provider error.", details=repr(exc)) from exc

        if response.is_success:
            logger.info(
                "Provider request succeeded: model=%s stream=%s latency_ms=%d attempt=%d request_bytes=%d",
                model,
                stream,
                round((time.perf_counter() - started) * 1000),
                attempt,
                request_bytes,
            )
            return response

        if stream:
            await response.aclose()
        status = response.status_code
        kind = ProviderErrorKind.AUTH if status in (401, 403) else ProviderErrorKind.HTTP
        raise ProviderError(
            kind,
            f"Provider responded with status {status}",
            status=status,
            retry_after=_retry_after_seconds(response),
        )

    async def _send(
        self,
        request: httpx.Request,
        *,
        stream: bool,
        cancel_event: asyncio.Event | None,
    ) -> httpx.Response:
        if cancel_event is None:
            return await self._http.send(request, stream=stream)

        send = asyncio.ensure_future(self._http.send(request, stream=stream))
        cancelled = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({send, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            send.cancel()
            raise
        finally:
            cancelled.cancel()

        if send in done:
            return send.result()
        send.cancel()
        raise ProviderError(ProviderErrorKind.ABORTED, "Request aborted by caller signal.")

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "Provider request retrying: attempt=%d kind=%s status=%s delay_s=%.2f",
            retry_state.attempt_number - 1,
            getattr(getattr(exc, "kind", None), "value", None),
            getattr(exc, "status", None),
            delay,
        )

    # --- Response handling ---

    def _normalize_response(
        self,
        response: httpx.Response,
        response_format: Mapping[str, Any] | None,
    ) -> ChatResult:
        try:
            data = response.json()
        except ValueError as exc:
            raise _validation_error("Response body is not valid JSON.") from exc

        model = data.get("model", "") if isinstance(data, dict) else ""
        content = _content_of(_first_choice(data).get("message"))
        if not isinstance(content, str) or not content.strip():
            raise _validation_error("Response missing message content.")

        if response_format is None or response_format.get("type") != "json_schema":
            return ChatResult(model=model, content=content, raw=data)

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as exc:
            raise ProviderError(
                ProviderErrorKind.SCHEMA,
                "Failed to parse structured response JSON.",
                details=str(exc),
            ) from exc

        validator = self.config.schema_validator
        if validator is not None:
            errors = validator.validate(response_format["json_schema"]["schema"], parsed)
            if errors:
                raise ProviderError(
                    ProviderErrorKind.SCHEMA,
                    "Structured response failed schema validation.",
                    details=errors,
                )

        return ChatResult(model=model, content=parsed, raw=data)

    async def _stream(
        self,
        payload: dict[str, Any],
        headers: Mapping[str, str] | None,
        cancel_event: asyncio.Event | None,
    ) -> AsyncIterator[ChatChunk]:
        response = await self._execute(payload, extra_headers=headers, cancel_event=cancel_event, stream=True)
        try:
            async for chunk in self._parse_stream(response.aiter_lines(), cancel_event):
                yield chunk
        except httpx.TimeoutException as exc:
            raise ProviderError(ProviderErrorKind.TIMEOUT, "Provider stream timed out.") from exc
        except httpx.TransportError as exc:
            raise ProviderError(ProviderErrorKind.NETWORK, str(exc) or type(exc).__name__) from exc
        finally:
            await response.aclose()

    async def _parse_stream(
        self,
        lines: AsyncIterator[str],
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[ChatChunk]:
        accumulated = ""
        async for raw_line in lines:
            if cancel_event is not None and cancel_event.is_set():
                raise ProviderError(ProviderErrorKind.ABORTED, "Stream aborted by caller signal.")

            line = raw_line.strip()
            if not line.startswith("data:"):
                continue
            data = line[len("data:") :].strip()
            if data == "[DONE]":
                break

            try:
                frame = json.loads(data)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed stream chunk: %.200s", data)
                continue

            choice = _first_choice(frame)
            delta = _content_of(choice.get("delta")) or _content_of(choice.get("message"))
            if isinstance(delta, str) and delta:
                accumulated += delta
                yield ChatChunk(delta=delta, accumulated=accumulated)

        yield ChatChunk(done=True, accumulated=accumulated)
