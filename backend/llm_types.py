"""Value types and error taxonomy for the chat-completion provider client."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol


class ChatRole(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": str(self.role), "content": self.content}


@dataclass(frozen=True)
class ChatResult:
    """A completed (non-streaming) chat call.

    ``content`` is the message text, or the parsed JSON object when the call
    requested a ``json_schema`` response format.
    """

    model: str
    content: Any
    raw: dict


@dataclass(frozen=True)
class ChatChunk:
    """One item of a streamed completion.

    Intermediate chunks carry ``delta``; the final chunk has ``done=True``.
    Both carry the text accumulated so far.
    """

    delta: str | None = None
    done: bool = False
    accumulated: str = ""


class ProviderErrorKind(StrEnum):
    AUTH = "auth"
    TIMEOUT = "timeout"
    HTTP = "http"
    NETWORK = "network"
    VALIDATION = "validation"
    SCHEMA = "schema"
    ABORTED = "aborted"
    CONFIG = "config"
    UNKNOWN = "unknown"


_RETRYABLE_KINDS = frozenset({ProviderErrorKind.TIMEOUT, ProviderErrorKind.NETWORK})


def is_retryable_status(status: int) -> bool:
    return status == 429 or 500 <= status < 600


class ProviderError(Exception):
    """Failure of a provider call, classified once at the point of failure."""

    def __init__(
        self,
        kind: ProviderErrorKind,
        message: str,
        status: int | None = None,
        retry_after: float | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status = status
        self.retry_after = retry_after
        self.details = details
        if status is not None:
            self.retryable = is_retryable_status(status)
        else:
            self.retryable = kind in _RETRYABLE_KINDS

    def __repr__(self) -> str:
        return f"ProviderError(kind={self.kind.value!r}, status={self.status!r}, message={self.message!r})"


class SchemaValidator(Protocol):
    """Validates parsed structured output against a JSON schema.

    Returns a list of human-readable errors; an empty list means valid.
    """

    def validate(self, schema: dict, data: Any) -> list[str]: ...


@dataclass(frozen=True)
class ProviderConfig:
    """Immutable configuration for a ProviderClient."""

    api_key: str
    base_url: str = "https://openrouter.ai/api/v1"
    default_model: str | None = None
    timeout_seconds: float = 30.0
    max_retries: int = 2
    retry_backoff_ms: int = 1000
    headers: dict[str, str] = field(default_factory=dict)
    schema_validator: SchemaValidator | None = None
    model_allowlist: tuple[str, ...] = ()
    max_input_characters: int | None = None

    @classmethod
    def from_settings(cls, settings: Any, **overrides: Any) -> ProviderConfig:
        values: dict[str, Any] = {
            "api_key": settings.openrouter_api_key,
            "base_url": settings.openrouter_base_url,
            "default_model": settings.openrouter_model,
            "timeout_seconds": settings.openrouter_timeout_seconds,
            "max_retries": settings.openrouter_max_retries,
            "retry_backoff_ms": settings.openrouter_retry_backoff_ms,
            "model_allowlist": tuple(settings.openrouter_model_allowlist),
            "max_input_characters": settings.max_input_characters,
        }
        values.update(overrides)
        return cls(**values)
