"""Flashcard providers: the boundary between generation and the LLM.

The generation service only ever talks to a ``FlashcardProvider``. The real
implementation calls the chat-completion API; the mock returns canned
candidates after an artificial, cancellable delay so the timeout and
persistence paths can be exercised without a network.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict

from backend.config import Settings
from backend.llm_client import PydanticSchemaValidator, ProviderClient, build_response_format
from backend.llm_types import ProviderConfig, ProviderError, ProviderErrorKind

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert flashcard creator. Based on the user's source text, generate a list of "
    "question-and-answer flashcards. Return a JSON object with a single key 'flashcard_candidates' "
    "which is an array of objects, each with a 'front' (question, at most 200 characters) and a "
    "'back' (answer, at most 500 characters). Ensure the content is accurate and concise."
)


class CandidateSchema(BaseModel):
    model_config = ConfigDict(extra="forbid", title="FlashcardCandidate")

    front: str
    back: str


class CandidateListSchema(BaseModel):
    model_config = ConfigDict(extra="forbid", title="FlashcardCandidateList")

    flashcard_candidates: list[CandidateSchema]


@dataclass(frozen=True)
class Candidate:
    front: str
    back: str


@dataclass(frozen=True)
class ProviderOutput:
    model: str
    candidates: list[Candidate]


class FlashcardProvider(ABC):
    """Produces flashcard candidates for a source text."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Identifier recorded as the model when a call fails."""
        ...

    @abstractmethod
    async def generate(self, source_text: str) -> ProviderOutput:
        """Return candidates for ``source_text``; may raise ``ProviderError``."""
        ...

    async def aclose(self) -> None:
        """Release any connections held by the provider."""


class LLMFlashcardProvider(FlashcardProvider):
    """Generates candidates with a structured-output chat completion."""

    def __init__(self, client: ProviderClient, temperature: float = 0.3) -> None:
        self.client = client
        self.temperature = temperature
        self.response_format = build_response_format(
            "flashcard_candidates", CandidateListSchema.model_json_schema()
        )

    @property
    def name(self) -> str:
        return self.client.config.default_model or "unknown"

    async def generate(self, source_text: str) -> ProviderOutput:
        result = await self.client.chat(
            [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": source_text},
            ],
            params={"temperature": self.temperature},
            response_format=self.response_format,
        )
        return ProviderOutput(
            model=result.model or self.name,
            candidates=parse_candidates(result.content),
        )

    async def aclose(self) -> None:
        await self.client.aclose()


class MockFlashcardProvider(FlashcardProvider):
    """Deterministic provider for local development and tests."""

    CANNED = (
        Candidate(
            front="Mock Question 1: What is FastAPI?",
            back="Mock Answer 1: A Python web framework for building APIs with type hints.",
        ),
        Candidate(
            front="Mock Question 2: What is SQLAlchemy?",
            back="Mock Answer 2: A Python SQL toolkit and object relational mapper.",
        ),
        Candidate(
            front="Mock Question 3: What is asyncio?",
            back="Mock Answer 3: The standard library framework for asynchronous I/O in Python.",
        ),
    )

    def __init__(self, delay_seconds: float = 1.0, candidates: list[Candidate] | None = None) -> None:
        self.delay_seconds = delay_seconds
        self.candidates = list(self.CANNED) if candidates is None else candidates

    @property
    def name(self) -> str:
        return "mock-gpt-4o-mini"

    async def generate(self, source_text: str) -> ProviderOutput:
        # asyncio.sleep is a cancellation point, so the overall deadline still applies
        await asyncio.sleep(self.delay_seconds)
        return ProviderOutput(model=self.name, candidates=list(self.candidates))


def parse_candidates(content: object) -> list[Candidate]:
    """Coerce structured output into candidates, dropping blank ones."""
    if not isinstance(content, dict) or not isinstance(content.get("flashcard_candidates"), list):
        raise ProviderError(
            ProviderErrorKind.SCHEMA,
            "Structured response is missing 'flashcard_candidates'.",
        )

    candidates = []
    for item in content["flashcard_candidates"]:
        if not isinstance(item, dict):
            continue
        front, back = item.get("front"), item.get("back")
        if not isinstance(front, str) or not isinstance(back, str):
            continue
        if not front.strip() or not back.strip():
            continue
        candidates.append(Candidate(front=front.strip(), back=back.strip()))

    dropped = len(content["flashcard_candidates"]) - len(candidates)
    if dropped:
        logger.warning("Dropped %d malformed or empty candidates", dropped)
    return candidates


def build_provider(settings: Settings) -> FlashcardProvider:
    """Create the provider selected by configuration."""
    if settings.mock_ai_service:
        logger.info("Using mock flashcard provider (delay %.1fs)", settings.mock_ai_delay_seconds)
        return MockFlashcardProvider(delay_seconds=settings.mock_ai_delay_seconds)

    config = ProviderConfig.from_settings(
        settings,
        schema_validator=PydanticSchemaValidator(CandidateListSchema),
    )
    return LLMFlashcardProvider(ProviderClient(config))
