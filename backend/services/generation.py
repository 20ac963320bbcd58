"""AI flashcard generation service.

Turns a source text into a batch of flashcard candidates:
- bounds the whole provider call (all retries included) by one deadline
- fingerprints the source text for correlating generations and failures
- persists a Generation row on success, a GenerationErrorLog row on failure
- maps every failure into GENERATION_TIMEOUT, AI_SERVICE_ERROR or DATABASE_ERROR
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.llm_types import ProviderError
from backend.models.generation import Generation
from backend.models.generation_error_log import GenerationErrorLog
from backend.services.providers import Candidate, FlashcardProvider, ProviderOutput

logger = logging.getLogger(__name__)

GENERATION_TIMEOUT_SECONDS = 30.0


class GenerationErrorCode(StrEnum):
    GENERATION_TIMEOUT = "GENERATION_TIMEOUT"
    AI_SERVICE_ERROR = "AI_SERVICE_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"


class GenerationError(Exception):
    """A classified generation failure; the only error callers ever see."""

    def __init__(self, code: GenerationErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass
class GenerationResult:
    generation_id: int
    model: str
    generated_count: int
    generation_duration: int  # ms
    created_at: datetime
    flashcard_candidates: list[Candidate]


def fingerprint(text: str) -> str:
    """Return the MD5 hex digest used to correlate a source text across calls."""
    return hashlib.md5(text.encode("utf-8"), usedforsecurity=False).hexdigest()


async def generate_flashcards(
    db: AsyncSession,
    *,
    source_text: str,
    user_id: str,
    provider: FlashcardProvider,
    timeout_seconds: float = GENERATION_TIMEOUT_SECONDS,
) -> GenerationResult:
    """Generate flashcard candidates for ``source_text`` and record the generation.

    The source text length is validated by the caller. Cancelling the calling
    task cancels the in-flight provider call the same way the deadline does.

    Raises:
        GenerationError: On timeout, provider failure, zero candidates, or a
            database failure. An error log row is written first (best effort).
    """
    source_hash = fingerprint(source_text)
    started = time.perf_counter()

    try:
        output = await _call_provider(provider, source_text, timeout_seconds)
        if not output.candidates:
            raise GenerationError(
                GenerationErrorCode.AI_SERVICE_ERROR,
                "The AI service returned no flashcard candidates.",
            )
        duration_ms = round((time.perf_counter() - started) * 1000)
        record = await _save_generation(
            db,
            user_id=user_id,
            output=output,
            source_hash=source_hash,
            source_length=len(source_text),
            duration_ms=duration_ms,
        )
    except GenerationError as exc:
        await _log_generation_error(
            db,
            user_id=user_id,
            source_hash=source_hash,
            source_length=len(source_text),
            model=provider.name,
            error=exc,
        )
        raise

    logger.info(
        "Generation %d for user %s: %d candidates from %s in %dms",
        record.id,
        user_id,
        record.generated_count,
        record.model,
        record.generation_duration_ms,
    )
    return GenerationResult(
        generation_id=record.id,
        model=record.model,
        generated_count=record.generated_count,
        generation_duration=record.generation_duration_ms,
        created_at=record.created_at,
        flashcard_candidates=output.candidates,
    )


async def _call_provider(
    provider: FlashcardProvider,
    source_text: str,
    timeout_seconds: float,
) -> ProviderOutput:
    """Run the provider call under the overall deadline."""
    try:
        async with asyncio.timeout(timeout_seconds):
            return await provider.generate(source_text)
    except TimeoutError as exc:
        raise GenerationError(
            GenerationErrorCode.GENERATION_TIMEOUT,
            f"Generation timed out after {timeout_seconds:g} seconds.",
        ) from exc
    except ProviderError as exc:
        logger.warning("Provider call failed (%s): %s", exc.kind.value, exc.message)
        raise GenerationError(
            GenerationErrorCode.AI_SERVICE_ERROR,
            "The AI service failed to generate flashcards.",
        ) from exc
    except Exception as exc:
        logger.exception("Unexpected error from flashcard provider")
        raise GenerationError(
            GenerationErrorCode.AI_SERVICE_ERROR,
            "The AI service failed to generate flashcards.",
        ) from exc


async def _save_generation(
    db: AsyncSession,
    *,
    user_id: str,
    output: ProviderOutput,
    source_hash: str,
    source_length: int,
    duration_ms: int,
) -> Generation:
    record = Generation(
        user_id=user_id,
        model=output.model,
        source_text_hash=source_hash,
        source_text_length=source_length,
        generated_count=len(output.candidates),
        generation_duration_ms=duration_ms,
        accepted_unedited_count=0,
        accepted_edited_count=0,
    )
    db.add(record)
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        logger.exception("Failed to save generation record")
        await db.rollback()
        raise GenerationError(
            GenerationErrorCode.DATABASE_ERROR,
            "Failed to save generation record.",
        ) from exc
    return record


async def _log_generation_error(
    db: AsyncSession,
    *,
    user_id: str,
    source_hash: str,
    source_length: int,
    model: str,
    error: GenerationError,
) -> None:
    """Record a failed generation. Never raises: the original error wins."""
    try:
        await db.rollback()
        db.add(
            GenerationErrorLog(
                user_id=user_id,
                source_text_hash=source_hash,
                source_text_length=source_length,
                error_code=error.code.value,
                error_message=error.message,
                model=model,
            )
        )
        await db.commit()
    except SQLAlchemyError:
        logger.exception("Failed to write generation error log (hash %s)", source_hash)
        with contextlib.suppress(SQLAlchemyError):
            await db.rollback()
