"""API routes for AI flashcard generation."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import get_provider, require_generation_user
from backend.api.errors import ApiException
from backend.api.schemas import (
    ErrorResponse,
    FlashcardCandidate,
    GenerateFlashcardsRequest,
    GenerateFlashcardsResponse,
    GenerationResultData,
)
from backend.config import settings
from backend.database import get_session
from backend.services.generation import GenerationError, GenerationErrorCode, generate_flashcards
from backend.services.providers import FlashcardProvider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/generations", tags=["generations"])

_STATUS_BY_CODE = {
    GenerationErrorCode.GENERATION_TIMEOUT: 408,
    GenerationErrorCode.AI_SERVICE_ERROR: 500,
    GenerationErrorCode.DATABASE_ERROR: 500,
}


@router.post(
    "",
    response_model=GenerateFlashcardsResponse,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}, 408: {"model": ErrorResponse}},
)
async def create_generation(
    request: GenerateFlashcardsRequest,
    user: str = Depends(require_generation_user),
    db: AsyncSession = Depends(get_session),
    provider: FlashcardProvider = Depends(get_provider),
) -> GenerateFlashcardsResponse:
    """Generate flashcard candidates from a source text."""

    try:
        result = await generate_flashcards(
            db,
            source_text=request.source_text,
            user_id=user,
            provider=provider,
            timeout_seconds=settings.generation_timeout_seconds,
        )
    except GenerationError as exc:
        raise ApiException(_STATUS_BY_CODE[exc.code], exc.code.value, exc.message) from exc
    except Exception as exc:
        logger.exception("Unexpected error during generation")
        raise ApiException(500, "INTERNAL_SERVER_ERROR", "An unexpected error occurred.") from exc

    return GenerateFlashcardsResponse(
        data=GenerationResultData(
            generation_id=result.generation_id,
            model=result.model,
            generated_count=result.generated_count,
            generation_duration=result.generation_duration,
            created_at=result.created_at,
            flashcard_candidates=[
                FlashcardCandidate(front=c.front, back=c.back) for c in result.flashcard_candidates
            ],
        )
    )
