"""API routes for the flashcard library: acceptance of candidates and CRUD."""

import logging

from fastapi import APIRouter, Depends, Path, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import get_current_user_id, require_user
from backend.api.errors import ApiException
from backend.api.schemas import (
    CreateFlashcardsData,
    CreateFlashcardsRequest,
    CreateFlashcardsResponse,
    ErrorResponse,
    FlashcardListResponse,
    FlashcardOut,
    FlashcardResponse,
    Pagination,
    UpdateFlashcardRequest,
)
from backend.database import get_session
from backend.models.flashcard import FlashcardSource
from backend.services.flashcards import (
    FlashcardErrorCode,
    FlashcardServiceError,
    FlashcardToCreate,
    create_flashcards,
    delete_flashcard,
    get_flashcard,
    list_flashcards,
    update_flashcard,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/flashcards", tags=["flashcards"])


def _service_error(exc: FlashcardServiceError, not_found_code: str | None = None) -> ApiException:
    if exc.code in (FlashcardErrorCode.GENERATION_NOT_FOUND, FlashcardErrorCode.NOT_FOUND):
        return ApiException(404, not_found_code or exc.code.value, exc.message)
    return ApiException(500, exc.code.value, exc.message)


@router.post(
    "",
    status_code=201,
    response_model=CreateFlashcardsResponse,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def create_batch(
    request: CreateFlashcardsRequest,
    user_id: str | None = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
) -> CreateFlashcardsResponse:
    """Save reviewed candidates (or manual cards) to the user's library."""
    user = require_user(user_id, "You must be logged in to save flashcards.")

    try:
        result = await create_flashcards(
            db,
            user_id=user,
            generation_id=request.generation_id,
            flashcards=[
                FlashcardToCreate(front=card.front, back=card.back, source=FlashcardSource(card.source))
                for card in request.flashcards
            ],
        )
    except FlashcardServiceError as exc:
        raise _service_error(exc) from exc
    except Exception as exc:
        logger.exception("Unexpected error while creating flashcards")
        raise ApiException(500, "INTERNAL_SERVER_ERROR", "An unexpected error occurred.") from exc

    return CreateFlashcardsResponse(
        data=CreateFlashcardsData(
            created_count=result.created_count,
            flashcards=[FlashcardOut.model_validate(row) for row in result.flashcards],
        )
    )


@router.get("", response_model=FlashcardListResponse)
async def list_all(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: str | None = Query(None),
    user_id: str | None = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
) -> FlashcardListResponse:
    """List the user's flashcards, newest first."""
    user = require_user(user_id)
    try:
        result = await list_flashcards(db, user_id=user, page=page, limit=limit, search=search)
    except FlashcardServiceError as exc:
        raise _service_error(exc) from exc

    return FlashcardListResponse(
        data=[FlashcardOut.model_validate(row) for row in result.items],
        pagination=Pagination(
            page=result.page,
            limit=result.limit,
            total_items=result.total_items,
            total_pages=result.total_pages,
        ),
    )


@router.get("/{flashcard_id}", response_model=FlashcardResponse)
async def get_one(
    flashcard_id: int = Path(gt=0),
    user_id: str | None = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
) -> FlashcardResponse:
    user = require_user(user_id)
    try:
        flashcard = await get_flashcard(db, user_id=user, flashcard_id=flashcard_id)
    except FlashcardServiceError as exc:
        raise _service_error(exc) from exc
    if flashcard is None:
        raise ApiException(404, "NOT_FOUND", "Flashcard not found.")
    return FlashcardResponse(data=FlashcardOut.model_validate(flashcard))


@router.patch("/{flashcard_id}", response_model=FlashcardResponse)
async def update_one(
    request: UpdateFlashcardRequest,
    flashcard_id: int = Path(gt=0),
    user_id: str | None = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
) -> FlashcardResponse:
    """Edit a flashcard; an unedited AI card becomes ai-edited when content changes."""
    user = require_user(user_id)
    try:
        flashcard = await update_flashcard(
            db, user_id=user, flashcard_id=flashcard_id, front=request.front, back=request.back
        )
    except FlashcardServiceError as exc:
        raise _service_error(exc) from exc
    return FlashcardResponse(data=FlashcardOut.model_validate(flashcard))


@router.delete("/{flashcard_id}", status_code=204)
async def delete_one(
    flashcard_id: int = Path(gt=0),
    user_id: str | None = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
) -> Response:
    user = require_user(user_id, "Authentication required. Please log in to continue.")
    try:
        await delete_flashcard(db, user_id=user, flashcard_id=flashcard_id)
    except FlashcardServiceError as exc:
        raise _service_error(exc, not_found_code="FLASHCARD_NOT_FOUND") from exc
    return Response(status_code=204)
