"""Flashcard persistence: atomic acceptance of candidates plus per-user CRUD."""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.models.flashcard import BACK_MAX_LENGTH, FRONT_MAX_LENGTH, Flashcard, FlashcardSource
from backend.models.generation import Generation

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 50


class FlashcardErrorCode(StrEnum):
    GENERATION_NOT_FOUND = "GENERATION_NOT_FOUND"
    NOT_FOUND = "NOT_FOUND"
    DATABASE_ERROR = "DATABASE_ERROR"


class FlashcardServiceError(Exception):
    def __init__(self, code: FlashcardErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class FlashcardCreationError(FlashcardServiceError):
    """GENERATION_NOT_FOUND or DATABASE_ERROR; nothing was written."""


class FlashcardListError(FlashcardServiceError):
    pass


class FlashcardUpdateError(FlashcardServiceError):
    pass


class FlashcardDeletionError(FlashcardServiceError):
    pass


@dataclass(frozen=True)
class FlashcardToCreate:
    front: str
    back: str
    source: FlashcardSource


@dataclass
class CreateFlashcardsResult:
    created_count: int
    flashcards: list[Flashcard]


@dataclass
class FlashcardPage:
    items: list[Flashcard]
    page: int
    limit: int
    total_items: int
    total_pages: int


def acceptance_deltas(flashcards: Sequence[FlashcardToCreate]) -> tuple[int, int]:
    """Return (ai-full count, ai-edited count); manual cards count toward neither."""
    unedited = sum(1 for card in flashcards if card.source == FlashcardSource.AI_FULL)
    edited = sum(1 for card in flashcards if card.source == FlashcardSource.AI_EDITED)
    return unedited, edited


def next_source(current: str, content_changed: bool) -> FlashcardSource:
    """Source after an edit: ai-full becomes ai-edited on change, others stay."""
    try:
        source = FlashcardSource(current)
    except ValueError:
        source = FlashcardSource.MANUAL
    if source == FlashcardSource.AI_FULL and content_changed:
        return FlashcardSource.AI_EDITED
    return source


def _check_batch(flashcards: Sequence[FlashcardToCreate], generation_id: int | None) -> None:
    """Enforce the request-level preconditions; violations are programming errors."""
    if not 1 <= len(flashcards) <= MAX_BATCH_SIZE:
        raise ValueError(f"A batch must contain 1 to {MAX_BATCH_SIZE} flashcards, got {len(flashcards)}")
    for card in flashcards:
        if not isinstance(card.source, FlashcardSource):
            raise ValueError(f"Invalid flashcard source: {card.source!r}")
        if not 0 < len(card.front) <= FRONT_MAX_LENGTH:
            raise ValueError(f"Flashcard front must be 1 to {FRONT_MAX_LENGTH} characters")
        if not 0 < len(card.back) <= BACK_MAX_LENGTH:
            raise ValueError(f"Flashcard back must be 1 to {BACK_MAX_LENGTH} characters")
    if generation_id is None and any(card.source != FlashcardSource.MANUAL for card in flashcards):
        raise ValueError("generation_id is required when any flashcard source is ai-full or ai-edited")


async def create_flashcards(
    db: AsyncSession,
    *,
    user_id: str,
    flashcards: Sequence[FlashcardToCreate],
    generation_id: int | None = None,
) -> CreateFlashcardsResult:
    """Persist a batch of flashcards and bump the generation's acceptance counters.

    Ownership check, inserts and counter increments run in one transaction:
    either every row is written and the counters move by exactly the batch's
    deltas, or nothing is persisted. Counters are incremented in SQL so two
    concurrent acceptances for the same generation cannot lose an update.

    Raises:
        ValueError: If the batch violates the request preconditions.
        FlashcardCreationError: GENERATION_NOT_FOUND or DATABASE_ERROR.
    """
    _check_batch(flashcards, generation_id)
    unedited_delta, edited_delta = acceptance_deltas(flashcards)

    try:
        if generation_id is not None:
            owned = (
                await db.execute(
                    select(Generation.id)
                    .where(Generation.id == generation_id, Generation.user_id == user_id)
                    .with_for_update()
                )
            ).scalar_one_or_none()
            if owned is None:
                await db.rollback()
                raise FlashcardCreationError(
                    FlashcardErrorCode.GENERATION_NOT_FOUND,
                    "The specified generation does not exist or does not belong to you.",
                )

        rows = [
            Flashcard(
                user_id=user_id,
                generation_id=generation_id,
                front=card.front,
                back=card.back,
                source=card.source.value,
            )
            for card in flashcards
        ]
        db.add_all(rows)
        await db.flush()

        if generation_id is not None and (unedited_delta or edited_delta):
            await db.execute(
                update(Generation)
                .where(Generation.id == generation_id, Generation.user_id == user_id)
                .values(
                    accepted_unedited_count=Generation.accepted_unedited_count + unedited_delta,
                    accepted_edited_count=Generation.accepted_edited_count + edited_delta,
                )
                .execution_options(synchronize_session="fetch")
            )

        await db.commit()
    except SQLAlchemyError as exc:
        logger.exception("Failed to create flashcards for user %s", user_id)
        await db.rollback()
        raise FlashcardCreationError(
            FlashcardErrorCode.DATABASE_ERROR,
            "Failed to create flashcards.",
        ) from exc

    logger.info(
        "Created %d flashcards for user %s (generation=%s, +%d unedited, +%d edited)",
        len(rows),
        user_id,
        generation_id,
        unedited_delta,
        edited_delta,
    )
    return CreateFlashcardsResult(created_count=len(rows), flashcards=rows)


async def list_flashcards(
    db: AsyncSession,
    *,
    user_id: str,
    page: int = 1,
    limit: int = 20,
    search: str | None = None,
) -> FlashcardPage:
    """List a user's flashcards, newest first, optionally filtered by text."""
    filters = [Flashcard.user_id == user_id]
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        filters.append(or_(Flashcard.front.ilike(pattern), Flashcard.back.ilike(pattern)))

    try:
        total_items = (await db.execute(select(func.count(Flashcard.id)).where(*filters))).scalar() or 0
        result = await db.execute(
            select(Flashcard)
            .where(*filters)
            .order_by(Flashcard.created_at.desc(), Flashcard.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        items = list(result.scalars().all())
    except SQLAlchemyError as exc:
        logger.exception("Failed to list flashcards for user %s", user_id)
        raise FlashcardListError(FlashcardErrorCode.DATABASE_ERROR, "Failed to retrieve flashcards.") from exc

    return FlashcardPage(
        items=items,
        page=page,
        limit=limit,
        total_items=total_items,
        total_pages=math.ceil(total_items / limit),
    )


async def get_flashcard(db: AsyncSession, *, user_id: str, flashcard_id: int) -> Flashcard | None:
    try:
        result = await db.execute(
            select(Flashcard).where(Flashcard.id == flashcard_id, Flashcard.user_id == user_id)
        )
        return result.scalar_one_or_none()
    except SQLAlchemyError as exc:
        logger.exception("Failed to load flashcard %d", flashcard_id)
        raise FlashcardUpdateError(FlashcardErrorCode.DATABASE_ERROR, "Failed to retrieve flashcard.") from exc


async def update_flashcard(
    db: AsyncSession,
    *,
    user_id: str,
    flashcard_id: int,
    front: str | None = None,
    back: str | None = None,
) -> Flashcard:
    """Apply an edit and derive the next source from whether content changed."""
    flashcard = await get_flashcard(db, user_id=user_id, flashcard_id=flashcard_id)
    if flashcard is None:
        raise FlashcardUpdateError(FlashcardErrorCode.NOT_FOUND, "Flashcard not found.")

    changed = (front is not None and front != flashcard.front) or (back is not None and back != flashcard.back)
    if front is not None:
        flashcard.front = front
    if back is not None:
        flashcard.back = back
    flashcard.source = next_source(flashcard.source, changed).value

    try:
        await db.commit()
    except SQLAlchemyError as exc:
        logger.exception("Failed to update flashcard %d", flashcard_id)
        await db.rollback()
        raise FlashcardUpdateError(FlashcardErrorCode.DATABASE_ERROR, "Failed to update flashcard.") from exc
    return flashcard


async def delete_flashcard(db: AsyncSession, *, user_id: str, flashcard_id: int) -> None:
    try:
        result = await db.execute(
            delete(Flashcard).where(Flashcard.id == flashcard_id, Flashcard.user_id == user_id)
        )
        await db.commit()
    except SQLAlchemyError as exc:
        logger.exception("Failed to delete flashcard %d", flashcard_id)
        await db.rollback()
        raise FlashcardDeletionError(FlashcardErrorCode.DATABASE_ERROR, "Failed to delete flashcard.") from exc

    if result.rowcount == 0:
        raise FlashcardDeletionError(
            FlashcardErrorCode.NOT_FOUND,
            "Flashcard not found or you do not have permission to delete it.",
        )
