"""Pydantic schemas for API request/response models."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from backend.config import settings
from backend.models.flashcard import BACK_MAX_LENGTH, FRONT_MAX_LENGTH
from backend.services.flashcards import MAX_BATCH_SIZE

SourceLiteral = Literal["manual", "ai-full", "ai-edited"]


# --- Envelopes ---


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Any | None = None


class ErrorResponse(BaseModel):
    error: ErrorBody


# --- Generation ---


class GenerateFlashcardsRequest(BaseModel):
    """Request to generate flashcard candidates from a source text."""

    source_text: str = Field(
        min_length=settings.source_text_min_length,
        max_length=settings.source_text_max_length,
    )


class FlashcardCandidate(BaseModel):
    front: str
    back: str


class GenerationResultData(BaseModel):
    generation_id: int
    model: str
    generated_count: int
    generation_duration: int  # ms
    created_at: datetime
    flashcard_candidates: list[FlashcardCandidate]


class GenerateFlashcardsResponse(BaseModel):
    data: GenerationResultData


# --- Flashcards ---


class FlashcardIn(BaseModel):
    front: str = Field(min_length=1, max_length=FRONT_MAX_LENGTH)
    back: str = Field(min_length=1, max_length=BACK_MAX_LENGTH)
    source: SourceLiteral


class CreateFlashcardsRequest(BaseModel):
    """Request to persist reviewed candidates and/or manual flashcards."""

    generation_id: int | None = Field(default=None, gt=0)
    flashcards: list[FlashcardIn] = Field(min_length=1, max_length=MAX_BATCH_SIZE)

    @model_validator(mode="after")
    def _generation_required_for_ai_cards(self) -> "CreateFlashcardsRequest":
        if self.generation_id is None and any(card.source != "manual" for card in self.flashcards):
            raise ValueError("generation_id is required when any flashcard source is ai-full or ai-edited.")
        return self


class FlashcardOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    generation_id: int | None
    front: str
    back: str
    source: SourceLiteral
    created_at: datetime
    updated_at: datetime


class CreateFlashcardsData(BaseModel):
    created_count: int
    flashcards: list[FlashcardOut]


class CreateFlashcardsResponse(BaseModel):
    data: CreateFlashcardsData


class UpdateFlashcardRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    front: str | None = Field(default=None, min_length=1, max_length=FRONT_MAX_LENGTH)
    back: str | None = Field(default=None, min_length=1, max_length=BACK_MAX_LENGTH)

    @model_validator(mode="after")
    def _at_least_one_field(self) -> "UpdateFlashcardRequest":
        if self.front is None and self.back is None:
            raise ValueError("At least one of front or back must be provided.")
        return self


class FlashcardResponse(BaseModel):
    data: FlashcardOut


class Pagination(BaseModel):
    page: int
    limit: int
    total_items: int
    total_pages: int


class FlashcardListResponse(BaseModel):
    data: list[FlashcardOut]
    pagination: Pagination
