"""Flashcard model and provenance tags."""

from enum import StrEnum

from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.models.base import Base, TimestampMixin

FRONT_MAX_LENGTH = 200
BACK_MAX_LENGTH = 500


class FlashcardSource(StrEnum):
    MANUAL = "manual"
    AI_FULL = "ai-full"
    AI_EDITED = "ai-edited"


class Flashcard(Base, TimestampMixin):
    """A persisted flashcard owned by exactly one user."""

    __tablename__ = "flashcards"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    generation_id: Mapped[int | None] = mapped_column(
        ForeignKey("generations.id", ondelete="SET NULL"), nullable=True
    )
    front: Mapped[str] = mapped_column(String(FRONT_MAX_LENGTH), nullable=False)
    back: Mapped[str] = mapped_column(String(BACK_MAX_LENGTH), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)  # manual, ai-full, ai-edited

    generation: Mapped["Generation"] = relationship(back_populates="flashcards")  # type: ignore[name-defined] # noqa: F821
