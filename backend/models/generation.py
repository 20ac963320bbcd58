"""Generation model: one row per successful AI generation call."""

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.models.base import Base, TimestampMixin


class Generation(Base, TimestampMixin):
    """Metadata for a batch of AI candidates produced from one source text.

    Immutable after creation apart from the two acceptance counters, which
    are only ever incremented in SQL by the acceptance transaction.
    """

    __tablename__ = "generations"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    model: Mapped[str] = mapped_column(String(200), nullable=False)
    source_text_hash: Mapped[str] = mapped_column(String(32), nullable=False)  # MD5 hex
    source_text_length: Mapped[int] = mapped_column(Integer, nullable=False)
    generated_count: Mapped[int] = mapped_column(Integer, nullable=False)
    generation_duration_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    accepted_unedited_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    accepted_edited_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    flashcards: Mapped[list["Flashcard"]] = relationship(back_populates="generation")  # type: ignore[name-defined] # noqa: F821
