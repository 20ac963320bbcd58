"""SQLAlchemy ORM models for the StudyCards database."""

from backend.models.base import Base
from backend.models.flashcard import Flashcard, FlashcardSource
from backend.models.generation import Generation
from backend.models.generation_error_log import GenerationErrorLog

__all__ = ["Base", "Flashcard", "FlashcardSource", "Generation", "GenerationErrorLog"]
