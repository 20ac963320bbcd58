"""Client-side state for the generate -> review -> save flow.

The store is a plain state machine. It does no I/O: ``GenerationFlow`` runs
the network calls and reports their outcome back through the transition
methods. Each candidate keeps the text the model produced next to the
current text, and its ``source`` is always derived from the two.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from studycards.api_client import ApiError

SOURCE_TEXT_MIN_LENGTH = 1000
SOURCE_TEXT_MAX_LENGTH = 5000
FRONT_MAX_LENGTH = 200
BACK_MAX_LENGTH = 500


class Step(StrEnum):
    INPUT = "input"
    GENERATING = "generating"
    REVIEW = "review"
    SAVING = "saving"


class Source(StrEnum):
    MANUAL = "manual"
    AI_FULL = "ai-full"
    AI_EDITED = "ai-edited"


class InvalidTransition(Exception):
    """A transition was requested from a step that does not allow it."""


def derive_source(original_front: str, original_back: str, front: str, back: str) -> Source:
    """ai-full while both sides match what the model produced, ai-edited otherwise."""
    if front == original_front and back == original_back:
        return Source.AI_FULL
    return Source.AI_EDITED


def validate_content(front: str, back: str) -> list[str]:
    """Problems that would make the server reject this card; empty when it is valid."""
    errors = []
    if not front.strip():
        errors.append("Front cannot be empty.")
    elif len(front) > FRONT_MAX_LENGTH:
        errors.append(f"Front must be at most {FRONT_MAX_LENGTH} characters (currently {len(front)}).")
    if not back.strip():
        errors.append("Back cannot be empty.")
    elif len(back) > BACK_MAX_LENGTH:
        errors.append(f"Back must be at most {BACK_MAX_LENGTH} characters (currently {len(back)}).")
    return errors


@dataclass
class CandidateView:
    front: str
    back: str
    original_front: str
    original_back: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def from_generated(cls, front: str, back: str) -> CandidateView:
        return cls(front=front, back=back, original_front=front, original_back=back)

    @property
    def source(self) -> Source:
        return derive_source(self.original_front, self.original_back, self.front, self.back)

    @property
    def errors(self) -> list[str]:
        return validate_content(self.front, self.back)


# --- User-facing messages ---


def generation_error_message(error: BaseException) -> str:
    if not isinstance(error, ApiError):
        return "Could not reach the server. Check your connection and try again."
    if error.status == 408:
        return "Generation took too long. Please try again with a shorter text."
    if error.status == 400:
        return error.message
    if error.status == 401:
        return "You must be logged in to generate flashcards."
    return "Failed to generate flashcards. Please try again later."


def save_error_message(error: BaseException) -> str:
    if not isinstance(error, ApiError):
        return "Could not reach the server. Your flashcards were not saved."
    if error.status == 400:
        return error.message
    if error.status == 401:
        return "You must be logged in to save flashcards."
    if error.status == 404:
        return "This generation no longer exists. Please generate new flashcards."
    return "Failed to save flashcards. Please try again."


@dataclass
class GenerationStore:
    """Holds one generation session from source text to saved flashcards."""

    min_length: int = SOURCE_TEXT_MIN_LENGTH
    max_length: int = SOURCE_TEXT_MAX_LENGTH
    step: Step = Step.INPUT
    source_text: str = ""
    generation_id: int | None = None
    candidates: list[CandidateView] = field(default_factory=list)
    error: str | None = None

    def _require(self, action: str, *steps: Step) -> None:
        if self.step not in steps:
            raise InvalidTransition(f"Cannot {action} in step '{self.step}'")

    def _find(self, candidate_id: str) -> CandidateView:
        for candidate in self.candidates:
            if candidate.id == candidate_id:
                return candidate
        raise KeyError(candidate_id)

    # --- input ---

    def set_source_text(self, text: str) -> None:
        self._require("edit the source text", Step.INPUT)
        self.source_text = text

    def begin_generation(self) -> bool:
        """Move to GENERATING if the source text length is acceptable."""
        self._require("start generation", Step.INPUT)
        length = len(self.source_text)
        if not self.min_length <= length <= self.max_length:
            self.error = (
                f"Source text must be between {self.min_length} and {self.max_length} "
                f"characters (currently {length})."
            )
            return False
        self.error = None
        self.step = Step.GENERATING
        return True

    # --- generating ---

    def generation_succeeded(self, generation_id: int, candidates: Iterable[Mapping[str, str]]) -> None:
        self._require("finish generation", Step.GENERATING)
        self.generation_id = generation_id
        self.candidates = [CandidateView.from_generated(c["front"], c["back"]) for c in candidates]
        self.error = None
        self.step = Step.REVIEW

    def generation_failed(self, error: BaseException) -> None:
        self._require("fail generation", Step.GENERATING)
        self.error = generation_error_message(error)
        self.step = Step.INPUT

    # --- review ---

    def update_candidate(self, candidate_id: str, *, front: str | None = None, back: str | None = None) -> None:
        self._require("edit a candidate", Step.REVIEW)
        candidate = self._find(candidate_id)
        if front is not None:
            candidate.front = front.strip()
        if back is not None:
            candidate.back = back.strip()

    def remove_candidate(self, candidate_id: str) -> None:
        self._require("reject a candidate", Step.REVIEW)
        self.candidates = [c for c in self.candidates if c.id != candidate_id]

    @property
    def can_save(self) -> bool:
        return (
            self.step == Step.REVIEW
            and self.generation_id is not None
            and bool(self.candidates)
            and not any(c.errors for c in self.candidates)
        )

    def begin_save(self) -> dict[str, Any] | None:
        """Move to SAVING and return the create-flashcards command, or None."""
        self._require("save", Step.REVIEW)
        if self.generation_id is None:
            self.error = "There is no generation to save flashcards for."
            return None
        if not self.candidates:
            self.error = "There are no flashcards left to save."
            return None
        for position, candidate in enumerate(self.candidates, 1):
            if candidate.errors:
                self.error = f"Flashcard {position}: {candidate.errors[0]}"
                return None

        self.error = None
        self.step = Step.SAVING
        return {
            "generation_id": self.generation_id,
            "flashcards": [
                {"front": c.front, "back": c.back, "source": c.source.value} for c in self.candidates
            ],
        }

    # --- saving ---

    def save_failed(self, error: BaseException) -> None:
        self._require("fail saving", Step.SAVING)
        self.error = save_error_message(error)
        self.step = Step.REVIEW

    def save_succeeded(self) -> None:
        self._require("finish saving", Step.SAVING)
        self.reset()

    def reset(self) -> None:
        self.step = Step.INPUT
        self.source_text = ""
        self.generation_id = None
        self.candidates = []
        self.error = None
