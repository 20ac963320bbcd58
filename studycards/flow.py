"""Runs the network side of a generation session against a GenerationStore."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from studycards.api_client import ApiError, StudyCardsClient
from studycards.store import GenerationStore

logger = logging.getLogger(__name__)


class GenerationFlow:
    """Performs generate and save calls and reports the outcome to the store."""

    def __init__(self, store: GenerationStore, client: StudyCardsClient) -> None:
        self.store = store
        self.client = client

    async def generate(self, source_text: str) -> bool:
        """Return True once the store has reached REVIEW."""
        self.store.set_source_text(source_text)
        if not self.store.begin_generation():
            return False

        try:
            data = await self.client.generate_flashcards(self.store.source_text)
        except (ApiError, httpx.HTTPError) as exc:
            logger.debug("Generation request failed: %r", exc)
            self.store.generation_failed(exc)
            return False

        self.store.generation_succeeded(data["generation_id"], data["flashcard_candidates"])
        return True

    async def save(self) -> dict[str, Any] | None:
        """Save the reviewed candidates; returns the server payload on success."""
        command = self.store.begin_save()
        if command is None:
            return None

        try:
            data = await self.client.save_flashcards(command)
        except (ApiError, httpx.HTTPError) as exc:
            logger.debug("Save request failed: %r", exc)
            self.store.save_failed(exc)
            return None

        self.store.save_succeeded()
        return data
