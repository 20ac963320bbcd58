"""Request-scoped dependencies: the authenticated user and the flashcard provider."""

import logging

from fastapi import Depends, Header

from backend.api.errors import ApiException
from backend.config import settings
from backend.llm_types import ProviderError
from backend.services.providers import FlashcardProvider, build_provider

logger = logging.getLogger(__name__)


async def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str | None:
    """Return the user id asserted by the upstream auth proxy, or None."""
    if x_user_id is None or not x_user_id.strip():
        return None
    return x_user_id.strip()


def require_user(user_id: str | None, message: str = "Authentication required") -> str:
    if user_id is None:
        raise ApiException(401, "UNAUTHORIZED", message)
    return user_id


async def require_generation_user(user_id: str | None = Depends(get_current_user_id)) -> str:
    """Reject anonymous generation requests before the provider is resolved."""
    return require_user(user_id, "You must be logged in to generate flashcards.")


# Lazy singleton: avoids creating an HTTP client at import time when no API key is set.
_provider: FlashcardProvider | None = None


def get_provider() -> FlashcardProvider:
    """Return the shared FlashcardProvider, creating it on first call."""
    global _provider
    if _provider is None:
        try:
            _provider = build_provider(settings)
        except ProviderError as exc:
            logger.error("Flashcard provider is misconfigured: %s", exc.message)
            raise ApiException(500, "AI_SERVICE_ERROR", "The AI service is not configured.") from exc
    return _provider


async def close_provider() -> None:
    """Close the shared provider, if one was created."""
    global _provider
    if _provider is not None:
        await _provider.aclose()
        _provider = None
