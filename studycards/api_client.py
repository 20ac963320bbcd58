"""HTTP client for the generation and flashcard endpoints."""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0


class ApiError(Exception):
    """A non-2xx answer, decoded from the {"error": {...}} envelope."""

    def __init__(self, status: int, code: str, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
        self.message = message
        self.details = details

    def __repr__(self) -> str:
        return f"ApiError(status={self.status}, code={self.code!r}, message={self.message!r})"


class StudyCardsClient:
    """Thin async wrapper over the StudyCards HTTP API.

    Network failures surface as ``httpx.HTTPError``; every error answer from
    the server surfaces as ``ApiError``.
    """

    def __init__(
        self,
        base_url: str,
        user_id: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        headers = {"X-User-Id": user_id} if user_id else {}
        if http_client is None:
            self._http = httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout)
            self._owns_http = True
        else:
            http_client.headers.update(headers)
            self._http = http_client
            self._owns_http = False

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> StudyCardsClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def generate_flashcards(self, source_text: str) -> dict[str, Any]:
        """POST /api/generations and return the GenerationResult payload."""
        return await self._post("/api/generations", {"source_text": source_text})

    async def save_flashcards(self, command: dict[str, Any]) -> dict[str, Any]:
        """POST /api/flashcards and return {created_count, flashcards}."""
        return await self._post("/api/flashcards", command)

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        logger.debug("POST %s", path)
        response = await self._http.post(path, json=payload)
        if not response.is_success:
            raise _api_error(response)
        return response.json()["data"]


def _api_error(response: httpx.Response) -> ApiError:
    try:
        body = response.json()["error"]
        return ApiError(response.status_code, body["code"], body["message"], body.get("details"))
    except (ValueError, KeyError, TypeError):
        logger.warning("Unreadable error body from server (HTTP %d)", response.status_code)
        return ApiError(response.status_code, "UNKNOWN_ERROR", "An unexpected error occurred.")
