"""End-to-end generation sessions: client flow -> HTTP API -> services -> database."""

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.models import Flashcard, Generation
from studycards.api_client import ApiError, StudyCardsClient
from studycards.flow import GenerationFlow
from studycards.store import GenerationStore, Source, Step

SOURCE_TEXT = "a" * 1000


@pytest.mark.asyncio
async def test_generate_edit_reject_save_scenario(
    api: httpx.AsyncClient,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    flow = GenerationFlow(GenerationStore(), StudyCardsClient("http://test", user_id="user-1", http_client=api))
    store = flow.store

    assert await flow.generate(SOURCE_TEXT) is True
    assert store.step == Step.REVIEW
    assert len(store.candidates) == 3
    assert all(c.source == Source.AI_FULL for c in store.candidates)

    first, second, third = store.candidates
    store.update_candidate(second.id, back="An edited answer.")
    assert second.source == Source.AI_EDITED
    assert first.source == Source.AI_FULL
    assert third.source == Source.AI_FULL

    store.remove_candidate(first.id)
    assert len(store.candidates) == 2

    saved = await flow.save()

    assert saved is not None
    assert saved["created_count"] == 2
    assert [card["source"] for card in saved["flashcards"]] == ["ai-edited", "ai-full"]
    assert store.step == Step.INPUT

    async with session_factory() as db:
        generation = (await db.execute(select(Generation))).scalar_one()
        assert generation.accepted_unedited_count == 1
        assert generation.accepted_edited_count == 1
        rows = (await db.execute(select(Flashcard).order_by(Flashcard.id))).scalars().all()
        assert [row.back for row in rows] == ["An edited answer.", third.back]


@pytest.mark.asyncio
async def test_short_text_never_reaches_server(api: httpx.AsyncClient) -> None:
    flow = GenerationFlow(GenerationStore(), StudyCardsClient("http://test", user_id="user-1", http_client=api))

    assert await flow.generate("too short") is False
    assert flow.store.step == Step.INPUT
    assert flow.store.error is not None


@pytest.mark.asyncio
async def test_unauthenticated_generation_returns_to_input(api: httpx.AsyncClient) -> None:
    flow = GenerationFlow(GenerationStore(), StudyCardsClient("http://test", http_client=api))

    assert await flow.generate(SOURCE_TEXT) is False
    assert flow.store.step == Step.INPUT
    assert "logged in" in flow.store.error


@pytest.mark.asyncio
async def test_stale_generation_save_returns_to_review(
    api: httpx.AsyncClient,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    flow = GenerationFlow(GenerationStore(), StudyCardsClient("http://test", user_id="user-1", http_client=api))
    await flow.generate(SOURCE_TEXT)
    flow.store.generation_id = 12345

    assert await flow.save() is None
    assert flow.store.step == Step.REVIEW
    assert len(flow.store.candidates) == 3
    assert "no longer exists" in flow.store.error


@pytest.mark.asyncio
async def test_api_error_decoding() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/generations":
            return httpx.Response(408, json={"error": {"code": "GENERATION_TIMEOUT", "message": "Too slow."}})
        return httpx.Response(502, text="<html>Bad Gateway</html>")

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")
    client = StudyCardsClient("http://test", user_id="user-1", http_client=http)

    with pytest.raises(ApiError) as exc_info:
        await client.generate_flashcards(SOURCE_TEXT)
    assert (exc_info.value.status, exc_info.value.code, exc_info.value.message) == (
        408,
        "GENERATION_TIMEOUT",
        "Too slow.",
    )

    with pytest.raises(ApiError) as exc_info:
        await client.save_flashcards({"flashcards": []})
    assert exc_info.value.status == 502
    assert exc_info.value.code == "UNKNOWN_ERROR"
