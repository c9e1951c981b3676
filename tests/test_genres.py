"""Loading rules of the genre directory."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from reelsync.services.events import EventBus
from reelsync.services.genres import GenreDirectory
from reelsync.services.tmdb import TMDBClient

from support import RecordingListener, build_settings


@pytest.mark.anyio("asyncio")
async def test_concurrent_loaders_share_one_request() -> None:
    calls: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        await asyncio.sleep(0.01)
        return httpx.Response(
            200, json={"genres": [{"id": 28, "name": "Action"}, {"id": 18, "name": "Drama"}]}
        )

    events = EventBus()
    listener = RecordingListener()
    events.register(listener)
    directory = GenreDirectory()
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://api.themoviedb.test/3/"
    ) as http_client:
        client = TMDBClient(build_settings(), http_client)
        results = await asyncio.gather(
            directory.ensure_loaded(client, events),
            directory.ensure_loaded(client, events),
        )

    assert results == [True, True]
    assert len(calls) == 1
    assert directory.is_loaded
    assert directory.resolve([18, 99, 28]) == ["Drama", "Action"]
    assert listener.genre_ready_calls == 2


@pytest.mark.anyio("asyncio")
async def test_failed_load_can_be_retried() -> None:
    responses = [
        httpx.Response(500, text="down"),
        httpx.Response(200, json={"genres": [{"id": 35, "name": "Comedy"}]}),
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    events = EventBus()
    listener = RecordingListener()
    events.register(listener)
    directory = GenreDirectory()
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://api.themoviedb.test/3/"
    ) as http_client:
        client = TMDBClient(build_settings(), http_client)
        assert await directory.ensure_loaded(client, events) is False
        assert listener.errors and listener.genre_ready_calls == 0
        assert await directory.ensure_loaded(client, events) is True

    assert dict(directory.names) == {35: "Comedy"}
