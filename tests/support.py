"""Shared builders and fakes for the test-suite."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Sequence

from reelsync.config import Settings
from reelsync.database import Database
from reelsync.models import CatalogEntity
from reelsync.services.catalog_store import CatalogStore


def build_settings(**overrides: Any) -> Settings:
    """Return a settings object with defaults suitable for tests."""

    base: dict[str, Any] = {
        "TMDB_API_KEY": "test-key",
        "TMDB_API_URL": "https://api.themoviedb.test/3",
        "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
    }
    base.update(overrides)
    return Settings(_env_file=None, **base)  # type: ignore[arg-type]


def make_entity(external_id: int, **fields: Any) -> CatalogEntity:
    values: dict[str, Any] = {
        "title": f"Movie {external_id}",
        "release_year": 2000 + external_id % 20,
        "rating_average": 7.0,
    }
    values.update(fields)
    return CatalogEntity(external_id=external_id, **values)


def movie_payload(movie_id: int, **fields: Any) -> dict[str, Any]:
    """A result object as returned by the TMDb list and search endpoints."""

    payload: dict[str, Any] = {
        "id": movie_id,
        "title": f"Movie {movie_id}",
        "release_date": "2015-06-01",
        "vote_average": 6.5,
        "poster_path": f"/poster-{movie_id}.jpg",
        "genre_ids": [28],
    }
    payload.update(fields)
    return payload


def page_payload(
    page: int, total_pages: int, ids: Sequence[int]
) -> dict[str, Any]:
    return {
        "page": page,
        "total_pages": total_pages,
        "total_results": total_pages * len(ids),
        "results": [movie_payload(movie_id) for movie_id in ids],
    }


async def open_store(tmp_path: Path) -> tuple[Database, CatalogStore]:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}")
    await database.create_all()
    return database, CatalogStore(database.session_factory)


class RecordingListener:
    """Listener that keeps every event it receives."""

    def __init__(self) -> None:
        self.snapshots: list[list[CatalogEntity]] = []
        self.updates: list[tuple[int, float | None, int | None]] = []
        self.errors: list[str] = []
        self.genre_ready_calls = 0

    def on_entities_available(self, entities: Sequence[CatalogEntity]) -> None:
        self.snapshots.append(list(entities))

    def on_entity_updated(
        self, external_id: int, rating: float | None, runtime: int | None
    ) -> None:
        self.updates.append((external_id, rating, runtime))

    def on_error(self, message: str) -> None:
        self.errors.append(message)

    def on_genre_directory_ready(self) -> None:
        self.genre_ready_calls += 1
