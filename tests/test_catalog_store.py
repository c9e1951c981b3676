"""Persistence behaviour of the catalog store."""

from __future__ import annotations

import pytest

from reelsync.services.catalog_store import hash_password, split_genres

from support import make_entity, open_store


@pytest.mark.anyio("asyncio")
async def test_upsert_is_idempotent(tmp_path) -> None:
    """Upserting the same movie twice leaves one row with the second values."""

    database, store = await open_store(tmp_path)
    try:
        assert await store.upsert_by_external_id(make_entity(42, rating_average=6.0)) is True
        assert await store.upsert_by_external_id(make_entity(42, rating_average=7.5)) is False

        assert await store.count() == 1
        [movie] = await store.query_all()
        assert movie.external_id == 42
        assert movie.rating_average == pytest.approx(7.5)
        assert movie.local_id > 0
        assert await store.local_id_for(42) == movie.local_id
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_save_entities_reports_inserts_and_updates(tmp_path) -> None:
    database, store = await open_store(tmp_path)
    try:
        assert await store.save_entities([make_entity(1), make_entity(2)]) == (2, 0)
        # Duplicates inside one batch collapse onto a single row.
        assert await store.save_entities(
            [make_entity(2), make_entity(3), make_entity(3, title="Renamed")]
        ) == (1, 1)
        assert await store.save_entities([]) == (0, 0)

        assert await store.count() == 3
        titles = {movie.external_id: movie.title for movie in await store.query_all()}
        assert titles[3] == "Renamed"
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_upsert_never_regresses_known_details(tmp_path) -> None:
    database, store = await open_store(tmp_path)
    try:
        await store.upsert_by_external_id(
            make_entity(
                7,
                runtime_minutes=120,
                genres=["Drama", "Crime"],
                poster_reference="https://img/7.jpg",
            )
        )
        await store.upsert_by_external_id(make_entity(7, title="", release_year=0))

        [movie] = await store.query_all()
        assert movie.runtime_minutes == 120
        assert movie.genres == ["Drama", "Crime"]
        assert movie.poster_reference == "https://img/7.jpg"
        assert movie.title == "Movie 7"
        assert movie.release_year == 2007
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_runtime_lookups(tmp_path) -> None:
    database, store = await open_store(tmp_path)
    try:
        await store.save_entities([make_entity(1), make_entity(2, runtime_minutes=95)])

        assert await store.has_known_runtime(1) is False
        assert await store.has_known_runtime(2) is True
        assert await store.known_runtime_ids([1, 2, 3]) == {2}

        assert await store.update_runtime(1, 101) is True
        assert await store.update_runtime(99, 101) is False
        assert await store.update_runtime(1, 0) is False
        assert await store.known_runtime_ids([1, 2]) == {1, 2}
        assert await store.exists_by_external_id(1) is True
        assert await store.exists_by_external_id(99) is False
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_sort_orders(tmp_path) -> None:
    database, store = await open_store(tmp_path)
    try:
        await store.save_entities(
            [
                make_entity(1, title="Brazil", release_year=1985, rating_average=7.9, runtime_minutes=132),
                make_entity(2, title="Alien", release_year=1979, rating_average=8.5, runtime_minutes=117),
                make_entity(3, title="Clue", release_year=1985, rating_average=7.2, runtime_minutes=94),
            ]
        )

        assert [m.title for m in await store.query_all("title")] == ["Alien", "Brazil", "Clue"]
        assert [m.title for m in await store.query_all("year")] == ["Brazil", "Clue", "Alien"]
        assert [m.title for m in await store.query_all("rating")] == ["Alien", "Brazil", "Clue"]
        assert [m.title for m in await store.query_all("duration")] == ["Clue", "Alien", "Brazil"]
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_genre_query_matches_every_position(tmp_path) -> None:
    database, store = await open_store(tmp_path)
    try:
        await store.save_entities(
            [
                make_entity(1, genres=["Drama"]),
                make_entity(2, genres=["Drama", "Crime"]),
                make_entity(3, genres=["Action", "Drama", "War"]),
                make_entity(4, genres=["Crime", "Drama"]),
                make_entity(5, genres=["Docudrama"]),
                make_entity(6, genres=[]),
            ]
        )

        matches = await store.query_by_genre("Drama")
        assert sorted(movie.external_id for movie in matches) == [1, 2, 3, 4]
        assert await store.distinct_genres() == ["Action", "Crime", "Docudrama", "Drama", "War"]
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_search_text_is_case_insensitive_and_escaped(tmp_path) -> None:
    database, store = await open_store(tmp_path)
    try:
        await store.save_entities(
            [
                make_entity(1, title="The Matrix"),
                make_entity(2, title="Matrix 100%"),
                make_entity(3, title="Heat"),
            ]
        )

        assert {m.external_id for m in await store.query_by_search_text("MATRIX")} == {1, 2}
        assert [m.external_id for m in await store.query_by_search_text("100%")] == [2]
        assert await store.query_by_search_text("nothing here") == []
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_membership_flags_come_from_one_joined_read(tmp_path) -> None:
    database, store = await open_store(tmp_path)
    try:
        await store.save_entities([make_entity(1), make_entity(2), make_entity(3)])
        alice = await store.register_user("alice", "secret")
        bob = await store.register_user("bob", "hunter2")
        assert alice is not None and bob is not None
        first = await store.local_id_for(1)
        second = await store.local_id_for(2)
        assert first is not None and second is not None

        assert await store.toggle_favorite(alice, first) is True
        assert await store.toggle_watchlist(alice, second) is True
        assert await store.toggle_favorite(bob, second) is True

        flags = {
            movie.external_id: (movie.is_favorite, movie.is_in_watchlist)
            for movie in await store.query_all(user_id=alice)
        }
        assert flags == {1: (True, False), 2: (False, True), 3: (False, False)}

        anonymous = await store.query_all()
        assert not any(movie.is_favorite or movie.is_in_watchlist for movie in anonymous)

        assert [m.external_id for m in await store.query_favorites(alice)] == [1]
        assert [m.external_id for m in await store.query_watchlist(alice)] == [2]
        assert [m.external_id for m in await store.query_favorites(bob)] == [2]

        assert await store.toggle_favorite(alice, first) is False
        assert await store.query_favorites(alice) == []
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_toggle_unknown_movie_raises(tmp_path) -> None:
    database, store = await open_store(tmp_path)
    try:
        user_id = await store.register_user("carol", "pw")
        assert user_id is not None
        with pytest.raises(KeyError):
            await store.toggle_watchlist(user_id, 12345)
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_rating_keeps_a_running_average(tmp_path) -> None:
    database, store = await open_store(tmp_path)
    try:
        await store.upsert_by_external_id(make_entity(1, rating_average=8.0))
        movie_id = await store.local_id_for(1)
        assert movie_id is not None

        assert await store.rate_movie(movie_id, 6.0) == pytest.approx(7.0)
        assert await store.rate_movie(movie_id, 10.0) == pytest.approx(8.0)
        assert await store.rate_movie(999, 5.0) is None
        with pytest.raises(ValueError):
            await store.rate_movie(movie_id, 11.0)
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_credentials_are_hashed_and_unique(tmp_path) -> None:
    database, store = await open_store(tmp_path)
    try:
        user_id = await store.register_user("dave", "correct horse")
        assert user_id is not None
        assert await store.register_user("dave", "other") is None

        assert await store.verify_user("dave", "correct horse") == user_id
        assert await store.verify_user("dave", "wrong") is None
        assert await store.user_id_for("dave") == user_id
        assert await store.user_exists(user_id) is True
        assert await store.user_exists(user_id + 1) is False
    finally:
        await database.dispose()


def test_helpers() -> None:
    assert hash_password("abc") == (
        "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    )
    assert split_genres(" Drama, ,Crime ") == ["Drama", "Crime"]
    assert split_genres(None) == []
