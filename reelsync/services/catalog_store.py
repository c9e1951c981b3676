"""Persistent catalog of movies and per-user relations."""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime
from typing import Any, Iterable, Sequence

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from ..db_models import Favorite, Movie, User, WatchlistEntry
from ..models import CatalogEntity, SortSpec

logger = logging.getLogger(__name__)

_UPSERT_CHUNK = 200
_LOOKUP_CHUNK = 500

SORT_ORDERS: dict[str, tuple[Any, ...]] = {
    "title": (Movie.title.asc(), Movie.id),
    "year": (Movie.year.desc(), Movie.title.asc()),
    "rating": (Movie.rating.desc(), Movie.title.asc()),
    "duration": (Movie.duration.asc(), Movie.title.asc()),
}


def hash_password(password: str) -> str:
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


def split_genres(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _chunks(values: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


class CatalogStore:
    """Record store for catalog entities keyed by their TMDb id.

    Every write is an upsert on ``api_id`` so batches ingested in any order
    converge to the same rows. Listing reads join the favorite and watchlist
    tables once to return membership flags with each movie.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # -- writes ---------------------------------------------------------------

    async def upsert_by_external_id(self, entity: CatalogEntity) -> bool:
        """Insert or update one movie; return ``True`` when it was new."""

        inserted, _ = await self.save_entities([entity])
        return inserted == 1

    async def save_entities(
        self, entities: Sequence[CatalogEntity]
    ) -> tuple[int, int]:
        """Upsert a batch and return ``(inserted, updated)`` counts."""

        unique: dict[int, CatalogEntity] = {}
        for entity in entities:
            previous = unique.get(entity.external_id)
            unique[entity.external_id] = (
                previous.merged_with(entity) if previous else entity
            )
        if not unique:
            return 0, 0

        ids = list(unique)
        async with self._session_factory() as session:
            existing: set[int] = set()
            for chunk in _chunks(ids, _LOOKUP_CHUNK):
                result = await session.execute(
                    select(Movie.api_id).where(Movie.api_id.in_(chunk))
                )
                existing.update(result.scalars().all())
            for chunk in _chunks(list(unique.values()), _UPSERT_CHUNK):
                await session.execute(self._upsert_statement(chunk))
            await session.commit()

        inserted = sum(1 for external_id in ids if external_id not in existing)
        updated = len(ids) - inserted
        logger.debug(
            "Saved %s movies (%s new, %s updated)", len(ids), inserted, updated
        )
        return inserted, updated

    @staticmethod
    def _upsert_statement(entities: Sequence[CatalogEntity]):
        now = datetime.utcnow()
        rows = [
            {
                "api_id": entity.external_id,
                "title": entity.title,
                "year": entity.release_year,
                "rating": entity.rating_average,
                "votes": 1,
                "duration": entity.runtime_minutes,
                "image_path": entity.poster_reference,
                "genres": ",".join(entity.genres),
                "updated_at": now,
            }
            for entity in entities
        ]
        statement = sqlite_insert(Movie).values(rows)
        excluded = statement.excluded
        # Known values are never replaced by unknown ones.
        return statement.on_conflict_do_update(
            index_elements=[Movie.api_id],
            set_={
                "title": case((excluded.title != "", excluded.title), else_=Movie.title),
                "year": case((excluded.year > 0, excluded.year), else_=Movie.year),
                "rating": excluded.rating,
                "duration": case(
                    (excluded.duration > 0, excluded.duration), else_=Movie.duration
                ),
                "image_path": case(
                    (excluded.image_path != "", excluded.image_path),
                    else_=Movie.image_path,
                ),
                "genres": case(
                    (excluded.genres != "", excluded.genres), else_=Movie.genres
                ),
                "updated_at": excluded.updated_at,
            },
        )

    async def update_runtime(self, external_id: int, minutes: int) -> bool:
        if minutes <= 0:
            return False
        async with self._session_factory() as session:
            result = await session.execute(
                update(Movie)
                .where(Movie.api_id == external_id)
                .values(duration=minutes, updated_at=datetime.utcnow())
            )
            await session.commit()
        return (result.rowcount or 0) > 0

    async def rate_movie(self, movie_id: int, rating: float) -> float | None:
        """Fold a user rating into the running average and return it."""

        if not 0.0 <= rating <= 10.0:
            raise ValueError("Rating must be between 0 and 10")
        async with self._session_factory() as session:
            movie = await session.get(Movie, movie_id)
            if movie is None:
                return None
            votes = movie.votes or 1
            movie.rating = (movie.rating * votes + rating) / (votes + 1)
            movie.votes = votes + 1
            await session.commit()
            return movie.rating

    async def toggle_favorite(self, user_id: int, movie_id: int) -> bool:
        """Flip favorite membership and return the new state."""

        return await self._toggle_relation(Favorite, user_id, movie_id)

    async def toggle_watchlist(self, user_id: int, movie_id: int) -> bool:
        return await self._toggle_relation(WatchlistEntry, user_id, movie_id)

    async def _toggle_relation(
        self, relation: type[Favorite] | type[WatchlistEntry], user_id: int, movie_id: int
    ) -> bool:
        async with self._session_factory() as session:
            existing = await session.get(relation, (user_id, movie_id))
            if existing is not None:
                await session.execute(
                    delete(relation).where(
                        relation.user_id == user_id, relation.movie_id == movie_id
                    )
                )
                await session.commit()
                return False
            if await session.get(Movie, movie_id) is None:
                raise KeyError(f"Movie {movie_id} not found")
            session.add(relation(user_id=user_id, movie_id=movie_id))
            await session.commit()
            return True

    # -- lookups --------------------------------------------------------------

    async def exists_by_external_id(self, external_id: int) -> bool:
        return await self.local_id_for(external_id) is not None

    async def local_id_for(self, external_id: int) -> int | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Movie.id).where(Movie.api_id == external_id)
            )
            return result.scalar_one_or_none()

    async def has_known_runtime(self, external_id: int) -> bool:
        return external_id in await self.known_runtime_ids([external_id])

    async def known_runtime_ids(self, external_ids: Sequence[int]) -> set[int]:
        """Return the subset of ids whose stored runtime is already positive."""

        known: set[int] = set()
        if not external_ids:
            return known
        async with self._session_factory() as session:
            for chunk in _chunks(list(external_ids), _LOOKUP_CHUNK):
                result = await session.execute(
                    select(Movie.api_id).where(
                        Movie.api_id.in_(chunk), Movie.duration > 0
                    )
                )
                known.update(result.scalars().all())
        return known

    async def count(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(select(func.count()).select_from(Movie))
            return int(result.scalar_one())

    async def distinct_genres(self) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Movie.genres).where(Movie.genres != "").distinct()
            )
            values = result.scalars().all()
        genres: set[str] = set()
        for value in values:
            genres.update(split_genres(value))
        return sorted(genres)

    # -- listings -------------------------------------------------------------

    async def query_all(
        self, sort: SortSpec = "title", user_id: int | None = None
    ) -> list[CatalogEntity]:
        return await self._query(sort=sort, user_id=user_id)

    async def query_by_genre(
        self, genre: str, sort: SortSpec = "title", user_id: int | None = None
    ) -> list[CatalogEntity]:
        """Return movies whose genre column mentions ``genre``.

        Matching is a ``LIKE`` over the comma separated column, so callers
        that need exact membership must re-check ``CatalogEntity.genres``.
        """

        escaped = _escape_like(genre)
        condition = or_(
            Movie.genres == genre,
            Movie.genres.like(f"{escaped},%", escape="\\"),
            Movie.genres.like(f"%,{escaped},%", escape="\\"),
            Movie.genres.like(f"%,{escaped}", escape="\\"),
        )
        return await self._query(sort=sort, user_id=user_id, conditions=[condition])

    async def query_by_search_text(
        self, text: str, sort: SortSpec = "title", user_id: int | None = None
    ) -> list[CatalogEntity]:
        pattern = f"%{_escape_like(text.strip().lower())}%"
        condition = func.lower(Movie.title).like(pattern, escape="\\")
        return await self._query(sort=sort, user_id=user_id, conditions=[condition])

    async def query_favorites(
        self, user_id: int, sort: SortSpec = "title"
    ) -> list[CatalogEntity]:
        return await self._query(sort=sort, user_id=user_id, only="favorites")

    async def query_watchlist(
        self, user_id: int, sort: SortSpec = "title"
    ) -> list[CatalogEntity]:
        return await self._query(sort=sort, user_id=user_id, only="watchlist")

    async def _query(
        self,
        *,
        sort: SortSpec,
        user_id: int | None,
        conditions: list[Any] | None = None,
        only: str | None = None,
    ) -> list[CatalogEntity]:
        favorite = aliased(Favorite)
        watchlist = aliased(WatchlistEntry)
        member_id = user_id if user_id is not None else -1
        statement = (
            select(
                Movie,
                favorite.user_id.is_not(None).label("is_favorite"),
                watchlist.user_id.is_not(None).label("is_in_watchlist"),
            )
            .outerjoin(
                favorite,
                and_(favorite.movie_id == Movie.id, favorite.user_id == member_id),
            )
            .outerjoin(
                watchlist,
                and_(watchlist.movie_id == Movie.id, watchlist.user_id == member_id),
            )
        )
        for condition in conditions or []:
            statement = statement.where(condition)
        if only == "favorites":
            statement = statement.where(favorite.user_id.is_not(None))
        elif only == "watchlist":
            statement = statement.where(watchlist.user_id.is_not(None))
        statement = statement.order_by(*SORT_ORDERS.get(sort, SORT_ORDERS["title"]))

        async with self._session_factory() as session:
            result = await session.execute(statement)
            rows = result.all()
        return [
            self._to_entity(movie, bool(is_favorite), bool(is_in_watchlist))
            for movie, is_favorite, is_in_watchlist in rows
        ]

    @staticmethod
    def _to_entity(movie: Movie, is_favorite: bool, is_in_watchlist: bool) -> CatalogEntity:
        return CatalogEntity(
            external_id=movie.api_id,
            local_id=movie.id,
            title=movie.title,
            release_year=movie.year or 0,
            rating_average=min(max(movie.rating or 0.0, 0.0), 10.0),
            runtime_minutes=max(movie.duration or 0, 0),
            poster_reference=movie.image_path or "",
            genres=split_genres(movie.genres),
            is_favorite=is_favorite,
            is_in_watchlist=is_in_watchlist,
        )

    # -- credentials ----------------------------------------------------------

    async def register_user(self, username: str, password: str) -> int | None:
        """Create an account; return ``None`` when the name is taken."""

        async with self._session_factory() as session:
            user = User(username=username, password=hash_password(password))
            session.add(user)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("Registration rejected, username %s exists", username)
                return None
            return user.id

    async def verify_user(self, username: str, password: str) -> int | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(User.id).where(
                    User.username == username,
                    User.password == hash_password(password),
                )
            )
            return result.scalar_one_or_none()

    async def user_id_for(self, username: str) -> int | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(User.id).where(User.username == username)
            )
            return result.scalar_one_or_none()

    async def user_exists(self, user_id: int) -> bool:
        async with self._session_factory() as session:
            return await session.get(User, user_id) is not None
