"""Multi-page fetch-until-satisfied loops for browse and search listings."""

from __future__ import annotations

import enum
import itertools
import logging
from dataclasses import dataclass, field

from ..errors import MalformedResponseError, SyncError
from ..models import CatalogEntity, PageResult
from .events import EventBus
from .genres import GenreDirectory
from .tmdb import TMDBClient

logger = logging.getLogger(__name__)

_session_ids = itertools.count(1)


class QueryKind(str, enum.Enum):
    BROWSE = "browse"
    SEARCH = "search"


@dataclass(slots=True)
class AccumulationSession:
    """State of one multi-page fetch, replaced by every page-1 request."""

    kind: QueryKind
    query: str
    target_page: int
    cursor: int = 1
    total_pages: int = 0
    pages_fetched: int = 0
    entities: dict[int, CatalogEntity] = field(default_factory=dict)
    id: int = field(default_factory=lambda: next(_session_ids))

    def matches(self, kind: QueryKind, query: str) -> bool:
        return self.kind is kind and self.query == query

    def add(self, entity: CatalogEntity) -> None:
        previous = self.entities.get(entity.external_id)
        self.entities[entity.external_id] = (
            previous.merged_with(entity) if previous else entity
        )

    def snapshot(self) -> list[CatalogEntity]:
        return list(self.entities.values())


class PaginationAccumulator:
    """Drives page-by-page fetching and accumulates normalised movies.

    Only one page of a run is in flight at a time. Several runs may share a
    session (staggered continuations), each stopping at its own last page.
    """

    def __init__(
        self,
        client: TMDBClient,
        genres: GenreDirectory,
        events: EventBus,
    ):
        self._client = client
        self._genres = genres
        self._events = events
        self._session: AccumulationSession | None = None

    @property
    def session(self) -> AccumulationSession | None:
        return self._session

    def reset(self) -> None:
        """Forget the current session; its pending runs stop on their next page."""

        self._session = None

    async def begin_fetch(
        self,
        kind: QueryKind,
        query: str | None = None,
        *,
        page: int = 1,
        page_count: int = 1,
    ) -> list[CatalogEntity] | None:
        """Fetch ``page_count`` pages starting at ``page``.

        Page 1 starts a new session. Later pages continue the current session
        when it has the same kind and query, otherwise they are stale and
        ignored. Returns the session's accumulated movies once the run
        completes, or ``None`` when the run failed or was superseded.
        """

        if page < 1 or page_count < 1:
            raise ValueError("page and page_count must be positive")
        text = (query or "").strip() if kind is QueryKind.SEARCH else ""
        if kind is QueryKind.SEARCH and not text:
            raise ValueError("A search requires query text")

        if page == 1:
            session = AccumulationSession(kind=kind, query=text, target_page=page_count)
            self._session = session
            run_last_page = page_count
        else:
            session = self._session
            if session is None or not session.matches(kind, text):
                logger.info(
                    "Dropping stale %s continuation for page %s", kind.value, page
                )
                return None
            run_last_page = page + page_count - 1
            session.target_page = max(session.target_page, run_last_page)

        current = page
        while True:
            if self._session is not session:
                return None
            session.cursor = current
            try:
                result = await self._fetch_page(session, current)
                if result.page != current:
                    raise MalformedResponseError(
                        f"Invalid JSON response: requested page {current}, got page {result.page}"
                    )
            except SyncError as exc:
                logger.warning(
                    "Page %s of %s fetch failed: %s", current, session.kind.value, exc.message
                )
                self._events.error(exc.message)
                return None
            if self._session is not session:
                logger.info("Discarding page %s of a superseded session", current)
                return None

            logger.info(
                "Processing page %s of %s (run ends at page %s)",
                result.page,
                result.total_pages,
                run_last_page,
            )
            self._accumulate(session, result)

            if current < run_last_page and current < result.total_pages:
                current += 1
                continue

            logger.info(
                "Finished %s pages, %s movies accumulated",
                session.kind.value,
                len(session.entities),
            )
            return session.snapshot()

    async def _fetch_page(self, session: AccumulationSession, page: int) -> PageResult:
        # Resolved from session state so continuations never need the caller.
        if session.query:
            return await self._client.search(session.query, page)
        return await self._client.fetch_popular(page)

    def _accumulate(self, session: AccumulationSession, result: PageResult) -> None:
        session.pages_fetched += 1
        session.total_pages = result.total_pages
        for payload in result.results:
            try:
                entity = CatalogEntity.from_tmdb_payload(
                    payload,
                    genre_names=self._genres.names,
                    image_base_url=self._client.image_base_url,
                )
            except SyncError as exc:
                logger.debug("Skipping result on page %s: %s", result.page, exc.message)
                continue
            session.add(entity)
