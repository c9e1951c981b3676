"""Coordinates ingestion sessions, reconciliation and view refreshes."""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from functools import partial
from typing import Awaitable, Callable, Sequence

from ..config import Settings
from ..errors import SyncError
from ..models import CatalogEntity, SortSpec, ViewFilter, ViewScope
from .catalog_store import CatalogStore
from .details import DetailFetchScheduler, DetailProgress
from .events import EventBus
from .genres import GenreDirectory
from .pagination import PaginationAccumulator, QueryKind
from .tmdb import MISSING_API_KEY_MESSAGE, TMDBClient

logger = logging.getLogger(__name__)


class SyncPhase(str, enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    RECONCILING = "reconciling"


@dataclass(slots=True)
class IngestionSession:
    """State of one browse or search ingestion; replaced, never reset."""

    kind: QueryKind
    query: str
    baseline_count: int
    last_refresh_count: int
    last_refresh_at: float
    loading: bool = True
    pending_runs: int = 0
    unfetched_runs: int = 0
    batches: int = 0
    reveal_scheduled: bool = False
    reveal_pending: bool = False
    target_reached: bool = False


@dataclass(frozen=True, slots=True)
class SyncProgress:
    count: int
    target: int
    percent: int
    loading: bool
    phase: SyncPhase
    query: str | None
    details: DetailProgress


class SyncOrchestrator:
    """Owns the ingestion session and every task scheduled on its behalf.

    Fetched pages are persisted, movies without a runtime are handed to the
    detail scheduler, and the view is rebuilt from the store according to the
    active :class:`ViewFilter` under the throttle and reveal policies.
    """

    def __init__(
        self,
        settings: Settings,
        store: CatalogStore,
        client: TMDBClient,
        genres: GenreDirectory,
        accumulator: PaginationAccumulator,
        scheduler: DetailFetchScheduler,
        events: EventBus,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings
        self._store = store
        self._client = client
        self._genres = genres
        self._accumulator = accumulator
        self._scheduler = scheduler
        self._events = events
        self._clock = clock
        self._filter = ViewFilter()
        self._session: IngestionSession | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._visible: list[CatalogEntity] = []
        self._active_fetches = 0
        self._reconciling = 0
        self._count = 0
        self._refresh_count = 0
        self._unconfigured_reported = False

    # -- state ----------------------------------------------------------------

    @property
    def view_filter(self) -> ViewFilter:
        return self._filter

    @property
    def session(self) -> IngestionSession | None:
        return self._session

    @property
    def visible(self) -> list[CatalogEntity]:
        return list(self._visible)

    @property
    def refresh_count(self) -> int:
        return self._refresh_count

    @property
    def scheduled_count(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    @property
    def phase(self) -> SyncPhase:
        if self._reconciling:
            return SyncPhase.RECONCILING
        session = self._session
        if self._active_fetches or (
            session is not None
            and session.pending_runs
            and not session.target_reached
        ):
            return SyncPhase.FETCHING
        return SyncPhase.IDLE

    def progress(self) -> SyncProgress:
        target = self._settings.target_movie_count
        session = self._session
        return SyncProgress(
            count=self._count,
            target=target,
            percent=min(100, self._count * 100 // target),
            loading=bool(session and session.loading),
            phase=self.phase,
            query=session.query if session else None,
            details=self._scheduler.progress(),
        )

    # -- lifecycle ------------------------------------------------------------

    async def start(self) -> None:
        """Show what is stored, backfill the visible page and start browsing."""

        self._count = await self._store.count()
        if not self._client.is_configured:
            self._report_unconfigured()
            await self.refresh_view()
            return

        await self._genres.ensure_loaded(self._client, self._events)
        visible = await self.refresh_view()
        owed = [
            entity.external_id
            for entity in visible[: self._settings.view_page_size]
            if entity.needs_details
        ]
        if owed:
            self._scheduler.submit_batch(owed)
        self.request_ingestion()

    async def stop(self) -> None:
        cancelled = self.cancel_scheduled()
        if cancelled:
            await asyncio.gather(*cancelled, return_exceptions=True)
        self._accumulator.reset()
        if self._session is not None:
            self._session.loading = False
        await self._scheduler.close()

    def request_ingestion(self, query: str = "") -> None:
        """Run :meth:`start_ingestion` in the background."""

        self._schedule(0, partial(self.start_ingestion, query), name="ingestion-start")

    # -- ingestion ------------------------------------------------------------

    async def start_ingestion(self, query: str = "") -> bool:
        """Start a browse session (empty query) or a full remote search.

        Page 1 is fetched immediately; the remaining pages are scheduled in
        staggered batches. Returns whether page 1 arrived.
        """

        text = query.strip()
        if text:
            return await self._run_session(
                QueryKind.SEARCH, text, self._settings.search_page_limit
            )
        return await self._run_session(
            QueryKind.BROWSE, "", self._settings.browse_page_limit
        )

    async def _run_session(
        self,
        kind: QueryKind,
        query: str,
        page_limit: int,
        *,
        first_pages: int = 1,
    ) -> bool:
        self.cancel_scheduled()
        if not self._client.is_configured:
            self._report_unconfigured()
            return False

        baseline = await self._store.count()
        self._count = baseline
        session = IngestionSession(
            kind=kind,
            query=query,
            baseline_count=baseline,
            last_refresh_count=baseline,
            last_refresh_at=self._clock(),
        )
        self._session = session
        logger.info(
            "Starting %s session (%s pages max, %s movies stored)",
            kind.value,
            page_limit,
            baseline,
        )

        entities = await self._fetch(session, page=1, page_count=first_pages)
        if self._session is not session:
            return False
        if entities is None:
            session.loading = False
            return False

        accumulated = self._accumulator.session
        total_pages = accumulated.total_pages if accumulated else first_pages
        last_page = min(page_limit, total_pages)
        await self.on_batch_accumulated(entities, final=last_page <= first_pages)
        if self._session is session and not session.target_reached:
            self._schedule_continuations(
                session, start_page=first_pages + 1, last_page=last_page
            )
        return True

    def _schedule_continuations(
        self, session: IngestionSession, *, start_page: int, last_page: int
    ) -> None:
        batch_pages = self._settings.stagger_batch_pages
        for index, page in enumerate(range(start_page, last_page + 1, batch_pages)):
            page_count = min(batch_pages, last_page - page + 1)
            delay = (
                self._settings.stagger_initial_delay
                + index * self._settings.stagger_delay
            )
            session.pending_runs += 1
            session.unfetched_runs += 1
            self._schedule(
                delay,
                partial(self._continue_session, session, page, page_count),
                name=f"{session.kind.value}-pages-{page}",
            )
        if session.pending_runs:
            logger.info(
                "Scheduled %s staggered runs for pages %s-%s",
                session.pending_runs,
                start_page,
                last_page,
            )

    async def _continue_session(
        self, session: IngestionSession, page: int, page_count: int
    ) -> None:
        try:
            entities: list[CatalogEntity] | None = None
            try:
                if self._session is session and not session.target_reached:
                    entities = await self._fetch(session, page=page, page_count=page_count)
                else:
                    logger.debug(
                        "Skipping pages %s-%s: target reached", page, page + page_count - 1
                    )
            finally:
                session.unfetched_runs -= 1
            if self._session is not session:
                return
            final = session.unfetched_runs == 0
            if entities is not None:
                await self.on_batch_accumulated(entities, final=final)
            elif final and not session.target_reached:
                await self._finish(session)
        finally:
            session.pending_runs -= 1

    async def _finish(self, session: IngestionSession) -> None:
        session.loading = False
        logger.info("Ingestion finished with %s movies", self._count)
        if not session.reveal_pending:
            await self.refresh_view()

    async def _fetch(
        self, session: IngestionSession, *, page: int, page_count: int
    ) -> list[CatalogEntity] | None:
        self._active_fetches += 1
        try:
            return await self._accumulator.begin_fetch(
                session.kind, session.query or None, page=page, page_count=page_count
            )
        finally:
            self._active_fetches -= 1

    async def on_batch_accumulated(
        self, entities: Sequence[CatalogEntity], *, final: bool = False
    ) -> None:
        """Persist a completed batch and decide whether the view refreshes.

        ``final`` marks the last batch of the session, which always refreshes
        unless the initial reveal is still pending.
        """

        session = self._session
        self._reconciling += 1
        try:
            inserted, updated = await self._store.save_entities(entities)
            owed = [entity.external_id for entity in entities if entity.needs_details]
            known = await self._store.known_runtime_ids(owed) if owed else set()
            backfill = [external_id for external_id in owed if external_id not in known]
            if backfill:
                self._scheduler.submit_batch(backfill)
            self._count = await self._store.count()
        finally:
            self._reconciling -= 1
        logger.info(
            "Reconciled %s movies (%s new, %s updated, %s owed details); %s stored",
            len(entities),
            inserted,
            updated,
            len(backfill),
            self._count,
        )

        if session is None:
            await self.refresh_view()
            return
        if self._session is not session:
            return

        session.batches += 1
        if session.kind is QueryKind.BROWSE:
            if self._apply_target_policy(session):
                final = True
            self._apply_reveal_policy(session)

        if session.reveal_pending:
            logger.debug("Refresh deferred until the initial reveal")
        elif final or self._refresh_due(session):
            await self.refresh_view()
        if final:
            session.loading = False

    def _refresh_due(self, session: IngestionSession) -> bool:
        grown = self._count - session.last_refresh_count
        elapsed = self._clock() - session.last_refresh_at
        return (
            grown >= self._settings.view_page_size
            or elapsed >= self._settings.refresh_interval_seconds
        )

    def _apply_target_policy(self, session: IngestionSession) -> bool:
        """Return ``True`` for the batch that first reaches the target count."""

        if session.target_reached or self._count < self._settings.target_movie_count:
            return False
        session.target_reached = True
        logger.info(
            "Target of %s movies reached (%s stored); remaining pages are skipped",
            self._settings.target_movie_count,
            self._count,
        )
        return True

    def _apply_reveal_policy(self, session: IngestionSession) -> None:
        if session.reveal_scheduled or self._count < self._settings.reveal_threshold:
            return
        session.reveal_scheduled = True
        session.reveal_pending = True
        logger.info("Revealing %s movies after details settle", self._count)
        self._schedule(
            self._settings.reveal_delay_seconds,
            partial(self._reveal, session),
            name="initial-reveal",
        )
        self._schedule(
            self._settings.enhanced_refresh_delay_seconds,
            partial(self._follow_up_refresh, session, final=False),
            name="enhanced-refresh",
        )
        self._schedule(
            self._settings.final_refresh_delay_seconds,
            partial(self._follow_up_refresh, session, final=True),
            name="final-refresh",
        )

    async def _reveal(self, session: IngestionSession) -> None:
        if self._session is not session:
            return
        session.reveal_pending = False
        await self.refresh_view()

    async def _follow_up_refresh(self, session: IngestionSession, *, final: bool) -> None:
        if self._session is not session:
            return
        session.reveal_pending = False
        await self.refresh_view()
        if final and session.loading:
            # Only the status flag; scheduled pages keep arriving.
            session.loading = False
            logger.info("Final refresh shows %s movies", self._count)

    # -- view -----------------------------------------------------------------

    async def refresh_view(self) -> list[CatalogEntity]:
        """Rebuild the visible list from the store with the active filter."""

        entities = await self._load_filtered(self._filter)
        session = self._session
        if session is not None:
            session.last_refresh_count = self._count
            session.last_refresh_at = self._clock()
        self._visible = entities
        self._refresh_count += 1
        self._events.entities_available(entities)
        return list(entities)

    async def _load_filtered(self, view: ViewFilter) -> list[CatalogEntity]:
        user_id = view.user_id
        if view.scope != "all" and user_id is None:
            return []

        if view.search:
            entities = await self._store.query_by_search_text(view.search, view.sort, user_id)
        elif view.genre:
            entities = await self._store.query_by_genre(view.genre, view.sort, user_id)
        elif view.scope == "favorites":
            entities = await self._store.query_favorites(user_id, view.sort)
        elif view.scope == "watchlist":
            entities = await self._store.query_watchlist(user_id, view.sort)
        else:
            entities = await self._store.query_all(view.sort, user_id)

        # LIKE matching over the genre column is looser than membership.
        if view.genre:
            entities = [entity for entity in entities if view.genre in entity.genres]
        if view.scope == "favorites":
            entities = [entity for entity in entities if entity.is_favorite]
        elif view.scope == "watchlist":
            entities = [entity for entity in entities if entity.is_in_watchlist]
        return entities

    async def apply_filter(self, view_filter: ViewFilter) -> list[CatalogEntity]:
        self._filter = view_filter
        return await self.refresh_view()

    async def set_genre_filter(self, genre: str | None) -> list[CatalogEntity]:
        cleaned = (genre or "").strip() or None
        return await self.apply_filter(self._filter.model_copy(update={"genre": cleaned}))

    async def set_sort(self, sort: SortSpec) -> list[CatalogEntity]:
        return await self.apply_filter(self._filter.model_copy(update={"sort": sort}))

    async def set_scope(self, scope: ViewScope) -> list[CatalogEntity]:
        return await self.apply_filter(self._filter.model_copy(update={"scope": scope}))

    async def set_user(self, user_id: int | None) -> list[CatalogEntity]:
        return await self.apply_filter(self._filter.model_copy(update={"user_id": user_id}))

    async def search(self, text: str) -> list[CatalogEntity]:
        """Search the store first and fall back to a short remote search.

        An empty query clears the search and genre filters. Searching also
        clears the genre filter.
        """

        query = text.strip()
        if not query:
            return await self.apply_filter(
                self._filter.model_copy(update={"search": None, "genre": None})
            )

        local = await self.apply_filter(
            self._filter.model_copy(update={"search": query, "genre": None})
        )
        if local:
            logger.info("Found %s stored movies matching %r", len(local), query)
            return local

        logger.info("No stored movies match %r, searching TMDb", query)
        pages = self._settings.remote_search_pages
        await self._run_session(QueryKind.SEARCH, query, pages, first_pages=pages)
        return self.visible

    # -- scheduling -----------------------------------------------------------

    def _schedule(
        self,
        delay: float,
        factory: Callable[[], Awaitable[object]],
        *,
        name: str,
    ) -> asyncio.Task[None]:
        async def _runner() -> None:
            if delay > 0:
                await asyncio.sleep(delay)
            try:
                await factory()
            except SyncError as exc:
                self._events.error(exc.message)
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Scheduled task %s failed: %s", name, exc)

        task = asyncio.create_task(_runner(), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def cancel_scheduled(self) -> list[asyncio.Task[None]]:
        """Cancel every pending task of the current session."""

        current = asyncio.current_task()
        cancelled: list[asyncio.Task[None]] = []
        for task in list(self._tasks):
            if task is current or task.done():
                continue
            task.cancel()
            self._tasks.discard(task)
            cancelled.append(task)
        if cancelled:
            logger.info("Cancelled %s scheduled tasks", len(cancelled))
        return cancelled

    def _report_unconfigured(self) -> None:
        if self._unconfigured_reported:
            return
        self._unconfigured_reported = True
        self._events.error(MISSING_API_KEY_MESSAGE)
