"""Bounded-concurrency backfill of per-movie details (runtime, rating)."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Iterable

from ..errors import SyncError
from .catalog_store import CatalogStore
from .events import EventBus
from .tmdb import TMDBClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DetailProgress:
    target: int
    fetched: int
    in_flight: int
    pending: int
    generation: int

    @property
    def is_idle(self) -> bool:
        return self.in_flight == 0 and self.pending == 0


class DetailFetchScheduler:
    """FIFO queue of movie ids drained with at most ``concurrency`` requests.

    A new batch replaces whatever is still queued, but requests already in
    flight keep running and keep counting against the ceiling.
    """

    def __init__(
        self,
        client: TMDBClient,
        store: CatalogStore,
        events: EventBus,
        *,
        concurrency: int = 25,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._client = client
        self._store = store
        self._events = events
        self._concurrency = concurrency
        self._queue: deque[int] = deque()
        self._in_flight: dict[int, asyncio.Task[None]] = {}
        # Ids TMDb answered with no runtime; asking again returns the same.
        self._without_runtime: set[int] = set()
        self._target = 0
        self._fetched = 0
        self._generation = 0
        self._peak_in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def is_draining(self) -> bool:
        return bool(self._queue or self._in_flight)

    @property
    def peak_in_flight(self) -> int:
        """Highest number of simultaneous requests seen so far."""

        return self._peak_in_flight

    def progress(self) -> DetailProgress:
        return DetailProgress(
            target=self._target,
            fetched=self._fetched,
            in_flight=len(self._in_flight),
            pending=len(self._queue),
            generation=self._generation,
        )

    def submit_batch(self, external_ids: Iterable[int]) -> int:
        """Replace the pending queue with ``external_ids`` and start draining.

        Ids whose request is already in flight are skipped. So are ids that
        TMDb already answered without a runtime.
        Returns the size of the new batch. Must be called from the event loop.
        """

        batch: list[int] = []
        seen: set[int] = set()
        for external_id in external_ids:
            if (
                external_id in seen
                or external_id in self._in_flight
                or external_id in self._without_runtime
            ):
                continue
            seen.add(external_id)
            batch.append(external_id)

        self._queue = deque(batch)
        self._target = len(batch)
        self._fetched = 0
        self._generation += 1
        logger.info(
            "Queued %s detail fetches (generation %s, %s still in flight)",
            len(batch),
            self._generation,
            len(self._in_flight),
        )
        self._drain()
        return len(batch)

    def _drain(self) -> None:
        while self._queue and len(self._in_flight) < self._concurrency:
            external_id = self._queue.popleft()
            if external_id in self._in_flight:
                continue
            logger.debug("Dispatching detail fetch for movie %s", external_id)
            task = asyncio.get_running_loop().create_task(
                self._fetch_one(external_id, self._generation),
                name=f"detail-fetch-{external_id}",
            )
            self._in_flight[external_id] = task
            self._peak_in_flight = max(self._peak_in_flight, len(self._in_flight))

        if self.is_draining:
            self._idle.clear()
        else:
            self._idle.set()

    async def _fetch_one(self, external_id: int, generation: int) -> None:
        rating: float | None = None
        runtime: int | None = None
        failure: str | None = None
        try:
            entity = await self._client.fetch_details(external_id)
            rating = entity.rating_average
            runtime = entity.runtime_minutes
            if runtime > 0:
                await self._store.update_runtime(external_id, runtime)
            else:
                self._without_runtime.add(external_id)
        except asyncio.CancelledError:
            self._in_flight.pop(external_id, None)
            raise
        except SyncError as exc:
            logger.warning("Detail fetch for movie %s failed: %s", external_id, exc.message)
            failure = exc.message
        except Exception:
            logger.exception("Unexpected failure while backfilling movie %s", external_id)
            failure = f"Failed to load details for movie {external_id}"
            rating = runtime = None
        else:
            logger.debug("Movie %s runtime is %s minutes", external_id, runtime)

        self._in_flight.pop(external_id, None)
        if generation == self._generation:
            self._fetched += 1
        self._events.entity_updated(external_id, rating, runtime)
        if failure is not None:
            self._events.error(failure)
        self._drain()

    async def wait_idle(self) -> None:
        """Wait until the queue is empty and nothing is in flight."""

        await self._idle.wait()

    async def close(self) -> None:
        """Drop queued ids and cancel outstanding requests."""

        self._queue.clear()
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()
        self._idle.set()
