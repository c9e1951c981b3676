"""Process-wide cache of TMDb genre ids to names."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Mapping

from ..errors import SyncError
from .events import EventBus
from .tmdb import TMDBClient

logger = logging.getLogger(__name__)


class GenreDirectory:
    """Lazily populated, then read-only for the rest of the process."""

    def __init__(self) -> None:
        self._names: dict[int, str] = {}
        self._lock = asyncio.Lock()

    @property
    def is_loaded(self) -> bool:
        return bool(self._names)

    @property
    def names(self) -> Mapping[int, str]:
        return self._names

    def resolve(self, genre_ids: Iterable[int]) -> list[str]:
        """Map ids to names, silently dropping ids that are not known yet."""

        return [self._names[genre_id] for genre_id in genre_ids if genre_id in self._names]

    async def ensure_loaded(self, client: TMDBClient, events: EventBus) -> bool:
        """Load the directory once; concurrent callers share the request.

        Returns whether the directory is populated. Failures are emitted as
        errors and leave the directory empty so a later call can retry.
        """

        if self._names:
            events.genre_directory_ready()
            return True
        async with self._lock:
            if not self._names:
                try:
                    names = await client.fetch_genres()
                except SyncError as exc:
                    logger.warning("Genre directory load failed: %s", exc.message)
                    events.error(exc.message)
                    return False
                if not names:
                    logger.warning("TMDb returned an empty genre list")
                    return False
                self._names = dict(names)
                logger.info("Loaded %s genres", len(self._names))
        events.genre_directory_ready()
        return True
