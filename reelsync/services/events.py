"""Listener registration between the sync engine and the view layer."""

from __future__ import annotations

import logging
from typing import Protocol, Sequence

from ..models import CatalogEntity

logger = logging.getLogger(__name__)


class SyncListener(Protocol):
    """Callbacks a view implements to follow the sync engine."""

    def on_entities_available(self, entities: Sequence[CatalogEntity]) -> None:
        """Replace the visible list with ``entities``."""

    def on_entity_updated(
        self, external_id: int, rating: float | None, runtime: int | None
    ) -> None:
        """Patch one movie; both values are ``None`` when its fetch failed."""

    def on_error(self, message: str) -> None:
        ...

    def on_genre_directory_ready(self) -> None:
        ...


class EventBus:
    """Fans events out to every registered listener.

    Delivery is synchronous on the event loop thread. A listener raising does
    not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._listeners: list[SyncListener] = []

    def register(self, listener: SyncListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unregister(self, listener: SyncListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def entities_available(self, entities: Sequence[CatalogEntity]) -> None:
        snapshot = list(entities)
        for listener in list(self._listeners):
            try:
                listener.on_entities_available(snapshot)
            except Exception:  # pragma: no cover - listener safety net
                logger.exception("Listener %r failed on entities_available", listener)

    def entity_updated(
        self, external_id: int, rating: float | None, runtime: int | None
    ) -> None:
        for listener in list(self._listeners):
            try:
                listener.on_entity_updated(external_id, rating, runtime)
            except Exception:  # pragma: no cover - listener safety net
                logger.exception("Listener %r failed on entity_updated", listener)

    def error(self, message: str) -> None:
        logger.warning("Sync error: %s", message)
        for listener in list(self._listeners):
            try:
                listener.on_error(message)
            except Exception:  # pragma: no cover - listener safety net
                logger.exception("Listener %r failed on error", listener)

    def genre_directory_ready(self) -> None:
        for listener in list(self._listeners):
            try:
                listener.on_genre_directory_ready()
            except Exception:  # pragma: no cover - listener safety net
                logger.exception("Listener %r failed on genre_directory_ready", listener)
