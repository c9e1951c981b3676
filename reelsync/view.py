"""In-memory listener holding what a front-end would currently render."""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from .models import CatalogEntity

MAX_RECORDED_ERRORS = 50


@dataclass(frozen=True, slots=True)
class RecordedError:
    message: str
    at: datetime = field(default_factory=datetime.utcnow)


@dataclass(frozen=True, slots=True)
class ViewPage:
    page: int
    page_size: int
    total_pages: int
    total_items: int
    items: list[CatalogEntity]


class CatalogView:
    """Keeps the last entity list and patches it as details arrive."""

    def __init__(self, page_size: int = 20):
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.page_size = page_size
        self._entities: list[CatalogEntity] = []
        self._positions: dict[int, int] = {}
        self._errors: deque[RecordedError] = deque(maxlen=MAX_RECORDED_ERRORS)
        self.genres_ready = False
        self.refresh_count = 0
        self.failed_detail_ids: set[int] = set()

    @property
    def entities(self) -> list[CatalogEntity]:
        return list(self._entities)

    @property
    def errors(self) -> list[RecordedError]:
        return list(self._errors)

    def get(self, external_id: int) -> CatalogEntity | None:
        position = self._positions.get(external_id)
        return self._entities[position] if position is not None else None

    def on_entities_available(self, entities: Sequence[CatalogEntity]) -> None:
        self._entities = list(entities)
        self._positions = {
            entity.external_id: index for index, entity in enumerate(self._entities)
        }
        self.refresh_count += 1

    def on_entity_updated(
        self, external_id: int, rating: float | None, runtime: int | None
    ) -> None:
        if rating is None and runtime is None:
            self.failed_detail_ids.add(external_id)
            return
        self.failed_detail_ids.discard(external_id)
        position = self._positions.get(external_id)
        if position is None:
            return
        update: dict[str, object] = {}
        if rating is not None:
            update["rating_average"] = rating
        if runtime:
            update["runtime_minutes"] = runtime
        if update:
            self._entities[position] = self._entities[position].model_copy(update=update)

    def on_error(self, message: str) -> None:
        self._errors.append(RecordedError(message))

    def on_genre_directory_ready(self) -> None:
        self.genres_ready = True

    def page(self, page: int = 1, page_size: int | None = None) -> ViewPage:
        """Return a 1-based page, clamped to the last available one."""

        size = page_size or self.page_size
        total_items = len(self._entities)
        total_pages = max(1, math.ceil(total_items / size))
        current = min(max(page, 1), total_pages)
        start = (current - 1) * size
        return ViewPage(
            page=current,
            page_size=size,
            total_pages=total_pages,
            total_items=total_items,
            items=self._entities[start : start + size],
        )
