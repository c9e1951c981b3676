"""Pydantic models describing catalog entities and TMDb payloads."""

from __future__ import annotations

from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field

from .errors import MalformedResponseError

SortSpec = Literal["title", "year", "rating", "duration"]
ViewScope = Literal["all", "favorites", "watchlist"]

YOUTUBE_WATCH_URL = "https://www.youtube.com/watch?v="

KEY_CREW_JOBS: dict[str, frozenset[str]] = {
    "Directing": frozenset({"Director"}),
    "Writing": frozenset({"Screenplay", "Writer", "Story"}),
    "Production": frozenset({"Producer", "Executive Producer"}),
    "Camera": frozenset({"Director of Photography"}),
    "Sound": frozenset({"Original Music Composer"}),
}


def build_image_url(path: str | None, base_url: str) -> str:
    if not path:
        return ""
    if path.startswith("http"):
        return path
    return f"{base_url}{path}"


def extract_year(value: Any) -> int:
    """Return the year of a ``YYYY-MM-DD`` date string, ``0`` when unknown."""

    if not isinstance(value, str) or len(value) < 4:
        return 0
    try:
        return int(value[:4])
    except ValueError:
        return 0


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return 0


def _as_float(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    return 0.0


class CatalogEntity(BaseModel):
    """One movie as known to the sync engine and the view."""

    model_config = ConfigDict(populate_by_name=True)

    external_id: int
    local_id: int = 0
    title: str = ""
    release_year: int = 0
    rating_average: float = Field(default=0.0, ge=0.0, le=10.0)
    runtime_minutes: int = Field(default=0, ge=0)
    poster_reference: str = ""
    genres: list[str] = Field(default_factory=list)
    is_favorite: bool = False
    is_in_watchlist: bool = False

    @property
    def needs_details(self) -> bool:
        return self.runtime_minutes == 0

    @classmethod
    def from_tmdb_payload(
        cls,
        payload: Mapping[str, Any],
        *,
        genre_names: Mapping[int, str],
        image_base_url: str,
    ) -> "CatalogEntity":
        """Normalise a list result or a detail payload.

        Detail payloads carry ``genres`` as ``[{id, name}]`` objects while list
        results only carry ``genre_ids``; those are resolved through
        ``genre_names`` and ids without a name are dropped.
        """

        external_id = payload.get("id")
        if isinstance(external_id, bool) or not isinstance(external_id, int):
            raise MalformedResponseError("Movie payload is missing a numeric id")

        genres: list[str] = []
        if "genres" in payload:
            for entry in payload.get("genres") or []:
                if isinstance(entry, Mapping) and entry.get("name"):
                    genres.append(str(entry["name"]))
        elif "genre_ids" in payload:
            for genre_id in payload.get("genre_ids") or []:
                name = genre_names.get(_as_int(genre_id))
                if name:
                    genres.append(name)

        rating = min(max(_as_float(payload.get("vote_average")), 0.0), 10.0)
        return cls(
            external_id=external_id,
            title=str(payload.get("title") or ""),
            release_year=extract_year(payload.get("release_date")),
            rating_average=rating,
            runtime_minutes=max(_as_int(payload.get("runtime")), 0),
            poster_reference=build_image_url(
                payload.get("poster_path"), image_base_url
            ),
            genres=genres,
        )

    def merged_with(self, newer: "CatalogEntity") -> "CatalogEntity":
        """Merge a later fetch of the same movie into this one.

        The newer record wins field by field, except that it never erases a
        known runtime, genre list or poster with an empty value.
        """

        if newer.external_id != self.external_id:
            raise ValueError("Cannot merge entities with different external ids")
        update: dict[str, Any] = {
            "title": newer.title or self.title,
            "release_year": newer.release_year or self.release_year,
            "rating_average": newer.rating_average,
            "runtime_minutes": newer.runtime_minutes or self.runtime_minutes,
            "poster_reference": newer.poster_reference or self.poster_reference,
            "genres": list(newer.genres) if newer.genres else list(self.genres),
        }
        if newer.local_id:
            update["local_id"] = newer.local_id
        return self.model_copy(update=update)


class PageResult(BaseModel):
    """One page of a paginated TMDb listing."""

    page: int
    total_pages: int
    results: list[dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PageResult":
        results = payload.get("results")
        if not isinstance(results, list):
            raise MalformedResponseError("Listing response has no results array")
        page = _as_int(payload.get("page"))
        if page <= 0:
            raise MalformedResponseError("Listing response has no page number")
        return cls(
            page=page,
            total_pages=max(_as_int(payload.get("total_pages")), 0),
            results=[entry for entry in results if isinstance(entry, dict)],
        )


class Trailer(BaseModel):
    external_id: int
    key: str
    name: str | None = None
    official: bool = True

    @property
    def url(self) -> str:
        return f"{YOUTUBE_WATCH_URL}{self.key}"

    @classmethod
    def select(
        cls, external_id: int, videos: list[Mapping[str, Any]]
    ) -> "Trailer | None":
        """Pick the best YouTube video for a movie.

        Preference order: an official trailer, any trailer, then the first
        video when it is hosted on YouTube.
        """

        def _is_youtube_trailer(video: Mapping[str, Any]) -> bool:
            return video.get("type") == "Trailer" and video.get("site") == "YouTube"

        candidates = [video for video in videos if video.get("key")]
        chosen: Mapping[str, Any] | None = next(
            (
                video
                for video in candidates
                if _is_youtube_trailer(video) and video.get("official", True) is not False
            ),
            None,
        )
        if chosen is None:
            chosen = next(
                (video for video in candidates if _is_youtube_trailer(video)), None
            )
        if chosen is None and videos:
            first = videos[0]
            if first.get("site") == "YouTube" and first.get("key"):
                chosen = first
        if chosen is None:
            return None
        return cls(
            external_id=external_id,
            key=str(chosen["key"]),
            name=chosen.get("name"),
            official=chosen.get("official", True) is not False,
        )


class CastMember(BaseModel):
    name: str
    character: str = ""
    profile_url: str = ""


class CrewMember(BaseModel):
    name: str
    job: str
    department: str
    profile_url: str = ""


class Credits(BaseModel):
    """Cast and the key crew members of a movie."""

    external_id: int
    cast: list[CastMember] = Field(default_factory=list)
    crew: list[CrewMember] = Field(default_factory=list)

    @classmethod
    def from_payload(
        cls, external_id: int, payload: Mapping[str, Any], *, image_base_url: str
    ) -> "Credits":
        cast_payload = payload.get("cast")
        crew_payload = payload.get("crew")
        if not isinstance(cast_payload, list) or not isinstance(crew_payload, list):
            raise MalformedResponseError("Credits response has no cast or crew")

        cast = [
            CastMember(
                name=str(entry.get("name") or ""),
                character=str(entry.get("character") or ""),
                profile_url=build_image_url(entry.get("profile_path"), image_base_url),
            )
            for entry in cast_payload
            if isinstance(entry, dict) and entry.get("name")
        ]
        crew: list[CrewMember] = []
        for entry in crew_payload:
            if not isinstance(entry, dict) or not entry.get("name"):
                continue
            department = str(entry.get("department") or "")
            job = str(entry.get("job") or "")
            if job not in KEY_CREW_JOBS.get(department, frozenset()):
                continue
            crew.append(
                CrewMember(
                    name=str(entry["name"]),
                    job=job,
                    department=department,
                    profile_url=build_image_url(
                        entry.get("profile_path"), image_base_url
                    ),
                )
            )
        return cls(external_id=external_id, cast=cast, crew=crew)


class ViewFilter(BaseModel):
    """What the view currently shows; re-applied on every refresh."""

    scope: ViewScope = "all"
    genre: str | None = None
    search: str | None = None
    sort: SortSpec = "year"
    user_id: int | None = None
