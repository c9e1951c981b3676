"""Entry point for the FastAPI-powered ReelSync service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import asdict, dataclass
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .config import Settings, settings
from .database import Database
from .errors import ConfigurationError, SyncError
from .models import CatalogEntity, SortSpec, ViewScope
from .services.catalog_store import CatalogStore
from .services.details import DetailFetchScheduler
from .services.events import EventBus
from .services.genres import GenreDirectory
from .services.orchestrator import SyncOrchestrator, SyncProgress
from .services.pagination import PaginationAccumulator
from .services.tmdb import TMDBClient
from .view import CatalogView, ViewPage

logging.basicConfig(level=settings.log_level.upper())
for _noisy in ("httpx", "httpcore"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

app: FastAPI


@dataclass(slots=True)
class ReelSyncServices:
    settings: Settings
    database: Database
    store: CatalogStore
    client: TMDBClient
    genres: GenreDirectory
    events: EventBus
    scheduler: DetailFetchScheduler
    orchestrator: SyncOrchestrator
    view: CatalogView


class FilterUpdate(BaseModel):
    scope: ViewScope | None = None
    genre: str | None = None
    search: str | None = None
    sort: SortSpec | None = None
    user_id: int | None = None


class SyncRequest(BaseModel):
    query: str = ""


class UserRef(BaseModel):
    user_id: int = Field(gt=0)


class RatingRequest(BaseModel):
    rating: float = Field(ge=0.0, le=10.0)


class Credentials(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1, max_length=256)


def build_services(
    app_settings: Settings, http_client: httpx.AsyncClient, database: Database
) -> ReelSyncServices:
    """Wire the sync engine together around one HTTP client and database."""

    store = CatalogStore(database.session_factory)
    client = TMDBClient(app_settings, http_client)
    genres = GenreDirectory()
    events = EventBus()
    view = CatalogView(page_size=app_settings.view_page_size)
    events.register(view)
    scheduler = DetailFetchScheduler(
        client, store, events, concurrency=app_settings.detail_concurrency
    )
    accumulator = PaginationAccumulator(client, genres, events)
    orchestrator = SyncOrchestrator(
        app_settings, store, client, genres, accumulator, scheduler, events
    )
    return ReelSyncServices(
        settings=app_settings,
        database=database,
        store=store,
        client=client,
        genres=genres,
        events=events,
        scheduler=scheduler,
        orchestrator=orchestrator,
        view=view,
    )


def create_app(
    app_settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    resolved = app_settings or settings

    @asynccontextmanager
    async def lifespan(fastapi_app: FastAPI):
        exit_stack = AsyncExitStack()
        http_client = await exit_stack.enter_async_context(
            httpx.AsyncClient(
                base_url=str(resolved.tmdb_api_url).rstrip("/") + "/",
                timeout=httpx.Timeout(resolved.tmdb_timeout_seconds),
                transport=transport,
            )
        )
        database = Database(resolved.database_url)
        await database.create_all()

        services = build_services(resolved, http_client, database)
        fastapi_app.state.services = services
        await services.orchestrator.start()

        try:
            yield
        finally:  # pragma: no cover - teardown path exercised at runtime
            await services.orchestrator.stop()
            await database.dispose()
            await exit_stack.aclose()

    fastapi_app = FastAPI(
        title=resolved.app_name,
        description="Incremental TMDb movie catalog synchronization",
        version="1.0.0",
        lifespan=lifespan,
    )
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["*"],
    )
    register_routes(fastapi_app)
    return fastapi_app


def get_services(fastapi_app: FastAPI) -> ReelSyncServices:
    services = getattr(fastapi_app.state, "services", None)
    if not isinstance(services, ReelSyncServices):
        raise RuntimeError("Sync services not initialised")
    return services


def register_routes(fastapi_app: FastAPI) -> None:
    def _page_payload(page: ViewPage) -> dict[str, Any]:
        return {
            "page": page.page,
            "page_size": page.page_size,
            "total_pages": page.total_pages,
            "total_items": page.total_items,
            "items": [_entity_payload(entity) for entity in page.items],
        }

    def _remote_failure(exc: SyncError) -> HTTPException:
        if isinstance(exc, ConfigurationError):
            return HTTPException(status_code=503, detail=exc.message)
        return HTTPException(status_code=502, detail=exc.message)

    async def _require_user(services: ReelSyncServices, user_id: int) -> None:
        if not await services.store.user_exists(user_id):
            raise HTTPException(status_code=404, detail="User not found")

    @fastapi_app.get("/health")
    async def healthcheck() -> dict[str, Any]:
        services = get_services(fastapi_app)
        return {
            "status": "ok",
            "tmdb_configured": services.client.is_configured,
            "genres_ready": services.view.genres_ready,
        }

    @fastapi_app.get("/movies")
    async def list_movies(
        page: int = Query(default=1, ge=1),
        page_size: int | None = Query(default=None, ge=1, le=200),
    ) -> dict[str, Any]:
        services = get_services(fastapi_app)
        payload = _page_payload(services.view.page(page, page_size))
        payload["filter"] = services.orchestrator.view_filter.model_dump()
        return payload

    @fastapi_app.put("/view/filter")
    async def update_filter(update: FilterUpdate) -> dict[str, Any]:
        services = get_services(fastapi_app)
        changes = update.model_dump(exclude_unset=True)
        for key in ("genre", "search"):
            if key in changes:
                changes[key] = (changes[key] or "").strip() or None
        if changes.get("user_id") is not None:
            await _require_user(services, changes["user_id"])
        orchestrator = services.orchestrator
        await orchestrator.apply_filter(orchestrator.view_filter.model_copy(update=changes))
        payload = _page_payload(services.view.page(1))
        payload["filter"] = orchestrator.view_filter.model_dump()
        return payload

    @fastapi_app.get("/genres")
    async def list_genres() -> dict[str, Any]:
        services = get_services(fastapi_app)
        return {
            "genres": await services.store.distinct_genres(),
            "directory_loaded": services.genres.is_loaded,
        }

    @fastapi_app.post("/sync", status_code=202)
    async def start_sync(request: SyncRequest | None = None) -> dict[str, Any]:
        services = get_services(fastapi_app)
        query = request.query if request else ""
        services.orchestrator.request_ingestion(query)
        return _progress_payload(services.orchestrator.progress())

    @fastapi_app.get("/sync/status")
    async def sync_status() -> dict[str, Any]:
        services = get_services(fastapi_app)
        return _progress_payload(services.orchestrator.progress())

    @fastapi_app.get("/search")
    async def search(q: str = Query(default="", max_length=200)) -> dict[str, Any]:
        services = get_services(fastapi_app)
        await services.orchestrator.search(q)
        payload = _page_payload(services.view.page(1))
        payload["query"] = q.strip()
        return payload

    @fastapi_app.get("/movies/{external_id}/trailer")
    async def movie_trailer(external_id: int) -> dict[str, Any]:
        services = get_services(fastapi_app)
        try:
            trailer = await services.client.fetch_trailer(external_id)
        except SyncError as exc:
            raise _remote_failure(exc) from exc
        if trailer is None:
            raise HTTPException(status_code=404, detail="No trailer found")
        return {**trailer.model_dump(), "url": trailer.url}

    @fastapi_app.get("/movies/{external_id}/credits")
    async def movie_credits(external_id: int) -> dict[str, Any]:
        services = get_services(fastapi_app)
        try:
            credits = await services.client.fetch_credits(external_id)
        except SyncError as exc:
            raise _remote_failure(exc) from exc
        return credits.model_dump()

    @fastapi_app.post("/movies/{movie_id}/favorite")
    async def toggle_favorite(movie_id: int, body: UserRef) -> dict[str, Any]:
        services = get_services(fastapi_app)
        await _require_user(services, body.user_id)
        try:
            state = await services.store.toggle_favorite(body.user_id, movie_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Movie not found") from exc
        await services.orchestrator.refresh_view()
        return {"movie_id": movie_id, "user_id": body.user_id, "is_favorite": state}

    @fastapi_app.post("/movies/{movie_id}/watchlist")
    async def toggle_watchlist(movie_id: int, body: UserRef) -> dict[str, Any]:
        services = get_services(fastapi_app)
        await _require_user(services, body.user_id)
        try:
            state = await services.store.toggle_watchlist(body.user_id, movie_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Movie not found") from exc
        await services.orchestrator.refresh_view()
        return {"movie_id": movie_id, "user_id": body.user_id, "is_in_watchlist": state}

    @fastapi_app.post("/movies/{movie_id}/rating")
    async def rate_movie(movie_id: int, body: RatingRequest) -> dict[str, Any]:
        services = get_services(fastapi_app)
        average = await services.store.rate_movie(movie_id, body.rating)
        if average is None:
            raise HTTPException(status_code=404, detail="Movie not found")
        await services.orchestrator.refresh_view()
        return {"movie_id": movie_id, "rating": round(average, 2)}

    @fastapi_app.post("/users", status_code=201)
    async def register_user(body: Credentials) -> dict[str, Any]:
        services = get_services(fastapi_app)
        user_id = await services.store.register_user(body.username, body.password)
        if user_id is None:
            raise HTTPException(status_code=409, detail="Username already exists")
        return {"id": user_id, "username": body.username}

    @fastapi_app.post("/sessions")
    async def login(body: Credentials) -> dict[str, Any]:
        services = get_services(fastapi_app)
        user_id = await services.store.verify_user(body.username, body.password)
        if user_id is None:
            raise HTTPException(status_code=401, detail="Invalid username or password")
        await services.orchestrator.set_user(user_id)
        return {"user_id": user_id, "username": body.username}

    @fastapi_app.get("/errors")
    async def recent_errors() -> dict[str, Any]:
        services = get_services(fastapi_app)
        return {
            "errors": [
                {"message": error.message, "at": error.at.isoformat()}
                for error in services.view.errors
            ]
        }


def _entity_payload(entity: CatalogEntity) -> dict[str, Any]:
    return entity.model_dump()


def _progress_payload(progress: SyncProgress) -> dict[str, Any]:
    payload = asdict(progress)
    payload["phase"] = progress.phase.value
    return payload


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "reelsync.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
