"""Entry point for the FastAPI-powered hero pool service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .database import Database
from .policy import PolicyLoader
from .services.hero_pipeline import (
    HeroPipelineDisabledError,
    HeroPipelineService,
    normalize_kind,
)
from .services.media_repository import CatalogUnavailableError, MediaRepository
from .services.pool_builder import PoolBuilder
from .services.storage import DatabaseTier, HeroPoolStorage, MemoryTier
from .services.tmdb import TMDBClient
from .utils import now_ms

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MIN_CACHE_SECONDS = 60

app: FastAPI


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    policy_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(timeout=httpx.Timeout(10.0, connect=5.0), follow_redirects=True)
    )
    database = Database(settings.database_url)
    await database.create_all()

    repository = MediaRepository(database.session_factory)
    if settings.catalog_seed_path and await repository.count() == 0:
        try:
            await repository.import_file(settings.catalog_seed_path)
        except (OSError, ValueError) as exc:
            logger.warning(
                "Unable to import catalog seed %s: %s", settings.catalog_seed_path, exc
            )

    metadata_client: TMDBClient | None = None
    if settings.tmdb_enabled:
        tmdb_http_client = await exit_stack.enter_async_context(
            httpx.AsyncClient(
                base_url=str(settings.tmdb_api_url),
                timeout=httpx.Timeout(settings.tmdb_timeout_seconds, connect=5.0),
            )
        )
        metadata_client = TMDBClient(settings, tmdb_http_client)
    else:
        logger.info("TMDB credentials missing, hero items will use catalog data only")

    hero_service = HeroPipelineService(
        policy_loader=PolicyLoader(policy_client, settings.hero_policy_path),
        repository=repository,
        storage=HeroPoolStorage(
            durable=DatabaseTier(database.session_factory),
            session=MemoryTier(settings.hero_session_cache_size),
        ),
        builder=PoolBuilder(metadata_client),
        config_flag=settings.hero_pipeline_enabled,
    )

    app.state.hero_service = hero_service
    app.state.database = database
    await hero_service.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await hero_service.stop()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Rotating hero pools for an exported Plex library",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_hero_service(app: FastAPI) -> HeroPipelineService:
    service = getattr(app.state, "hero_service", None)
    if not isinstance(service, HeroPipelineService):
        raise RuntimeError("Hero service not initialised")
    return service


def parse_force_flag(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "force"}


def cache_control_header(expires_at: int, now: int | None = None) -> str:
    remaining = (expires_at - (now_ms() if now is None else now)) // 1000
    return f"public, max-age={max(MIN_CACHE_SECONDS, remaining)}"


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/api/hero/debug")
    async def hero_debug() -> dict[str, Any]:
        service = get_hero_service(fastapi_app)
        return service.get_debug_snapshot()

    @fastapi_app.get("/api/hero/{kind}")
    async def hero_pool(kind: str, force: str | None = None) -> JSONResponse:
        service = get_hero_service(fastapi_app)
        try:
            pool_kind = normalize_kind(kind)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        try:
            result = await service.get_pool(pool_kind, force=parse_force_flag(force))
        except HeroPipelineDisabledError as exc:
            return JSONResponse(
                {"detail": str(exc), "fallback": True}, status_code=503
            )
        except CatalogUnavailableError as exc:
            logger.warning("Hero pool for %s unavailable: %s", kind, exc)
            return JSONResponse(
                {"detail": "Hero pool unavailable", "fallback": True}, status_code=502
            )

        return JSONResponse(
            result.to_payload(),
            headers={"Cache-Control": cache_control_header(result.expires_at)},
        )


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
