"""Entry point for the FastAPI-powered CanonSync service."""

from __future__ import annotations
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .config import settings
from .database import Database
from .errors import (
    CanonSyncError,
    FetchError,
    FetchErrorKind,
    LibraryNotConfigured,
    LibraryServiceError,
    StoreUnavailable,
    ValidationError,
)
from .models import parse_episode_types
from .services.cache import ClassificationCache
from .services.canon_service import CanonSyncService, MappingProposal, RefreshOutcome
from .services.library import PlexLibraryClient
from .services.listing_fetcher import AnimeFillerListFetcher
from .services.matcher import Matcher
from .services.sync_log import SyncLog

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI

USER_AGENT = "CanonSync/1.0 (+https://github.com/canonsync/canonsync)"


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    listing_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.listing_base_url),
            timeout=httpx.Timeout(20.0, connect=10.0),
            headers={"User-Agent": USER_AGENT},
        )
    )
    library = None
    if settings.plex_configured:
        plex_client = await exit_stack.enter_async_context(
            httpx.AsyncClient(
                base_url=str(settings.plex_url),
                timeout=httpx.Timeout(30.0, connect=10.0),
            )
        )
        library = PlexLibraryClient(
            plex_client,
            token=settings.plex_token or "",
            section_id=settings.plex_section_id or "",
            max_connections=settings.library_max_connections,
        )
    else:
        logger.warning("Plex is not configured; matching and syncing are disabled")

    database = Database(settings.database_url)
    await database.create_all()

    canon_service = CanonSyncService(
        cache=ClassificationCache(database.session_factory),
        sync_log=SyncLog(database.session_factory),
        fetcher=AnimeFillerListFetcher(listing_client),
        library=library,
        options=settings.sync_options(),
        matcher=Matcher(
            auto_threshold=settings.match_auto_threshold,
            suggest_threshold=settings.match_suggest_threshold,
        ),
        freshness_ttl=settings.freshness_ttl_seconds,
        sync_interval_seconds=settings.sync_interval_seconds,
    )

    app.state.canon_service = canon_service
    app.state.database = database
    await canon_service.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await canon_service.stop()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Keeps media-server collections of canon anime episodes in sync",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_canon_service(app: FastAPI) -> CanonSyncService:
    service = getattr(app.state, "canon_service", None)
    if not isinstance(service, CanonSyncService):
        raise RuntimeError("CanonSync service not initialised")
    return service


class AddShowRequest(BaseModel):
    slug: str = Field(min_length=1, description="Show slug or listing URL")


class ConfirmMappingRequest(BaseModel):
    library_key: str | None = None
    library_title: str | None = None


class SyncRequest(BaseModel):
    show_ids: list[int] | None = None
    include_inactive: bool = False
    dry_run: bool | None = None
    remove_filler: bool | None = None
    target_types: list[str] | None = None
    concurrency: int | None = None
    timeout_seconds: float | None = None


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/shows")
    async def list_shows() -> JSONResponse:
        service = get_canon_service(fastapi_app)
        try:
            shows = await service.list_shows()
        except CanonSyncError as exc:
            raise _http_error(exc) from exc
        return JSONResponse([show.model_dump(mode="json") for show in shows])

    @fastapi_app.post("/shows", status_code=201)
    async def add_show(payload: AddShowRequest) -> JSONResponse:
        service = get_canon_service(fastapi_app)
        try:
            outcome = await service.add_show(payload.slug)
        except (CanonSyncError, ValueError) as exc:
            raise _http_error(exc) from exc
        return JSONResponse(_refresh_payload(outcome), status_code=201)

    @fastapi_app.get("/shows/{show_id}")
    async def get_show(show_id: int, types: str | None = None) -> JSONResponse:
        service = get_canon_service(fastapi_app)
        try:
            selected = parse_episode_types(types) if types else None
            show = await service.get_show(show_id)
            episodes = await service.get_episodes(show_id, selected)
            mapping = await service.get_mapping(show_id)
        except (CanonSyncError, KeyError, ValueError) as exc:
            raise _http_error(exc) from exc
        payload = show.model_dump(mode="json")
        payload["episodes"] = [episode.model_dump(mode="json") for episode in episodes]
        payload["mapping"] = mapping.model_dump(mode="json") if mapping else None
        return JSONResponse(payload)

    @fastapi_app.delete("/shows/{show_id}", status_code=204)
    async def delete_show(show_id: int) -> None:
        service = get_canon_service(fastapi_app)
        try:
            deleted = await service.delete_show(show_id)
        except CanonSyncError as exc:
            raise _http_error(exc) from exc
        if not deleted:
            raise HTTPException(status_code=404, detail=f"Show {show_id} not found")

    @fastapi_app.post("/shows/{show_id}/refresh")
    async def refresh_show(show_id: int, force: bool = True) -> JSONResponse:
        service = get_canon_service(fastapi_app)
        try:
            show = await service.get_show(show_id)
            outcome = await service.refresh_show(show.slug, force=force)
        except (CanonSyncError, KeyError, ValueError) as exc:
            raise _http_error(exc) from exc
        return JSONResponse(_refresh_payload(outcome))

    @fastapi_app.post("/shows/{show_id}/match")
    async def match_show(show_id: int) -> JSONResponse:
        service = get_canon_service(fastapi_app)
        try:
            proposal = await service.propose_mapping(show_id)
        except (CanonSyncError, KeyError) as exc:
            raise _http_error(exc) from exc
        return JSONResponse(_proposal_payload(proposal))

    @fastapi_app.put("/shows/{show_id}/mapping")
    async def confirm_mapping(
        show_id: int, payload: ConfirmMappingRequest | None = None
    ) -> JSONResponse:
        service = get_canon_service(fastapi_app)
        payload = payload or ConfirmMappingRequest()
        try:
            mapping = await service.confirm_mapping(
                show_id, payload.library_key, payload.library_title
            )
        except (CanonSyncError, KeyError) as exc:
            raise _http_error(exc) from exc
        return JSONResponse(mapping.model_dump(mode="json"))

    @fastapi_app.post("/shows/{show_id}/mapping/reject")
    async def reject_mapping(show_id: int) -> JSONResponse:
        service = get_canon_service(fastapi_app)
        try:
            mapping = await service.reject_mapping(show_id)
        except (CanonSyncError, KeyError) as exc:
            raise _http_error(exc) from exc
        return JSONResponse(mapping.model_dump(mode="json"))

    @fastapi_app.delete("/shows/{show_id}/mapping", status_code=204)
    async def delete_mapping(show_id: int) -> None:
        service = get_canon_service(fastapi_app)
        try:
            deleted = await service.delete_mapping(show_id)
        except CanonSyncError as exc:
            raise _http_error(exc) from exc
        if not deleted:
            raise HTTPException(
                status_code=404, detail=f"Show {show_id} has no mapping"
            )

    @fastapi_app.post("/sync")
    async def run_sync(payload: SyncRequest | None = None) -> JSONResponse:
        service = get_canon_service(fastapi_app)
        payload = payload or SyncRequest()
        overrides: dict[str, Any] = payload.model_dump(
            exclude={"show_ids", "include_inactive"}, exclude_none=True
        )
        try:
            run = await service.run_sync(
                payload.show_ids,
                include_inactive=payload.include_inactive,
                **overrides,
            )
        except PydanticValidationError as exc:
            raise HTTPException(
                status_code=400, detail=exc.errors(include_url=False)
            ) from exc
        except CanonSyncError as exc:
            raise _http_error(exc) from exc
        return JSONResponse(run.to_payload())

    @fastapi_app.post("/sync/cancel")
    async def cancel_sync() -> dict[str, bool]:
        service = get_canon_service(fastapi_app)
        return {"cancelled": service.cancel_sync("cancelled via API")}

    @fastapi_app.get("/sync/runs")
    async def list_runs(limit: int = 20) -> JSONResponse:
        service = get_canon_service(fastapi_app)
        if limit < 1 or limit > 200:
            raise HTTPException(status_code=400, detail="limit must be between 1 and 200")
        try:
            runs = await service.list_runs(limit)
        except CanonSyncError as exc:
            raise _http_error(exc) from exc
        return JSONResponse([run.to_payload() for run in runs])

    @fastapi_app.get("/sync/runs/{run_id}")
    async def get_run(run_id: str) -> JSONResponse:
        service = get_canon_service(fastapi_app)
        try:
            run = await service.get_run(run_id)
        except CanonSyncError as exc:
            raise _http_error(exc) from exc
        if run is None:
            raise HTTPException(status_code=404, detail=f"Sync run {run_id} not found")
        return JSONResponse(run.to_payload())


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, KeyError):
        return HTTPException(status_code=404, detail=str(exc.args[0]) if exc.args else "Not found")
    if isinstance(exc, FetchError):
        status = 404 if exc.kind is FetchErrorKind.NOT_FOUND else 502
        return HTTPException(status_code=status, detail=str(exc))
    if isinstance(exc, (ValidationError, LibraryServiceError)):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, (LibraryNotConfigured, StoreUnavailable)):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, CanonSyncError):
        logger.warning("Unhandled domain error: %s", exc)
        return HTTPException(status_code=500, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _refresh_payload(outcome: RefreshOutcome) -> dict[str, Any]:
    payload = outcome.show.model_dump(mode="json")
    payload["refreshed"] = outcome.refreshed
    payload["episode_count"] = outcome.episode_count
    return payload


def _proposal_payload(proposal: MappingProposal) -> dict[str, Any]:
    decision = proposal.decision
    return {
        "status": decision.status.value,
        "mapping": proposal.mapping.model_dump(mode="json") if proposal.mapping else None,
        "candidates": [
            {
                "key": candidate.item.key,
                "title": candidate.item.title,
                "year": candidate.item.year,
                "score": candidate.score,
            }
            for candidate in decision.ranked[:10]
        ],
    }


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
