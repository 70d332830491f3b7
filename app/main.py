from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.admin import router as admin_router
from app.api.deps import InvalidApiTokenError
from app.api.service import router as service_router
from app.core.config import settings
from app.core.database import init_db
from app.core.logging import setup_logging
from app.services.catalog_sync import SyncFatalError
from app.services.category_mapping import (
    CategoryMappingNotFoundError,
    LocalCategoryNotFoundError,
)
from app.services.change_review import ChangeApplyError
from app.services.change_store import ChangeNotFoundError, InvalidTransitionError
from app.services.sync_runs import SyncAlreadyRunningError, SyncRunNotFoundError

app = FastAPI(title="Catalog Sync")


@app.exception_handler(InvalidApiTokenError)
async def invalid_api_token_handler(
    request: Request, exc: InvalidApiTokenError
) -> JSONResponse:
    return JSONResponse(status_code=401, content={"error": "Invalid API token"})


@app.exception_handler(SyncAlreadyRunningError)
async def sync_running_handler(request: Request, exc: SyncAlreadyRunningError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"error": str(exc)})


@app.exception_handler(SyncFatalError)
async def sync_fatal_handler(request: Request, exc: SyncFatalError) -> JSONResponse:
    return JSONResponse(
        status_code=502,
        content={"error": "Catalog unavailable", "detail": str(exc), "run_id": exc.run_id},
    )


@app.exception_handler(ChangeNotFoundError)
@app.exception_handler(SyncRunNotFoundError)
@app.exception_handler(CategoryMappingNotFoundError)
async def not_found_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(
    request: Request, exc: InvalidTransitionError
) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={"error": str(exc), "current_status": exc.current},
    )


@app.exception_handler(ChangeApplyError)
@app.exception_handler(LocalCategoryNotFoundError)
async def unprocessable_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=422, content={"error": str(exc)})


origins = [origin.strip() for origin in settings.ADMIN_UI_ORIGINS.split(",") if origin]
if origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.on_event("startup")
async def on_startup() -> None:
    setup_logging()
    await init_db()


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


app.include_router(admin_router)
app.include_router(service_router)
