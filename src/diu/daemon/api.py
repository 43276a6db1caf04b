"""
HTTP API for the diu daemon.

Routes (base /api/v1):
    GET  /executions   Query executions, newest first
    POST /executions   Submit an execution (202, or 503 when the queue is full)
    GET  /packages     Package aggregates, optionally for one tool
    GET  /stats        Storage statistics
    GET  /health       Daemon status

Endpoints are plain (sync) functions; FastAPI runs them in its thread
pool so a slow enqueue never blocks the event loop.
"""

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from diu import __version__
from diu.errors import DiuError, QueueClosedError, QueueFullError
from diu.schema import ExecutionRecord, HealthStatus, PackageInfo, QueryFilters, Statistics

if TYPE_CHECKING:
    from diu.daemon.core import Daemon

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


def create_app(daemon: "Daemon") -> FastAPI:
    """Create the FastAPI app serving one daemon."""
    app = FastAPI(title="diu", version=__version__)
    router = APIRouter(prefix=API_PREFIX)

    @router.get("/executions", response_model=list[ExecutionRecord])
    def list_executions(
        tool: str | None = None,
        package: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = Query(default=None, ge=0),
        offset: int = Query(default=0, ge=0),
    ) -> list[ExecutionRecord]:
        filters = QueryFilters(
            tool=tool,
            package=package,
            since=since,
            until=until,
            limit=limit,
            offset=offset,
        )
        return daemon.store.query(filters)

    @router.post("/executions", status_code=status.HTTP_202_ACCEPTED)
    def submit_execution(record: ExecutionRecord) -> dict[str, str]:
        try:
            daemon.submit(record)
        except (QueueFullError, QueueClosedError) as e:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=e.to_dict(),
            ) from e
        return {"status": "accepted"}

    @router.get("/packages", response_model=list[PackageInfo])
    def list_packages(tool: str | None = None) -> list[PackageInfo]:
        return daemon.store.get_packages(tool)

    @router.get("/stats", response_model=Statistics)
    def get_stats() -> Statistics:
        return daemon.store.statistics()

    @router.get("/health", response_model=HealthStatus)
    def get_health() -> HealthStatus:
        return daemon.health()

    app.include_router(router)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(ValidationError)
    async def model_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": jsonable_encoder(exc.errors(include_context=False))},
        )

    @app.exception_handler(DiuError)
    async def diu_error_handler(request: Request, exc: DiuError) -> JSONResponse:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": exc.to_dict()},
        )

    return app
