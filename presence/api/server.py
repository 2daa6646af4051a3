"""
FastAPI server for the presence data API.
Endpoints under /api: data, data/query, search, refresh, status, tutors, students, cache/clear.
Every failure is returned as {"error": true, "message", "timestamp"}.
Docs when enabled: http://<host>:<port>/docs
"""
import logging
import time
import traceback
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from presence.api.schemas import (
    CacheClearResponse,
    DataQueryBody,
    DataResponse,
    ErrorResponse,
    NamesResponse,
    RefreshResponse,
    SearchResponse,
)
from presence.core.cache import create_cache
from presence.core.config import Settings
from presence.core.errors import (
    ConfigurationError,
    InvalidQueryError,
    PresenceError,
    RequestTimeoutError,
    RetryExhaustedError,
    SheetsClientError,
    SheetsError,
    SheetsTransientError,
)
from presence.core.task_manager import TaskManager
from presence.service import API_VERSION, PresenceService
from presence.sheets.client import SheetsClient
from presence.sheets.fetcher import RecordFetcher
from presence.sheets.models import SearchCriteria

logger = logging.getLogger(__name__)

CACHE_CLEANUP_TASK = "cache_cleanup"

# First match wins, so subclasses come before their bases
_ERROR_STATUS = (
    (InvalidQueryError, 400),
    (ConfigurationError, 503),
    (RequestTimeoutError, 504),
    (RetryExhaustedError, 503),
    (SheetsTransientError, 503),
    (SheetsClientError, 502),
    (SheetsError, 502),
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO string (UTC)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def error_status(exc: Exception) -> int:
    for exc_type, status in _ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status
    return 500


def error_response(status: int, message: str, exc: Optional[BaseException] = None, debug: bool = False) -> JSONResponse:
    body = ErrorResponse(
        message=message,
        timestamp=_now_iso(),
        stack="".join(traceback.format_exception(exc)) if debug and exc is not None else None,
    )
    return JSONResponse(status_code=status, content=body.model_dump(by_alias=True, exclude_none=True))


def build_service(settings: Settings) -> PresenceService:
    """Wire client, fetcher, cache and service from validated settings."""
    client = SheetsClient(settings.sheets)
    fetcher = RecordFetcher(client, settings.sheets)
    cache = create_cache(settings)
    return PresenceService(fetcher, cache, settings.api)


def _register_error_handlers(app: FastAPI, debug: bool) -> None:
    @app.exception_handler(PresenceError)
    async def presence_error_handler(request: Request, exc: PresenceError) -> JSONResponse:
        status = error_status(exc)
        logger.error(f"{request.method} {request.url.path} failed ({status}): {exc}")
        return error_response(status, str(exc), exc, debug)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ())[1:]) or 'request'}: {err.get('msg')}"
            for err in exc.errors()
        )
        return error_response(400, f"Invalid request parameters: {details}")

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            message = f"Route {request.method} {request.url.path} not found"
        else:
            message = str(exc.detail)
        return error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
        return error_response(500, "Internal server error", exc, debug)


def _data_router(service: PresenceService, task_manager: TaskManager) -> APIRouter:
    router = APIRouter(tags=["Presence"])

    @router.get("/data", response_model=DataResponse)
    async def get_data(
        year: Optional[str] = None,
        page: int = 1,
        page_size: Optional[int] = Query(None, alias="pageSize"),
        search: Optional[str] = None,
        teacher: Optional[str] = None,
        student: Optional[str] = None,
        date_from: Optional[str] = Query(None, alias="dateFrom"),
        date_to: Optional[str] = Query(None, alias="dateTo"),
    ) -> Dict[str, Any]:
        """Paginated records, optionally filtered by year and search criteria."""
        criteria = SearchCriteria(
            search=search, teacher=teacher, student=student, date_from=date_from, date_to=date_to
        )
        return await service.get_data(year=year, page=page, page_size=page_size, criteria=criteria)

    @router.post("/data/query", response_model=DataResponse)
    async def post_data_query(body: DataQueryBody) -> Dict[str, Any]:
        """Same as GET /data with the criteria in a JSON body."""
        return await service.get_data(
            year=body.year, page=body.page, page_size=body.page_size, criteria=body.search.to_criteria()
        )

    @router.get("/search", response_model=SearchResponse)
    async def get_search(
        q: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        page_size: Optional[int] = Query(None, alias="pageSize"),
    ) -> Dict[str, Any]:
        """Free-text search across all searchable fields; term from ?q= or ?search=."""
        return await service.search(q or search, page=page, page_size=page_size)

    @router.get("/refresh", response_model=RefreshResponse)
    def get_refresh(pattern: Optional[str] = None) -> Dict[str, Any]:
        """Clear cached responses (optionally only keys containing pattern)."""
        return service.refresh(pattern)

    @router.get("/status")
    def get_status() -> Dict[str, Any]:
        """Service configuration (secrets redacted), cache statistics and background tasks."""
        status = service.status()
        status["tasks"] = [
            {
                "name": t["name"],
                "next_run_at": _serialize_datetime(t["next_run_at"]),
                "runs": t["runs"],
            }
            for t in task_manager.get_active_timers()
        ]
        return status

    @router.get("/tutors", response_model=NamesResponse)
    async def get_tutors() -> Dict[str, Any]:
        """Unique teacher names for the current year."""
        return await service.tutors()

    @router.get("/students", response_model=NamesResponse)
    async def get_students() -> Dict[str, Any]:
        """Unique student names."""
        return await service.students()

    @router.post("/cache/clear", response_model=CacheClearResponse)
    def post_cache_clear() -> Dict[str, Any]:
        """Unconditionally clear every cache entry."""
        return service.clear_cache()

    return router


def create_app(
    service: PresenceService,
    settings: Settings,
    task_manager: Optional[TaskManager] = None,
) -> FastAPI:
    """Create FastAPI app around one PresenceService; the cache sweep runs for the app's lifetime."""
    task_manager = task_manager or TaskManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task_manager.schedule_periodic(
            CACHE_CLEANUP_TASK, service.cache.cleanup, settings.cache.cleanup_interval_seconds
        )
        try:
            yield
        finally:
            await task_manager.stop()
            logger.info("Background tasks stopped")

    app = FastAPI(
        title="Presence Data API",
        description="Paginated, filterable, cached attendance records from Google Sheets",
        version=API_VERSION,
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.task_manager = task_manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.api.allowed_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.monotonic()
        response = await call_next(request)
        duration = int((time.monotonic() - started) * 1000)
        message = f"{request.method} {request.url.path} -> {response.status_code} ({duration}ms)"
        if response.status_code >= 400:
            logger.warning(f"Request error: {message}")
        else:
            logger.info(f"Request completed: {message}")
        return response

    _register_error_handlers(app, settings.api.debug)
    app.include_router(_data_router(service, task_manager), prefix="/api")

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "status": "healthy",
            "timestamp": _now_iso(),
            "uptime": round(service.clock() - service.started_at, 3),
            "version": API_VERSION,
        }

    @app.get("/")
    def root() -> Dict[str, Any]:
        return {
            "name": "Presence Data API",
            "version": API_VERSION,
            "description": "RESTful API for presence/attendance data from Google Sheets",
            "endpoints": {
                "data": "/api/data",
                "query": "/api/data/query",
                "search": "/api/search",
                "refresh": "/api/refresh",
                "status": "/api/status",
                "tutors": "/api/tutors",
                "students": "/api/students",
                "cacheClear": "/api/cache/clear",
                "health": "/health",
            },
            "timestamp": _now_iso(),
        }

    return app


def run_api_server(settings: Settings) -> None:
    """Build the service and serve it with uvicorn (blocking)."""
    import uvicorn

    app = create_app(build_service(settings), settings)
    logger.info(
        f"API server listening at http://{settings.api.host}:{settings.api.port} (docs at /docs)"
    )
    uvicorn.run(app, host=settings.api.host, port=settings.api.port, log_config=None)
