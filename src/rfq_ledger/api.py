"""
HTTP surface of the marketplace core.

`create_app(config)` builds a self-contained FastAPI application: the store,
the rate limiter and the notifier all belong to that app instance and live
for the duration of its lifespan, so two apps (or two tests) never share
state.
"""
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Annotated, Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, Path, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.exceptions import HTTPException as StarletteHTTPException

from .adaptors.sqlite import sqlite_object_store
from .catalog import CatalogPublisher, ManufacturerDirectory
from .errors import LedgerError, RateLimited
from .idempotency import MARKER_PREFIX, IdempotencyGuard
from .ledger import RfqLedger
from .models import (
    CATEGORY_PATTERN,
    MANUFACTURER_ID_PATTERN,
    CatalogSlice,
    EventPage,
    Manufacturer,
    RfqMeta,
)
from .notifier import BackgroundNotifier, LoggingEmailSender
from .schemas import (
    CatalogRebuildResponse,
    CreateRfqRequest,
    CreateRfqResponse,
    EventCreatedResponse,
    PostMessageRequest,
    PostStatusRequest,
)
from .service import RfqService
from .store import EncryptedObjectStore, RetryingObjectStore

REQUEST_ID_HEADER = "x-request-id"


def _error_response(status_code: int, body: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body)


def get_service(request: Request) -> RfqService:
    return request.app.state.service


IdempotencyKey = Annotated[
    Optional[str], Header(alias="Idempotency-Key", min_length=1, max_length=255)
]


def create_app(config: Optional[Dict[str, Any]] = None) -> FastAPI:
    config = config or {}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        lifecycle = {MARKER_PREFIX: timedelta(hours=config.get("idempotency_ttl_hours", 24))}
        async with sqlite_object_store(
            config.get("db_path", ":memory:"),
            pool_size=config.get("pool_size", 4),
            lifecycle=lifecycle,
        ) as backend:
            store = RetryingObjectStore(backend)
            if config.get("key"):
                store = EncryptedObjectStore(store, config["key"])

            notifier = BackgroundNotifier(config.get("email_sender") or LoggingEmailSender())
            await notifier.start()
            directory = ManufacturerDirectory(store)
            app.state.store = store
            app.state.notifier = notifier
            app.state.service = RfqService(
                RfqLedger(store, notifier, max_retries=config.get("max_retries", 5)),
                IdempotencyGuard(store),
                directory,
                CatalogPublisher(store, directory),
            )
            try:
                yield
            finally:
                await notifier.stop()

    app = FastAPI(title="RFQ Ledger", version="0.1.0", lifespan=lifespan)

    app.state.limiter = Limiter(
        key_func=get_remote_address,
        default_limits=[config.get("rate_limit", "120/minute")],
        enabled=config.get("rate_limit_enabled", True),
    )
    app.add_middleware(SlowAPIMiddleware)

    @app.middleware("http")
    async def request_id(request: Request, call_next):
        rid = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = rid
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = rid
        return response

    # --- error envelope ---

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        if exc.status_code >= 500:
            logging.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
        return _error_response(exc.status_code, exc.envelope())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            {"loc": [str(part) for part in error["loc"]], "msg": error["msg"], "type": error["type"]}
            for error in exc.errors()
        ]
        return _error_response(
            400,
            {"code": "validation_error", "message": "Request validation failed", "details": details},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        code = "not_found" if exc.status_code == 404 else "http_error"
        return _error_response(exc.status_code, {"code": code, "message": str(exc.detail)})

    # SlowAPIMiddleware calls this handler synchronously.
    def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        error = RateLimited(f"Rate limit exceeded: {exc.detail}")
        return _error_response(error.status_code, error.envelope())

    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)

    # --- RFQs ---

    @app.post("/rfqs", status_code=201, response_model=CreateRfqResponse)
    async def create_rfq(
        body: CreateRfqRequest,
        idempotency_key: IdempotencyKey = None,
        service: RfqService = Depends(get_service),
    ):
        return await service.open_rfq(body, idempotency_key)

    @app.get("/rfqs/{rfq_id}", response_model=RfqMeta)
    async def get_rfq(rfq_id: str, service: RfqService = Depends(get_service)):
        return await service.get_rfq(rfq_id)

    @app.get("/rfqs/{rfq_id}/events", response_model=EventPage)
    async def list_events(
        rfq_id: str,
        since: Optional[str] = Query(default=None),
        limit: Optional[int] = Query(default=None),
        service: RfqService = Depends(get_service),
    ):
        return await service.list_events(rfq_id, since, limit)

    @app.post("/rfqs/{rfq_id}/messages", status_code=201, response_model=EventCreatedResponse)
    async def post_message(
        rfq_id: str,
        body: PostMessageRequest,
        idempotency_key: IdempotencyKey = None,
        service: RfqService = Depends(get_service),
    ):
        return await service.post_message(rfq_id, body, idempotency_key)

    @app.post("/rfqs/{rfq_id}/status", status_code=201, response_model=EventCreatedResponse)
    async def post_status(
        rfq_id: str,
        body: PostStatusRequest,
        idempotency_key: IdempotencyKey = None,
        service: RfqService = Depends(get_service),
    ):
        return await service.post_status(rfq_id, body, idempotency_key)

    # --- manufacturers and catalog ---

    @app.post("/manufacturers", response_model=CatalogRebuildResponse)
    async def upsert_manufacturer(
        manufacturer: Manufacturer, service: RfqService = Depends(get_service)
    ):
        return await service.upsert_manufacturer(manufacturer)

    @app.get("/manufacturers/{manufacturer_id}", response_model=Manufacturer)
    async def get_manufacturer(
        manufacturer_id: str = Path(pattern=MANUFACTURER_ID_PATTERN, max_length=50),
        service: RfqService = Depends(get_service),
    ):
        return await service.get_manufacturer(manufacturer_id)

    @app.delete("/manufacturers/{manufacturer_id}", response_model=CatalogRebuildResponse)
    async def delete_manufacturer(
        manufacturer_id: str = Path(pattern=MANUFACTURER_ID_PATTERN, max_length=50),
        service: RfqService = Depends(get_service),
    ):
        return await service.delete_manufacturer(manufacturer_id)

    @app.get("/catalog/category/{category}", response_model=CatalogSlice)
    async def category_slice(
        category: str = Path(pattern=CATEGORY_PATTERN),
        service: RfqService = Depends(get_service),
    ):
        return await service.read_slice(category)

    @app.get("/catalog/category/{category}/{state}", response_model=CatalogSlice)
    async def category_state_slice(
        category: str = Path(pattern=CATEGORY_PATTERN),
        state: str = Path(min_length=1, max_length=64),
        service: RfqService = Depends(get_service),
    ):
        return await service.read_slice(category, state)

    return app
