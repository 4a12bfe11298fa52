from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from core.config import ALLOWED_ORIGINS, DEBUG, logger
from core.database import Database
from core.errors import OrderServiceError, StorageFailure
from routers import health, orders
from services.order_queries import OrderQueryService
from services.order_transactions import OrderTransactionManager
from utils.rate_limit import OrderThrottles


def _attach_services(app: FastAPI, database: Database) -> None:
    queries = OrderQueryService(database)
    app.state.database = database
    app.state.order_queries = queries
    app.state.order_manager = OrderTransactionManager(database, queries)


def create_app(database: Optional[Database] = None, throttles: Optional[OrderThrottles] = None) -> FastAPI:
    """
    Build the API. Collaborators are constructed here (or passed in) and
    live on app.state for the lifetime of the process.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_database = app.state.database is None
        if owns_database:
            _attach_services(app, Database.from_env())
        app.state.database.init_db()
        logger.info("[startup] order API ready")
        try:
            yield
        finally:
            if owns_database:
                app.state.database.dispose()
                app.state.database = None

    app = FastAPI(title="Queen Bee Candles API", lifespan=lifespan)
    app.state.database = None
    if database is not None:
        _attach_services(app, database)
    app.state.throttles = throttles if throttles is not None else OrderThrottles()

    # ---- CORS setup ----
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["*"],
    )

    # --- Security headers ---
    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains")
        return response

    # --- Error mapping ---
    @app.exception_handler(OrderServiceError)
    async def order_error_handler(request: Request, exc: OrderServiceError):
        body = exc.to_dict()
        if isinstance(exc, StorageFailure) and DEBUG and exc.cause is not None:
            body["detail"] = str(exc.cause)
        return JSONResponse(body, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors(), custom_encoder={Exception: str})
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", [])[1:]) or None
        message = f"{field}: {first.get('msg')}" if field else (first.get("msg") or "Invalid request")
        return JSONResponse(
            {"success": False, "error": "validation_failed", "message": message, "errors": errors},
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            {"success": False, "message": exc.detail},
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    app.include_router(health.router)
    app.include_router(orders.router)

    @app.get("/")
    def read_root():
        return {"message": "Queen Bee Candles API"}

    return app


app = create_app()
