import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.api.events import router as events_router
from app.api.feedback import router as feedback_router
from app.api.issues import router as issues_router
from app.api.messages import router as messages_router
from app.api.payments import router as payments_router
from app.api.profiles import router as profiles_router
from app.core.config import settings
from app.core.db import Base, SessionLocal, engine, get_db
from app.core.errors import LifecycleError
from app.core.logger import configure_logging
from app.core.notifier import NotificationHub
from app.repositories.store import normalize_legacy_statuses
from app.services.payments import MockPaymentProvider

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(log_level=settings.LOG_LEVEL, log_format=settings.LOG_FORMAT)
    Base.metadata.create_all(bind=engine)
    app.state.payment_provider = MockPaymentProvider()
    db = app.state.session_factory()
    try:
        migrated = normalize_legacy_statuses(db)
    finally:
        db.close()
    log.info("app.startup", sync_mode=app.state.sync_mode, migrated_statuses=migrated)
    yield
    log.info("app.shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Issue lifecycle, message log and live updates for repair requests.",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.notifier = NotificationHub(queue_size=settings.SUBSCRIBER_QUEUE_SIZE)
app.state.session_factory = SessionLocal
app.state.sync_mode = settings.SYNC_MODE
app.state.poll_interval = settings.POLL_INTERVAL_SECONDS


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    with structlog.contextvars.bound_contextvars(request_id=request_id):
        response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(LifecycleError)
async def lifecycle_exception_handler(request: Request, exc: LifecycleError):
    content = {
        "detail": exc.detail,
        "code": exc.code,
        "retryable": exc.retryable,
        "request_id": getattr(request.state, "request_id", None),
    }
    if exc.hint:
        content["hint"] = exc.hint
    log.info("app.request_rejected", code=exc.code, detail=exc.detail)
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(SQLAlchemyError)
async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError):
    log.error("app.database_error", error=str(exc))
    return JSONResponse(
        status_code=503,
        content={"detail": "Service Unavailable: Database connection or operational failure", "request_id": getattr(request.state, "request_id", None)},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    log.exception("app.unhandled_error")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal Server Error", "request_id": getattr(request.state, "request_id", None)},
    )


@app.get("/health", tags=["system"])
def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        db_status = "ok"
    except SQLAlchemyError:
        db_status = "error"
    return {"status": "ok", "database": db_status}


app.include_router(profiles_router)
app.include_router(issues_router)
app.include_router(messages_router)
app.include_router(payments_router)
app.include_router(feedback_router)
app.include_router(events_router)
