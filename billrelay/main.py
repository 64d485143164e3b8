import time
import uuid

from fastapi import Depends, FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from billrelay.core.config import get_settings
from billrelay.core.exceptions import (
    AppError,
    app_exception_handler,
    generic_exception_handler,
    validation_exception_handler,
)
from billrelay.core.logging import bind_request_id, configure_logging, get_logger
from billrelay.db.init import init_db
from billrelay.deps import get_order_store
from billrelay.routers import orders, toyyib
from billrelay.services.order_store import OrderStore

settings = get_settings()
configure_logging(debug=settings.debug)
log = get_logger(__name__)

app = FastAPI(
    title="ToyyibPay relay",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    bind_request_id(request_id)
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    # Route template, so callback tokens in the path never reach the logs.
    route = request.scope.get("route")
    log.info(
        "request",
        method=request.method,
        path=getattr(route, "path", request.url.path),
        status_code=response.status_code,
        duration_ms=round(duration_ms, 2),
    )
    response.headers["X-Request-ID"] = request_id
    return response


app.add_exception_handler(AppError, app_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Routers
app.include_router(toyyib.router, prefix="/toyyib", tags=["toyyib"])
app.include_router(orders.router, prefix="/v1/orders", tags=["orders"])


@app.on_event("startup")
async def startup():
    if settings.sentry_dsn:
        import sentry_sdk
        sentry_sdk.init(dsn=settings.sentry_dsn, environment=settings.env, traces_sample_rate=0.1)
        log.info("startup", msg="Sentry enabled")
    app.state.mongo_client = await init_db()
    app.state.order_store = OrderStore(default_currency=settings.default_currency)
    log.info("startup", msg="DB connected", db=settings.mongodb_db_name)


@app.on_event("shutdown")
async def shutdown():
    client = getattr(app.state, "mongo_client", None)
    if client is not None:
        client.close()
    log.info("shutdown")


@app.get("/", response_class=PlainTextResponse)
async def root():
    return "OK - ToyyibPay relay is running"


@app.get("/health")
async def health():
    """Health check for load balancers and monitoring."""
    return {"status": "ok"}


@app.get("/health/ready")
async def ready(store: OrderStore = Depends(get_order_store)):
    """Readiness: the order store answers a ping."""
    await store.ping()
    return {"status": "ok"}
