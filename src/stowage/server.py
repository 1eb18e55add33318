"""FastAPI application factory and route setup for the Stowage broker."""

import functools
import hashlib
import json
import logging
import secrets
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from stowage import metrics
from stowage.capacity import CapacityAccountant, CapacityScheduler
from stowage.client.broker import CAPABILITY_HEADER
from stowage.config import StowageConfig
from stowage.errors import InternalError, InvalidCapabilityError, StowageError, Unauthorized
from stowage.handlers.buckets import BucketHandler
from stowage.handlers.files import FileHandler
from stowage.registry import create_registry_store
from stowage.registry.resolver import BucketRegistry, RequestScope
from stowage.storage.gateway import StorageGateway
from stowage.vault import UPLOAD_SCOPE, AdminCapability, CredentialVault

logger = logging.getLogger(__name__)

# Module-level singleton so multiple create_app() calls (e.g. in tests)
# don't re-register the same Prometheus collectors in the global registry.
_instrumentator = None


def _get_instrumentator():
    global _instrumentator
    if _instrumentator is None:
        from prometheus_fastapi_instrumentator import Instrumentator

        _instrumentator = Instrumentator(
            should_instrument_requests_inprogress=True,
            excluded_handlers=["/metrics"],
        )
    return _instrumentator


def build_services(app: FastAPI, config: StowageConfig, store=None, gateway_factory=None):
    """Wire the vault, registry and accountant onto ``app.state``.

    Args:
        app: The application whose state receives the services.
        config: The loaded configuration.
        store: Registry store to use instead of one built from config.
        gateway_factory: Replacement for :class:`StorageGateway` construction.

    Raises:
        ConfigurationError: If the vault key material is invalid.
    """
    vault = CredentialVault.from_config(config.vault)
    if store is None:
        store = create_registry_store(config.registry)
    if gateway_factory is None:
        gateway_factory = functools.partial(
            StorageGateway, request_timeout=config.upload.request_timeout
        )
    registry = BucketRegistry(store, vault, gateway_factory=gateway_factory)
    accountant = CapacityAccountant(
        registry,
        vault,
        default_capacity_gb=config.capacity.default_capacity_gb,
        gateway_factory=gateway_factory,
    )
    app.state.vault = vault
    app.state.store = store
    app.state.gateway_factory = gateway_factory
    app.state.registry = registry
    app.state.accountant = accountant
    app.state.scheduler = CapacityScheduler(accountant, config.capacity.refresh_interval_seconds)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(config: StowageConfig) -> FastAPI:
    """Create and configure the Stowage broker application.

    Middleware assigns a request id to every response and enforces the
    capability and admin checks. Exception handlers render every failure as
    a JSON error body.

    The lifespan builds the vault first so bad key material stops startup
    before anything binds, then opens the registry store and starts the
    capacity scheduler.

    Args:
        config: The loaded Stowage configuration.

    Returns:
        A configured FastAPI application ready to run.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        build_services(app, config)
        await app.state.store.init_db()
        app.state.scheduler.start()
        logger.info("Registry store initialized: %s", config.registry.engine)

        yield

        await app.state.scheduler.stop()
        await app.state.store.close()
        logger.info("Registry store closed")

    app = FastAPI(
        title="Stowage Upload Broker",
        version="0.1.0",
        lifespan=lifespan,
        openapi_url=None,
        docs_url=None,
        redoc_url=None,
    )
    app.state.config = config

    _register_exception_handlers(app)
    _register_middleware(app, config)

    if config.observability.metrics:
        metrics.init_metrics()
        _get_instrumentator().instrument(app, metric_namespace="stowage").expose(
            app, endpoint="/metrics"
        )

    _setup_routes(app, config)

    return app


# ---------------------------------------------------------------------------
# Error rendering
# ---------------------------------------------------------------------------


def render_error(
    code: str,
    message: str,
    status: int,
    request_id: str = "",
    extra_fields: dict | None = None,
) -> Response:
    """Build the JSON error response ``{"error": {code, message, ...}}``."""
    error = {"code": code, "message": message}
    if extra_fields:
        error.update(extra_fields)
    headers = {"x-request-id": request_id} if request_id else None
    return JSONResponse({"error": error}, status_code=status, headers=headers)


def _record_failure(request: Request, code: str) -> None:
    operation = getattr(request.state, "operation", None)
    if operation:
        metrics.record_operation(operation, code)


def _register_exception_handlers(app: FastAPI) -> None:
    """Register exception handlers on the FastAPI app."""

    @app.exception_handler(StowageError)
    async def stowage_error_handler(request: Request, exc: StowageError) -> Response:
        """Render a StowageError with its own status code."""
        _record_failure(request, exc.code)
        return render_error(
            code=exc.code,
            message=exc.message,
            status=exc.http_status,
            request_id=getattr(request.state, "request_id", ""),
            extra_fields=exc.extra_fields,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
        """Map FastAPI parameter validation errors to a ValidationError body.

        Each failing parameter becomes an entry in ``fields`` keyed by its
        name (the last element of the Pydantic ``loc``).
        """
        fields: dict[str, list[str]] = {}
        for err in exc.errors():
            loc = err.get("loc") or ()
            name = str(loc[-1]) if loc else "request"
            fields.setdefault(name, []).append(err.get("msg", "Invalid value"))
        _record_failure(request, "ValidationError")
        return render_error(
            code="ValidationError",
            message="Validation failed. Please check the fields.",
            status=422,
            request_id=getattr(request.state, "request_id", ""),
            extra_fields={"fields": fields},
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> Response:
        """Catch unexpected exceptions and return InternalError."""
        logger.exception("Unhandled exception in request handler")
        error = InternalError()
        _record_failure(request, error.code)
        return render_error(
            code=error.code,
            message=error.message,
            status=error.http_status,
            request_id=getattr(request.state, "request_id", ""),
        )


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


def _admin_subject(token: str) -> str:
    """Stable, non-secret label for an admin token."""
    return "admin-" + hashlib.sha256(token.encode()).hexdigest()[:12]


def _register_middleware(app: FastAPI, config: StowageConfig) -> None:
    """Register middleware on the FastAPI app.

    The middleware registered last runs outermost, so the access check is
    registered first and the request-id middleware wraps it. Refused
    requests still carry an ``x-request-id`` and get an access log line.
    """

    # Paths to suppress from per-request logging
    _QUIET_PATHS = {"/metrics", "/health", "/healthz", "/readyz"}

    _ADMIN_PREFIXES = ("/buckets", "/capabilities")

    @app.middleware("http")
    async def access_middleware(request: Request, call_next) -> Response:
        """Capability and admin checks.

        ``/files/*`` requires an upload capability for the ``bucketId`` query
        parameter. Admin routes require a configured bearer token. Failures
        are rendered here because exception handlers do not see exceptions
        raised from middleware.
        """
        path = request.url.path
        try:
            if path.startswith("/files/"):
                vault = getattr(app.state, "vault", None)
                if vault is None:
                    raise InvalidCapabilityError("Capability verification is unavailable.")
                request.state.capability = vault.verify_capability(
                    request.headers.get(CAPABILITY_HEADER),
                    bucket_id=request.query_params.get("bucketId"),
                    scope=UPLOAD_SCOPE,
                )
            elif path.startswith(_ADMIN_PREFIXES):
                request.state.admin = _authenticate_admin(request, config)
        except StowageError as exc:
            return render_error(
                code=exc.code,
                message=exc.message,
                status=exc.http_status,
                request_id=request.state.request_id,
            )

        return await call_next(request)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next) -> Response:
        """Assign a request id and a lookup scope, then log the request."""
        request_id = secrets.token_hex(8).upper()
        request.state.request_id = request_id
        request.state.scope = RequestScope()
        start = time.monotonic()

        try:
            response = await call_next(request)
        finally:
            request.state.scope.clear()

        duration_ms = round((time.monotonic() - start) * 1000, 2)
        response.headers["x-request-id"] = request_id

        if request.url.path not in _QUIET_PATHS:
            logger.info(
                "%s %s %d %.2fms",
                request.method,
                request.url.path,
                response.status_code,
                duration_ms,
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "duration_ms": duration_ms,
                    "request_id": request_id,
                },
            )

        return response


def _authenticate_admin(request: Request, config: StowageConfig) -> AdminCapability:
    """Match the bearer token against ``auth.admin_tokens``.

    Raises:
        Unauthorized: If the header is missing or the token is unknown.
    """
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise Unauthorized()
    for candidate in config.auth.admin_tokens:
        if secrets.compare_digest(candidate.encode(), token.encode()):
            return AdminCapability(subject=_admin_subject(token))
    raise Unauthorized()


# ---------------------------------------------------------------------------
# Health check helpers
# ---------------------------------------------------------------------------


async def _check_registry(app: FastAPI) -> dict:
    """Probe the registry store.

    Returns a dict with ``status`` and ``latency_ms`` keys.
    """
    store = getattr(app.state, "store", None)
    if store is None:
        return {"status": "error", "error": "registry store not initialized", "latency_ms": 0}
    try:
        start = time.monotonic()
        await store.ping()
        latency = round((time.monotonic() - start) * 1000, 1)
        return {"status": "ok", "latency_ms": latency}
    except Exception as exc:
        return {"status": "error", "error": str(exc), "latency_ms": 0}


def _check_vault(app: FastAPI) -> dict:
    if getattr(app.state, "vault", None) is None:
        return {"status": "error", "error": "vault not initialized"}
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------


def _setup_routes(app: FastAPI, config: StowageConfig) -> None:
    """Register the health, file and admin routes.

    Args:
        app: The FastAPI application to attach routes to.
        config: The Stowage configuration.
    """
    file_handler = FileHandler(app)
    bucket_handler = BucketHandler(app)

    health_check_enabled = config.observability.health_check

    @app.get("/health")
    async def health_check(request: Request) -> Response:
        """Return health status.

        When health_check is enabled: probe the registry and vault and return
        JSON with component checks. When disabled: ``{"status": "ok"}``.
        """
        if not health_check_enabled:
            return Response(content='{"status":"ok"}', media_type="application/json")

        registry_check = await _check_registry(app)
        vault_check = _check_vault(app)
        all_ok = registry_check["status"] == "ok" and vault_check["status"] == "ok"

        body = json.dumps(
            {
                "status": "ok" if all_ok else "degraded",
                "checks": {"registry": registry_check, "vault": vault_check},
            }
        )
        return Response(
            content=body,
            status_code=200 if all_ok else 503,
            media_type="application/json",
        )

    if health_check_enabled:

        @app.get("/healthz")
        async def healthz() -> Response:
            """Liveness probe. Returns 200 with empty body."""
            return Response(status_code=200)

        @app.get("/readyz")
        async def readyz() -> Response:
            """Readiness probe. 200 when the registry answers, else 503."""
            registry_check = await _check_registry(app)
            ready = registry_check["status"] == "ok" and _check_vault(app)["status"] == "ok"
            return Response(status_code=200 if ready else 503)

    # File routes (capability-protected)
    @app.post("/files/presign")
    async def handle_presign(request: Request, bucketId: int) -> Response:
        return await file_handler.presign(request, bucketId)

    @app.post("/files/complete")
    async def handle_complete(request: Request, bucketId: int) -> Response:
        return await file_handler.complete(request, bucketId)

    @app.post("/files/multipart/initiate")
    async def handle_initiate_multipart(request: Request, bucketId: int) -> Response:
        return await file_handler.initiate_multipart(request, bucketId)

    @app.post("/files/multipart/presign")
    async def handle_presign_part(request: Request, bucketId: int) -> Response:
        return await file_handler.presign_part(request, bucketId)

    @app.post("/files/multipart/complete")
    async def handle_complete_multipart(request: Request, bucketId: int) -> Response:
        return await file_handler.complete_multipart(request, bucketId)

    @app.post("/files/multipart/abort")
    async def handle_abort_multipart(request: Request, bucketId: int) -> Response:
        return await file_handler.abort_multipart(request, bucketId)

    # Admin routes (bearer-protected). Fixed paths before /buckets/{bucket_id}.
    @app.post("/capabilities")
    async def handle_issue_capability(request: Request) -> Response:
        return await bucket_handler.issue_capability(request)

    @app.get("/buckets")
    async def handle_list_buckets(request: Request) -> Response:
        return await bucket_handler.list_buckets(request)

    @app.post("/buckets")
    async def handle_register_bucket(request: Request) -> Response:
        return await bucket_handler.register_bucket(request)

    @app.post("/buckets/usage/refresh")
    async def handle_refresh_usage(request: Request) -> Response:
        return await bucket_handler.refresh_usage(request)

    @app.post("/buckets/test")
    async def handle_test_connections(request: Request) -> Response:
        return await bucket_handler.test_connections(request)

    @app.post("/buckets/{bucket_id}/rotate")
    async def handle_rotate_secrets(request: Request, bucket_id: int) -> Response:
        return await bucket_handler.rotate_secrets(request, bucket_id)
