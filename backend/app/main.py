"""
Conversion Event Relay
Intake API Entry Point

FastAPI application accepting browser, server and tag-manager submissions.
Admission is synchronous; delivery happens on the worker pool
(`python -m agents.delivery_agent`).
"""

import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

import structlog
from fastapi import Body, Depends, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from agents.gtm_mapper import map_gtm_event
from agents.services import TrackingServices, build_services
from contracts.tracking_schemas import RequestContext
from core.config import get_settings
from core.exceptions import (
    InvalidTransition,
    SurfaceNotFound,
    TrackingError,
    ValidationFailure,
)
from core.logging import setup_logging

logger = structlog.get_logger(__name__)

ERROR_STATUS = {
    ValidationFailure: status.HTTP_422_UNPROCESSABLE_ENTITY,
    SurfaceNotFound: status.HTTP_404_NOT_FOUND,
    InvalidTransition: status.HTTP_409_CONFLICT,
}


def request_context(request: Request) -> RequestContext:
    """Connection signals used to fill identity gaps"""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        client_ip = forwarded.split(",")[0].strip()
    else:
        client_ip = request.client.host if request.client else None

    return RequestContext(
        client_ip=client_ip or None,
        user_agent=request.headers.get("user-agent"),
        click_id_cookie=request.cookies.get("_fbc"),
        browser_id_cookie=request.cookies.get("_fbp"),
    )


def get_services(request: Request) -> TrackingServices:
    return request.app.state.services


def create_app(services: Optional[TrackingServices] = None) -> FastAPI:
    """Build the intake app; services are created at startup unless given"""
    settings = services.settings if services else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator:
        owned = getattr(app.state, "services", None) is None
        if owned:
            setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)
            app.state.services = build_services(settings)
        logger.info("Starting conversion event relay", env=settings.ENV)

        yield

        logger.info("Shutting down conversion event relay")
        if owned:
            app.state.services.close()
            app.state.services = None

    app = FastAPI(
        title="Conversion Event Relay",
        version=settings.API_VERSION,
        lifespan=lifespan,
    )
    app.state.services = services

    # ========================================================================
    # MIDDLEWARE
    # ========================================================================

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next):
        """Add request ID to all requests for tracing"""
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    # ========================================================================
    # EXCEPTION HANDLERS
    # ========================================================================

    @app.exception_handler(TrackingError)
    async def tracking_exception_handler(request: Request, exc: TrackingError):
        status_code = next(
            (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        if exc.error_code == "event_not_found":
            status_code = status.HTTP_404_NOT_FOUND

        logger.info(
            "Request rejected",
            path=request.url.path,
            error=exc.error_code,
            status_code=status_code,
        )
        return JSONResponse(
            status_code=status_code,
            content={
                "error": exc.error_code,
                "message": exc.message,
                "details": exc.details,
            },
        )

    # ========================================================================
    # ROUTES
    # ========================================================================

    api = f"/api/{settings.API_VERSION}"

    @app.post(f"{api}/track", status_code=status.HTTP_202_ACCEPTED)
    def track(
        request: Request,
        payload: Dict[str, Any] = Body(...),
        services: TrackingServices = Depends(get_services),
    ):
        """Admit one event submission"""
        result = services.pipeline.admit(payload, request_context(request))
        return result.model_dump(mode="json")

    @app.post(f"{api}/track/batch")
    def track_batch(
        request: Request,
        payload: Dict[str, Any] = Body(...),
        services: TrackingServices = Depends(get_services),
    ):
        """Admit up to the configured batch size; each event succeeds or fails on its own"""
        events = payload.get("events")
        if not isinstance(events, list):
            raise ValidationFailure("Batch body must contain an 'events' list")

        surface_id = payload.get("surface_id") or payload.get("pixel_id")
        if surface_id:
            events = [
                {"surface_id": surface_id, **item}
                if isinstance(item, dict) and not (item.get("surface_id") or item.get("pixel_id"))
                else item
                for item in events
            ]

        results = services.pipeline.admit_batch(
            [item if isinstance(item, dict) else {} for item in events],
            request_context(request),
        )
        return {
            "received": len(results),
            "admitted": sum(1 for r in results if r.success),
            "results": [r.model_dump(mode="json") for r in results],
        }

    @app.post(f"{api}/gtm/{{surface_id}}", status_code=status.HTTP_202_ACCEPTED)
    def track_gtm(
        surface_id: str,
        request: Request,
        payload: Dict[str, Any] = Body(...),
        services: TrackingServices = Depends(get_services),
    ):
        """Admit a tag-manager (GA4 format) event"""
        submission = map_gtm_event(payload, surface_id)
        result = services.pipeline.admit(submission, request_context(request))
        return result.model_dump(mode="json")

    @app.get(f"{api}/track/match-quality")
    def match_quality(
        surface_id: Optional[str] = None,
        pixel_id: Optional[str] = None,
        days: int = Query(30, ge=1),
        services: TrackingServices = Depends(get_services),
    ):
        """Match-quality diagnostics over the last `days` days (at most 90)"""
        return services.reporter.report(surface_id or pixel_id, days)

    @app.post(f"{api}/events/{{event_id}}/retry", status_code=status.HTTP_202_ACCEPTED)
    def retry_event(event_id: str, services: TrackingServices = Depends(get_services)):
        """Operator retry of a failed event"""
        services.commands.retry_event(event_id)
        return {"event_id": event_id, "status": "pending"}

    @app.get("/health")
    def health_check(services: TrackingServices = Depends(get_services)):
        """Health check endpoint"""
        components = {"database": "healthy", "redis": "healthy"}
        try:
            with services.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.warning("Database health check failed", error=str(e))
            components["database"] = "unhealthy"
        try:
            services.redis.ping()
        except RedisError as e:
            logger.warning("Redis health check failed", error=str(e))
            components["redis"] = "unhealthy"

        healthy = all(state == "healthy" for state in components.values())
        return JSONResponse(
            status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "healthy" if healthy else "degraded",
                "version": settings.API_VERSION,
                "queue_depth": services.queue.depth() if components["redis"] == "healthy" else None,
                "components": components,
            },
        )

    # Mount Prometheus metrics endpoint
    app.mount("/metrics", make_asgi_app())

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "backend.app.main:app",
        host="0.0.0.0",
        port=8000,
        log_level="info",
    )
