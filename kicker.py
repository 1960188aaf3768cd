import logging
import sys
import time
from typing import Optional, Sequence

import structlog
import uvicorn
from docker.errors import DockerException
from fastapi import FastAPI, Request, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

import settings
from client_ip import resolve_client_ip
from config_loader import (
    ConfigurationError,
    load_config_entries,
    load_connect_config,
    validate_config,
)
from docker_runtime import DockerRuntime
from kick_service import KickService
from metrics import REQUEST_COUNT, REQUEST_LATENCY
from models import ConfigEntry, ProxyOptions

logger = structlog.get_logger()


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Configure structured logging"""
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def create_app(
    entries: Sequence[ConfigEntry],
    runtime,
    proxy: Optional[ProxyOptions] = None,
) -> FastAPI:
    app = FastAPI(
        title="Docker Kicker",
        description="Launch preconfigured containers from webhook requests",
        version="1.0.0",
        docs_url=None,
        redoc_url=None,
    )
    app.state.kick_service = KickService(entries, runtime)
    app.state.proxy = proxy

    # Request/Response middleware for logging and metrics
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()

        response = await call_next(request)

        response_time = time.time() - start_time

        # Never log the path itself, it carries the key
        route = request.scope.get("route")
        endpoint = route.path if route is not None else "unmatched"
        logger.info(
            "HTTP request",
            method=request.method,
            endpoint=endpoint,
            status_code=response.status_code,
            response_time=response_time,
            user_agent=request.headers.get("user-agent"),
            client_ip=request.client.host if request.client else None,
        )

        REQUEST_COUNT.labels(
            method=request.method, endpoint=endpoint, status=response.status_code
        ).inc()
        REQUEST_LATENCY.observe(response_time)

        return response

    @app.on_event("shutdown")
    async def shutdown():
        service: KickService = app.state.kick_service
        if service.pending:
            logger.info("Waiting for running instances", pending=service.pending)
            await service.wait_idle()

    # Status endpoint
    @app.get("/")
    async def status():
        return Response(status_code=200)

    @app.get("/metrics")
    async def metrics_endpoint():
        """Prometheus metrics endpoint"""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Kicker endpoint
    @app.post("/{key}")
    async def kick(key: str, request: Request):
        client_ip = resolve_client_ip(request, app.state.proxy)
        logger.debug("Computed client IP", client_ip=client_ip)

        outcome = await app.state.kick_service.kick(
            key, dict(request.query_params), client_ip
        )
        return Response(status_code=outcome.status_code)

    return app


def build_app() -> FastAPI:
    """Load and validate configuration, then assemble the application"""
    connect_config = load_connect_config(settings.CONNECT_CONFIG_PATH)
    entries = load_config_entries(settings.KICKER_CONFIG_PATH)
    validate_config(entries)

    runtime = DockerRuntime.from_connect_options(connect_config.docker)
    return create_app(entries, runtime, connect_config.proxy)


def main() -> None:
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    try:
        app = build_app()
    except ConfigurationError as e:
        logger.error("Invalid configuration", error=str(e))
        sys.exit(1)
    except DockerException as e:
        logger.error("Cannot connect to Docker", error=str(e))
        sys.exit(1)

    logger.info("Docker Kicker listening", host=settings.HOST, port=settings.PORT)
    # The access log would print the key-bearing path; log_requests covers it
    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        log_config=None,
        access_log=False,
    )


if __name__ == "__main__":
    main()
