"""FastAPI application and routes for Relaystat proxy."""

import logging
import sys
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Optional

import httpx
from fastapi import FastAPI, Request, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import ConfigError, Settings, load_config, load_warn_thresholds, setup_logging
from .forwarding import ForwardingEngine, now_ms
from .reporting import (
    build_summary,
    export_csv,
    export_filename,
    list_records,
    parse_agent_filter,
    parse_period_minutes,
)
from .storage import StoreCapability, negotiate_store
from .utils import (
    ClientIdleTimeout,
    PayloadTooLarge,
    classify_agent,
    error_response,
    is_well_formed_json,
    read_body,
)

logger = logging.getLogger(__name__)
access_logger = logging.getLogger("relaystat.access")

REQUEST_ID_HEADER = "X-Request-Id"

STATUS_ERROR_TYPES = {
    404: "not_found",
    405: "method_not_allowed",
}


@dataclass
class ProxyState:
    """Everything a handler needs, attached to ``app.state.proxy``."""

    settings: Settings
    capability: StoreCapability
    engine: ForwardingEngine
    started_at: float = field(default_factory=time.monotonic)


def get_state(request: Request) -> ProxyState:
    return request.app.state.proxy


def create_app(
    settings: Settings,
    capability: Optional[StoreCapability] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the proxy application.

    Args:
        settings: Validated proxy settings
        capability: Telemetry store startup check; negotiated from
            ``settings.stats_db_path`` when omitted
        transport: Optional httpx transport for the upstream client
    """
    if capability is None:
        capability = negotiate_store(settings.stats_db_path)

    client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.upstream_timeout),
        transport=transport,
    )
    engine = ForwardingEngine(settings, client, capability)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await client.aclose()
        if capability.store is not None:
            capability.store.close()

    app = FastAPI(title="Relaystat Proxy", lifespan=lifespan)
    app.state.proxy = ProxyState(settings=settings, capability=capability, engine=engine)

    @app.middleware("http")
    async def correlate_and_log(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id

        if not request.url.path.startswith("/health"):
            target = request.url.path + (f"?{request.url.query}" if request.url.query else "")
            message = f"[{request_id}] {request.method} {target} -> {response.status_code}"
            if response.status_code >= 500:
                access_logger.error(message)
            elif response.status_code >= 400:
                access_logger.warning(message)
            else:
                access_logger.info(message)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        error_type = STATUS_ERROR_TYPES.get(exc.status_code, "invalid_request_error")
        return error_response(exc.status_code, message, error_type, headers=exc.headers)

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", "-")
        logger.exception(f"[{request_id}] [error] {str(exc)}")
        return error_response(
            500,
            "Internal Server Error",
            "server_error",
            headers={REQUEST_ID_HEADER: request_id},
        )

    @app.post("/")
    @app.post("/v1/chat/completions")
    @app.post("/api/v1/chat/completions")
    async def proxy_chat_completions(request: Request) -> Response:
        """
        Forward a chat completion request upstream unchanged and stream the
        response back. ``?agent=manager|coder|tester`` tags the telemetry.
        """
        state = get_state(request)
        request_id = request.state.request_id

        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > state.settings.body_limit:
            return error_response(
                413, f"Body exceeds {state.settings.body_limit} bytes", "payload_too_large"
            )

        try:
            body = await read_body(
                request.stream(), state.settings.body_limit, state.settings.client_timeout
            )
        except ClientIdleTimeout as e:
            logger.warning(f"[{request_id}] client timeout: {str(e)}")
            return error_response(408, f"Client timeout: {str(e)}", "client_timeout")
        except PayloadTooLarge as e:
            return error_response(413, str(e), "payload_too_large")

        if not is_well_formed_json(body, request.headers.get("content-type")):
            return error_response(400, "Invalid JSON", "invalid_request_error")

        agent = classify_agent(request.url.query)
        return await state.engine.forward(body, request.headers, request_id, agent)

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint"""
        state = get_state(request)
        return {
            "status": "healthy",
            "uptime": int(time.monotonic() - state.started_at),
            "port": state.settings.port,
            "persistence": state.capability.available,
        }

    @app.get("/stats")
    def stats(
        request: Request,
        periodMinutes: Optional[str] = None,
        agent: Optional[str] = None,
    ):
        """Per-agent summary, optionally limited to the last ``periodMinutes``."""
        state = get_state(request)
        if not state.capability.available:
            return error_response(503, "stats persistence disabled", "persistence_disabled")
        try:
            return build_summary(
                state.capability.store,
                parse_period_minutes(periodMinutes),
                parse_agent_filter(agent),
                now_ms(),
            )
        except Exception as e:
            logger.error(f"[stats] query failed: {str(e)}")
            return error_response(500, "stats query failed", "query_failed")

    @app.get("/stats/export")
    def stats_export(
        request: Request,
        periodMinutes: Optional[str] = None,
        agent: Optional[str] = None,
    ):
        """Download the raw records as CSV."""
        state = get_state(request)
        if not state.capability.available:
            return error_response(503, "stats persistence disabled", "persistence_disabled")
        minutes = parse_period_minutes(periodMinutes)
        agent_filter = parse_agent_filter(agent)
        try:
            records = list_records(state.capability.store, minutes, agent_filter, now_ms())
        except Exception as e:
            logger.error(f"[stats] export failed: {str(e)}")
            return error_response(500, "stats export failed", "query_failed")
        filename = export_filename(agent_filter, minutes)
        return Response(
            content=export_csv(records),
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.post("/admin/reload")
    def reload_warnings(request: Request):
        """Re-read the per-agent warning thresholds without restarting."""
        state = get_state(request)
        try:
            thresholds = load_warn_thresholds(state.settings.config_path)
        except ConfigError as e:
            logger.error(f"[reload] {str(e)}")
            return error_response(400, str(e), "invalid_config")
        state.engine.warn_tokens = thresholds
        logger.info(f"[reload] warning thresholds now {thresholds.model_dump()}")
        return {"status": "reloaded", "warn_tokens": thresholds.model_dump()}

    return app


def main() -> None:
    """Entry point: load settings, fail fast without a credential, serve."""
    try:
        settings = load_config()
    except ConfigError as e:
        setup_logging()
        logger.error(f"[startup] {str(e)}")
        sys.exit(1)

    setup_logging(settings.log_level, settings.log_dir)
    app = create_app(settings)

    import uvicorn

    logger.info(f"Listening on http://localhost:{settings.port}")
    logger.info(
        f"Body limit: {settings.body_limit}B | Upstream timeout: {settings.upstream_timeout_ms}ms"
        f" | Client idle: {settings.client_timeout_ms}ms"
    )
    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
