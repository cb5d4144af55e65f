"""
Main entry point for the rule engine service.

Starts the state store, the automation engine (worker pool, approval
sweeper, schedule runner), the HTTP API and signal handlers.
"""

import asyncio
import os
import signal
import sys
from typing import Any, Optional

import structlog
from aiohttp import web
from dotenv import load_dotenv

from .core.config import ConfigLoader, EngineConfig
from .core.errors import CycleDetectedError, EngineError
from .core.models import Actor, Event
from .core.state import StateManager
from .orchestrator.pipeline import AutomationEngine

load_dotenv()

# Configure structured logging
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
        structlog.processors.JSONRenderer() if os.getenv("LOG_FORMAT") == "json"
        else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

ENGINE_KEY = web.AppKey("engine", AutomationEngine)

STATUS_BY_CODE = {
    "not_authorized": 403,
    "not_found": 404,
    "already_decided": 409,
    "already_terminal": 409,
    "already_open": 409,
}


def status_for(code: Optional[str]) -> int:
    """HTTP status for a Result/EngineError code. Unlisted codes are 400."""
    return STATUS_BY_CODE.get(code or "", 400)


def _actor(request: web.Request) -> Actor:
    actor_id = request.headers.get("X-Actor-Id")
    if not actor_id:
        raise web.HTTPForbidden(
            text='{"error": "not_authorized", "message": "X-Actor-Id header required"}',
            content_type="application/json",
        )
    return Actor(id=actor_id, role=request.headers.get("X-Actor-Role"))


async def _json_body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise web.HTTPBadRequest(
            text='{"error": "validation_error", "message": "Invalid JSON body"}',
            content_type="application/json",
        )
    return body if isinstance(body, dict) else {}


def _failure(code: Optional[str], message: Optional[str]) -> web.Response:
    return web.json_response({"error": code, "message": message}, status=status_for(code))


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Map engine errors that escape a handler onto JSON responses."""
    try:
        return await handler(request)
    except CycleDetectedError as e:
        logger.error("request_cycle_detected", path=request.path, **e.context)
        return web.json_response({"error": e.code, "message": e.message}, status=500)
    except EngineError as e:
        return _failure(e.code, e.message)


class ApiHandlers:
    """HTTP views over an AutomationEngine."""

    def __init__(self, engine: AutomationEngine):
        self.engine = engine

    async def health(self, request: web.Request) -> web.Response:
        counts = await self.engine.state.table_counts()
        return web.json_response({
            "status": "healthy",
            "workers_running": self.engine.workers.running,
            "worker_failures": len(self.engine.workers.failures),
            "counts": counts,
        })

    async def submit_event(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        try:
            event = Event.from_dict(body)
        except (KeyError, ValueError, TypeError) as e:
            return _failure("validation_error", f"Invalid event: {e}")
        if not event.module_id:
            return _failure("validation_error", "Event requires module_id")
        event.actor_id = event.actor_id or request.headers.get("X-Actor-Id")

        outcome = await self.engine.submit_event(event)
        status = 202 if outcome.deferred_job_id else 200
        return web.json_response(outcome.to_dict(), status=status)

    async def decide(self, request: web.Request) -> web.Response:
        actor = _actor(request)
        body = await _json_body(request)
        result = await self.engine.decide_step(
            request.match_info["request_id"],
            int(request.match_info["step_index"]),
            actor,
            body.get("decision", ""),
            body.get("comment"),
        )
        if not result.ok:
            return _failure(result.error_code, result.message)
        return web.json_response(result.value.to_dict())

    async def delegate(self, request: web.Request) -> web.Response:
        actor = _actor(request)
        body = await _json_body(request)
        if not body.get("delegate_to"):
            return _failure("validation_error", "delegate_to is required")
        result = await self.engine.delegate_step(
            request.match_info["request_id"],
            int(request.match_info["step_index"]),
            actor,
            body["delegate_to"],
        )
        if not result.ok:
            return _failure(result.error_code, result.message)
        return web.json_response(result.value.to_dict())

    async def pending(self, request: web.Request) -> web.Response:
        actor = _actor(request)
        instances = await self.engine.list_pending_approvals(actor)
        return web.json_response([i.to_dict() for i in instances])

    async def history(self, request: web.Request) -> web.Response:
        instances = await self.engine.get_approval_history(request.match_info["request_id"])
        return web.json_response([i.to_dict() for i in instances])

    async def run_macro(self, request: web.Request) -> web.Response:
        actor = _actor(request)
        body = await _json_body(request)
        result = await self.engine.run_macro(request.match_info["macro_id"], body.get("record_id", ""), actor)
        if not result.ok:
            return _failure(result.error_code, result.message)
        return web.json_response(result.value.to_dict())

    async def preview(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        report = await self.engine.preview_workflow(request.match_info["definition_id"], body.get("record_id", ""))
        return web.json_response(report.to_dict())


def create_app(engine: AutomationEngine) -> web.Application:
    """Build the aiohttp application for an engine."""
    app = web.Application(middlewares=[error_middleware])
    app[ENGINE_KEY] = engine
    handlers = ApiHandlers(engine)

    app.router.add_get("/health", handlers.health)
    app.router.add_post("/events", handlers.submit_event)
    app.router.add_post(r"/approvals/{request_id}/steps/{step_index:\d+}/decision", handlers.decide)
    app.router.add_post(r"/approvals/{request_id}/steps/{step_index:\d+}/delegate", handlers.delegate)
    app.router.add_get("/approvals/pending", handlers.pending)
    app.router.add_get("/approvals/{request_id}/history", handlers.history)
    app.router.add_post("/macros/{macro_id}/run", handlers.run_macro)
    app.router.add_post("/workflows/{definition_id}/preview", handlers.preview)
    return app


class ApiServer:
    """HTTP server wrapper."""

    def __init__(self, engine: AutomationEngine, host: str = "0.0.0.0", port: int = 8080):
        self.engine = engine
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        self._runner = web.AppRunner(create_app(self.engine))
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("api_server_started", host=self.host, port=self.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("api_server_stopped")


class Application:
    """Main application container."""

    def __init__(self):
        self.config: Optional[EngineConfig] = None
        self.state: Optional[StateManager] = None
        self.engine: Optional[AutomationEngine] = None
        self.api_server: Optional[ApiServer] = None
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Start all components."""
        logger.info("application_starting")

        config_path = os.getenv("CONFIG_PATH", "./config/engine.yaml")
        loader = ConfigLoader()
        if os.path.exists(config_path):
            self.config = loader.load_engine_config(config_path)
        else:
            self.config = EngineConfig()

        data_dir = os.getenv("DATA_DIR")
        if data_dir:
            self.config.database_path = os.path.join(data_dir, "recordflow.db")
        if os.getenv("PORT"):
            self.config.server.port = int(os.environ["PORT"])

        self.state = StateManager(self.config.database_path)
        await self.state.initialize()

        self.engine = AutomationEngine(self.state, self.config)
        definitions_dir = os.getenv("DEFINITIONS_DIR", self.config.definitions_directory)
        await self.engine.load_definitions(loader.load_definitions(definitions_dir))
        await self.engine.start()

        self.api_server = ApiServer(self.engine, self.config.server.host, self.config.server.port)
        await self.api_server.start()

        logger.info("application_started", config_hash=self.config.config_hash())

    async def run(self) -> None:
        """Run until shutdown is requested."""
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def stop(self) -> None:
        """Stop all components."""
        logger.info("application_stopping")
        if self.api_server:
            await self.api_server.stop()
        if self.engine:
            await self.engine.stop()
        if self.state:
            await self.state.close()
        logger.info("application_stopped")


async def main() -> None:
    """Main entry point."""
    app = Application()

    # Setup signal handlers
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("shutdown_signal_received")
        app.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
        await app.run()
    except Exception:
        logger.exception("application_error")
        sys.exit(1)
    finally:
        await app.stop()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
