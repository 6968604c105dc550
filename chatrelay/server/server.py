"""HTTP + SSE surface for the relay.

Routes:
    POST   /api/ai/chat                  start a generation, stream it as SSE
    GET    /api/ai/conversations         list, ?id= read, ?id=&export=true Markdown
    POST   /api/ai/conversations         create
    DELETE /api/ai/conversations         ?id= delete, ?id=&prune=N prune
    GET    /api/ai/process               ?conversationId= status, else all handles
    DELETE /api/ai/process               ?conversationId= stop
    GET    /api/ai/process/output        raw captured output
    POST   /api/ai/recover               reconnect/recover, optional reconcile
    GET    /api/ai/generating            generation flags snapshot
    GET    /api/ai/generating/events     generation flags as SSE
    GET    /api/ai/models                selectable models and backend status
    GET    /health
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from typing import Any

from aiohttp import web

from chatrelay.engine.backends.registry import BackendRegistry, build_backend_registry
from chatrelay.engine.capture import CaptureStore
from chatrelay.engine.config import RelayConfig
from chatrelay.engine.errors import (
    ConversationNotFoundError,
    DuplicateRequestError,
)
from chatrelay.engine.generation_state import GenerationStateTracker
from chatrelay.engine.orchestrator import ChatRequest, Orchestrator
from chatrelay.engine.prober import BackendProber
from chatrelay.engine.recovery import RecoveryController
from chatrelay.engine.registry import ProcessRegistry
from chatrelay.engine.yaml_config import BackendConfig, default_backend_configs
from chatrelay.shared.services.conversation_log import ConversationLog
from chatrelay.shared.services.process_cleanup import reap_orphaned_sessions

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
}
KEEPALIVE_SECONDS = 30.0


def _sse(data: Any) -> bytes:
    return f"data: {json.dumps(data)}\n\n".encode()


class RelayServer:
    """aiohttp application wiring the engine services together."""

    def __init__(
        self,
        config: RelayConfig,
        *,
        backend_configs: dict[str, BackendConfig] | None = None,
        backends: BackendRegistry | None = None,
        session_defaults: dict[str, Any] | None = None,
        host: str = "127.0.0.1",
        port: int = 0,
    ) -> None:
        self._config = config
        self._host = host
        self._port = port
        self._started_at = time.time()
        self._background: list[asyncio.Task] = []
        self.keepalive_seconds = KEEPALIVE_SECONDS

        self.log = ConversationLog(config.conversations_dir)
        self.capture = CaptureStore(config.capture_dir)
        self.processes = ProcessRegistry(idle_timeout=config.idle_timeout_seconds)
        self.state = GenerationStateTracker(config.state_db_path, stale_seconds=config.stale_seconds)
        if backends is None:
            backends = build_backend_registry(
                backend_configs or default_backend_configs(config),
                registry=self.processes,
                capture=self.capture,
                read_timeout=config.read_timeout_seconds,
                probe_timeout=config.probe_timeout_seconds,
            )
        else:
            for _, adapter in backends.items():
                adapter.attach(registry=self.processes, capture=self.capture)
        self.backends = backends
        self.prober = BackendProber(
            backends, timeout=config.probe_timeout_seconds, preferred=config.default_backend,
        )
        self.orchestrator = Orchestrator(
            log=self.log,
            backends=backends,
            state=self.state,
            processes=self.processes,
            config=config,
            prober=self.prober,
            session_defaults=session_defaults,
        )
        self.recovery = RecoveryController(
            log=self.log,
            state=self.state,
            processes=self.processes,
            capture=self.capture,
            backends=backends,
            orchestrator=self.orchestrator,
            poll_interval=config.recovery_poll_interval_seconds,
            max_attempts=config.recovery_max_attempts,
        )

        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_shutdown.append(self._on_shutdown)
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_post("/api/ai/chat", self._handle_chat)
        # Conversations
        r.add_get("/api/ai/conversations", self._handle_get_conversations)
        r.add_post("/api/ai/conversations", self._handle_create_conversation)
        r.add_delete("/api/ai/conversations", self._handle_delete_conversation)
        # Processes + recovery
        r.add_get("/api/ai/process", self._handle_process_status)
        r.add_delete("/api/ai/process", self._handle_stop_process)
        r.add_get("/api/ai/process/output", self._handle_process_output)
        r.add_post("/api/ai/recover", self._handle_recover)
        # Generation flags
        r.add_get("/api/ai/generating", self._handle_generating)
        r.add_get("/api/ai/generating/events", self._handle_generating_events)
        r.add_get("/api/ai/models", self._handle_models)

    # ── Lifecycle ──

    def start_background_tasks(self) -> None:
        self._background = [
            asyncio.create_task(self.processes.run_cleanup_loop(self._config.cleanup_interval_seconds)),
            asyncio.create_task(self.state.run_sweep_loop(self._config.stale_sweep_interval_seconds)),
            asyncio.create_task(self.state.run_watch_loop()),
        ]

    async def _on_shutdown(self, app: web.Application) -> None:
        for task in self._background:
            task.cancel()
        await self.orchestrator.shutdown()
        await self.processes.shutdown()
        await self.backends.shutdown_all()

    async def start(self) -> None:
        """Start the server and print the port to stdout."""
        reaped = reap_orphaned_sessions()
        if reaped:
            logger.info("Reaped %d orphaned engine session(s) at startup", reaped)

        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("chatrelay server started but no listening socket was reported.")
        self._port = actual_port
        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("chatrelay server listening on %s:%d", self._host, actual_port)

        await self.prober.probe()
        self.start_background_tasks()
        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── helpers ──

    @staticmethod
    def _error(message: str, status: int, **extra: Any) -> web.Response:
        return web.json_response({"error": message, **extra}, status=status)

    @staticmethod
    async def _json_body(request: web.Request) -> dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValueError(f"Invalid JSON body: {exc}") from exc
        if not isinstance(body, dict):
            raise ValueError("JSON body must be an object")
        return body

    @staticmethod
    def _conversation_param(request: web.Request, *names: str) -> str | None:
        for name in names or ("conversationId",):
            value = request.query.get(name)
            if value:
                return value
        return None

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "generating": len(self.orchestrator.active()),
            "processes": self.processes.count,
        })

    async def _handle_chat(self, request: web.Request) -> web.StreamResponse:
        try:
            chat_request = ChatRequest.from_payload(await self._json_body(request))
            generation = self.orchestrator.start(chat_request)
        except ValueError as exc:
            return self._error(str(exc), 400)
        except DuplicateRequestError as exc:
            return self._error(str(exc), 409, code=exc.code)

        response = web.StreamResponse(
            status=200,
            headers={**SSE_HEADERS, "X-Conversation-Id": generation.conversation_id},
        )
        await response.prepare(request)
        try:
            while True:
                try:
                    event = await generation.relay.get(self.keepalive_seconds)
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                    continue
                if event is None:
                    break
                if "content" in event or "tool" in event:
                    event = {**event, "done": False}
                elif event.get("done"):
                    event = {**event, "conversationId": generation.conversation_id}
                await response.write(_sse(event))
            await response.write(b"data: [DONE]\n\n")
        except (ConnectionResetError, asyncio.CancelledError):
            # Client went away; the generation keeps running and persists.
            generation.relay.detach()
            logger.info(
                "Client detached from generation conversation=%s req=%s",
                generation.conversation_id, request.get("req_id", "unknown"),
            )
            raise
        return response

    async def _handle_get_conversations(self, request: web.Request) -> web.StreamResponse:
        conversation_id = self._conversation_param(request, "id", "conversationId")
        if conversation_id is None:
            return web.json_response({
                "conversations": [s.to_dict() for s in self.log.list()],
            })
        try:
            if not self.log.exists(conversation_id):
                return self._error("Conversation not found", 404)
        except ValueError as exc:
            return self._error(str(exc), 400)
        if request.query.get("export", "").lower() in {"1", "true", "yes"}:
            return web.Response(
                text=self.log.export(conversation_id),
                content_type="text/markdown",
                headers={"Content-Disposition": f'attachment; filename="{conversation_id}.md"'},
            )
        return web.json_response({
            "id": conversation_id,
            "meta": self.log.read_meta(conversation_id),
            "messages": [m.to_record() for m in self.log.read(conversation_id)],
            "generating": self.state.get(conversation_id) is not None,
        })

    async def _handle_create_conversation(self, request: web.Request) -> web.Response:
        try:
            body = await self._json_body(request)
        except ValueError as exc:
            return self._error(str(exc), 400)
        name = body.get("name")
        if name is not None and not isinstance(name, str):
            return self._error("name must be a string", 400)
        conversation_id = self.log.create(name)
        return web.json_response({"id": conversation_id, "name": name}, status=201)

    async def _handle_delete_conversation(self, request: web.Request) -> web.Response:
        conversation_id = self._conversation_param(request, "id", "conversationId")
        if conversation_id is None:
            return self._error("id is required", 400)
        if self.orchestrator.is_generating(conversation_id):
            return self._error("Conversation is generating", 409)
        prune = request.query.get("prune")
        try:
            if prune is not None:
                dropped = self.log.prune(conversation_id, int(prune))
                return web.json_response({"id": conversation_id, "dropped": dropped})
            if not self.log.delete(conversation_id):
                return self._error("Conversation not found", 404)
        except ConversationNotFoundError:
            return self._error("Conversation not found", 404)
        except ValueError as exc:
            return self._error(str(exc), 400)
        self.capture.discard(conversation_id)
        return web.json_response({"id": conversation_id, "deleted": True})

    async def _handle_process_status(self, request: web.Request) -> web.Response:
        conversation_id = self._conversation_param(request)
        if conversation_id is None:
            return web.json_response({"processes": self.processes.list()})
        status = self.processes.status(conversation_id)
        if self.orchestrator.is_generating(conversation_id):
            status = {"hasProcess": True, "running": True}
        return web.json_response({"conversationId": conversation_id, **status})

    async def _handle_stop_process(self, request: web.Request) -> web.Response:
        conversation_id = self._conversation_param(request)
        if conversation_id is None:
            return self._error("conversationId is required", 400)
        stopped = await self.orchestrator.cancel(conversation_id)
        return web.json_response({"conversationId": conversation_id, "stopped": stopped})

    async def _handle_process_output(self, request: web.Request) -> web.Response:
        conversation_id = self._conversation_param(request)
        if conversation_id is None:
            return self._error("conversationId is required", 400)
        try:
            output = self.capture.read(conversation_id)
        except ValueError as exc:
            return self._error(str(exc), 400)
        if output is None:
            return self._error("No captured output", 404)
        meta = self.capture.meta(conversation_id) or {}
        return web.json_response({
            "conversationId": conversation_id,
            "backend": meta.get("backend"),
            "finished": "finishedAt" in meta,
            "output": output,
        })

    async def _handle_recover(self, request: web.Request) -> web.Response:
        conversation_id = self._conversation_param(request)
        try:
            body = await self._json_body(request)
        except ValueError as exc:
            return self._error(str(exc), 400)
        conversation_id = conversation_id or body.get("conversationId")
        if not conversation_id:
            return self._error("conversationId is required", 400)
        outcome = await self.recovery.on_connect(conversation_id)
        result = outcome.to_dict()
        local = body.get("messages")
        if isinstance(local, list):
            missing = self.recovery.reconcile(
                conversation_id,
                [m for m in local if isinstance(m, dict)],
                streaming=bool(body.get("streaming")),
            )
            result["missing"] = [m.to_record() for m in missing]
        return web.json_response(result)

    async def _handle_generating(self, request: web.Request) -> web.Response:
        return web.json_response({"generating": self.state.snapshot()})

    async def _handle_generating_events(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(status=200, headers=SSE_HEADERS)
        await response.prepare(request)
        queue = self.state.add_listener()
        logger.info(
            "Generating-events client connected req=%s listeners=%d",
            request.get("req_id", "unknown"), self.state.subscriber_count,
        )
        try:
            await response.write(_sse({"generating": self.state.snapshot()}))
            while True:
                try:
                    snapshot = await asyncio.wait_for(queue.get(), timeout=self.keepalive_seconds)
                    await response.write(_sse({"generating": snapshot}))
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
        except (ConnectionResetError, asyncio.CancelledError):
            pass
        finally:
            self.state.remove_listener(queue)
            logger.info(
                "Generating-events client disconnected req=%s listeners=%d",
                request.get("req_id", "unknown"), self.state.subscriber_count,
            )
        return response

    async def _handle_models(self, request: web.Request) -> web.Response:
        statuses = await self.prober.probe()
        models = await self.prober.list_models(refresh=False)
        return web.json_response({
            "models": models,
            "backends": [s.to_dict() for s in statuses],
            "default": self.prober.cached_default(),
        })
