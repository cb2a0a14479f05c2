import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Set

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tiny_viber import __version__
from tiny_viber.app_container import AppContainer
from tiny_viber.domain.errors import PipelineError
from tiny_viber.events.event_bus import StatusEvent
from tiny_viber.observability.structured_log import log_json
from tiny_viber.services.chat_session import prepare_chat_session
from tiny_viber.services.error_codes import ERROR_CATALOG
from tiny_viber.services.rules_engine import ScreenContext
from tiny_viber.tools import ToolContext

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-hub-signature-256"
EVENT_HEADER = "x-github-event"


class InvokeToolRequest(BaseModel):
    args: Dict[str, Any] = Field(default_factory=dict)
    invocation_id: str = ""
    session_id: str = ""
    user_id: str = ""
    user_name: str = ""


class SaveOverridesRequest(BaseModel):
    overrides: Dict[str, Any]
    updated_by: str = "api"


class ScreenContextPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    screen_name: str = ""
    route: str = ""
    description: str = ""


class SessionRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    messages: Optional[List[Dict[str, Any]]] = None
    skill_id: str = ""
    screen_context: Optional[ScreenContextPayload] = None


def _parse_local_api_keys(raw: str) -> Dict[str, Set[str]]:
    out: Dict[str, Set[str]] = {}
    for chunk in (raw or "").split(";"):
        value = chunk.strip()
        if not value:
            continue
        parts = value.split(":", 1)
        if len(parts) != 2:
            continue
        token = parts[0].strip()
        scopes_raw = parts[1].strip()
        if not token:
            continue
        scopes = {s.strip().lower() for s in scopes_raw.split(",") if s.strip()}
        if not scopes:
            scopes = {"api:read"}
        out[token] = scopes
    return out


def _catalog_to_dict():
    return [
        {
            "code": entry.code,
            "kind": entry.kind,
            "title": entry.title,
            "user_message": entry.user_message,
            "actions": [
                {"action_id": a.action_id, "label": a.label, "description": a.description}
                for a in entry.actions
            ],
        }
        for entry in ERROR_CATALOG
    ]


def create_app(container: AppContainer) -> FastAPI:
    app = FastAPI(title="Tiny Viber", version=__version__)
    local_api_keys = _parse_local_api_keys(container.settings.local_api_keys)
    local_api_enabled = bool(local_api_keys)
    store = container.status_store

    def _resolve_api_token(request) -> str:
        bearer = (request.headers.get("authorization") or "").strip()
        if bearer.lower().startswith("bearer "):
            return bearer[7:].strip()
        return (request.headers.get("x-local-api-key") or "").strip()

    def _opt_api_scope(request: Request, read_scope: str = "api:read", write_scope: str = "api:write") -> None:
        """Enforce bearer auth when LOCAL_API_KEYS is configured.

        Safe methods need ``read_scope``, everything else ``write_scope``.
        Without LOCAL_API_KEYS the check is skipped for local deployments.
        """
        if not local_api_enabled:
            return
        token = _resolve_api_token(request)
        if not token:
            raise HTTPException(status_code=401, detail="Missing API token.")
        scopes = local_api_keys.get(token)
        if not scopes:
            raise HTTPException(status_code=401, detail="Invalid API token.")
        if "admin:*" in scopes:
            return
        required = read_scope if request.method in {"GET", "HEAD", "OPTIONS"} else write_scope
        if required not in scopes:
            raise HTTPException(status_code=403, detail=f"Missing scope: {required}")

    def _ws_authorized(websocket: WebSocket) -> bool:
        if not local_api_enabled:
            return True
        token = _resolve_api_token(websocket) or (websocket.query_params.get("token") or "").strip()
        scopes = local_api_keys.get(token) or set()
        return "admin:*" in scopes or "api:read" in scopes

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "version": __version__,
            "active_sandboxes": len(container.sandbox_registry.active_ids()),
        }

    @app.post("/api/ai-coder/webhook")
    async def github_webhook(request: Request):
        body = await request.body()
        if not container.webhook_handler.verify_signature(body, request.headers.get(SIGNATURE_HEADER, "")):
            return PlainTextResponse("Invalid signature", status_code=401)
        try:
            payload = json.loads(body or b"{}")
        except ValueError:
            return PlainTextResponse("Invalid payload", status_code=400)
        event = request.headers.get(EVENT_HEADER, "")
        try:
            outcome = container.webhook_handler.handle(event, payload if isinstance(payload, dict) else {})
        except Exception as exc:
            log_json(logger, "webhook.failed", level="error", github_event=event, error=str(exc))
            return PlainTextResponse("Internal error", status_code=500)
        log_json(logger, "webhook.handled", github_event=event, outcome=outcome)
        return PlainTextResponse("OK")

    @app.post("/api/ai-coder/kill")
    async def kill_sandboxes(request: Request) -> Dict[str, Any]:
        _opt_api_scope(request)
        report = await container.sandbox_registry.kill_all()
        log_json(logger, "sandbox.kill_all", killed=report.killed, was_active=report.was_active)
        return {"success": True, "killed": len(report.killed), "was_active": report.was_active}

    @app.get("/api/ai-coder/requests")
    async def list_requests(request: Request, limit: int = 20):
        _opt_api_scope(request)
        return [record.to_dict() for record in store.list_recent(limit=min(limit, 100))]

    @app.get("/api/ai-coder/requests/{request_id}")
    async def get_request(request_id: str, request: Request) -> Dict[str, Any]:
        _opt_api_scope(request)
        record = store.get(request_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Request not found.")
        return record.to_dict()

    @app.get("/api/ai-coder/requests/{request_id}/events")
    async def request_events(request_id: str, request: Request, limit: int = 200):
        _opt_api_scope(request)
        if store.get(request_id) is None:
            raise HTTPException(status_code=404, detail="Request not found.")
        return [
            {
                "event_type": event.event_type,
                "payload": event.payload,
                "created_at": event.created_at.isoformat(),
            }
            for event in store.list_events(request_id, limit=limit)
        ]

    @app.websocket("/api/ai-coder/requests/{request_id}/live")
    async def live_request(websocket: WebSocket, request_id: str) -> None:
        if not _ws_authorized(websocket):
            await websocket.close(code=1008)
            return
        await websocket.accept()
        loop = asyncio.get_running_loop()
        queue: "asyncio.Queue[str]" = asyncio.Queue()

        def _on_event(event: StatusEvent) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, event.payload)

        # Subscribe first so nothing published between the read and the
        # subscription is lost.
        unsubscribe = store.subscribe(request_id, _on_event)
        receiver: Optional[asyncio.Future] = None
        try:
            current = store.get(request_id)
            if current is None:
                await websocket.send_json({"exists": False, "request_id": request_id})
            else:
                await websocket.send_json({"exists": True, "request": current.to_dict()})
            receiver = asyncio.ensure_future(websocket.receive())
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
                if receiver in done:
                    getter.cancel()
                    if receiver.result().get("type") == "websocket.disconnect":
                        break
                    receiver = asyncio.ensure_future(websocket.receive())
                    continue
                await websocket.send_json({"exists": True, "request": json.loads(getter.result())})
        except WebSocketDisconnect:
            pass
        finally:
            if receiver is not None:
                receiver.cancel()
            unsubscribe()

    @app.post("/api/ai-coder/session")
    async def prepare_session(payload: SessionRequest, request: Request) -> Dict[str, Any]:
        _opt_api_scope(request)
        screen = None
        if payload.screen_context is not None:
            screen = ScreenContext(
                screen_name=payload.screen_context.screen_name,
                route=payload.screen_context.route,
                description=payload.screen_context.description,
            )
        try:
            session = prepare_chat_session(
                container.config_resolver.resolve(),
                payload.messages,
                skill_id=payload.skill_id,
                screen_context=screen,
            )
        except PipelineError as exc:
            log_json(logger, "session.rejected", skill_id=payload.skill_id, error=exc.message)
            raise HTTPException(status_code=400, detail=exc.message) from exc
        return {
            "skill_id": session.skill.id,
            "system_prompt": session.system_prompt,
            "tools": container.tool_registry.tool_schemas(),
        }

    @app.get("/api/ai-coder/tools")
    async def list_tools(request: Request):
        _opt_api_scope(request)
        return container.tool_registry.tool_schemas()

    @app.post("/api/ai-coder/tools/{name}")
    async def invoke_tool(name: str, payload: InvokeToolRequest, request: Request) -> Dict[str, Any]:
        _opt_api_scope(request)
        if container.tool_registry.get(name) is None:
            raise HTTPException(status_code=404, detail=f"Unknown tool: {name}")
        context = ToolContext(
            invocation_id=payload.invocation_id,
            session_id=payload.session_id,
            user_id=payload.user_id,
            user_name=payload.user_name,
        )
        result = await container.tool_registry.invoke(name, payload.args, context)
        return {"ok": result.ok, "output": result.output}

    @app.get("/api/ai-coder/config")
    async def get_config(request: Request) -> Dict[str, Any]:
        _opt_api_scope(request)
        return container.config_resolver.resolve().model_dump(by_alias=True)

    @app.put("/api/ai-coder/config")
    async def save_config(payload: SaveOverridesRequest, request: Request) -> Dict[str, Any]:
        _opt_api_scope(request, write_scope="admin:*")
        try:
            document = container.override_store.save("current", payload.overrides, payload.updated_by)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return {"success": True, "overrides": document}

    @app.get("/api/ai-coder/error-catalog")
    async def error_catalog(request: Request):
        _opt_api_scope(request)
        return _catalog_to_dict()

    return app
