"""Real-time server: WebSocket event protocol plus a small HTTP API.

Endpoints:
    GET /ws                              JSON frames {"event": name, "data": payload}
    GET /api/health                      liveness and store counts
    GET /api/streams/{id}/messages       replay (?since=N, bearer token)

Client -> server events:
    authenticate {token}
    send-message {streamId, content}     answered by the stream's ChatAgent
    create-stream {title, description?, focusType, schedule?, newsConfig?, researchConfig?}
    update-schedule {streamId, schedule}
    trigger-research {streamId}
    switch-focus {focusType}
    mark-alert-read {alertId}
    replay {streamId, since}            sent ahead of live frames already queued
    pause-stream {streamId}
    resume-stream {streamId}

Every event except authenticate requires an authenticated connection.
AuthenticationFailure is answered with 'auth-error', every other error with
'error'; the connection stays open either way.
"""

import json
import logging
from typing import Any, Awaitable, Callable

import pydantic
from aiohttp import WSMsgType, web

from alerts import AlertFilter
from auth import Authenticator
from chat import ChatAgent
from database import Database
from delivery import DeliveryBroker, Session
from errors import AuthenticationFailure, DeliveryFailure, NotFound, RelayError, ValidationError
from models.stream import FocusType, NewsConfig, ResearchConfig, ScheduleSpec
from scheduler import TaskScheduler

logger = logging.getLogger(__name__)


class WebSocketSession(Session):
    """Session writing event frames to an aiohttp WebSocket."""

    def __init__(self, ws: web.WebSocketResponse, owner: str):
        super().__init__(owner)
        self.ws = ws

    async def send(self, event: str, data: Any) -> None:
        if self.ws.closed:
            raise DeliveryFailure(f"session {self.id} closed")
        await self.ws.send_json({"event": event, "data": data})


class Connection:
    """Per-socket state: the authenticated session (if any) and the active focus."""

    def __init__(self, ws: web.WebSocketResponse):
        self.ws = ws
        self.session: WebSocketSession | None = None
        self.focus = FocusType.RESEARCH

    @property
    def owner(self) -> str:
        if self.session is None:
            raise AuthenticationFailure("Not authenticated")
        return self.session.owner


def _require(data: dict, key: str) -> Any:
    value = data.get(key)
    if value is None or value == "":
        raise ValidationError(f"{key} is required")
    return value


def _validation_message(error: pydantic.ValidationError) -> str:
    first = error.errors()[0]
    where = ".".join(str(part) for part in first.get("loc", ()))
    return f"{where}: {first.get('msg')}" if where else str(first.get("msg"))


class RelayServer:
    """aiohttp application exposing the scheduler, broker and alert filter."""

    def __init__(
        self,
        db: Database,
        scheduler: TaskScheduler,
        broker: DeliveryBroker,
        alert_filter: AlertFilter,
        authenticator: Authenticator,
        chat: ChatAgent | None = None,
    ):
        self.db = db
        self.scheduler = scheduler
        self.broker = broker
        self.alert_filter = alert_filter
        self.authenticator = authenticator
        self.chat = chat or ChatAgent(scheduler, broker)
        self._handlers: dict[str, Callable[[Connection, dict], Awaitable[None]]] = {
            "authenticate": self.on_authenticate,
            "send-message": self.on_send_message,
            "create-stream": self.on_create_stream,
            "update-schedule": self.on_update_schedule,
            "trigger-research": self.on_trigger_research,
            "switch-focus": self.on_switch_focus,
            "mark-alert-read": self.on_mark_alert_read,
            "replay": self.on_replay,
            "pause-stream": self.on_pause_stream,
            "resume-stream": self.on_resume_stream,
        }

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/ws", self.websocket_handler)
        app.router.add_get("/api/health", self.health_handler)
        app.router.add_get("/api/streams/{stream_id}/messages", self.messages_handler)
        return app

    # === Transport ===

    async def _reply(self, conn: Connection, event: str, data: Any) -> None:
        """Reply through the session queue when registered, else write directly."""
        if conn.session is not None and self.broker.enqueue(conn.session, event, data):
            return
        if not conn.ws.closed:
            await conn.ws.send_json({"event": event, "data": data})

    async def websocket_handler(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)
        conn = Connection(ws)
        logger.debug("Socket connected | remote=%s", request.remote)

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._handle_frame(conn, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("Socket error | error=%s", ws.exception())
                    break
        finally:
            if conn.session is not None:
                await self.broker.unregister(conn.session)
            logger.debug("Socket closed | remote=%s", request.remote)
        return ws

    async def _handle_frame(self, conn: Connection, raw: str) -> None:
        try:
            frame = json.loads(raw)
            event = frame["event"]
            data = frame.get("data") or {}
            if not isinstance(event, str) or not isinstance(data, dict):
                raise TypeError("bad frame shape")
        except (ValueError, KeyError, TypeError, AttributeError):
            await self._reply(conn, "error", {"message": "Malformed frame"})
            return

        handler = self._handlers.get(event)
        if handler is None:
            await self._reply(conn, "error", {"message": f"Unknown event: {event}"})
            return

        try:
            if event != "authenticate" and conn.session is None:
                raise AuthenticationFailure("Not authenticated")
            await handler(conn, data)
        except AuthenticationFailure as e:
            await self._reply(conn, "auth-error", {"message": str(e)})
        except pydantic.ValidationError as e:
            await self._reply(conn, "error", {"message": _validation_message(e)})
        except RelayError as e:
            await self._reply(conn, "error", {"message": str(e)})
        except ValueError as e:
            await self._reply(conn, "error", {"message": str(e)})
        except Exception as e:
            logger.error("Handler error | event=%s error=%s", event, e, exc_info=True)
            await self._reply(conn, "error", {"message": "Internal error"})

    def _streams_wire(self, owner: str, focus: FocusType) -> list[dict]:
        return [stream.to_wire() for stream in self.db.list_streams(owner, focus)]

    # === Event handlers ===

    async def on_authenticate(self, conn: Connection, data: dict) -> None:
        owner = self.authenticator.authenticate(data.get("token") or "")
        if conn.session is not None:
            await self.broker.unregister(conn.session)
        conn.session = WebSocketSession(conn.ws, owner)
        self.broker.register(conn.session)
        await self._reply(conn, "streams-updated", self._streams_wire(owner, conn.focus))

    async def on_send_message(self, conn: Connection, data: dict) -> None:
        stream_id = _require(data, "streamId")
        content = str(_require(data, "content")).strip()
        if not content:
            raise ValidationError("content is required")
        await self.chat.handle(stream_id, content, owner=conn.owner)

    async def on_create_stream(self, conn: Connection, data: dict) -> None:
        schedule = data.get("schedule")
        stream = self.scheduler.create_stream(
            owner=conn.owner,
            title=str(_require(data, "title")),
            description=str(data.get("description") or ""),
            focus_type=FocusType(data.get("focusType") or conn.focus.value),
            schedule=ScheduleSpec.model_validate(schedule) if schedule else None,
            news_config=NewsConfig.model_validate(data.get("newsConfig") or {}),
            research_config=ResearchConfig.model_validate(data.get("researchConfig") or {}),
        )
        await self._reply(conn, "stream-created", stream.to_wire())
        self.chat.welcome(stream)

    async def on_update_schedule(self, conn: Connection, data: dict) -> None:
        stream_id = _require(data, "streamId")
        spec = ScheduleSpec.model_validate(_require(data, "schedule"))
        stream = self.scheduler.update_schedule(stream_id, spec, owner=conn.owner)
        schedule = spec.to_wire()
        schedule["nextUpdate"] = stream.next_run.isoformat() if stream.next_run else None
        await self._reply(conn, "schedule-updated", {"streamId": stream.id, "schedule": schedule})

    async def on_trigger_research(self, conn: Connection, data: dict) -> None:
        stream_id = _require(data, "streamId")
        execution = await self.scheduler.manual_trigger(stream_id, owner=conn.owner)
        stream = self.db.require_stream(stream_id)
        event = "news-update-triggered" if stream.focus_type is FocusType.NEWS else "research-triggered"
        await self._reply(conn, event, {"streamId": stream_id, "executionId": execution.id})

    async def on_switch_focus(self, conn: Connection, data: dict) -> None:
        try:
            conn.focus = FocusType(_require(data, "focusType"))
        except ValueError:
            raise ValidationError(f"focusType must be 'news' or 'research', got '{data.get('focusType')}'")
        await self._reply(conn, "focus-switched", {
            "focusType": conn.focus.value,
            "streams": self._streams_wire(conn.owner, conn.focus),
        })

    async def on_mark_alert_read(self, conn: Connection, data: dict) -> None:
        alert_id = _require(data, "alertId")
        self.alert_filter.mark_read(alert_id, conn.owner)
        await self._reply(conn, "alert-marked-read", {"alertId": alert_id})

    async def on_replay(self, conn: Connection, data: dict) -> None:
        stream_id = _require(data, "streamId")
        try:
            since = int(data.get("since") or 0)
        except (TypeError, ValueError):
            raise ValidationError("since must be an integer")
        self.scheduler.owned_stream(stream_id, conn.owner)
        if conn.session is not None and self.broker.enqueue_replay(conn.session, stream_id, since) is not None:
            return
        for message in self.broker.replay_since(stream_id, since):
            if conn.ws.closed:
                return
            await conn.ws.send_json({"event": "message", "data": message.to_wire()})

    async def on_pause_stream(self, conn: Connection, data: dict) -> None:
        stream = self.scheduler.deactivate(_require(data, "streamId"), owner=conn.owner)
        await self._reply(conn, "stream-updated", stream.to_wire())

    async def on_resume_stream(self, conn: Connection, data: dict) -> None:
        stream = self.scheduler.activate(_require(data, "streamId"), owner=conn.owner)
        await self._reply(conn, "stream-updated", stream.to_wire())

    # === HTTP ===

    async def health_handler(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "sessions": self.broker.session_count(),
            "store": self.db.stats(),
        })

    async def messages_handler(self, request: web.Request) -> web.Response:
        try:
            owner = self.authenticator.authenticate(request.headers.get("Authorization", ""))
        except AuthenticationFailure as e:
            return web.json_response({"error": str(e)}, status=401)

        stream_id = request.match_info["stream_id"]
        try:
            since = int(request.query.get("since", "0"))
        except ValueError:
            return web.json_response({"error": "since must be an integer"}, status=400)

        try:
            self.scheduler.owned_stream(stream_id, owner)
        except NotFound as e:
            return web.json_response({"error": str(e)}, status=404)

        messages = self.broker.replay_since(stream_id, since)
        return web.json_response({
            "streamId": stream_id,
            "messages": [message.to_wire() for message in messages],
        })
