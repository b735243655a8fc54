from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from aiohttp import WSMsgType, web

from .auth import Authenticator
from .config import GatewayConfig
from .delivery import DeliveryEngine
from .errors import AuthenticationError, ChatError, PersistenceError
from .hub import ConnectionHub
from .messages import MessageStore
from .models import _now_ms
from .presence import PresenceRegistry
from .sessions import SessionStore
from .sqlite_backend import SQLiteBackend
from .sqlite_messages import SQLiteMessageStore
from .sqlite_sessions import SQLiteSessionStore
from .sqlite_users import SQLiteUserStore
from .users import UserStore

logger = logging.getLogger(__name__)

SERVICE_NAME = "Nexsy Chat Backend"


class Runtime:
    def __init__(
        self,
        *,
        users,
        messages,
        sessions,
        registry: PresenceRegistry,
        engine: DeliveryEngine,
        hub: ConnectionHub,
        authenticator: Authenticator,
        backend: SQLiteBackend | None = None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.users = users
        self.messages = messages
        self.sessions = sessions
        self.registry = registry
        self.engine = engine
        self.hub = hub
        self.authenticator = authenticator
        self.backend = backend
        self.now = now_func


RUNTIME_KEY = web.AppKey("runtime", Runtime)
CONFIG_KEY = web.AppKey("config", GatewayConfig)


def _error_response(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"code": code, "message": message}, status=status)


def _invalid_request(message: str) -> web.Response:
    return _error_response("invalid_request", message, 400)


def _unauthorized(message: str = "Access token required") -> web.Response:
    return _error_response("unauthorized", message, 401)


def _server_error(message: str) -> web.Response:
    return _error_response("server_error", message, 500)


async def _read_json(request: web.Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except Exception:
        return None
    return body if isinstance(body, dict) else None


async def handle_health(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    if runtime.backend is None:
        database = "in-memory"
    else:
        database = "connected" if runtime.backend.is_healthy() else "disconnected"
    return web.json_response(
        {"status": "OK", "service": SERVICE_NAME, "database": database, "timestamp": runtime.now()}
    )


async def handle_register(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _read_json(request)
    if body is None:
        return _invalid_request("malformed json")
    try:
        user = await runtime.authenticator.register(body.get("username"), body.get("password"), body.get("email"))
    except PersistenceError:
        logger.exception("registration failed")
        return _server_error("Server error during registration")
    except ChatError as exc:
        return _invalid_request(exc.message)
    logger.info("registered user %s", user.username)
    return web.json_response(
        {"success": True, "message": "Registration successful! You can now login."}, status=201
    )


async def handle_login(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _read_json(request)
    if body is None:
        return _invalid_request("malformed json")
    try:
        identity = await runtime.authenticator.authenticate(body.get("username"), body.get("password"))
        session = await runtime.authenticator.issue_token(identity)
    except PersistenceError:
        logger.exception("login failed")
        return _server_error("Server error during login")
    except ChatError as exc:
        return _invalid_request(exc.message)
    return web.json_response(
        {
            "success": True,
            "token": session.token,
            "expiresAt": session.expires_at_ms,
            "user": {"username": identity},
        }
    )


async def handle_users(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    try:
        users = await runtime.users.list_all()
    except PersistenceError:
        logger.exception("listing users failed")
        return _server_error("Failed to fetch users")
    return web.json_response([user.to_wire() for user in users])


async def handle_messages(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return _unauthorized()
    try:
        identity = await runtime.authenticator.verify_token(auth_header[len("Bearer ") :].strip())
        messages = await runtime.messages.list_for_user(identity)
    except AuthenticationError as exc:
        return _unauthorized(exc.message)
    except PersistenceError:
        logger.exception("listing messages failed")
        return _server_error("Failed to fetch messages")
    return web.json_response({"success": True, "messages": [message.to_wire() for message in messages]})


def create_app(config: GatewayConfig | None = None, *, now_func: Callable[[], int] = _now_ms) -> web.Application:
    config = config or GatewayConfig()
    session_ttl_ms = config.session_ttl_s * 1000
    backend: SQLiteBackend | None = None
    if config.db_path is not None:
        backend = SQLiteBackend(config.db_path)
        users = SQLiteUserStore(backend)
        messages = SQLiteMessageStore(backend)
        sessions = SQLiteSessionStore(backend, session_ttl_ms, now_func=now_func)
    else:
        users = UserStore()
        messages = MessageStore()
        sessions = SessionStore(session_ttl_ms, now_func=now_func)

    registry = PresenceRegistry()
    runtime = Runtime(
        users=users,
        messages=messages,
        sessions=sessions,
        registry=registry,
        engine=DeliveryEngine(registry, users, messages, now_func=now_func),
        hub=ConnectionHub(),
        authenticator=Authenticator(users, sessions, now_func=now_func),
        backend=backend,
        now_func=now_func,
    )
    app = web.Application()
    app[RUNTIME_KEY] = runtime
    app[CONFIG_KEY] = config
    app.router.add_get("/api/health", handle_health)
    app.router.add_post("/api/register", handle_register)
    app.router.add_post("/api/login", handle_login)
    app.router.add_get("/api/users", handle_users)
    app.router.add_get("/api/messages", handle_messages)
    app.router.add_get("/ws", websocket_handler)
    if backend is not None:
        async def close_db(_: web.Application) -> None:
            backend.close()

        app.on_cleanup.append(close_db)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    config = request.app[CONFIG_KEY]

    ws = web.WebSocketResponse(max_msg_size=config.max_msg_size)
    await ws.prepare(request)

    last_activity = asyncio.get_running_loop().time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=config.outbound_queue_size)
    closed = False
    close_task: asyncio.Task | None = None

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = asyncio.get_running_loop().time()
        missed_heartbeats = 0

    def enqueue(frame: dict) -> None:
        nonlocal close_task
        if close_task is not None:
            return
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            close_task = asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(config.ping_interval_s)
                if ws.closed:
                    return
                now = asyncio.get_running_loop().time()
                if now - last_activity >= config.ping_interval_s:
                    enqueue({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > config.ping_miss_limit:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    connection = runtime.hub.open(enqueue)
    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())
    logger.debug("connection %s opened", connection.conn_id)

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    enqueue(_error_frame("invalid_request", "malformed json"))
                    continue

                mark_activity()
                if not isinstance(frame, dict) or frame.get("v") != 1:
                    request_id = frame.get("id") if isinstance(frame, dict) else None
                    enqueue(_error_frame("invalid_request", "unsupported version", request_id=request_id))
                    continue

                frame_type = frame.get("t")
                body = frame.get("body")
                if body is None:
                    body = {}

                if frame_type == "ping":
                    enqueue({"v": 1, "t": "pong", "id": frame.get("id")})
                elif frame_type == "pong":
                    continue
                elif not isinstance(frame_type, str):
                    enqueue(_error_frame("invalid_request", "unknown frame type", request_id=frame.get("id")))
                else:
                    notifications = await runtime.engine.dispatch(connection, frame_type, body)
                    runtime.hub.deliver(notifications)
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        runtime.hub.close(connection)
        runtime.hub.deliver(await runtime.engine.disconnect(connection))
        writer_task.cancel()
        tasks = [heartbeat_task, writer_task]
        if close_task is not None:
            tasks.append(close_task)
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug("connection %s closed", connection.conn_id)

    return ws
