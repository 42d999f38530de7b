"""
aiohttp host for the vault core.

Routes:
    POST /rpc/active-add-file?key=&name=  request body stored as attachment
    GET  /rpc/active-get-file?key=        attachment streamed back
    POST /rpc/{command}                   JSON payload in, reply JSON out
    GET  /updates                         WebSocket of change notifications
"""
import asyncio
import logging
import weakref
from typing import Optional

import orjson
from aiohttp import WSCloseCode, web

from .commands import CommandDispatcher
from .conf import VaultSettings
from .exceptions import ErrorKind, VaultError
from .vault.engine import MemoryEngine, StorageEngine
from .vault.orchestrator import VaultOrchestrator

logger = logging.getLogger("peervault.server")

FILE_CHUNK_SIZE = 64 * 1024
UPDATE_MESSAGE = {"event": "update"}


class UpdateHub:
    """Fans change notifications out to every connected subscriber."""

    def __init__(self):
        self._queues: set[asyncio.Queue] = set()

    def __len__(self) -> int:
        return len(self._queues)

    def subscribe(self) -> asyncio.Queue:
        # every message is identical, one pending update is enough
        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._queues.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._queues.discard(queue)

    def notify(self) -> None:
        for queue in list(self._queues):
            try:
                queue.put_nowait(UPDATE_MESSAGE)
            except asyncio.QueueFull:
                pass


orchestrator_key = web.AppKey("orchestrator", VaultOrchestrator)
dispatcher_key = web.AppKey("dispatcher", CommandDispatcher)
hub_key = web.AppKey("update_hub", UpdateHub)
websockets_key = web.AppKey("websockets", weakref.WeakSet)


def _json_response(payload: dict, status: int = 200) -> web.Response:
    return web.json_response(payload, status=status, dumps=lambda obj: orjson.dumps(obj).decode())


async def rpc_handler(request: web.Request) -> web.Response:
    name = request.match_info["command"]
    data = None
    if request.can_read_body:
        try:
            data = orjson.loads(await request.read())
        except orjson.JSONDecodeError:
            return _json_response(
                {"error": {"kind": ErrorKind.INVALID_INPUT.value, "message": "Invalid JSON body"}},
                status=400,
            )
    reply = await request.app[dispatcher_key].handle(name, data)
    return _json_response(reply)


async def add_file_handler(request: web.Request) -> web.Response:
    key = request.query.get("key", "")
    name = request.query.get("name")
    chunks = []
    async for chunk in request.content.iter_chunked(FILE_CHUNK_SIZE):
        chunks.append(chunk)
    reply = await request.app[dispatcher_key].add_file(key, b"".join(chunks), name)
    return _json_response(reply)


async def get_file_handler(request: web.Request) -> web.StreamResponse:
    key = request.query.get("key", "")
    try:
        content = await request.app[dispatcher_key].get_file(key)
    except VaultError as err:
        return _json_response({"error": err.to_dict()}, status=409)
    if content is None:
        return _json_response(
            {"error": {"kind": ErrorKind.RECORD_NOT_FOUND.value, "message": "File not found"}},
            status=404,
        )
    response = web.StreamResponse(
        headers={"Content-Type": "application/octet-stream", "X-Vault-Key": key},
    )
    response.content_length = len(content)
    await response.prepare(request)
    for offset in range(0, len(content), FILE_CHUNK_SIZE):
        await response.write(content[offset:offset + FILE_CHUNK_SIZE])
    await response.write_eof()
    return response


async def updates_handler(request: web.Request) -> web.WebSocketResponse:
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    hub = request.app[hub_key]
    request.app[websockets_key].add(ws)
    queue = hub.subscribe()
    logger.debug("Update subscriber connected (%d total)", len(hub))

    async def forward() -> None:
        while not ws.closed:
            message = await queue.get()
            try:
                await ws.send_json(message)
            except ConnectionResetError:
                logger.debug("Update subscriber went away")
                return

    sender = asyncio.create_task(forward())
    try:
        async for _ in ws:
            # inbound messages are ignored
            pass
    finally:
        sender.cancel()
        hub.unsubscribe(queue)
        request.app[websockets_key].discard(ws)
        logger.debug("Update subscriber disconnected")
    return ws


async def _close_websockets(app: web.Application) -> None:
    for ws in set(app[websockets_key]):
        await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")


async def _shutdown_orchestrator(app: web.Application) -> None:
    try:
        await app[orchestrator_key].shutdown()
    except Exception as err:
        logger.error("Error shutting down vault orchestrator: %s", err)


def create_app(
    settings: Optional[VaultSettings] = None,
    engine: Optional[StorageEngine] = None,
) -> web.Application:
    """Build the host application around a fresh orchestrator."""
    settings = settings or VaultSettings.from_env()
    orchestrator = VaultOrchestrator(engine or MemoryEngine(), settings=settings)
    hub = UpdateHub()
    app = web.Application()
    app[orchestrator_key] = orchestrator
    app[hub_key] = hub
    app[dispatcher_key] = CommandDispatcher(orchestrator, notifier=hub.notify)
    app[websockets_key] = weakref.WeakSet()
    # file routes must be registered before the generic command route
    app.router.add_post("/rpc/active-add-file", add_file_handler)
    app.router.add_get("/rpc/active-get-file", get_file_handler)
    app.router.add_post("/rpc/{command}", rpc_handler)
    app.router.add_get("/updates", updates_handler)
    app.on_shutdown.append(_close_websockets)
    app.on_cleanup.append(_shutdown_orchestrator)
    return app
