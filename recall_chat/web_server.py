"""HTTP/WebSocket transport for Recall Chat."""

import asyncio
import json
import signal
from typing import Any

from aiohttp import web

from recall_chat.chat import ChatService, ChatTicket
from recall_chat.config import Config, get_config
from recall_chat.exceptions import ConversationNotFoundError, MemoryNotFoundError, UserNotFoundError
from recall_chat.logging import configure_logging, get_logger
from recall_chat.memories import MemoryStore
from recall_chat.store import get_store
from recall_chat.streaming import ChannelHub, Subscription, get_hub

log = get_logger(__name__)


def _ticket_payload(ticket: ChatTicket) -> dict[str, Any]:
    return {
        "conversationId": ticket.conversation_id,
        "messageId": ticket.correlation_id,
        "channel": ticket.channel,
    }


class WebServer:
    """Chat endpoints plus a WebSocket relay of hub channels.

    Clients that want every delta of a reply subscribe to ``chat:<id>`` with a
    client-chosen ``correlationId`` before posting the message.
    """

    def __init__(
        self,
        config: Config,
        service: ChatService | None = None,
        hub: ChannelHub | None = None,
        memories: MemoryStore | None = None,
    ):
        self.config = config
        self.hub = hub or get_hub()
        self.service = service or ChatService()
        self.memories = memories or MemoryStore(self.service.store)
        self.clients: set[web.WebSocketResponse] = set()

    @staticmethod
    async def _read_json(request: web.Request) -> dict[str, Any]:
        try:
            data = await request.json()
        except json.JSONDecodeError:
            raise web.HTTPBadRequest(
                text=json.dumps({"error": "Invalid JSON"}),
                content_type="application/json",
            )
        if not isinstance(data, dict):
            raise web.HTTPBadRequest(
                text=json.dumps({"error": "Expected a JSON object"}),
                content_type="application/json",
            )
        return data

    @staticmethod
    def _string_field(data: dict[str, Any], key: str, required: bool = False) -> str | None:
        """A string field of the request body; null and absent both mean unset."""
        value = data.get(key)
        if value is None:
            if required:
                raise web.HTTPBadRequest(
                    text=json.dumps({"error": f"{key} is required"}),
                    content_type="application/json",
                )
            return None
        if not isinstance(value, str):
            raise web.HTTPBadRequest(
                text=json.dumps({"error": f"{key} must be a string"}),
                content_type="application/json",
            )
        value = value.strip()
        if required and not value:
            raise web.HTTPBadRequest(
                text=json.dumps({"error": f"{key} is required"}),
                content_type="application/json",
            )
        return value or None

    @staticmethod
    def _query_user(request: web.Request) -> str:
        user_id = request.query.get("userId", "").strip()
        if not user_id:
            raise web.HTTPBadRequest(
                text=json.dumps({"error": "userId is required"}),
                content_type="application/json",
            )
        return user_id

    # ── Chat API ─────────────────────────────────────────────────────

    async def post_chat(self, request: web.Request) -> web.Response:
        data = await self._read_json(request)
        user_id = self._string_field(data, "userId", required=True)
        content = data.get("content")
        if not isinstance(content, str):
            return web.json_response({"error": "content must be a string"}, status=400)
        try:
            ticket = await self.service.send_message(
                user_id=user_id,
                content=content,
                conversation_id=self._string_field(data, "conversationId"),
                correlation_id=self._string_field(data, "correlationId"),
            )
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        except (UserNotFoundError, ConversationNotFoundError) as e:
            return web.json_response({"error": str(e)}, status=404)
        return web.json_response(_ticket_payload(ticket), status=202)

    # ── Conversations API ────────────────────────────────────────────

    async def list_conversations(self, request: web.Request) -> web.Response:
        user_id = self._query_user(request)
        conversations = await self.service.store.list_active_conversations(user_id)
        return web.json_response(
            {
                "conversations": [
                    {"id": c.id, "title": c.title, "createdAt": c.created_at.isoformat()}
                    for c in conversations
                ]
            }
        )

    async def post_conversation(self, request: web.Request) -> web.Response:
        data = await self._read_json(request)
        user_id = self._string_field(data, "userId", required=True)
        try:
            ticket = await self.service.start_conversation(
                user_id,
                correlation_id=self._string_field(data, "correlationId"),
            )
        except UserNotFoundError as e:
            return web.json_response({"error": str(e)}, status=404)
        return web.json_response(_ticket_payload(ticket), status=202)

    async def delete_conversation(self, request: web.Request) -> web.Response:
        data = await self._read_json(request)
        user_id = self._string_field(data, "userId", required=True)
        conversation_id = self._string_field(data, "conversationId", required=True)
        try:
            conversation = await self.service.store.get_conversation(conversation_id)
        except ConversationNotFoundError as e:
            return web.json_response({"error": str(e)}, status=404)
        if conversation.owner_id != user_id:
            return web.json_response({"error": f"Conversation not found: {conversation_id}"}, status=404)
        await self.service.store.soft_delete_conversations([conversation_id])
        log.info("Conversation deleted", conversation_id=conversation_id, user_id=user_id)
        return web.json_response({"success": True})

    # ── Memories API ─────────────────────────────────────────────────

    async def list_memories(self, request: web.Request) -> web.Response:
        user_id = self._query_user(request)
        found = await self.memories.find_active(user_id=user_id)
        return web.json_response(
            {
                "memories": [
                    {"id": m.id, "content": m.content, "accessCount": m.access_count}
                    for m in found
                ]
            }
        )

    async def delete_memory(self, request: web.Request) -> web.Response:
        data = await self._read_json(request)
        user_id = self._string_field(data, "userId", required=True)
        memory_id = self._string_field(data, "memoryId", required=True)
        try:
            await self.memories.forget(user_id, memory_id)
        except MemoryNotFoundError as e:
            return web.json_response({"error": str(e)}, status=404)
        return web.json_response({"success": True})

    async def health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    # ── WebSocket relay ──────────────────────────────────────────────

    @staticmethod
    async def _forward(ws: web.WebSocketResponse, subscription: Subscription) -> None:
        async for event in subscription:
            if ws.closed:
                return
            await ws.send_str(json.dumps(event.to_dict(), default=str))

    async def ws_handler(self, request: web.Request) -> web.WebSocketResponse:
        channels = [c.strip() for c in request.query.getall("channel", []) if c.strip()]
        if not channels:
            raise web.HTTPBadRequest(text="channel query parameter is required")

        ws = web.WebSocketResponse(max_msg_size=1024 * 1024)
        # subscribe before the handshake so events published right after it are kept
        subscriptions = [self.hub.subscribe(channel) for channel in channels]
        forwarders: list[asyncio.Task[None]] = []
        try:
            await ws.prepare(request)
            self.clients.add(ws)
            forwarders = [asyncio.create_task(self._forward(ws, sub)) for sub in subscriptions]
            log.debug("WebSocket subscribed", channels=channels)
            async for raw_msg in ws:
                if raw_msg.type == web.WSMsgType.ERROR:
                    log.error("WebSocket error", error=str(ws.exception()))
        finally:
            for task in forwarders:
                task.cancel()
            await asyncio.gather(*forwarders, return_exceptions=True)
            for sub in subscriptions:
                sub.close()
            self.clients.discard(ws)

        return ws

    # ── App setup ────────────────────────────────────────────────────

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/ws", self.ws_handler)
        app.router.add_get("/api/health", self.health)
        app.router.add_post("/api/chat", self.post_chat)
        app.router.add_get("/api/conversations", self.list_conversations)
        app.router.add_post("/api/conversations", self.post_conversation)
        app.router.add_delete("/api/conversations", self.delete_conversation)
        app.router.add_get("/api/memories", self.list_memories)
        app.router.add_delete("/api/memories", self.delete_memory)
        return app


async def _run_server(config: Config) -> None:
    """Start the web server and block until SIGINT/SIGTERM."""
    server = WebServer(config)
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, OSError):
            # add_signal_handler is not available on Windows
            pass

    app = server.create_app()
    runner = web.AppRunner(app)
    await runner.setup()

    host = config.web.host
    port = config.web.port
    site = web.TCPSite(runner, host, port)
    await site.start()

    print(f"\n  Recall Chat running at http://{host}:{port}")
    print("  Press Ctrl+C to stop.\n")

    await stop_event.wait()

    print("\nShutting down...")
    for ws in list(server.clients):
        await ws.close()
    server.clients.clear()
    await server.service.wait_idle()
    await runner.cleanup()
    await get_store().close()


def run_web_server(config: Config | None = None) -> None:
    """Entry point for running the web server."""
    configure_logging()
    try:
        asyncio.run(_run_server(config or get_config()))
    except KeyboardInterrupt:
        pass
