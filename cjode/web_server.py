"""HTTP server exposing the agent over SSE and buffered JSON."""

import asyncio
import json
import signal
from contextlib import aclosing, asynccontextmanager
from datetime import UTC, datetime
from typing import Any, AsyncIterator

from aiohttp import web

from cjode.agent import Agent
from cjode.config import Config, get_config
from cjode.exceptions import ConfigurationError
from cjode.logging import get_logger
from cjode.session import ConversationStore, get_conversation_store, new_conversation_id

log = get_logger(__name__)

AI_REQUEST_FAILED = "AI request failed"
_DISCONNECT_POLL_SECONDS = 0.25

SSE_HEADERS = {
    "Content-Type": "text/event-stream; charset=utf-8",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Cache-Control",
}


def format_sse_event(event: str, data: dict[str, Any]) -> str:
    """Encode one Server-Sent Event frame."""
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def wants_event_stream(request: web.Request) -> bool:
    return "text/event-stream" in request.headers.get("Accept", "")


def _client_gone(request: web.Request) -> bool:
    transport = request.transport
    return transport is None or transport.is_closing()


class WebServer:
    """cjode chat server."""

    def __init__(
        self,
        config: Config | None = None,
        agent: Agent | None = None,
        store: ConversationStore | None = None,
    ):
        self.config = config or get_config()
        self.store = store or (agent.store if agent is not None else get_conversation_store())
        self.agent = agent

    def _get_agent(self) -> Agent:
        if self.agent is None:
            self.agent = Agent(store=self.store, config=self.config)
        return self.agent

    @asynccontextmanager
    async def _watch_disconnect(self, request: web.Request, abort_event: asyncio.Event) -> AsyncIterator[None]:
        """Set ``abort_event`` as soon as the client connection goes away."""

        async def _poll() -> None:
            while not abort_event.is_set():
                if _client_gone(request):
                    log.info("Client disconnected; aborting run")
                    abort_event.set()
                    return
                await asyncio.sleep(_DISCONNECT_POLL_SECONDS)

        task = asyncio.create_task(_poll())
        try:
            yield
        finally:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ── Endpoints ────────────────────────────────────────────────────

    async def health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "timestamp": datetime.now(UTC).isoformat()})

    async def list_conversations(self, request: web.Request) -> web.Response:
        summaries = [conversation.summary() for conversation in await self.store.list_conversations()]
        return web.json_response({
            "totalConversations": len(summaries),
            "conversations": summaries,
        })

    async def get_conversation(self, request: web.Request) -> web.Response:
        conversation_id = request.match_info["id"]
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            return web.json_response({"error": "Conversation not found"}, status=404)
        return web.json_response({
            "conversationId": conversation.id,
            "messageCount": len(conversation.messages),
            "messages": [message.to_dict() for message in conversation.messages],
        })

    async def chat(self, request: web.Request) -> web.StreamResponse:
        """``POST /chat`` - SSE when the client accepts it, buffered JSON otherwise."""
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return web.json_response({"error": "Invalid JSON in request body"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "Request body must be a JSON object"}, status=400)

        message = body.get("message")
        if not isinstance(message, str) or not message.strip():
            return web.json_response({"error": "message is required"}, status=400)
        conversation_id = body.get("conversationId") or new_conversation_id()
        if not isinstance(conversation_id, str):
            return web.json_response({"error": "conversationId must be a string"}, status=400)

        try:
            agent = self._get_agent()
        except ConfigurationError as e:
            log.error("Agent initialization failed", error=str(e))
            return web.json_response({"error": str(e)}, status=500)

        stream = wants_event_stream(request)
        log.info("Chat request", conversation_id=conversation_id, stream=stream)

        async with self.store.lock(conversation_id):
            if stream:
                return await self._stream_chat(request, agent, conversation_id, message)
            return await self._buffered_chat(request, agent, conversation_id, message)

    async def _buffered_chat(
        self,
        request: web.Request,
        agent: Agent,
        conversation_id: str,
        message: str,
    ) -> web.Response:
        abort_event = asyncio.Event()
        try:
            async with self._watch_disconnect(request, abort_event):
                response_text = await agent.complete(conversation_id, message, abort_event)
        except Exception as e:
            log.error("AI request failed", conversation_id=conversation_id, error=str(e))
            return web.json_response({"error": AI_REQUEST_FAILED}, status=500)

        return web.json_response({"response": response_text, "conversationId": conversation_id})

    async def _stream_chat(
        self,
        request: web.Request,
        agent: Agent,
        conversation_id: str,
        message: str,
    ) -> web.StreamResponse:
        resp = web.StreamResponse(status=200, reason="OK", headers=SSE_HEADERS)
        await resp.prepare(request)

        abort_event = asyncio.Event()
        connected = True

        async def _send(event: str, data: dict[str, Any]) -> None:
            nonlocal connected
            if not connected:
                return
            try:
                await resp.write(format_sse_event(event, data).encode("utf-8"))
            except ConnectionResetError:
                log.info("Client went away mid-stream", conversation_id=conversation_id)
                connected = False
                abort_event.set()

        await _send("start", {"conversationId": conversation_id})

        try:
            async with self._watch_disconnect(request, abort_event):
                chunks = agent.stream(conversation_id, message, abort_event)
                async with aclosing(chunks):
                    async for chunk in chunks:
                        await _send("token", {"content": chunk, "type": "text"})

            messages = await self.store.get(conversation_id) or []
            await _send("done", {"conversationId": conversation_id, "messageCount": len(messages)})
            log.info("Completed streaming", conversation_id=conversation_id, message_count=len(messages))
        except Exception as e:
            log.error("AI streaming error", conversation_id=conversation_id, error=str(e))
            await _send("error", {"error": AI_REQUEST_FAILED})

        if connected:
            try:
                await resp.write_eof()
            except ConnectionResetError:
                pass
        return resp

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self.health)
        app.router.add_get("/conversations", self.list_conversations)
        app.router.add_get("/conversations/{id}", self.get_conversation)
        app.router.add_post("/chat", self.chat)
        return app


async def _run_server(config: Config, host: str | None = None, port: int | None = None) -> None:
    """Start the server and block until SIGINT/SIGTERM."""
    server = WebServer(config)
    loop = asyncio.get_running_loop()

    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        if not stop_event.is_set():
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except (NotImplementedError, OSError):
            # Windows doesn't support add_signal_handler for SIGTERM.
            pass

    app = server.create_app()
    runner = web.AppRunner(app)
    await runner.setup()

    bind_host = host or config.server.host
    bind_port = port or config.server.port
    site = web.TCPSite(runner, bind_host, bind_port)
    await site.start()

    log.info("Server started", host=bind_host, port=bind_port)
    print(f"\n  cjode server running at http://{bind_host}:{bind_port}")
    print("  Press Ctrl+C to stop.\n")

    try:
        await stop_event.wait()
    finally:
        print("\nShutting down...")
        if server.agent is not None:
            await server.agent.provider.close()
        await runner.cleanup()


def run_web_server(config: Config, host: str | None = None, port: int | None = None) -> None:
    """Entry point for running the web server."""
    try:
        asyncio.run(_run_server(config, host=host, port=port))
    except KeyboardInterrupt:
        pass
