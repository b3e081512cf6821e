"""Websocket server for live event listeners.

Clients connect to ``/`` and receive one JSON text frame per event:
``{"type": "fill" | "placeOrder", "data": {...}}``. Client messages are
logged and otherwise ignored. No handshake payload is required.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from fillfeed.core.fanout import ListenerChannel, ListenerRegistry
from fillfeed.utils.logger import get_logger

logger = get_logger("listener_server")

# Going Away: server is closing the feed
CLOSE_GOING_AWAY = 1001


async def _receive_loop(websocket: WebSocket, channel: ListenerChannel) -> None:
    """Log inbound messages until the client disconnects."""
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            body: Any = message.get("text") or message.get("bytes")
            logger.info("listener_message_received", listener=channel.name, message=str(body)[:200])
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("listener_receive_ended", listener=channel.name, error=str(e))
    finally:
        channel.close()


def create_listener_app(registry: ListenerRegistry) -> FastAPI:
    """Build the listener app around ``registry``."""
    app = FastAPI(title="fillfeed listeners", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.registry = registry

    @app.websocket("/")
    async def listener_endpoint(websocket: WebSocket) -> None:
        # Register before accept so no event is missed once the client is connected
        channel = registry.register()
        try:
            await websocket.accept()
        except BaseException:
            registry.unregister(channel)
            channel.close()
            logger.info("listener_handshake_failed", listener=channel.name)
            raise
        logger.info("listener_connected", listener=channel.name, listeners=registry.count)

        receiver = asyncio.create_task(_receive_loop(websocket, channel))
        try:
            while (message := await channel.get()) is not None:
                await websocket.send_text(message)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.info("listener_send_failed", listener=channel.name, error=str(e))
        finally:
            registry.unregister(channel)
            channel.close()
            receiver.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await receiver

        if (
            websocket.client_state is WebSocketState.CONNECTED
            and websocket.application_state is WebSocketState.CONNECTED
        ):
            with contextlib.suppress(RuntimeError, OSError):
                await websocket.close(code=CLOSE_GOING_AWAY)
        logger.info(
            "listener_disconnected",
            listener=channel.name,
            dropped=channel.dropped,
            listeners=registry.count,
        )

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "listeners": registry.count}

    return app
