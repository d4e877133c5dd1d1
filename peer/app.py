from __future__ import annotations

import asyncio
import logging
import webbrowser
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field
from starlette.websockets import WebSocketState

from shared.errors import (
    AggregationTimeout,
    NegotiationError,
    ProtocolViolation,
    TransportFailure,
)
from shared.protocol import DEFAULT_UI_PORT, ChatMessage, PeerConfig

from .negotiation import NegotiationResult, NegotiationSession, SessionState
from .transport import AiortcTransport, Transport

logger = logging.getLogger(__name__)


class TokenRequest(BaseModel):
    token: str = Field(..., description="Offer or answer token relayed by the other peer")


class MessageRequest(BaseModel):
    text: str = Field(..., description="Chat text to send")


class MessageResponse(BaseModel):
    remaining: str = Field(..., description="Empty when sent, the original text when rejected")


def status_code_for(error: NegotiationError) -> int:
    if isinstance(error, AggregationTimeout):
        return 504
    if isinstance(error, TransportFailure):
        return 502
    if isinstance(error, ProtocolViolation):
        return 409
    return 400


class WebSocketHub:
    """Tracks active UI WebSocket connections."""

    def __init__(self) -> None:
        self._connections: List[WebSocket] = []
        self._lock = asyncio.Lock()

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        async with self._lock:
            self._connections.append(ws)

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            if ws in self._connections:
                self._connections.remove(ws)

    async def broadcast(self, message: Dict[str, object]) -> None:
        async with self._lock:
            for ws in list(self._connections):
                try:
                    if ws.application_state == WebSocketState.CONNECTED:
                        await ws.send_json(message)
                except Exception:
                    logger.exception("Failed to send WebSocket message")


class PeerApp:
    """Local control surface exposing one negotiation session to a UI."""

    def __init__(
        self,
        config: Optional[PeerConfig] = None,
        *,
        transport: Optional[Transport] = None,
        session: Optional[NegotiationSession] = None,
    ) -> None:
        self._config = config or PeerConfig()
        self._session = session or NegotiationSession(transport or AiortcTransport(), self._config)
        self._ws_hub = WebSocketHub()
        self._app = FastAPI(title="pairlink")
        self._session.add_state_listener(self._on_state_change)
        self._session.add_message_listener(self._on_message)
        self._configure_routes()

    @property
    def app(self) -> FastAPI:
        return self._app

    @property
    def session(self) -> NegotiationSession:
        return self._session

    def _configure_routes(self) -> None:
        @self._app.get("/api/config")
        async def config() -> Dict[str, object]:
            return self._config.to_dict()

        @self._app.get("/api/session")
        async def session_snapshot() -> Dict[str, object]:
            return self._session.snapshot()

        @self._app.post("/api/session/create")
        async def create_session() -> Dict[str, object]:
            return self._raise_for_error(await self._session.create_session())

        @self._app.post("/api/session/join")
        async def join_session(payload: TokenRequest) -> Dict[str, object]:
            return self._raise_for_error(await self._session.join_session(payload.token))

        @self._app.post("/api/session/remote-token")
        async def supply_remote_token(payload: TokenRequest) -> Dict[str, object]:
            return self._raise_for_error(await self._session.supply_remote_token(payload.token))

        @self._app.post("/api/session/teardown")
        async def teardown() -> Dict[str, object]:
            return (await self._session.teardown()).to_dict()

        @self._app.post("/api/messages", response_model=MessageResponse)
        async def send_message(payload: MessageRequest) -> MessageResponse:
            remaining = await self._session.send_message(payload.text)
            return MessageResponse(remaining=remaining)

        @self._app.websocket("/ws/session")
        async def ws_session(websocket: WebSocket) -> None:
            await self._ws_hub.connect(websocket)
            try:
                await websocket.send_json({"type": "state_snapshot", "payload": self._session.snapshot()})
                while True:
                    data = await websocket.receive_json()
                    await self._handle_ui_message(websocket, data)
            except WebSocketDisconnect:
                pass
            finally:
                await self._ws_hub.disconnect(websocket)

    def _raise_for_error(self, result: NegotiationResult) -> Dict[str, object]:
        if result.error is not None:
            raise HTTPException(status_code=status_code_for(result.error), detail=result.to_dict())
        return result.to_dict()

    async def _handle_ui_message(self, websocket: WebSocket, data: object) -> None:
        """Handle actions coming from the web UI via WebSocket."""

        if not isinstance(data, dict):
            logger.warning("Ignoring non-object UI message")
            return
        kind = data.get("type")
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            payload = {}
        token = str(payload.get("token") or "")

        result: Optional[NegotiationResult] = None
        if kind == "create_session":
            result = await self._session.create_session()
        elif kind == "join_session":
            result = await self._session.join_session(token)
        elif kind == "remote_token":
            result = await self._session.supply_remote_token(token)
        elif kind == "teardown":
            result = await self._session.teardown()
        elif kind == "chat_send":
            text = str(payload.get("text", ""))
            remaining = await self._session.send_message(text)
            await websocket.send_json({"type": "chat_send_result", "payload": {"remaining": remaining}})
            return
        elif kind == "heartbeat":
            return
        else:
            logger.warning("Unhandled UI message: %s", data)
            return

        await websocket.send_json({"type": "result", "payload": result.to_dict()})

    async def _on_state_change(self, state: SessionState, error: Optional[NegotiationError]) -> None:
        await self._ws_hub.broadcast(
            {
                "type": "session_status",
                "payload": {
                    "state": state.value,
                    "connection_status": self._session.connection_status,
                    "local_token": self._session.local_token,
                    "error": error.to_dict() if error else None,
                },
            }
        )

    async def _on_message(self, message: ChatMessage) -> None:
        await self._ws_hub.broadcast({"type": "chat_message", "payload": message.to_dict()})

    async def run(self, host: str = "127.0.0.1", port: int = DEFAULT_UI_PORT, *, open_browser: bool = False) -> None:
        import uvicorn

        config = uvicorn.Config(self._app, host=host, port=port, log_level="info")
        server = uvicorn.Server(config)
        if open_browser:
            url = f"http://{host}:{port}" if host != "0.0.0.0" else f"http://127.0.0.1:{port}"
            webbrowser.open_new_tab(url)
        try:
            await server.serve()
        finally:
            await self._session.teardown()
