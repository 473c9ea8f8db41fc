"""Live alert stream over WebSocket."""

import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Query, WebSocket, status
from starlette.websockets import WebSocketState

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


class FastAPISocket:
    """Adapts a Starlette WebSocket to the gateway's socket interface."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_text(self, data: str) -> None:
        await self.websocket.send_text(data)

    async def iter_text(self) -> AsyncIterator[str]:
        # Starlette ends the iteration on disconnect
        async for text in self.websocket.iter_text():
            yield text


@router.websocket("/ws")
async def alert_stream(
    websocket: WebSocket,
    user_id: Optional[str] = Query(default=None),
):
    """
    Stream alerts for one user.

    The caller is expected to be authenticated upstream; the user id arrives
    as a query parameter.
    """
    if not user_id:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    gateway = websocket.app.state.services.gateway
    await gateway.serve(FastAPISocket(websocket), user_id)
