import logging
import uuid

from fastapi import WebSocket
from starlette.websockets import WebSocketState

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Owns the open WebSocket objects, keyed by an opaque connection id.

    Knows nothing about users; the connection registry maps users onto the
    ids handed out here.
    """

    def __init__(self):
        self._connections: dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        self._connections[connection_id] = websocket
        logger.debug("Accepted connection %s (%s open)", connection_id, len(self._connections))
        return connection_id

    def disconnect(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)

    def is_connected(self, connection_id: str) -> bool:
        websocket = self._connections.get(connection_id)
        if websocket is None:
            return False
        return (
            websocket.client_state == WebSocketState.CONNECTED
            and websocket.application_state == WebSocketState.CONNECTED
        )

    async def send(self, connection_id: str, message: dict) -> bool:
        """Send one JSON frame. Returns False when the connection is gone."""
        if not self.is_connected(connection_id):
            return False
        websocket = self._connections[connection_id]
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.warning("Send to connection %s failed: %s", connection_id, e)
            self._connections.pop(connection_id, None)
            return False
        return True

    async def close(self, connection_id: str, code: int = 1000, reason: str = "") -> None:
        websocket = self._connections.pop(connection_id, None)
        if websocket is None or websocket.application_state != WebSocketState.CONNECTED:
            return
        try:
            await websocket.close(code=code, reason=reason)
        except RuntimeError as e:
            # Peer already went away
            logger.debug("Close of connection %s ignored: %s", connection_id, e)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def connection_ids(self) -> list[str]:
        return list(self._connections)
