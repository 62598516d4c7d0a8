import logging

from fastapi import APIRouter, WebSocket

logger = logging.getLogger(__name__)
router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Push channel for print agents.

    The first frame must be ``authenticate``; after that the server pushes
    ``job-ready`` events and the agent reports receipts and status.
    """
    channel = websocket.app.state.services.channel
    logger.debug("Print agent connecting from %s", websocket.client)
    await channel.serve(websocket)
