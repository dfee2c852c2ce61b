from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from starlette.requests import HTTPConnection

from rapidgig_chat.core.errors import AuthenticationError
from rapidgig_chat.core.logging_config import get_logger
from rapidgig_chat.realtime.coordinator import DeliveryCoordinator

logger = get_logger(__name__)

router = APIRouter(tags=["chat"])

# close code sent when the handshake has no valid identity
WS_UNAUTHENTICATED = 4401


def get_coordinator(conn: HTTPConnection) -> DeliveryCoordinator:
    return conn.app.state.coordinator


@router.websocket("/ws/chat")
async def chat_socket(websocket: WebSocket, coordinator: DeliveryCoordinator = Depends(get_coordinator)):
    # JWT via ?token=... or Authorization: Bearer
    try:
        conn = await coordinator.open_connection(websocket)
    except AuthenticationError as exc:
        logger.info("Rejected live connection: %s", exc.message)
        await websocket.close(code=WS_UNAUTHENTICATED)
        return

    try:
        while True:
            data = await websocket.receive_text()
            await coordinator.dispatch(conn, data)
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("Live connection %s of %s failed", conn.id[:8], conn.user_id)
        await websocket.close(code=1011)
    finally:
        await coordinator.close_connection(conn)
