from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from chat import SessionRouter, get_session_router
from core.logger import get_logger

logger = get_logger(__name__)


chat_router = APIRouter(tags=["chat"])


@chat_router.websocket("/")
@chat_router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    session_router: SessionRouter = Depends(get_session_router),
) -> None:
    # Connect creates the specific session
    session = await session_router.connect(websocket)
    session_id = session.session_id

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break

            text = message.get("text")
            if text is None:
                logger.debug(f"Session {session_id}: Ignoring binary frame from client")
                continue

            # Pass data to the specific session
            await session_router.handle_message(session_id, text)
    except WebSocketDisconnect:
        pass
    except RuntimeError as e:
        # Raised by Starlette when the server already closed the socket
        logger.debug(f"Session {session_id}: Receive loop ended: {e}")
    except Exception as e:
        logger.warning(f"WebSocket error: {e}")
    finally:
        await session_router.disconnect(session_id)
