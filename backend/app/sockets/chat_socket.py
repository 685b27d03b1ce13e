from fastapi import APIRouter, WebSocket, WebSocketDisconnect
import logging

router = APIRouter()

logger = logging.getLogger(__name__)


@router.websocket("/ws/chat")
async def chat_endpoint(websocket: WebSocket):
    """
    실시간 채팅 라이브 채널.

    클라이언트는 {"event": "...", "data": {...}} JSON 프레임을 보냅니다.
    연결 직후에는 Unauthenticated 상태이며, authenticate 이벤트로 유저 신원을 묶어야
    send_message / mark_as_read / typing 이 허용됩니다.
    """
    registry = websocket.app.state.registry
    handler = websocket.app.state.chat_handler

    await websocket.accept()
    connection = registry.connect(websocket)

    try:
        while True:
            # 한 연결의 이벤트는 도착 순서대로 하나씩 처리
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info(f"[ChatSocket] 연결 {connection.id} 종료 (User {connection.user_id})")
                break

            # 텍스트 프레임이 기본, 바이너리 프레임은 UTF-8 JSON으로 취급
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            await handler.dispatch(connection, raw)
    except WebSocketDisconnect:
        logger.info(f"[ChatSocket] 연결 {connection.id} 종료 (User {connection.user_id})")
    except Exception:
        logger.exception(f"[ChatSocket] 연결 {connection.id} 소켓 에러")
    finally:
        handler.disconnect(connection)
