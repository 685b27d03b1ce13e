# backend/app/realtime/chat_event_handler.py
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Set, Union

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import ChatError, InvalidRequest
from app.core.security import verify_socket_identity
from app.realtime.session_registry import LiveConnection, SessionRegistry
from app.schemas.chat import MessageRead
from app.schemas.events import (
    AuthenticatePayload,
    ConversationPayload,
    InboundFrame,
    SendMessagePayload,
)
from app.services import conversation_service, message_service, user_service

logger = logging.getLogger(__name__)

# Outbound event names
AUTHENTICATED = "authenticated"
NEW_MESSAGE = "new_message"
LEGACY_NEW_MESSAGE = "nova_mensagem"
MESSAGES_READ = "messages_read"
USER_TYPING = "user_typing"
ERROR_MESSAGE = "error_message"
CONVERSATION_READY = "conversation_ready"
PONG = "pong"


class ChatEventHandler:
    """
    라이브 채널 이벤트 상태 머신.
    Unauthenticated -> Authenticated -> (Idle | InConversation) -> Closed

    연결 하나의 이벤트는 dispatch가 순서대로 await 하므로 도착 순서대로 처리됩니다.
    에러는 발신 연결에만 error_message로 알리고 연결은 유지합니다.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        session_factory: async_sessionmaker,
        query_timeout: float = 5.0,
    ):
        self.registry = registry
        self.session_factory = session_factory
        self.query_timeout = query_timeout
        # 시간 초과 후에도 진행 중인 전송/전달 태스크 (GC 방지용 참조)
        self._pending: Set[asyncio.Future] = set()
        self._handlers: Dict[str, Callable[[LiveConnection, Dict[str, Any]], Awaitable[None]]] = {
            "authenticate": self.handle_authenticate,
            "send_message": self.handle_send_message,
            "mark_as_read": self.handle_mark_as_read,
            "typing": self.handle_typing,
            "join_conversation": self.handle_join_conversation,
            "leave_conversation": self.handle_leave_conversation,
            "ping": self.handle_ping,
        }

    # --- Entry point ---

    async def dispatch(self, connection: LiveConnection, raw: Union[str, bytes, Dict[str, Any]]) -> None:
        event = None
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            frame = InboundFrame.model_validate(json.loads(raw) if isinstance(raw, str) else raw)
            event = frame.event
            handler = self._handlers.get(event)
            if handler is None:
                raise InvalidRequest(f"Unknown event: {event}")
            await handler(connection, frame.data)
        except ChatError as e:
            await self._emit_error(connection, e.message, event)
        except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as e:
            logger.info(f"[ChatEvent] 잘못된 프레임 (연결 {connection.id}, event={event}): {e}")
            await self._emit_error(connection, "Invalid request", event)
        except asyncio.TimeoutError:
            logger.error(f"[ChatEvent] {event} 처리 시간 초과 (연결 {connection.id}, {self.query_timeout}s)")
            await self._emit_error(connection, "Request timed out", event)
        except Exception:
            logger.exception(f"[ChatEvent] {event} 처리 중 에러 (연결 {connection.id})")
            await self._emit_error(connection, "Internal server error", event)

    def disconnect(self, connection: LiveConnection) -> None:
        self.registry.forget(connection)

    # --- Events ---

    async def handle_authenticate(self, connection: LiveConnection, data: Dict[str, Any]) -> None:
        payload = AuthenticatePayload.model_validate(data)
        if connection.authenticated:
            raise InvalidRequest("Connection is already authenticated")

        try:
            verify_socket_identity(payload.user_id, payload.token)

            async def load_rooms(db: AsyncSession):
                await user_service.get_user(db, payload.user_id)
                return await conversation_service.active_conversation_ids(db, payload.user_id)

            conversation_ids = await self._with_db(load_rooms)
        except (ChatError, asyncio.TimeoutError) as e:
            reason = e.message if isinstance(e, ChatError) else "Request timed out"
            logger.info(f"[ChatEvent] 유저 {payload.user_id} 인증 실패: {reason}")
            await connection.send(AUTHENTICATED, {"success": False, "message": reason})
            return

        self.registry.authenticate(connection, payload.user_id, conversation_ids)
        await connection.send(AUTHENTICATED, {"success": True, "userId": payload.user_id})

    async def handle_send_message(self, connection: LiveConnection, data: Dict[str, Any]) -> None:
        self._require_identity(connection)
        payload = SendMessagePayload.model_validate(data)

        # 커밋 직후 시간 초과로 취소되면 저장된 메시지가 전달되지 않으므로 shield로 감쌉니다.
        # 시간 초과 시 발신자는 error_message를 받고, 전송이 끝나면 방에 늦게라도 전달됩니다.
        task = asyncio.ensure_future(
            self._in_session(
                message_service.send_message,
                payload.conversation_id,
                connection.user_id,
                payload.content,
            )
        )
        try:
            message = await asyncio.wait_for(asyncio.shield(task), timeout=self.query_timeout)
        except asyncio.TimeoutError:
            self._pending.add(task)
            task.add_done_callback(self._publish_late)
            raise
        await self.publish_message(message)

    async def handle_mark_as_read(self, connection: LiveConnection, data: Dict[str, Any]) -> None:
        self._require_identity(connection)
        payload = ConversationPayload.model_validate(data)

        await self._with_db(message_service.mark_read, payload.conversation_id, connection.user_id)
        await self.publish_read(payload.conversation_id, connection.user_id)

    async def handle_typing(self, connection: LiveConnection, data: Dict[str, Any]) -> None:
        # 저장하지 않는 fire-and-forget 이벤트. 발신자 본인도 받으므로 클라이언트가 걸러야 합니다.
        self._require_identity(connection)
        payload = ConversationPayload.model_validate(data)
        await self.registry.broadcast(
            payload.conversation_id,
            USER_TYPING,
            {"conversationId": payload.conversation_id, "userId": connection.user_id},
        )

    async def handle_join_conversation(self, connection: LiveConnection, data: Dict[str, Any]) -> None:
        payload = ConversationPayload.model_validate(data)
        self.registry.join(connection, payload.conversation_id)
        logger.debug(f"[ChatEvent] 연결 {connection.id} -> 대화방 {payload.conversation_id} 입장")

    async def handle_leave_conversation(self, connection: LiveConnection, data: Dict[str, Any]) -> None:
        payload = ConversationPayload.model_validate(data)
        self.registry.leave(connection, payload.conversation_id)
        logger.debug(f"[ChatEvent] 연결 {connection.id} -> 대화방 {payload.conversation_id} 퇴장")

    async def handle_ping(self, connection: LiveConnection, data: Dict[str, Any]) -> None:
        await connection.send(PONG, {})

    # --- Fan-out shared with the REST routes ---

    async def publish_message(self, message: MessageRead, legacy_alias: bool = False) -> int:
        payload = message.model_dump(mode="json")
        delivered = await self.registry.broadcast(message.conversa_id, NEW_MESSAGE, payload)
        if legacy_alias:
            await self.registry.broadcast(message.conversa_id, LEGACY_NEW_MESSAGE, payload)
        logger.info(f"[ChatEvent] 메시지 {message.id} -> 대화방 {message.conversa_id} ({delivered}개 연결)")
        return delivered

    async def publish_read(self, conversation_id: int, user_id: int) -> int:
        return await self.registry.broadcast(
            conversation_id, MESSAGES_READ, {"conversationId": conversation_id, "userId": user_id}
        )

    async def notify_conversation_ready(self, conversation_id: int, user_ids) -> None:
        for user_id in user_ids:
            await self.registry.send_to_user(user_id, CONVERSATION_READY, {"conversationId": conversation_id})

    # --- Helpers ---

    def _require_identity(self, connection: LiveConnection) -> None:
        if not connection.authenticated:
            raise InvalidRequest("Connection is not authenticated")

    async def _in_session(self, operation, *args):
        async with self.session_factory() as db:
            return await operation(db, *args)

    async def _with_db(self, operation, *args):
        """
        요청마다 독립된 세션을 열고 query_timeout 안에 끝나지 않으면 취소합니다.
        멈춘 쿼리가 같은 연결의 다음 이벤트를 막지 않도록 합니다.
        """
        return await asyncio.wait_for(self._in_session(operation, *args), timeout=self.query_timeout)

    def _publish_late(self, task: asyncio.Task) -> None:
        """시간 초과 이후에 끝난 전송 결과를 방에 전달합니다."""
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.info(f"[ChatEvent] 시간 초과된 전송이 실패로 끝남: {error}")
            return
        message = task.result()
        logger.warning(f"[ChatEvent] 시간 초과 후 저장된 메시지 {message.id} 늦게 전달")
        publish = asyncio.ensure_future(self.publish_message(message))
        self._pending.add(publish)
        publish.add_done_callback(self._pending.discard)

    async def _emit_error(self, connection: LiveConnection, message: str, event: str | None) -> None:
        try:
            await connection.send(ERROR_MESSAGE, {"message": message, "event": event})
        except Exception as e:
            logger.warning(f"[ChatEvent] 연결 {connection.id} 에러 전송 실패: {e}")
