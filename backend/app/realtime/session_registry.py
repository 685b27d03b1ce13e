# backend/app/realtime/session_registry.py
import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Set

from app.schemas.events import OutboundFrame

logger = logging.getLogger(__name__)


def conversation_room(conversation_id: int) -> str:
    return f"conversation_{conversation_id}"


def user_room(user_id: int) -> str:
    return f"user_{user_id}"


class ConnectionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    IDLE = "idle"
    IN_CONVERSATION = "in_conversation"
    CLOSED = "closed"


class LiveConnection:
    """
    라이브 채널 연결 하나. 인증 시 user_id가 묶이고, 입장한 룸 목록을 가집니다.
    프로세스 메모리에만 존재하며 연결마다 새로 만들어집니다.
    """

    def __init__(self, websocket, connection_id: Optional[str] = None):
        self.id = connection_id or uuid.uuid4().hex
        self.websocket = websocket
        self.user_id: Optional[int] = None
        self.rooms: Set[str] = set()
        self.closed = False

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def state(self) -> ConnectionState:
        if self.closed:
            return ConnectionState.CLOSED
        if not self.authenticated:
            return ConnectionState.UNAUTHENTICATED
        if any(room.startswith("conversation_") for room in self.rooms):
            return ConnectionState.IN_CONVERSATION
        return ConnectionState.IDLE

    async def send(self, event: str, data: Dict[str, Any]) -> None:
        frame = OutboundFrame(event=event, data=data)
        await self.websocket.send_json(frame.model_dump(mode="json"))


class SessionRegistry:
    """
    연결 <-> 유저/룸 매핑. 서버 시작 시 한 번 생성되어 app.state에 보관됩니다.

    모든 변경은 이벤트 루프 안에서만 일어나므로 별도 락이 없습니다.
    """

    def __init__(self):
        self.connections: Dict[str, LiveConnection] = {}
        self.rooms: Dict[str, Set[str]] = {}

    # --- Lifecycle ---

    def connect(self, websocket) -> LiveConnection:
        connection = LiveConnection(websocket)
        self.connections[connection.id] = connection
        logger.info(f"[SessionRegistry] 연결 {connection.id} 등록. 현재 접속: {len(self.connections)}")
        return connection

    def authenticate(self, connection: LiveConnection, user_id: int, conversation_ids: Iterable[int]) -> None:
        """
        신원을 묶고 개인 룸과 현재 참여 중인 대화방 룸에 자동 입장시킵니다.
        이후 생성된 대화방은 join으로 명시적으로 입장해야 합니다.
        """
        connection.user_id = user_id
        self._add(connection, user_room(user_id))
        for conversation_id in conversation_ids:
            self._add(connection, conversation_room(conversation_id))
        logger.info(
            f"[SessionRegistry] 유저 {user_id} 인증 (연결 {connection.id}, 룸 {len(connection.rooms)}개)"
        )

    def forget(self, connection: LiveConnection) -> None:
        """연결 종료: 모든 룸에서 제거. 기록은 남기지 않습니다."""
        for room in list(connection.rooms):
            self._discard(connection, room)
        self.connections.pop(connection.id, None)
        connection.closed = True
        logger.info(f"[SessionRegistry] 연결 {connection.id} 해제 (User {connection.user_id})")

    # --- Rooms ---

    def join(self, connection: LiveConnection, conversation_id: int) -> None:
        self._add(connection, conversation_room(conversation_id))

    def leave(self, connection: LiveConnection, conversation_id: int) -> None:
        self._discard(connection, conversation_room(conversation_id))

    def members(self, room: str) -> Set[str]:
        return set(self.rooms.get(room, ()))

    def _add(self, connection: LiveConnection, room: str) -> None:
        self.rooms.setdefault(room, set()).add(connection.id)
        connection.rooms.add(room)

    def _discard(self, connection: LiveConnection, room: str) -> None:
        members = self.rooms.get(room)
        if members is not None:
            members.discard(connection.id)
            if not members:
                del self.rooms[room]
        connection.rooms.discard(room)

    # --- Fan-out ---

    async def emit_to_room(self, room: str, event: str, payload: Dict[str, Any]) -> int:
        """
        룸의 모든 연결에 동시에 전송. best-effort: 확인/재시도 없이 실패한 연결은 건너뜁니다.
        느린 연결 하나가 같은 룸의 다른 연결 전달을 지연시키지 않습니다.
        """
        # 전송 중(await) 다른 코루틴이 룸을 바꿀 수 있으므로 스냅샷을 순회
        targets = [
            connection
            for connection in (self.connections.get(cid) for cid in list(self.rooms.get(room, ())))
            if connection is not None
        ]
        results = await asyncio.gather(
            *(connection.send(event, payload) for connection in targets),
            return_exceptions=True,
        )

        delivered = 0
        for connection, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(f"[SessionRegistry] {room} -> 연결 {connection.id} 전송 실패: {result}")
            else:
                delivered += 1
        return delivered

    async def broadcast(self, conversation_id: int, event: str, payload: Dict[str, Any]) -> int:
        return await self.emit_to_room(conversation_room(conversation_id), event, payload)

    async def send_to_user(self, user_id: int, event: str, payload: Dict[str, Any]) -> int:
        return await self.emit_to_room(user_room(user_id), event, payload)

    # --- Status ---

    @property
    def connection_count(self) -> int:
        return len(self.connections)

    @property
    def authenticated_user_count(self) -> int:
        return len({c.user_id for c in self.connections.values() if c.authenticated})
