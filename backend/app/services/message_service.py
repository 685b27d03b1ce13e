# backend/app/services/message_service.py
import logging
from typing import List

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.core.exceptions import Internal, InvalidRequest
from app.db.models.message import STATUS_READ, STATUS_SENT, Message
from app.db.models.user import User
from app.schemas.chat import MessageRead
from app.services import conversation_service, user_service

logger = logging.getLogger(__name__)


def to_message_read(message: Message, sender: User | None = None) -> MessageRead:
    return MessageRead(
        id=message.id,
        conversa_id=message.conversation_id,
        usuario_id=message.user_id,
        conteudo=message.content,
        data_envio=message.sent_at,
        status=message.status,
        usuario_nome=sender.name if sender else None,
        foto_perfil=sender.profile_photo if sender else None,
    )


async def append(db: AsyncSession, conversation_id: int, sender_id: int, content: str) -> Message:
    """
    메시지를 저장합니다 (status=sent). 메시지에는 첨부 파일 경로가 없으므로 빈 내용은 거부합니다.
    """
    if content is None or not content.strip():
        raise InvalidRequest("Message content must not be empty")

    await conversation_service.require_participant(db, conversation_id, sender_id)

    message = Message(
        conversation_id=conversation_id,
        user_id=sender_id,
        content=content,
        status=STATUS_SENT,
    )
    db.add(message)
    try:
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception(f"[MessageService] 메시지 저장 실패 (User {sender_id} -> Conversation {conversation_id})")
        raise Internal()
    await db.refresh(message)
    return message


async def send_message(db: AsyncSession, conversation_id: int, sender_id: int, content: str) -> MessageRead:
    """
    REST와 라이브 채널이 공유하는 단일 전송 경로: 저장 + 발신자 프로필 조회
    """
    message = await append(db, conversation_id, sender_id, content)
    sender = await user_service.get_user(db, sender_id)
    logger.info(f"[MessageService] 메시지 {message.id} 저장 (Conversation {conversation_id}, User {sender_id})")
    return to_message_read(message, sender)


async def history(db: AsyncSession, conversation_id: int) -> List[MessageRead]:
    """
    전체 대화 기록. 전송 시각 오름차순, 같은 시각이면 ID(삽입 순서) 순.
    """
    await conversation_service.get_conversation(db, conversation_id)

    stmt = (
        select(Message, User)
        .join(User, User.id == Message.user_id)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.sent_at.asc(), Message.id.asc())
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return [to_message_read(message, sender) for message, sender in result.all()]


async def mark_read(db: AsyncSession, conversation_id: int, reader_id: int) -> int:
    """
    reader가 아닌 사람이 보낸 sent 메시지를 read로 전환합니다.
    전환할 메시지가 없으면 0을 반환하는 no-op 입니다.
    """
    await conversation_service.require_participant(db, conversation_id, reader_id)

    stmt = (
        update(Message)
        .where(
            Message.conversation_id == conversation_id,
            Message.user_id != reader_id,
            Message.status == STATUS_SENT,
        )
        .values(status=STATUS_READ)
        .execution_options(synchronize_session=False)
    )
    try:
        result = await db.execute(stmt)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception(f"[MessageService] 읽음 처리 실패 (Conversation {conversation_id}, User {reader_id})")
        raise Internal()

    if result.rowcount:
        logger.debug(f"[MessageService] {result.rowcount}개 메시지 읽음 처리 (Conversation {conversation_id}, User {reader_id})")
    return result.rowcount or 0


async def unread_count(db: AsyncSession, conversation_id: int, user_id: int) -> int:
    stmt = select(func.count(Message.id)).where(
        Message.conversation_id == conversation_id,
        Message.user_id != user_id,
        Message.status == STATUS_SENT,
    )
    result = await db.execute(stmt)
    return result.scalar_one()
