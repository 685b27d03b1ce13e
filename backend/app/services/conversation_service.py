# backend/app/services/conversation_service.py
import asyncio
import logging
import weakref
from typing import Dict, Iterable, List, Optional

from sqlalchemy import delete, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import aliased

from app.core.exceptions import Forbidden, Internal, InvalidRequest, NotFound
from app.db.models.conversation import (
    KIND_DIRECT,
    KIND_GROUP,
    STATUS_ACTIVE,
    Conversation,
    Participant,
    make_direct_key,
)
from app.db.models.message import STATUS_SENT, Message
from app.db.models.user import User
from app.schemas.chat import ConversationSummary, CreateConversationRequest, LastMessage
from app.services import user_service

logger = logging.getLogger(__name__)

class PairLocks:
    """
    1:1 대화방 생성용 정렬된 쌍 단위 락 모음.
    서버 시작 시 한 번 생성되어 app.state에 보관되며, 같은 프로세스 안의 동시 생성을 직렬화합니다.
    여러 프로세스 사이의 경쟁은 direct_key UNIQUE 제약이 막습니다.
    """

    def __init__(self):
        # 사용 중인 락만 유지 (대기자가 없으면 GC)
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def get(self, direct_key: str) -> asyncio.Lock:
        lock = self._locks.get(direct_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[direct_key] = lock
        return lock


async def get_conversation(db: AsyncSession, conversation_id: int) -> Conversation:
    conversation = await db.get(Conversation, conversation_id)
    if not conversation:
        raise NotFound(f"Conversation {conversation_id} not found")
    return conversation


async def is_active_participant(db: AsyncSession, conversation_id: int, user_id: int) -> bool:
    stmt = select(Participant.id).where(
        Participant.conversation_id == conversation_id,
        Participant.user_id == user_id,
        Participant.status == STATUS_ACTIVE,
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none() is not None


async def require_participant(db: AsyncSession, conversation_id: int, user_id: int) -> Conversation:
    """대화방이 없으면 NotFound, 활성 참여자가 아니면 Forbidden"""
    conversation = await get_conversation(db, conversation_id)
    if not await is_active_participant(db, conversation_id, user_id):
        raise Forbidden("User is not a participant of this conversation")
    return conversation


async def active_conversation_ids(db: AsyncSession, user_id: int) -> List[int]:
    """유저가 활성 참여 중인 대화방 ID 목록 (소켓 인증 시 룸 자동 입장용)"""
    stmt = select(Participant.conversation_id).where(
        Participant.user_id == user_id,
        Participant.status == STATUS_ACTIVE,
    )
    result = await db.execute(stmt)
    return sorted(set(result.scalars().all()))


async def _find_direct_id(db: AsyncSession, direct_key: str) -> Optional[int]:
    stmt = select(Conversation.id).where(
        Conversation.kind == KIND_DIRECT,
        Conversation.direct_key == direct_key,
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def _create_with_participants(
    db: AsyncSession,
    member_ids: Iterable[int],
    kind: str,
    name: Optional[str] = None,
    direct_key: Optional[str] = None,
) -> int:
    """
    대화방 + 참여자 행을 하나의 트랜잭션으로 생성합니다.
    중간에 실패하면 전부 롤백되어 참여자 없는 대화방이 남지 않습니다.
    """
    conversation = Conversation(kind=kind, name=name, direct_key=direct_key)
    db.add(conversation)
    await db.flush()
    db.add_all(
        [Participant(conversation_id=conversation.id, user_id=uid, status=STATUS_ACTIVE) for uid in member_ids]
    )
    await db.commit()
    return conversation.id


async def find_or_create_direct(db: AsyncSession, user_a: int, user_b: int, locks: PairLocks) -> int:
    """
    두 유저의 1:1 대화방 ID를 반환합니다. 없으면 새로 만듭니다.

    같은 쌍의 조회+생성은 프로세스 내 락으로 직렬화됩니다. 다른 프로세스와 경쟁해
    direct_key UNIQUE 제약에 걸리면 롤백 후 이미 생성된 행을 다시 읽습니다.
    """
    if user_a == user_b:
        raise InvalidRequest("Cannot create a conversation with yourself")

    await user_service.require_users(db, [user_a, user_b])
    direct_key = make_direct_key(user_a, user_b)

    async with locks.get(direct_key):
        existing_id = await _find_direct_id(db, direct_key)
        if existing_id is not None:
            return existing_id

        try:
            conversation_id = await _create_with_participants(
                db, (user_a, user_b), KIND_DIRECT, direct_key=direct_key
            )
        except IntegrityError:
            await db.rollback()
            existing_id = await _find_direct_id(db, direct_key)
            if existing_id is None:
                logger.error(f"[ConversationService] {direct_key} 생성 충돌 후 재조회 실패")
                raise Internal()
            logger.info(f"[ConversationService] {direct_key} 동시 생성 충돌 -> 기존 대화방 {existing_id} 사용")
            return existing_id
        except SQLAlchemyError:
            await db.rollback()
            logger.exception(f"[ConversationService] 1:1 대화방 생성 실패 ({direct_key})")
            raise Internal()

    logger.info(f"[ConversationService] 1:1 대화방 생성: {conversation_id} ({direct_key})")
    return conversation_id


async def create_group(db: AsyncSession, creator_id: int, member_ids: Iterable[int], name: Optional[str] = None) -> int:
    members = [creator_id] + [uid for uid in dict.fromkeys(member_ids) if uid != creator_id]
    if len(members) < 2:
        raise InvalidRequest("A group conversation needs at least two participants")

    await user_service.require_users(db, members)
    try:
        conversation_id = await _create_with_participants(db, members, KIND_GROUP, name=name)
    except SQLAlchemyError:
        await db.rollback()
        logger.exception(f"[ConversationService] 그룹 대화방 생성 실패 (creator={creator_id})")
        raise Internal()

    logger.info(f"[ConversationService] 그룹 대화방 생성: {conversation_id} ({len(members)}명)")
    return conversation_id


async def create_conversation(db: AsyncSession, req: CreateConversationRequest, locks: PairLocks) -> int:
    if req.tipo == KIND_GROUP:
        others = list(req.participantes)
        if req.outroUsuarioId is not None:
            others.insert(0, req.outroUsuarioId)
        return await create_group(db, req.usuarioId, others, req.nome)

    # "individual"은 이전 클라이언트의 direct 표기
    if req.outroUsuarioId is None:
        raise InvalidRequest("outroUsuarioId is required for a direct conversation")
    return await find_or_create_direct(db, req.usuarioId, req.outroUsuarioId, locks)


async def list_for_user(db: AsyncSession, user_id: int) -> List[ConversationSummary]:
    """
    유저가 활성 참여 중인 대화방 요약 목록.
    마지막 메시지 시각 내림차순, 메시지가 없는 대화방은 맨 뒤.
    """
    conv_stmt = (
        select(Conversation)
        .join(Participant, Participant.conversation_id == Conversation.id)
        .where(Participant.user_id == user_id, Participant.status == STATUS_ACTIVE)
    )
    conversations = (await db.execute(conv_stmt)).scalars().unique().all()
    if not conversations:
        return []
    ids = [c.id for c in conversations]

    # 상대방 프로필 (활성 참여자 중 본인 제외)
    others_stmt = (
        select(Participant.conversation_id, User)
        .join(User, User.id == Participant.user_id)
        .where(
            Participant.conversation_id.in_(ids),
            Participant.user_id != user_id,
            Participant.status == STATUS_ACTIVE,
        )
        .order_by(Participant.id)
    )
    others: Dict[int, User] = {}
    for conversation_id, other in (await db.execute(others_stmt)).all():
        others.setdefault(conversation_id, other)

    # 대화방별 마지막 메시지
    ranked = select(
        Message,
        func.row_number()
        .over(
            partition_by=Message.conversation_id,
            order_by=(Message.sent_at.desc(), Message.id.desc()),
        )
        .label("rn"),
    ).where(Message.conversation_id.in_(ids)).subquery()
    last_alias = aliased(Message, ranked)
    last_rows = (await db.execute(select(last_alias).where(ranked.c.rn == 1))).scalars().all()
    last_messages: Dict[int, Message] = {m.conversation_id: m for m in last_rows}

    # 안 읽은 메시지 수 (타인이 보낸 sent 상태)
    unread_stmt = (
        select(Message.conversation_id, func.count(Message.id))
        .where(
            Message.conversation_id.in_(ids),
            Message.user_id != user_id,
            Message.status == STATUS_SENT,
        )
        .group_by(Message.conversation_id)
    )
    unread: Dict[int, int] = dict((await db.execute(unread_stmt)).all())

    summaries = []
    for conv in conversations:
        other = others.get(conv.id) if conv.kind == KIND_DIRECT else None
        last = last_messages.get(conv.id)
        summaries.append(
            ConversationSummary(
                id=conv.id,
                tipo=conv.kind,
                nome=conv.name,
                data_criacao=conv.created_at,
                outro_usuario=user_service.to_public(other) if other else None,
                ultima_mensagem=LastMessage(
                    id=last.id,
                    conteudo=last.content,
                    data_envio=last.sent_at,
                    usuario_id=last.user_id,
                ) if last else None,
                nao_lidas=unread.get(conv.id, 0),
            )
        )

    with_messages = [s for s in summaries if s.ultima_mensagem]
    without_messages = [s for s in summaries if not s.ultima_mensagem]
    with_messages.sort(key=lambda s: (s.ultima_mensagem.data_envio, s.ultima_mensagem.id), reverse=True)
    without_messages.sort(key=lambda s: (s.data_criacao, s.id), reverse=True)
    return with_messages + without_messages


async def delete_conversation(db: AsyncSession, conversation_id: int, requesting_user_id: int) -> None:
    """
    활성 참여자만 삭제 가능. 메시지 -> 참여자 -> 대화방 순서로 한 트랜잭션에서 삭제합니다.
    """
    await require_participant(db, conversation_id, requesting_user_id)

    try:
        await db.execute(delete(Message).where(Message.conversation_id == conversation_id))
        await db.execute(delete(Participant).where(Participant.conversation_id == conversation_id))
        await db.execute(delete(Conversation).where(Conversation.id == conversation_id))
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception(f"[ConversationService] 대화방 {conversation_id} 삭제 실패")
        raise Internal()

    logger.info(f"[ConversationService] 대화방 {conversation_id} 삭제 (by user {requesting_user_id})")
