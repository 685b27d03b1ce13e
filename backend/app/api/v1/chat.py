# backend/app/api/v1/chat.py
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from app.db.database import get_db
from app.realtime.chat_event_handler import ChatEventHandler
from app.schemas.chat import (
    ChatStatus,
    ConversationCreated,
    ConversationSummary,
    CreateConversationRequest,
    DeleteConversationRequest,
    DeleteResult,
    DirectConversationRequest,
    DirectConversationResponse,
    MessageRead,
    SendMessageRequest,
    UnreadCount,
)
from app.schemas.user import UserPublic
from app.services import conversation_service, message_service, user_service
from app.services.conversation_service import PairLocks

router = APIRouter()


def get_chat_handler(request: Request) -> ChatEventHandler:
    return request.app.state.chat_handler


def get_pair_locks(request: Request) -> PairLocks:
    return request.app.state.pair_locks


@router.get("/status", response_model=ChatStatus)
async def get_chat_status(handler: ChatEventHandler = Depends(get_chat_handler)):
    """
    채팅 서버의 현재 상태를 확인합니다.
    """
    return ChatStatus(
        status="online",
        active_connections=handler.registry.connection_count,
        authenticated_users=handler.registry.authenticated_user_count,
    )


@router.post("/conversa", response_model=DirectConversationResponse)
async def get_or_create_conversation(
    req: DirectConversationRequest,
    db: AsyncSession = Depends(get_db),
    locks: PairLocks = Depends(get_pair_locks),
    handler: ChatEventHandler = Depends(get_chat_handler),
):
    """두 유저의 1:1 대화방을 조회하거나 생성합니다."""
    conversation_id = await conversation_service.find_or_create_direct(db, req.usuario1_id, req.usuario2_id, locks)
    await handler.notify_conversation_ready(conversation_id, (req.usuario1_id, req.usuario2_id))
    return DirectConversationResponse(conversa_id=conversation_id)


@router.get("/conversas/{usuario_id}", response_model=List[ConversationSummary])
async def list_conversations(usuario_id: int, db: AsyncSession = Depends(get_db)):
    """유저의 대화방 목록 (마지막 메시지, 안 읽은 수 포함)"""
    return await conversation_service.list_for_user(db, usuario_id)


@router.get("/conversas/{usuario_id}/{conversa_id}/nao-lidas", response_model=UnreadCount)
async def get_unread_count(usuario_id: int, conversa_id: int, db: AsyncSession = Depends(get_db)):
    await conversation_service.require_participant(db, conversa_id, usuario_id)
    count = await message_service.unread_count(db, conversa_id, usuario_id)
    return UnreadCount(conversa_id=conversa_id, nao_lidas=count)


@router.get("/mensagens/{conversa_id}", response_model=List[MessageRead])
async def get_messages(
    conversa_id: int,
    usuarioId: int = Query(...),
    db: AsyncSession = Depends(get_db),
    handler: ChatEventHandler = Depends(get_chat_handler),
):
    """
    대화 기록 조회. 조회한 유저 기준으로 상대방 메시지를 읽음 처리합니다.
    """
    marked = await message_service.mark_read(db, conversa_id, usuarioId)
    if marked:
        await handler.publish_read(conversa_id, usuarioId)
    return await message_service.history(db, conversa_id)


@router.post("/enviar", response_model=MessageRead)
async def send_message(
    req: SendMessageRequest,
    db: AsyncSession = Depends(get_db),
    handler: ChatEventHandler = Depends(get_chat_handler),
):
    """라이브 채널 send_message와 같은 전송 경로를 사용하는 REST 래퍼"""
    message = await message_service.send_message(db, req.conversa_id, req.usuario_id, req.conteudo)
    await handler.publish_message(message, legacy_alias=True)
    return message


@router.get("/usuarios/buscar", response_model=List[UserPublic])
async def search_users(
    usuarioId: int = Query(...),
    termo: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    """새 대화 상대 검색 (본인 제외)"""
    return await user_service.search_users(db, termo, usuarioId)


@router.post("/conversas/criar", response_model=ConversationCreated)
async def create_conversation(
    req: CreateConversationRequest,
    db: AsyncSession = Depends(get_db),
    locks: PairLocks = Depends(get_pair_locks),
    handler: ChatEventHandler = Depends(get_chat_handler),
):
    conversation_id = await conversation_service.create_conversation(db, req, locks)
    members = [req.usuarioId, *([req.outroUsuarioId] if req.outroUsuarioId is not None else []), *req.participantes]
    await handler.notify_conversation_ready(conversation_id, dict.fromkeys(members))
    return ConversationCreated(id=conversation_id)


@router.delete("/conversas/{conversa_id}", response_model=DeleteResult)
async def delete_conversation(
    conversa_id: int,
    req: DeleteConversationRequest,
    db: AsyncSession = Depends(get_db),
):
    """참여자만 삭제할 수 있습니다 (아니면 403)."""
    await conversation_service.delete_conversation(db, conversa_id, req.usuarioId)
    return DeleteResult()
