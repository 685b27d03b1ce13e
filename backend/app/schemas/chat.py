# backend/app/schemas/chat.py
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import List, Literal, Optional

from app.schemas.user import UserPublic

# --- Requests ---

class ChatRequest(BaseModel):
    # 알 수 없는 필드가 섞인 요청은 비즈니스 로직 전에 거부합니다.
    model_config = ConfigDict(extra="forbid")

class DirectConversationRequest(ChatRequest):
    usuario1_id: int
    usuario2_id: int

class CreateConversationRequest(ChatRequest):
    usuarioId: int
    outroUsuarioId: Optional[int] = None
    tipo: Literal["direct", "individual", "group"] = "direct"
    nome: Optional[str] = Field(None, max_length=100)
    participantes: List[int] = Field(default_factory=list) # group 전용 추가 멤버

class SendMessageRequest(ChatRequest):
    conversa_id: int
    usuario_id: int
    conteudo: str

class DeleteConversationRequest(ChatRequest):
    usuarioId: int

# --- Responses ---

class DirectConversationResponse(BaseModel):
    conversa_id: int

class ConversationCreated(BaseModel):
    id: int

class MessageRead(BaseModel):
    id: int
    conversa_id: int
    usuario_id: int
    conteudo: str
    data_envio: datetime
    status: str
    usuario_nome: Optional[str] = None
    foto_perfil: Optional[str] = None

class LastMessage(BaseModel):
    id: int
    conteudo: str
    data_envio: datetime
    usuario_id: int

class ConversationSummary(BaseModel):
    id: int
    tipo: str
    nome: Optional[str] = None
    data_criacao: datetime
    outro_usuario: Optional[UserPublic] = None
    ultima_mensagem: Optional[LastMessage] = None
    nao_lidas: int = 0

class UnreadCount(BaseModel):
    conversa_id: int
    nao_lidas: int

class DeleteResult(BaseModel):
    success: bool = True
    message: str = "Conversation deleted"

class ChatStatus(BaseModel):
    status: str
    active_connections: int
    authenticated_users: int
