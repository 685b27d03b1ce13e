"""Live channel frames and per-event payloads."""
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional


class InboundFrame(BaseModel):
    """Client -> Server: {"event": "...", "data": {...}}"""

    event: str
    data: Dict[str, Any] = Field(default_factory=dict)


class OutboundFrame(BaseModel):
    """Server -> Client"""

    event: str
    data: Dict[str, Any] = Field(default_factory=dict)


class EventPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class AuthenticatePayload(EventPayload):
    user_id: int = Field(validation_alias=AliasChoices("userId", "user_id"))
    token: Optional[str] = None


class ConversationPayload(EventPayload):
    conversation_id: int = Field(
        validation_alias=AliasChoices("conversationId", "conversaId", "conversation_id")
    )


class SendMessagePayload(ConversationPayload):
    content: str = Field(validation_alias=AliasChoices("content", "conteudo"))
