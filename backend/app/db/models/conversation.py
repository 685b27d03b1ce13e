# backend/app/db/models/conversation.py
from sqlalchemy import Integer, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.db.database import Base
from datetime import datetime
from typing import Optional, List, TYPE_CHECKING

if TYPE_CHECKING:
    from app.db.models.user import User

KIND_DIRECT = "direct"
KIND_GROUP = "group"

STATUS_ACTIVE = "active"
STATUS_LEFT = "left"


def make_direct_key(user_a: int, user_b: int) -> str:
    """정렬된 참여자 쌍 -> "작은ID:큰ID" (1:1 대화방 유일성 키)"""
    low, high = sorted((int(user_a), int(user_b)))
    return f"{low}:{high}"


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    kind: Mapped[str] = mapped_column(String(20), default=KIND_DIRECT, nullable=False) # direct, group
    name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True) # group 전용
    # direct 대화방만 값을 가짐. UNIQUE 인덱스가 동시 생성 경쟁을 막는다.
    direct_key: Mapped[Optional[str]] = mapped_column(String(50), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    participants: Mapped[List["Participant"]] = relationship(
        "Participant",
        back_populates="conversation",
    )


class Participant(Base):
    __tablename__ = "participants"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_participant_conversation_user"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    conversation_id: Mapped[int] = mapped_column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default=STATUS_ACTIVE, nullable=False) # active, left
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    conversation: Mapped["Conversation"] = relationship("Conversation", back_populates="participants")
    user: Mapped["User"] = relationship("User")
