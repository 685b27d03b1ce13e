# backend/app/db/models/message.py
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Index
from app.db.database import Base
from datetime import datetime

STATUS_SENT = "sent"
STATUS_READ = "read"

class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_order", "conversation_id", "sent_at", "id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    sent_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    status = Column(String(10), default=STATUS_SENT, nullable=False) # sent -> read (단방향)
