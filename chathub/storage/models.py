# chathub/storage/models.py
from __future__ import annotations

from datetime import datetime, UTC

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    title = Column(String(256), nullable=False, default="New Chat")
    last_seq = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, index=True)

    messages = relationship("Message", back_populates="conversation", order_by="Message.seq")

    __table_args__ = (
        Index("ix_conversations_user_updated", "user_id", "updated_at"),
    )


class Message(Base):
    __tablename__ = "messages"

    id = Column(String(64), primary_key=True)
    conversation_id = Column(String(64), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    seq = Column(Integer, nullable=False, default=0)
    sender = Column(String(16), nullable=False)  # user|model
    prompt = Column(Text, nullable=True)
    text = Column(Text, nullable=False, default="")
    model = Column(String(128), nullable=True, index=True)
    model_name = Column(String(256), nullable=True)
    status = Column(String(16), nullable=False, default="pending", index=True)
    error = Column(Text, nullable=True)

    # token usage (optional)
    prompt_tokens = Column(Integer, nullable=True)
    completion_tokens = Column(Integer, nullable=True)
    total_tokens = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow)

    conversation = relationship("Conversation", back_populates="messages")
    chunks = relationship("MessageChunk", order_by="MessageChunk.id")

    __table_args__ = (
        CheckConstraint("sender in ('user','model')", name="ck_messages_sender"),
        CheckConstraint("status in ('pending','streaming','done','error')", name="ck_messages_status"),
        Index("ix_messages_conversation_seq", "conversation_id", "seq"),
    )


class MessageChunk(Base):
    """Pending streaming fragment; emission order is the autoincrement id."""

    __tablename__ = "message_chunks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String(64), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True)
    text = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class AvailableModel(Base):
    __tablename__ = "available_models"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(128), nullable=False, unique=True)
    display_name = Column(String(256), nullable=True)
    description = Column(Text, nullable=True)
    provider = Column(String(64), nullable=False, default="ollama", index=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ProviderKey(Base):
    __tablename__ = "provider_keys"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(64), nullable=False)
    api_key = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    usage_count = Column(Integer, nullable=False, default=0)
    last_used_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_provider_keys_user_provider"),
    )
