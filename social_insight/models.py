"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic schemas, see schemas.py.
"""

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from social_insight.storage import Base


class Conversation(Base):
    """
    A chat thread: a group or a one-to-one contact exchange.

    Table: conversations
    Unique: wa_id (provider identifier, never changes once created)
    """
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wa_id = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=True)
    channel = Column(String, nullable=True)
    avatar_url = Column(Text, nullable=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601
    updated_at = Column(String, nullable=False)  # Server time ISO-8601
    last_message_at = Column(String, nullable=True, index=True)  # ISO-8601 UTC string

    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Message(Base):
    """
    A message owned by exactly one conversation.

    Table: messages
    Ordering within a conversation: sent_at ASC, id ASC
    wa_message_id is not unique: replayed events produce duplicate rows.
    """
    __tablename__ = "messages"
    __table_args__ = (
        Index("idx_messages_conversation_id_sent_at", "conversation_id", "sent_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(
        Integer,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    wa_message_id = Column(String, nullable=True, index=True)
    sender_name = Column(String, nullable=True)
    sender_phone = Column(String, nullable=True)
    message_type = Column(String, nullable=True)
    message_body = Column(Text, nullable=False)
    is_from_me = Column(Boolean, nullable=False, default=False)
    sent_at = Column(String, nullable=False)  # ISO-8601 UTC string
    media_path = Column(String, nullable=True)  # relative to MEDIA_STORAGE_PATH
    media_mime_type = Column(String, nullable=True)
    media_size = Column(Integer, nullable=True)
    media_duration = Column(Integer, nullable=True)
    media_caption = Column(Text, nullable=True)
    media_filename = Column(String, nullable=True)
    raw_payload = Column(Text, nullable=True)  # verbatim provider record as JSON
    created_at = Column(String, nullable=False)  # Server time ISO-8601

    conversation = relationship("Conversation", back_populates="messages")
