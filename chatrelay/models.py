"""
SQLAlchemy ORM models for the local history tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py; for the queue wire
format, see envelope.py.
"""

from sqlalchemy import Boolean, Column, ForeignKey, String, Text
from sqlalchemy.orm import declarative_base

# Base class for SQLAlchemy models
Base = declarative_base()


class Chat(Base):
    """
    One conversation, 1:1 or group.

    Table: chats
    Primary Key: jid
    """
    __tablename__ = "chats"

    jid = Column(String, primary_key=True)
    name = Column(String, nullable=True)
    last_message_time = Column(String, nullable=True, index=True)  # ISO-8601 UTC string


class Message(Base):
    """
    A text message inside a chat.

    Table: messages
    Primary Key: (id, chat_jid) - re-inserting the same pair replaces the row
    """
    __tablename__ = "messages"

    id = Column(String, primary_key=True)
    chat_jid = Column(String, ForeignKey("chats.jid"), primary_key=True)
    sender = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    timestamp = Column(String, nullable=False, index=True)  # ISO-8601 UTC string
    is_from_me = Column(Boolean, nullable=False, default=False)
