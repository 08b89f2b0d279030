from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    password = Column(String(100), nullable=False)
    avatar = Column(String(255), nullable=True)
    bio = Column(String(100), nullable=True)
    is_online = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    memberships = relationship("ChatUser", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
    messages = relationship("Message", back_populates="author", cascade="all, delete-orphan", passive_deletes=True)


class Chat(Base):
    __tablename__ = "chats"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(100), nullable=True)
    description = Column(String(100), nullable=True)
    group_avatar = Column(String(255), nullable=True)
    is_group_chat = Column(Boolean, default=False, nullable=False)
    # Canonical member-set signature, see chats.member_key()
    member_key = Column(Text, unique=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    members = relationship("ChatUser", back_populates="chat", cascade="all, delete-orphan", passive_deletes=True)
    messages = relationship("Message", back_populates="chat", cascade="all, delete-orphan", passive_deletes=True)


class ChatUser(Base):
    __tablename__ = "chat_users"

    chat_id = Column(Integer, ForeignKey("chats.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, index=True)
    is_favourite = Column(Boolean, default=False, nullable=False)
    added_at = Column(DateTime, default=datetime.utcnow)

    chat = relationship("Chat", back_populates="members")
    user = relationship("User", back_populates="memberships")


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    chat_id = Column(Integer, ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    message = Column(Text, nullable=False)
    is_image = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    chat = relationship("Chat", back_populates="messages")
    author = relationship("User", back_populates="messages")


class ReadReceipt(Base):
    __tablename__ = "read_receipts"

    message_id = Column(Integer, ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, index=True)
    read_at = Column(DateTime, default=datetime.utcnow, nullable=False)
