"""Audit log tables"""
from sqlalchemy import Column, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class SessionRecord(Base):
    """One row per session ever started"""
    __tablename__ = "sessions"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    user_name = Column(String(255), nullable=False)
    channel_id = Column(String(64), nullable=False)
    thread_ts = Column(String(64), nullable=False)
    project_path = Column(String(500), nullable=False)
    status = Column(String(32), nullable=False, default="active")
    created_at = Column(String(40), nullable=False, index=True)
    ended_at = Column(String(40), nullable=True)
    exit_code = Column(Integer, nullable=True)


class MessageRecord(Base):
    """One row per message exchanged inside a session"""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), ForeignKey("sessions.id"), nullable=False, index=True)
    role = Column(String(16), nullable=False)
    content = Column(Text, nullable=False)
    timestamp = Column(String(40), nullable=False, index=True)
