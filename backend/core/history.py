"""Append-only chat history per (user, session).

A ChatSession row is created on the first turn and messages are only ever
inserted after it; ordering is the autoincrement id. Sessions older than the
retention window are deleted wholesale.
"""

from datetime import datetime, timezone

import structlog
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    delete,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.api.schemas import MessageRecord
from backend.core.database import Base, get_session

logger = structlog.get_logger(__name__)


class ChatSession(Base):
    """One conversation, owned by a user."""
    __tablename__ = "chat_sessions"
    __table_args__ = (UniqueConstraint("user_id", "session_id", name="uq_chat_user_session"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    session_id = Column(String, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))


class ChatMessage(Base):
    """Persistent chat message row. Never updated after insert."""
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(Integer, ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String, nullable=False)  # "human" or "ai"
    content = Column(Text, nullable=False)
    tool_calls = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))


class ChatHistoryStore:
    """Chat history reads and writes over a SQLAlchemy session factory."""

    def __init__(self, session_factory=get_session):
        self._session_factory = session_factory

    def find_session(self, user_id: str, session_id: str) -> list[MessageRecord]:
        """Full message list of a session, oldest first. Empty if the session doesn't exist."""
        with self._session_factory() as session:
            rows = session.execute(
                select(ChatMessage)
                .join(ChatSession, ChatMessage.chat_id == ChatSession.id)
                .where(ChatSession.user_id == user_id, ChatSession.session_id == session_id)
                .order_by(ChatMessage.id.asc())
            ).scalars().all()
            return [_row_to_record(r) for r in rows]

    def recent_messages(self, user_id: str, session_id: str, limit: int = 10) -> list[MessageRecord]:
        """Fetch the most recent messages for a session.

        Args:
            user_id: Owner of the session.
            session_id: Conversation identifier.
            limit: Max number of messages to return.

        Returns:
            List of MessageRecord ordered oldest-first.
        """
        with self._session_factory() as session:
            rows = session.execute(
                select(ChatMessage)
                .join(ChatSession, ChatMessage.chat_id == ChatSession.id)
                .where(ChatSession.user_id == user_id, ChatSession.session_id == session_id)
                .order_by(ChatMessage.id.desc())
                .limit(limit)
            ).scalars().all()
            rows = list(rows)
            # Reverse to get chronological order (oldest first)
            rows.reverse()
            return [_row_to_record(r) for r in rows]

    def upsert_append(self, user_id: str, session_id: str, messages: list[dict]) -> None:
        """Create the session if absent, then append messages, in one transaction.

        Args:
            user_id: Owner of the session.
            session_id: Conversation identifier.
            messages: Dicts with 'role', 'content' and optional 'tool_calls'.
        """
        with self._session_factory() as session:
            chat = self._get_or_create(session, user_id, session_id)
            now = datetime.now(timezone.utc)
            for msg in messages:
                session.add(ChatMessage(
                    chat_id=chat.id,
                    role=msg["role"],
                    content=msg["content"],
                    tool_calls=msg.get("tool_calls") or [],
                    created_at=now,
                ))
            session.commit()
        logger.debug("history.appended", session_id=session_id, count=len(messages))

    def delete_older_than(self, user_id: str, cutoff: datetime) -> int:
        """Delete the user's sessions created before cutoff, with their messages.

        Returns:
            Number of sessions removed.
        """
        cutoff = _naive_utc(cutoff)
        with self._session_factory() as session:
            stale_ids = session.execute(
                select(ChatSession.id).where(
                    ChatSession.user_id == user_id, ChatSession.created_at < cutoff,
                )
            ).scalars().all()
            if not stale_ids:
                return 0
            session.execute(delete(ChatMessage).where(ChatMessage.chat_id.in_(stale_ids)))
            session.execute(delete(ChatSession).where(ChatSession.id.in_(stale_ids)))
            session.commit()

        logger.info("history.pruned", user_id=user_id, sessions=len(stale_ids))
        return len(stale_ids)

    def list_sessions(self, user_id: str) -> list[str]:
        """Session ids owned by the user, newest first."""
        with self._session_factory() as session:
            return list(session.execute(
                select(ChatSession.session_id)
                .where(ChatSession.user_id == user_id)
                .order_by(ChatSession.created_at.desc(), ChatSession.id.desc())
            ).scalars().all())

    def _get_or_create(self, session: Session, user_id: str, session_id: str) -> ChatSession:
        stmt = select(ChatSession).where(
            ChatSession.user_id == user_id, ChatSession.session_id == session_id,
        )
        chat = session.execute(stmt).scalar_one_or_none()
        if chat is not None:
            return chat

        chat = ChatSession(user_id=user_id, session_id=session_id)
        session.add(chat)
        try:
            session.flush()
        except IntegrityError:
            # A concurrent turn created it between our select and insert
            session.rollback()
            chat = session.execute(stmt).scalar_one()
        return chat


def _naive_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; compare in naive UTC
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _row_to_record(row: ChatMessage) -> MessageRecord:
    """Convert a SQLAlchemy row to a Pydantic MessageRecord."""
    return MessageRecord(
        role=row.role,
        content=row.content,
        tool_calls=row.tool_calls or [],
        timestamp=row.created_at,
    )
