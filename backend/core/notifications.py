"""Email outbox.

enqueue() records a pending EmailJob and returns; a separate delivery worker
picks pending jobs up. Callers never wait on, or fail because of, email.
"""

from datetime import datetime, timezone

import structlog
from sqlalchemy import Column, DateTime, Integer, String, Text, select

from backend.core.database import Base, get_session

logger = structlog.get_logger(__name__)


class EmailJob(Base):
    __tablename__ = "email_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    to = Column(String, nullable=False)
    subject = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending, sent, failed
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))


class NotificationQueue:

    def __init__(self, session_factory=get_session):
        self._session_factory = session_factory

    def enqueue(self, to: str, subject: str, body: str) -> bool:
        """Queue an email. Fire-and-forget: errors are logged, never raised.

        Returns:
            True if the job was stored.
        """
        try:
            with self._session_factory() as session:
                session.add(EmailJob(to=to, subject=subject, body=body))
                session.commit()
        except Exception as e:
            logger.error("notify.enqueue_failed", to=to, error=str(e))
            return False

        logger.info("notify.enqueued", to=to, subject=subject)
        return True

    def pending(self) -> list[EmailJob]:
        with self._session_factory() as session:
            return list(session.execute(
                select(EmailJob).where(EmailJob.status == "pending").order_by(EmailJob.id)
            ).scalars().all())
