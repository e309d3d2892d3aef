from sqlalchemy import Column, BigInteger, Integer, String, Enum, DateTime, Text, Index
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime, timezone
from models.base import Base, FaultCategory, FaultSeverity, DeferredStatus


def _utcnow():
    return datetime.now(timezone.utc)


class DeferredOperation(Base):
    """
    Work handed off by the queue recovery strategy.

    Purpose:
    - Keep failed operations durable so they can be replayed later
    - Audit trail of what was deferred and why
    """
    __tablename__ = "deferred_operations"

    id = Column(BigInteger, primary_key=True, autoincrement=True)

    # What was attempted
    operation = Column(String(100), nullable=False, index=True)
    item_key = Column(String(255), nullable=True, index=True)
    payload = Column(JSONB, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)

    # Why it was deferred
    category = Column(Enum(FaultCategory), nullable=False)
    severity = Column(Enum(FaultSeverity), nullable=False)
    fault_summary = Column(Text, nullable=True)

    status = Column(Enum(DeferredStatus), default=DeferredStatus.PENDING, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)

    __table_args__ = (
        Index("idx_deferred_status_created", "status", "created_at"),
    )
