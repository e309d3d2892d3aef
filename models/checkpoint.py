from sqlalchemy import Column, Integer, String, Enum, DateTime, Index
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime, timezone
from models.base import Base, ImportPhase


def _utcnow():
    return datetime.now(timezone.utc)


class ImportCheckpoint(Base):
    """
    Tracks resume state per import session.

    Purpose:
    - Resume an import exactly after the last processed item
    - Survive process restarts between pause and resume

    Design:
    - One row per session id, overwritten after every chunk
    - query stores the serialized query specification the session ran with
    """
    __tablename__ = "import_checkpoints"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), nullable=False)

    # Resume state
    processed_count = Column(Integer, nullable=False, default=0)
    last_key = Column(String(255), nullable=True)
    query = Column(JSONB, nullable=False)
    batch_size = Column(Integer, nullable=False)
    phase = Column(Enum(ImportPhase), default=ImportPhase.IMPORTING, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("idx_checkpoint_session", "session_id", unique=True),
    )
