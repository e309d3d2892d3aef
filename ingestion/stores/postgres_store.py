"""
PostgreSQL durable store.

Persists import checkpoints and deferred operations through an async
SQLAlchemy session.

Features:
- One checkpoint row per session, overwritten after every chunk
- Commit per write so a crash never loses an acknowledged checkpoint
- Deferred operations kept with their JSONB payload for later replay
"""

from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ingestion.interfaces import DurableStore
from models.base import DeferredStatus
from models.checkpoint import ImportCheckpoint
from models.deferred_operation import DeferredOperation
from schemas.sync import Checkpoint, DeferredOperationDescriptor, QuerySpec
import logging

logger = logging.getLogger(__name__)


class PostgresStore(DurableStore):
    """
    Durable store backed by the ``import_checkpoints`` and
    ``deferred_operations`` tables.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def _get_row(self, session_id: str) -> Optional[ImportCheckpoint]:
        result = await self.db.execute(
            select(ImportCheckpoint).where(ImportCheckpoint.session_id == session_id)
        )
        return result.scalar_one_or_none()

    async def save_checkpoint(self, session_id: str, checkpoint: Checkpoint) -> None:
        """Create or update the session's checkpoint row"""
        row = await self._get_row(session_id)
        query = checkpoint.query.model_dump(mode="json")

        if row is None:
            row = ImportCheckpoint(
                session_id=session_id,
                processed_count=checkpoint.processed_count,
                last_key=checkpoint.last_key,
                query=query,
                batch_size=checkpoint.batch_size,
                phase=checkpoint.phase,
            )
            self.db.add(row)
        else:
            row.processed_count = checkpoint.processed_count
            row.last_key = checkpoint.last_key
            row.query = query
            row.batch_size = checkpoint.batch_size
            row.phase = checkpoint.phase
            row.updated_at = checkpoint.updated_at

        await self.db.commit()
        logger.debug(
            f"Checkpoint saved for {session_id}: processed={checkpoint.processed_count}, "
            f"last_key={checkpoint.last_key}"
        )

    async def load_checkpoint(self, session_id: str) -> Optional[Checkpoint]:
        row = await self._get_row(session_id)
        if row is None:
            return None

        return Checkpoint(
            session_id=row.session_id,
            processed_count=row.processed_count,
            last_key=row.last_key,
            query=QuerySpec.model_validate(row.query),
            batch_size=row.batch_size,
            phase=row.phase,
            updated_at=row.updated_at,
        )

    async def clear_checkpoint(self, session_id: str) -> None:
        await self.db.execute(
            delete(ImportCheckpoint).where(ImportCheckpoint.session_id == session_id)
        )
        await self.db.commit()

    async def enqueue(self, descriptor: DeferredOperationDescriptor) -> None:
        self.db.add(DeferredOperation(
            operation=descriptor.operation,
            item_key=descriptor.item_key,
            payload=descriptor.payload,
            attempts=descriptor.attempts,
            category=descriptor.category,
            severity=descriptor.severity,
            fault_summary=descriptor.fault_summary,
            status=DeferredStatus.PENDING,
            created_at=descriptor.created_at,
        ))
        await self.db.commit()
        logger.info(f"Deferred operation stored: {descriptor.operation} ({descriptor.category.value})")

    async def pending_operations(self, limit: int = 100) -> List[DeferredOperationDescriptor]:
        """Queued operations awaiting replay, oldest first"""
        result = await self.db.execute(
            select(DeferredOperation)
            .where(DeferredOperation.status == DeferredStatus.PENDING)
            .order_by(DeferredOperation.created_at.asc())
            .limit(limit)
        )
        return [
            DeferredOperationDescriptor(
                operation=row.operation,
                item_key=row.item_key,
                payload=row.payload or {},
                attempts=row.attempts,
                category=row.category,
                severity=row.severity,
                fault_summary=row.fault_summary or "",
                created_at=row.created_at,
            )
            for row in result.scalars().all()
        ]
