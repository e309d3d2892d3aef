# ============================================================================
# File: ingestion/coordinator.py
# Description: Progressive, resumable import of large query results
# ============================================================================
"""
Import Coordinator - turns a large query result into bounded chunks of work.

This module provides resumable import orchestration with:
- One active session per coordinator (a second start fails immediately)
- Fixed-size chunks applied one item at a time, in fetch order
- Per-item failure isolation (a bad item never aborts its chunk)
- A durable checkpoint after every chunk for exact resume
- Cooperative pause/cancel, honoured between chunks and between pages
- A final summary built with the statistics aggregator

Session phases:
    idle -> fetching -> importing <-> paused -> resuming -> (complete | cancelled | error)
"""

import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from core.config import settings
from core.exceptions import (
    CheckpointError,
    DegradedModeError,
    ImportAlreadyRunningError,
    InvalidPhaseTransitionError,
    NothingToResumeError,
)
from ingestion.faults import Fault, classify_fault
from ingestion.interfaces import DurableStore, ImportObserver, ItemSink, RemoteFetcher
from ingestion.query_executor import ExecutionResult, PaginatedQueryExecutor
from ingestion.recovery import DegradedModeState, RecoveryService
from ingestion.statistics import StatisticsAggregator
from models.base import ImportPhase
from schemas.sync import Checkpoint, ImportSummary, ItemCounts, ItemFailure, QuerySpec
import logging

logger = logging.getLogger(__name__)

SinkLike = Union[ItemSink, Callable[[Dict[str, Any]], Any]]

TERMINAL_PHASES = {ImportPhase.COMPLETE, ImportPhase.CANCELLED, ImportPhase.ERROR}

ALLOWED_TRANSITIONS = {
    ImportPhase.IDLE: {ImportPhase.FETCHING, ImportPhase.RESUMING},
    ImportPhase.FETCHING: {
        ImportPhase.IMPORTING, ImportPhase.PAUSED, ImportPhase.CANCELLED,
        ImportPhase.COMPLETE, ImportPhase.ERROR,
    },
    ImportPhase.IMPORTING: {
        ImportPhase.FETCHING, ImportPhase.PAUSED, ImportPhase.CANCELLED,
        ImportPhase.COMPLETE, ImportPhase.ERROR,
    },
    ImportPhase.PAUSED: {ImportPhase.RESUMING, ImportPhase.CANCELLED},
    ImportPhase.RESUMING: {
        ImportPhase.FETCHING, ImportPhase.IMPORTING, ImportPhase.PAUSED,
        ImportPhase.CANCELLED, ImportPhase.COMPLETE, ImportPhase.ERROR,
    },
    ImportPhase.COMPLETE: set(),
    ImportPhase.CANCELLED: set(),
    ImportPhase.ERROR: set(),
}


@dataclass
class ImportSession:
    """
    State of one coordinator run. Mutated only by the coordinator.

    ``processed_count`` covers this run; ``processed_offset`` is what
    earlier runs of the same session had already processed.
    """

    session_id: str
    spec: QuerySpec
    batch_size: int
    base_spec: Optional[QuerySpec] = None
    phase: ImportPhase = ImportPhase.IDLE
    counts: ItemCounts = field(default_factory=ItemCounts)
    failed: int = 0
    total: int = 0
    batches: int = 0
    last_key: Optional[str] = None
    processed_offset: int = 0
    resumed_from: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_monotonic: float = field(default_factory=time.monotonic)
    failures: List[ItemFailure] = field(default_factory=list)
    faults: List[Fault] = field(default_factory=list)
    stop_requested: Optional[ImportPhase] = None

    @property
    def succeeded(self) -> int:
        return self.counts.total

    @property
    def processed_count(self) -> int:
        return self.succeeded + self.failed

    @property
    def cumulative_processed(self) -> int:
        return self.processed_offset + self.processed_count

    @property
    def cumulative_total(self) -> int:
        return self.processed_offset + self.total

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_monotonic) * 1000)

    def checkpoint(self) -> Checkpoint:
        # Always persist the query as first submitted; resume derives its cap from it
        return Checkpoint(
            session_id=self.session_id,
            processed_count=self.cumulative_processed,
            last_key=self.last_key,
            query=self.base_spec or self.spec,
            batch_size=self.batch_size,
            phase=self.phase,
        )


class ImportCoordinator:
    """
    Progressive batch-import coordinator.

    Responsibilities:
    - Guard the single active session
    - Drive the query executor and chunk its stream
    - Apply items through the sink, isolating per-item failures
    - Persist checkpoints and honour pause/cancel/resume
    - Report progress to observers and summarize the run
    """

    def __init__(
        self,
        fetcher: RemoteFetcher,
        store: DurableStore,
        recovery: Optional[RecoveryService] = None,
        statistics: Optional[StatisticsAggregator] = None,
        degraded_mode: Optional[DegradedModeState] = None,
        observers: Optional[List[ImportObserver]] = None,
        key_field: str = "key",
        page_size: Optional[int] = None,
        executor: Optional[PaginatedQueryExecutor] = None
    ):
        self.store = store
        if recovery is None:
            recovery = RecoveryService(
                store,
                statistics=statistics,
                degraded_mode=degraded_mode,
            )
        self.recovery = recovery
        self.statistics = statistics or recovery.statistics
        self.degraded_mode = degraded_mode or recovery.degraded_mode
        self.executor = executor or PaginatedQueryExecutor(
            fetcher,
            recovery,
            page_size=page_size,
            statistics=self.statistics,
        )
        self.observers: List[ImportObserver] = list(observers or [])
        self.key_field = key_field

        self._guard = threading.Lock()
        self._session: Optional[ImportSession] = None
        self.last_session: Optional[ImportSession] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def session(self) -> Optional[ImportSession]:
        return self._session

    @property
    def is_running(self) -> bool:
        return self._session is not None

    def add_observer(self, observer: ImportObserver) -> None:
        self.observers.append(observer)

    async def start(
        self,
        spec: QuerySpec,
        batch_size: Optional[int] = None,
        sink: Optional[SinkLike] = None,
        session_id: Optional[str] = None
    ) -> ImportSummary:
        """
        Import everything the query returns.

        Args:
            spec: Query to execute
            batch_size: Items per chunk (checkpoint granularity)
            sink: ItemSink, or an async callable taking one item
            session_id: Reuse an id (a fresh one is generated otherwise)

        Returns:
            ImportSummary for this run

        Raises:
            ImportAlreadyRunningError: Another session is active
            DegradedModeError: Writes are disabled process-wide
            CheckpointError: Resume state could not be persisted
        """
        if sink is None:
            raise ValueError("sink is required")

        session = ImportSession(
            session_id=session_id or uuid.uuid4().hex,
            spec=spec,
            batch_size=self._validate_batch_size(batch_size),
        )
        self._acquire(session)
        return await self._run(session, sink, ImportPhase.FETCHING)

    async def resume(
        self,
        session_id: str,
        sink: SinkLike,
        batch_size: Optional[int] = None
    ) -> ImportSummary:
        """
        Continue a paused or failed session from its last checkpoint.

        Only items after the checkpoint's last key are requested, and the
        result cap shrinks by what was already processed.

        Raises:
            NothingToResumeError: No checkpoint exists for session_id
            ImportAlreadyRunningError: Another session is active
        """
        if self.is_running:
            raise ImportAlreadyRunningError(
                "An import is already in progress",
                context={"active_session": self._session.session_id, "requested_session": session_id}
            )

        try:
            checkpoint = await self.store.load_checkpoint(session_id)
        except Exception as e:
            raise CheckpointError(
                "Failed to load checkpoint",
                context={"session_id": session_id, "operation": "load"},
                original_exception=e
            )

        if checkpoint is None:
            raise NothingToResumeError(
                "No import to resume",
                context={"session_id": session_id}
            )

        session = ImportSession(
            session_id=session_id,
            spec=checkpoint.query.resumed_after(checkpoint.last_key, checkpoint.processed_count),
            base_spec=checkpoint.query,
            batch_size=self._validate_batch_size(checkpoint.batch_size if batch_size is None else batch_size),
            last_key=checkpoint.last_key,
            processed_offset=checkpoint.processed_count,
            resumed_from=checkpoint.last_key,
        )
        self._acquire(session)

        logger.info(
            f"Resuming session {session_id} after key={checkpoint.last_key} "
            f"({checkpoint.processed_count} already processed)"
        )
        return await self._run(session, sink, ImportPhase.RESUMING)

    def pause(self) -> bool:
        """Ask the active session to stop after its current chunk and keep its checkpoint"""
        return self._request_stop(ImportPhase.PAUSED)

    def cancel(self) -> bool:
        """Ask the active session to stop after its current chunk and drop its checkpoint"""
        return self._request_stop(ImportPhase.CANCELLED)

    def error_report(self) -> str:
        session = self._session or self.last_session
        if session is None:
            return "No import has run"
        return self._summarize(session, cancelled=False).error_report()

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def _validate_batch_size(self, batch_size: Optional[int]) -> int:
        if batch_size is None:
            batch_size = settings.SYNC_BATCH_SIZE
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        return batch_size

    def _acquire(self, session: ImportSession) -> None:
        with self._guard:
            if self._session is not None:
                raise ImportAlreadyRunningError(
                    "An import is already in progress",
                    context={
                        "active_session": self._session.session_id,
                        "requested_session": session.session_id,
                    }
                )
            self.degraded_mode.ensure_writable()
            self._session = session

    def _release(self, session: ImportSession) -> None:
        with self._guard:
            if self._session is session:
                self._session = None
        self.last_session = session

    def _request_stop(self, phase: ImportPhase) -> bool:
        session = self._session
        if session is None or session.phase in TERMINAL_PHASES:
            return False
        if session.stop_requested is None:
            session.stop_requested = phase
            logger.info(f"Session {session.session_id}: {phase.value} requested")
        return True

    def _transition(self, session: ImportSession, phase: ImportPhase, detail: Optional[Dict[str, Any]] = None) -> None:
        if session.phase == phase:
            return
        if phase not in ALLOWED_TRANSITIONS[session.phase]:
            raise InvalidPhaseTransitionError(
                f"Cannot move from {session.phase.value} to {phase.value}",
                context={"session_id": session.session_id}
            )
        logger.debug(f"Session {session.session_id}: {session.phase.value} -> {phase.value}")
        session.phase = phase
        self._notify_progress(session, detail)

    async def _run(self, session: ImportSession, sink: SinkLike, entry_phase: ImportPhase) -> ImportSummary:
        apply = self._resolve_sink(sink)
        buffer: List[Dict[str, Any]] = []

        async def on_page(items: List[Dict[str, Any]], fetched: int, total: int) -> None:
            # Remote totals are approximate; never report fewer than we hold
            session.total = max(min(total, session.spec.max_results), fetched)
            buffer.extend(items)
            while len(buffer) >= session.batch_size and not self._should_stop(session):
                chunk = buffer[:session.batch_size]
                del buffer[:session.batch_size]
                await self._process_chunk(session, chunk, apply)
            if not self._should_stop(session):
                self._transition(session, ImportPhase.FETCHING)

        try:
            self._transition(session, entry_phase)
            if entry_phase == ImportPhase.RESUMING:
                self._transition(session, ImportPhase.FETCHING)

            result = await self.executor.run(
                session.spec,
                on_page,
                is_cancelled=lambda: self._should_stop(session),
            )

            # Partial chunk left over at the end of the stream
            if buffer and not self._should_stop(session):
                await self._process_chunk(session, list(buffer), apply)
                buffer.clear()

            return await self._finish(session, result)

        except Exception as e:
            fault = classify_fault(e, operation="import_session")
            session.faults.append(fault)
            self.recovery.record(fault)
            if session.phase not in TERMINAL_PHASES:
                session.phase = ImportPhase.ERROR
                self._notify_progress(session, {"error": fault.message})
            logger.error(f"Session {session.session_id} failed: {e}")
            raise

        finally:
            self._release(session)

    def _should_stop(self, session: ImportSession) -> bool:
        if session.stop_requested is not None:
            return True
        if self.degraded_mode.active:
            if session.stop_requested is None:
                logger.warning(f"Session {session.session_id}: degraded mode active, stopping writes")
                session.stop_requested = ImportPhase.ERROR
            return True
        return False

    async def _process_chunk(self, session: ImportSession, chunk: List[Dict[str, Any]], apply) -> None:
        self._transition(session, ImportPhase.IMPORTING)
        session.batches += 1

        for item in chunk:
            await self._apply_item(session, item, apply)

        await self._persist_checkpoint(session)
        self._notify_progress(session, {"batch": session.batches, "batch_items": len(chunk)})

    async def _apply_item(self, session: ImportSession, item: Dict[str, Any], apply) -> None:
        key = self._item_key(item)
        try:
            counts = await apply(item)
            session.counts = session.counts + self._coerce_counts(counts)
        except Exception as e:
            fault = classify_fault(e, operation="apply_item", item_key=key)
            self.recovery.record(fault)
            session.failed += 1
            session.failures.append(ItemFailure(
                item_key=key,
                message=fault.message,
                category=fault.category,
                severity=fault.severity,
                requires_intervention=fault.requires_intervention,
            ))
            logger.warning(f"Item {key} failed: {fault.summary()}")
            self._notify_error(key, fault.message)

        session.last_key = key
        self._notify_progress(session)

    async def _persist_checkpoint(self, session: ImportSession) -> None:
        checkpoint = session.checkpoint()
        try:
            await self.store.save_checkpoint(session.session_id, checkpoint)
        except Exception as e:
            raise CheckpointError(
                "Failed to persist checkpoint",
                context={
                    "session_id": session.session_id,
                    "operation": "save",
                    "processed_count": checkpoint.processed_count,
                    "last_key": checkpoint.last_key,
                },
                original_exception=e
            )

    async def _finish(self, session: ImportSession, result: ExecutionResult) -> ImportSummary:
        stop = session.stop_requested

        # Executor faults are kept whichever way the session ends
        session.faults.extend(result.faults)
        for fault in result.faults:
            if fault.requires_intervention:
                self._notify_error(session.last_key or session.session_id, fault.message)

        if stop == ImportPhase.CANCELLED:
            await self._clear_checkpoint(session)
            self._transition(session, ImportPhase.CANCELLED)
            logger.info(f"Session {session.session_id} cancelled after {session.cumulative_processed} items")
            return self._summarize(session, cancelled=True)

        if stop == ImportPhase.PAUSED:
            self._transition(session, ImportPhase.PAUSED)
            await self._persist_checkpoint(session)
            logger.info(f"Session {session.session_id} paused at key={session.last_key}")
            return self._summarize(session, cancelled=True)

        if stop == ImportPhase.ERROR:
            # Degraded mode: keep resume state for when writes come back
            await self._persist_checkpoint(session)
            fault = classify_fault(DegradedModeError(
                "Import stopped: write operations are disabled",
                context={"reason": self.degraded_mode.reason},
                severity="critical"
            ), operation="import_session")
            session.faults.append(fault)
            self._transition(session, ImportPhase.ERROR, {"error": fault.message})
            return self._summarize(session, cancelled=False)

        if result.faults:
            await self._persist_checkpoint(session)
            self._transition(session, ImportPhase.ERROR, {"error": result.faults[-1].message})
            logger.error(
                f"Session {session.session_id} ended with {len(result.faults)} unrecoverable fault(s); "
                f"checkpoint kept at key={session.last_key}"
            )
            return self._summarize(session, cancelled=False)

        await self._clear_checkpoint(session)
        self.statistics.record_success(session.elapsed_ms, session.counts)
        self._transition(session, ImportPhase.COMPLETE)
        summary = self._summarize(session, cancelled=False)
        logger.info(
            f"Session {session.session_id} complete: imported={summary.imported}, "
            f"skipped={summary.skipped}, failed={summary.failed}, batches={summary.batches}"
        )
        return summary

    async def _clear_checkpoint(self, session: ImportSession) -> None:
        try:
            await self.store.clear_checkpoint(session.session_id)
        except Exception as e:
            raise CheckpointError(
                "Failed to clear checkpoint",
                context={"session_id": session.session_id, "operation": "clear"},
                original_exception=e
            )

    def _summarize(self, session: ImportSession, cancelled: bool) -> ImportSummary:
        duration_ms = session.elapsed_ms
        processed = session.processed_count
        return ImportSummary(
            session_id=session.session_id,
            phase=session.phase,
            imported=session.counts.imported,
            created=session.counts.created,
            updated=session.counts.updated,
            skipped=session.counts.skipped,
            failed=session.failed,
            processed=processed,
            total=session.total,
            batches=session.batches,
            duration_ms=duration_ms,
            items_per_second=processed / (duration_ms / 1000.0) if duration_ms > 0 else 0.0,
            average_ms_per_item=duration_ms / processed if processed else 0.0,
            rolling_items_per_second=self.statistics.average_items_per_second,
            cancelled=cancelled,
            resumed_from=session.resumed_from,
            failures=list(session.failures),
            faults=[fault.to_record() for fault in session.faults],
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve_sink(self, sink: SinkLike):
        apply = getattr(sink, "apply", None)
        if apply is not None:
            return apply
        if callable(sink):
            return sink
        raise TypeError("sink must provide apply(item) or be callable")

    def _item_key(self, item: Dict[str, Any]) -> str:
        key = item.get(self.key_field) if isinstance(item, dict) else None
        return str(key) if key is not None else "<unknown>"

    @staticmethod
    def _coerce_counts(counts: Any) -> ItemCounts:
        if isinstance(counts, ItemCounts):
            return counts
        if counts is None:
            return ItemCounts.created_one()
        if isinstance(counts, str):
            return ItemCounts(**{counts: 1})
        return ItemCounts.model_validate(counts)

    def _notify_progress(self, session: ImportSession, detail: Optional[Dict[str, Any]] = None) -> None:
        for observer in self.observers:
            try:
                observer.on_progress(
                    session.cumulative_processed,
                    session.cumulative_total,
                    session.phase,
                    detail,
                )
            except Exception:
                logger.exception("Progress observer failed")

    def _notify_error(self, item_key: str, message: str) -> None:
        for observer in self.observers:
            try:
                observer.on_error(item_key, message)
            except Exception:
                logger.exception("Error observer failed")
