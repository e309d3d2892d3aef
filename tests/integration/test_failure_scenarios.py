"""
Failure scenario tests: remote faults, degraded mode and lost resume state
"""

import pytest
from unittest.mock import AsyncMock

from core.exceptions import (
    AuthenticationError,
    CheckpointError,
    DegradedModeError,
    NetworkError,
    RemoteServerError,
    SyncException,
)
from ingestion.coordinator import ImportCoordinator
from ingestion.faults import classify_fault
from models.base import FaultCategory, ImportPhase


class TestRemoteFaults:

    @pytest.mark.asyncio
    async def test_transient_faults_are_invisible(self, make_fetcher, make_sink, issues, store, recovery, statistics, spec):
        errors = [NetworkError("reset"), RemoteServerError("busy", status_code=503), NetworkError("reset")]
        coordinator = ImportCoordinator(make_fetcher(issues(30), errors=errors), store, recovery=recovery)

        summary = await coordinator.start(spec, 10, make_sink())

        assert summary.phase == ImportPhase.COMPLETE
        assert summary.imported == 30
        assert summary.faults == []
        assert statistics.errors_by_category == {"network": 2, "remote_5xx": 1}

    @pytest.mark.asyncio
    async def test_auth_failure_mid_import_keeps_checkpoint(self, make_fetcher, make_sink, issues, store, recovery, observer, spec):
        fetcher = make_fetcher(issues(40))
        sink = make_sink()
        coordinator = ImportCoordinator(fetcher, store, recovery=recovery, observers=[observer])

        class RevokeAfterFirstPage:
            async def apply(self, item):
                result = await sink.apply(item)
                if item["key"] == "ISSUE-010":
                    fetcher.errors.append(AuthenticationError("token revoked", status_code=401))
                return result

        summary = await coordinator.start(spec, 5, RevokeAfterFirstPage(), session_id="auth")

        assert summary.phase == ImportPhase.ERROR
        assert summary.cancelled is False
        assert summary.processed == 10
        assert summary.requires_intervention
        assert summary.faults[0].category == FaultCategory.AUTH
        assert store.checkpoints["auth"].last_key == "ISSUE-010"
        # Surfaced distinctly to the operator
        assert any("token revoked" in message for _, message in observer.errors)
        assert not coordinator.is_running

    @pytest.mark.asyncio
    async def test_exhausted_retries_queue_page_and_end_in_error(self, make_fetcher, make_sink, issues, store, recovery, spec):
        fetcher = make_fetcher(issues(10), errors=[RemoteServerError("down", status_code=500)] * 3)
        coordinator = ImportCoordinator(fetcher, store, recovery=recovery)

        summary = await coordinator.start(spec, 5, make_sink(), session_id="down")

        assert summary.phase == ImportPhase.ERROR
        assert summary.processed == 0
        assert len(store.deferred) == 1
        assert store.deferred[0].category == FaultCategory.REMOTE_5XX
        assert "down" in store.checkpoints


class TestDegradedMode:

    @pytest.mark.asyncio
    async def test_start_refused_while_degraded(self, make_fetcher, make_sink, store, recovery, degraded_mode, spec):
        degraded_mode.enter("database unreachable")
        coordinator = ImportCoordinator(make_fetcher([]), store, recovery=recovery)

        with pytest.raises(DegradedModeError):
            await coordinator.start(spec, 5, make_sink())
        assert not coordinator.is_running

    @pytest.mark.asyncio
    async def test_critical_item_fault_stops_before_next_chunk(self, make_fetcher, make_sink, issues, store, recovery, degraded_mode, spec):
        sink = make_sink()
        coordinator = ImportCoordinator(make_fetcher(issues(20)), store, recovery=recovery)

        async def fragile_sink(item):
            if item["key"] == "ISSUE-003":
                # The store behind the sink went away entirely
                await recovery.recover(classify_fault(SyncException("store offline", severity="critical")))
            return await sink.apply(item)

        summary = await coordinator.start(spec, 5, fragile_sink, session_id="deg")

        assert degraded_mode.active
        assert summary.phase == ImportPhase.ERROR
        assert summary.processed == 5
        assert store.checkpoints["deg"].processed_count == 5

        degraded_mode.exit()
        resumed = await coordinator.resume("deg", sink)

        assert resumed.phase == ImportPhase.COMPLETE
        assert sink.applied == [f"ISSUE-{i:03d}" for i in range(1, 21)]

    @pytest.mark.asyncio
    async def test_fetch_fault_that_degrades_is_reported(self, make_fetcher, make_sink, issues, store, recovery, degraded_mode, spec):
        fetcher = make_fetcher(issues(30))
        fetch_page = fetcher.fetch_page

        async def fail_second_page(query, page_token, max_results):
            if len(fetcher.calls) == 1:
                fetcher.errors.append(SyncException("boom", severity="critical"))
            return await fetch_page(query, page_token, max_results)

        fetcher.fetch_page = fail_second_page
        coordinator = ImportCoordinator(fetcher, store, recovery=recovery)

        summary = await coordinator.start(spec, 25, make_sink(), session_id="boom")

        assert degraded_mode.active
        assert summary.phase == ImportPhase.ERROR
        assert any(f.message == "boom" for f in summary.faults)
        assert "boom" in store.checkpoints


class TestLostResumeState:

    @pytest.mark.asyncio
    async def test_checkpoint_write_failure_is_loud(self, make_fetcher, make_sink, issues, store, recovery, spec):
        store.save_checkpoint = AsyncMock(side_effect=OSError("disk full"))
        coordinator = ImportCoordinator(make_fetcher(issues(10)), store, recovery=recovery)

        with pytest.raises(CheckpointError):
            await coordinator.start(spec, 5, make_sink())

        assert not coordinator.is_running
        assert coordinator.last_session.phase == ImportPhase.ERROR
        assert coordinator.last_session.processed_count == 5

    @pytest.mark.asyncio
    async def test_checkpoint_load_failure_is_loud(self, make_fetcher, make_sink, store, recovery):
        store.load_checkpoint = AsyncMock(side_effect=OSError("unreadable"))
        coordinator = ImportCoordinator(make_fetcher([]), store, recovery=recovery)

        with pytest.raises(CheckpointError):
            await coordinator.resume("x", make_sink())
