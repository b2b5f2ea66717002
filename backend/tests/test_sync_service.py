"""Tests for the fan-out orchestrator: create, update and delete across calendars."""
import threading
import time
from datetime import timedelta

import pytest

from calmirror.errors import CalendarNotFoundError
from calmirror.models.event_mapping import BlockEvent, EventMapping, SyncStatus
from calmirror.models.sync_log import SyncLog
from calmirror.services.sync_service import FanOutOrchestrator
from tests.conftest import T0, add_calendar, as_utc, make_event


@pytest.fixture
def orchestrator(runtime):
    return runtime.orchestrator


def _three_calendars(db):
    add_calendar(db, "cal-a", "A")
    add_calendar(db, "cal-b", "B")
    add_calendar(db, "cal-c", "C")


def _log_types(db, status=None):
    query = db.query(SyncLog)
    if status:
        query = query.filter(SyncLog.status == status)
    return [row.event_type for row in query.order_by(SyncLog.id).all()]


class TestLifecycleScenario:
    """Create → move → delete on A with B and C mirrored."""

    def test_full_lifecycle(self, db, orchestrator, provider):
        _three_calendars(db)
        event = make_event("E", start=T0)

        result = orchestrator.sync_event_across_calendars(event, "cal-a")
        assert (result.success_count, result.total_targets) == (2, 2)

        mapping = db.query(EventMapping).one()
        assert (mapping.original_event_id, mapping.original_calendar_id) == ("E", "cal-a")
        assert mapping.sync_status == SyncStatus.completed
        blocks = db.query(BlockEvent).order_by(BlockEvent.target_calendar_id).all()
        assert [b.target_calendar_id for b in blocks] == ["cal-b", "cal-c"]
        assert {b.block_title for b in blocks} == {"A Block"}
        for block in blocks:
            placeholder = provider.events[block.target_calendar_id][block.block_event_id]
            assert placeholder["summary"] == "A Block"
            assert placeholder["start"] == event["start"]
            assert placeholder["end"] == event["end"]

        moved = make_event("E", start=T0 + timedelta(hours=2))
        result = orchestrator.update_event_across_calendars(moved, "cal-a")
        assert (result.success_count, result.total_targets) == (2, 2)
        for block in blocks:
            placeholder = provider.events[block.target_calendar_id][block.block_event_id]
            assert placeholder["start"] == moved["start"]
        db.expire_all()
        assert as_utc(db.query(EventMapping).one().event_start) == T0 + timedelta(hours=2)

        result = orchestrator.delete_event_across_calendars("E", "cal-a")
        assert (result.success_count, result.total_targets) == (2, 2)
        assert provider.events["cal-b"] == {}
        assert provider.events["cal-c"] == {}
        assert db.query(EventMapping).count() == 0
        assert db.query(BlockEvent).count() == 0


class TestSync:
    def test_k_minus_one_blocks(self, db, orchestrator):
        for i in range(5):
            add_calendar(db, f"cal-{i}", f"Calendar 0{i}")
        result = orchestrator.sync_event_across_calendars(make_event("e1"), "cal-0")
        assert result.success_count == 4
        assert db.query(BlockEvent).count() == 4

    def test_partial_failure_records_only_successes(self, db, orchestrator, provider):
        _three_calendars(db)
        add_calendar(db, "cal-d", "D")
        provider.fail["create"].add("cal-c")

        result = orchestrator.sync_event_across_calendars(make_event("e1"), "cal-a")

        assert (result.success_count, result.total_targets) == (2, 3)
        assert sorted(b.target_calendar_id for b in db.query(BlockEvent).all()) == ["cal-b", "cal-d"]
        assert db.query(EventMapping).one().sync_status == SyncStatus.completed
        assert _log_types(db, "error") == ["block_failed"]
        failed = [r for r in result.results if not r.success]
        assert failed[0].calendar_id == "cal-c"
        assert "503" in failed[0].error

    def test_auth_failure_is_isolated(self, db, orchestrator, provider):
        _three_calendars(db)
        provider.bad_credentials.add("token-cal-b")
        result = orchestrator.sync_event_across_calendars(make_event("e1"), "cal-a")
        assert result.success_count == 1
        assert [b.target_calendar_id for b in db.query(BlockEvent).all()] == ["cal-c"]

    def test_inactive_calendars_are_not_targets(self, db, orchestrator):
        _three_calendars(db)
        add_calendar(db, "cal-off", "Off", active=False)
        result = orchestrator.sync_event_across_calendars(make_event("e1"), "cal-a")
        assert result.total_targets == 2

    def test_no_targets_is_a_noop(self, db, orchestrator):
        add_calendar(db, "cal-a", "A")
        result = orchestrator.sync_event_across_calendars(make_event("e1"), "cal-a")
        assert (result.success_count, result.total_targets) == (0, 0)
        assert db.query(EventMapping).count() == 0
        assert "sync_skipped" in _log_types(db, "info")

    def test_unknown_source_fails_fast(self, db, orchestrator, provider):
        add_calendar(db, "cal-b", "B")
        with pytest.raises(CalendarNotFoundError):
            orchestrator.sync_event_across_calendars(make_event("e1"), "cal-unknown")
        assert db.query(EventMapping).count() == 0
        assert _log_types(db, "error") == ["sync_failed"]
        assert provider.calls == []

    def test_resync_of_tracked_event_does_not_duplicate(self, db, orchestrator):
        _three_calendars(db)
        orchestrator.sync_event_across_calendars(make_event("e1"), "cal-a")
        result = orchestrator.sync_event_across_calendars(make_event("e1", summary="Renamed"), "cal-a")
        assert result.operation == "update"
        assert db.query(EventMapping).count() == 1
        assert db.query(BlockEvent).count() == 2

    def test_concurrent_syncs_for_same_event(self, db, orchestrator):
        _three_calendars(db)
        event = make_event("e1")
        errors = []

        def run():
            try:
                orchestrator.sync_event_across_calendars(event, "cal-a")
            except Exception as exc:  # pragma: no cover - surfaced by the assert below
                errors.append(exc)

        threads = [threading.Thread(target=run) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert db.query(EventMapping).count() == 1
        assert db.query(BlockEvent).count() == 2

    def test_hanging_target_times_out(self, db, runtime, provider):
        _three_calendars(db)
        provider.hang.add("cal-c")
        orchestrator = FanOutOrchestrator(runtime.registry, runtime.store, provider, provider_timeout=0.2)
        try:
            result = orchestrator.sync_event_across_calendars(make_event("e1"), "cal-a")
        finally:
            provider.release.set()

        assert (result.success_count, result.total_targets) == (1, 2)
        timed_out = [r for r in result.results if not r.success][0]
        assert timed_out.calendar_id == "cal-c"
        assert "deadline" in timed_out.error
        assert db.query(EventMapping).one().sync_status == SyncStatus.completed

    def test_late_placeholder_from_timed_out_target_is_removed(self, db, runtime, provider):
        _three_calendars(db)
        provider.hang.add("cal-c")
        orchestrator = FanOutOrchestrator(runtime.registry, runtime.store, provider, provider_timeout=0.2)
        try:
            orchestrator.sync_event_across_calendars(make_event("e1"), "cal-a")
        finally:
            provider.release.set()

        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            if ("delete", "cal-c") in provider.calls and not provider.events["cal-c"]:
                break
            time.sleep(0.02)

        assert ("create", "cal-c") in provider.calls
        assert provider.events["cal-c"] == {}
        assert [b.target_calendar_id for b in db.query(BlockEvent).all()] == ["cal-b"]

        orchestrator.delete_event_across_calendars("e1", "cal-a")
        assert provider.events["cal-b"] == {}
        assert provider.events["cal-c"] == {}


class TestUpdate:
    def test_update_without_mapping_degrades_to_sync(self, db, orchestrator):
        _three_calendars(db)
        result = orchestrator.update_event_across_calendars(make_event("e1"), "cal-a")
        assert result.operation == "sync"
        assert result.success_count == 2
        assert db.query(EventMapping).count() == 1
        assert db.query(BlockEvent).count() == 2

    def test_unreachable_target_keeps_stale_placeholder(self, db, orchestrator, provider):
        _three_calendars(db)
        orchestrator.sync_event_across_calendars(make_event("e1"), "cal-a")
        provider.fail["update"].add("cal-b")

        moved = make_event("e1", start=T0 + timedelta(hours=3))
        result = orchestrator.update_event_across_calendars(moved, "cal-a")

        assert (result.success_count, result.total_targets) == (1, 2)
        stale = next(iter(provider.events["cal-b"].values()))
        fresh = next(iter(provider.events["cal-c"].values()))
        assert stale["start"] != moved["start"]
        assert fresh["start"] == moved["start"]
        assert db.query(BlockEvent).count() == 2
        assert "block_update_failed" in _log_types(db, "error")
        assert as_utc(db.query(EventMapping).one().event_start) == T0 + timedelta(hours=3)

    def test_placeholder_removed_on_target_is_untracked(self, db, orchestrator, provider):
        _three_calendars(db)
        orchestrator.sync_event_across_calendars(make_event("e1"), "cal-a")
        provider.events["cal-b"].clear()

        result = orchestrator.update_event_across_calendars(make_event("e1", hours=2), "cal-a")

        assert result.success_count == 1
        assert [b.target_calendar_id for b in db.query(BlockEvent).all()] == ["cal-c"]


class TestDelete:
    def test_failed_target_delete_still_removes_mapping(self, db, orchestrator, provider):
        _three_calendars(db)
        orchestrator.sync_event_across_calendars(make_event("e1"), "cal-a")
        provider.fail["delete"].add("cal-b")

        result = orchestrator.delete_event_across_calendars("e1", "cal-a")

        assert (result.success_count, result.total_targets) == (1, 2)
        assert db.query(EventMapping).count() == 0
        assert db.query(BlockEvent).count() == 0
        assert "block_delete_failed" in _log_types(db, "error")

    def test_delete_is_idempotent(self, db, orchestrator):
        _three_calendars(db)
        orchestrator.sync_event_across_calendars(make_event("e1"), "cal-a")
        orchestrator.delete_event_across_calendars("e1", "cal-a")

        logged = _log_types(db)
        result = orchestrator.delete_event_across_calendars("e1", "cal-a")

        assert (result.success_count, result.total_targets) == (0, 0)
        assert _log_types(db) == logged

    def test_untracked_cancellation_writes_no_audit_rows(self, db, orchestrator, provider):
        _three_calendars(db)
        result = orchestrator.handle_event_change({"id": "never-synced", "status": "cancelled"}, "cal-a")
        assert result.operation == "delete"
        assert _log_types(db) == []
        assert provider.calls == []

    def test_already_missing_placeholder_counts_as_deleted(self, db, orchestrator, provider):
        _three_calendars(db)
        orchestrator.sync_event_across_calendars(make_event("e1"), "cal-a")
        provider.events["cal-b"].clear()

        result = orchestrator.delete_event_across_calendars("e1", "cal-a")
        assert result.success_count == 2


class TestHandleEventChange:
    """Routing used by the job queue handler."""

    def test_new_event_is_synced(self, db, orchestrator):
        _three_calendars(db)
        assert orchestrator.handle_event_change(make_event("e1"), "cal-a").operation == "sync"

    def test_changed_event_is_updated(self, db, orchestrator):
        _three_calendars(db)
        orchestrator.handle_event_change(make_event("e1"), "cal-a")
        moved = make_event("e1", start=T0 + timedelta(hours=1))
        assert orchestrator.handle_event_change(moved, "cal-a").operation == "update"

    def test_unchanged_event_is_skipped(self, db, orchestrator, provider):
        _three_calendars(db)
        orchestrator.handle_event_change(make_event("e1"), "cal-a")
        calls_before = len(provider.calls)
        result = orchestrator.handle_event_change(make_event("e1"), "cal-a")
        assert result.operation == "skipped"
        assert len(provider.calls) == calls_before

    def test_cancelled_event_is_deleted(self, db, orchestrator, provider):
        _three_calendars(db)
        orchestrator.handle_event_change(make_event("e1"), "cal-a")
        result = orchestrator.handle_event_change({"id": "e1", "status": "cancelled"}, "cal-a")
        assert result.operation == "delete"
        assert provider.events["cal-b"] == {}
        assert db.query(EventMapping).count() == 0

    def test_pending_mapping_is_completed_on_retry(self, db, runtime, orchestrator, provider):
        _three_calendars(db)
        runtime.store.create_mapping(make_event("e1"), "cal-a")

        result = orchestrator.handle_event_change(make_event("e1"), "cal-a")

        assert result.operation == "sync"
        assert (result.success_count, result.total_targets) == (2, 2)
        assert sorted(b.target_calendar_id for b in db.query(BlockEvent).all()) == ["cal-b", "cal-c"]
        assert db.query(EventMapping).one().sync_status == SyncStatus.completed
        assert len(provider.events["cal-b"]) == 1
        assert len(provider.events["cal-c"]) == 1

    def test_interrupted_sync_creates_only_missing_placeholders(self, db, runtime, orchestrator, provider):
        _three_calendars(db)
        mapping = runtime.store.create_mapping(make_event("e1"), "cal-a")
        placed = provider.create_event(None, "cal-b", {"summary": "A Block", "start": {}, "end": {}})
        runtime.store.add_block_entry(mapping.id, placed["id"], "cal-b", "A Block")

        moved = make_event("e1", start=T0 + timedelta(hours=2))
        result = orchestrator.handle_event_change(moved, "cal-a")

        assert (result.success_count, result.total_targets) == (2, 2)
        assert list(provider.events["cal-b"]) == [placed["id"]]
        assert provider.events["cal-b"][placed["id"]]["start"] == moved["start"]
        assert [e["start"] for e in provider.events["cal-c"].values()] == [moved["start"]]
        assert db.query(BlockEvent).count() == 2
        row = db.query(EventMapping).one()
        assert row.sync_status == SyncStatus.completed
        assert as_utc(row.event_start) == T0 + timedelta(hours=2)
        assert "block_updated" in _log_types(db, "success")

        again = orchestrator.handle_event_change(moved, "cal-a")
        assert again.operation == "skipped"
