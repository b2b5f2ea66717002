"""Fan-out orchestrator: mirrors one source event onto every other active calendar.

Three lifecycle operations (sync, update, delete) share the same shape:
resolve configuration and the existing mapping, run one provider call per
target concurrently, then record every target's outcome independently.

Failure rules:
- anything that fails before targets are contacted (unknown calendar, store
  errors) is logged as ``<op>_failed`` and re-raised to the job queue;
- a failing, unauthorised or hanging target never affects its siblings and is
  not retried here; the queue may retry the whole job;
- a mapping left pending by an interrupted run is completed by the next job
  for the same event, which creates only the missing placeholders.
"""
import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Iterator, Optional, TypeVar

from calmirror.config import settings
from calmirror.errors import (
    CalendarNotFoundError,
    MappingExistsError,
    ProviderError,
    ProviderNotFoundError,
    ProviderTimeoutError,
)
from calmirror.models.event_mapping import SyncStatus
from calmirror.services.calendar_registry import CalendarAccount, CalendarRegistry
from calmirror.services.event_times import parse_event_time, same_instant
from calmirror.services.mapping_store import BlockEntryRecord, MappingRecord, MappingStore
from calmirror.services.provider import CalendarProvider, build_block_draft, build_block_patch

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class TargetOutcome:
    calendar_id: str
    success: bool
    block_event_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class FanOutResult:
    operation: str
    success_count: int
    total_targets: int
    mapping_id: Optional[str] = None
    results: list[TargetOutcome] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "successCount": self.success_count,
            "totalTargets": self.total_targets,
            "mappingId": self.mapping_id,
            "results": [
                {
                    "calendarId": r.calendar_id,
                    "success": r.success,
                    "blockEventId": r.block_event_id,
                    "error": r.error,
                }
                for r in self.results
            ],
        }


class KeyedLock:
    """One re-entrant lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[Any, list] = {}

    @contextmanager
    def hold(self, key: Any) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


class FanOutOrchestrator:
    def __init__(
        self,
        registry: CalendarRegistry,
        store: MappingStore,
        provider: CalendarProvider,
        product_tag: str = settings.PRODUCT_TAG,
        provider_timeout: float = settings.PROVIDER_TIMEOUT_SECONDS,
        max_workers: int = settings.FANOUT_MAX_WORKERS,
    ):
        self.registry = registry
        self.store = store
        self.provider = provider
        self.product_tag = product_tag
        self.provider_timeout = provider_timeout
        self.max_workers = max(1, max_workers)
        self._locks = KeyedLock()

    # ── Entry points ────────────────────────────────────────────────

    def handle_event_change(self, event: dict[str, Any], source_calendar_id: str) -> FanOutResult:
        """Job handler: route a changed source event to sync, update or delete."""
        with self._locks.hold((event["id"], source_calendar_id)):
            if event.get("status") == "cancelled":
                return self._delete(event["id"], source_calendar_id)

            mapping = self.store.get_mapping(event["id"], source_calendar_id)
            if mapping is not None and mapping.sync_status != SyncStatus.completed:
                return self._resume(event, source_calendar_id, mapping)
            if mapping is not None and _unchanged(mapping, event):
                logger.debug("Event %s unchanged since last sync, skipping", event["id"])
                self.store.log_sync_activity(
                    "sync_skipped", source_calendar_id, event["id"], "info",
                    "Event unchanged since last sync",
                )
                return FanOutResult("skipped", 0, 0, mapping.id)
            if mapping is not None:
                return self._update(event, source_calendar_id)
            return self._sync(event, source_calendar_id)

    def sync_event_across_calendars(self, event: dict[str, Any], source_calendar_id: str) -> FanOutResult:
        with self._locks.hold((event["id"], source_calendar_id)):
            return self._sync(event, source_calendar_id)

    def update_event_across_calendars(self, event: dict[str, Any], source_calendar_id: str) -> FanOutResult:
        with self._locks.hold((event["id"], source_calendar_id)):
            return self._update(event, source_calendar_id)

    def delete_event_across_calendars(self, event_id: str, source_calendar_id: str) -> FanOutResult:
        with self._locks.hold((event_id, source_calendar_id)):
            return self._delete(event_id, source_calendar_id)

    # ── Operations ──────────────────────────────────────────────────

    def _sync(self, event: dict[str, Any], source_calendar_id: str, allow_update: bool = True) -> FanOutResult:
        event_id = event["id"]
        self.store.log_sync_activity("sync_started", source_calendar_id, event_id, "info", "Starting sync process")
        try:
            source = self.registry.get_active(source_calendar_id)
            targets = [c for c in self.registry.active_calendars() if c.id != source_calendar_id]
            if not targets:
                logger.info("No target calendars found for sync from %s", source_calendar_id)
                self.store.log_sync_activity(
                    "sync_skipped", source_calendar_id, event_id, "info", "No target calendars configured",
                )
                return FanOutResult("sync", 0, 0)

            try:
                mapping = self.store.create_mapping(event, source_calendar_id)
            except MappingExistsError:
                if not allow_update:
                    raise
                logger.info("Mapping for event %s already exists, applying as update", event_id)
                return self._update(event, source_calendar_id, allow_sync=False)

            return self._place_blocks(event, source, targets, mapping, {})
        except Exception as exc:
            self.store.log_sync_activity("sync_failed", source_calendar_id, event_id, "error", f"Sync failed: {exc}")
            raise

    def _resume(self, event: dict[str, Any], source_calendar_id: str, mapping: MappingRecord) -> FanOutResult:
        """Finish a sync whose earlier run stopped before the mapping was completed."""
        event_id = event["id"]
        logger.info("Mapping for event %s is %s, resuming sync", event_id, mapping.sync_status.value)
        self.store.log_sync_activity("sync_started", source_calendar_id, event_id, "info", "Resuming incomplete sync")
        try:
            source = self.registry.get_active(source_calendar_id)
            targets = [c for c in self.registry.active_calendars() if c.id != source_calendar_id]
            existing = {b.target_calendar_id: b for b in self.store.list_block_entries(mapping.id)}
            self.store.update_snapshot(mapping.id, event)
            return self._place_blocks(event, source, targets, mapping, existing)
        except Exception as exc:
            self.store.log_sync_activity("sync_failed", source_calendar_id, event_id, "error", f"Sync failed: {exc}")
            raise

    def _place_blocks(
        self,
        event: dict[str, Any],
        source: CalendarAccount,
        targets: list[CalendarAccount],
        mapping: MappingRecord,
        existing: dict[str, BlockEntryRecord],
    ) -> FanOutResult:
        """Create a placeholder on every target without one and refresh the tracked ones.

        ``existing`` maps target calendar ids to the block entries already
        recorded for ``mapping``. The mapping is completed afterwards.
        """
        event_id = event["id"]
        title = f"{source.alias} Block"
        draft = build_block_draft(event, source.alias, source.id, self.product_tag)
        patch = build_block_patch(event)

        def place_block(target):
            session = self.provider.authenticate(target.credential)
            block = existing.get(target.id)
            if block is not None:
                try:
                    return self.provider.update_event(session, target.id, block.block_entry_id, patch)
                except ProviderNotFoundError:
                    logger.info("Block event %s vanished from %s, recreating", block.block_entry_id, target.id)
            return self.provider.create_event(session, target.id, draft)

        def is_tracked(target, placed):
            block = existing.get(target.id)
            return block is not None and block.block_entry_id == placed["id"]

        def discard_late_block(target, placed):
            if not is_tracked(target, placed):
                self._discard_block(target, placed["id"])

        results = []
        for target, placed, error in self._fan_out(targets, place_block, on_late=discard_late_block):
            updated = error is None and is_tracked(target, placed)
            if error is None and not updated:
                try:
                    if target.id in existing:
                        self.store.remove_block_entry(mapping.id, target.id)
                    self.store.add_block_entry(mapping.id, placed["id"], target.id, title)
                except Exception as exc:
                    error = exc
                    self._discard_block(target, placed["id"])
            if error is None:
                self.store.log_sync_activity(
                    "block_updated" if updated else "block_created", target.id, placed["id"], "success",
                    "Block event updated successfully" if updated else f"Block event created for {source.alias}",
                )
                results.append(TargetOutcome(target.id, True, block_event_id=placed["id"]))
            else:
                self.store.log_sync_activity(
                    "block_failed", target.id, None, "error",
                    f"Failed to create block event: {error}",
                )
                results.append(TargetOutcome(target.id, False, error=str(error)))

        success_count = sum(1 for r in results if r.success)
        self.store.update_status(mapping.id, SyncStatus.completed)
        self.store.log_sync_activity(
            "sync_completed", source.id, event_id, "success",
            f"Sync completed: {success_count}/{len(targets)} block events created",
            {"successCount": success_count, "totalTargets": len(targets)},
        )
        logger.info("Sync completed for event %s: %d/%d successful", event_id, success_count, len(targets))
        return FanOutResult("sync", success_count, len(targets), mapping.id, results)

    def _discard_block(self, target: CalendarAccount, block_entry_id: str) -> None:
        """Remove a placeholder that was created but could not be recorded."""
        try:
            session = self.provider.authenticate(target.credential)
            self.provider.delete_event(session, target.id, block_entry_id)
        except ProviderError as exc:
            logger.error("Could not remove untracked block event %s from %s: %s", block_entry_id, target.id, exc)
            self.store.log_sync_activity(
                "block_orphaned", target.id, block_entry_id, "error", f"Untracked block event left behind: {exc}",
            )
            return
        logger.warning("Removed untracked block event %s from %s", block_entry_id, target.id)
        self.store.log_sync_activity(
            "block_discarded", target.id, block_entry_id, "info", "Untracked block event removed",
        )

    def _update(self, event: dict[str, Any], source_calendar_id: str, allow_sync: bool = True) -> FanOutResult:
        event_id = event["id"]
        self.store.log_sync_activity("update_started", source_calendar_id, event_id, "info", "Starting update process")
        try:
            mapping = self.store.get_mapping(event_id, source_calendar_id)
            if mapping is None:
                if not allow_sync:
                    raise RuntimeError(f"Mapping for event {event_id} disappeared during update")
                logger.info("No existing mapping found for event %s, creating new sync", event_id)
                return self._sync(event, source_calendar_id, allow_update=False)

            blocks = self.store.list_block_entries(mapping.id)
            accounts = {c.id: c for c in self.registry.active_calendars()}
            patch = build_block_patch(event)

            def update_block(block):
                target = accounts.get(block.target_calendar_id)
                if target is None:
                    raise CalendarNotFoundError(block.target_calendar_id)
                session = self.provider.authenticate(target.credential)
                return self.provider.update_event(session, block.target_calendar_id, block.block_entry_id, patch)

            results = []
            for block, _, error in self._fan_out(blocks, update_block):
                if error is None:
                    self.store.log_sync_activity(
                        "block_updated", block.target_calendar_id, block.block_entry_id, "success",
                        "Block event updated successfully",
                    )
                    results.append(TargetOutcome(block.target_calendar_id, True, block_event_id=block.block_entry_id))
                    continue
                if isinstance(error, ProviderNotFoundError):
                    # The placeholder is gone on the target; stop tracking it.
                    self.store.remove_block_entry(mapping.id, block.target_calendar_id)
                self.store.log_sync_activity(
                    "block_update_failed", block.target_calendar_id, block.block_entry_id, "error",
                    f"Update failed: {error}",
                )
                results.append(TargetOutcome(
                    block.target_calendar_id, False, block_event_id=block.block_entry_id, error=str(error),
                ))

            success_count = sum(1 for r in results if r.success)
            self.store.update_snapshot(mapping.id, event)
            self.store.update_status(mapping.id, SyncStatus.completed)
            self.store.log_sync_activity(
                "update_completed", source_calendar_id, event_id, "success",
                f"Update completed: {success_count}/{len(blocks)} block events updated",
                {"successCount": success_count, "totalTargets": len(blocks)},
            )
            logger.info("Update completed for event %s: %d/%d successful", event_id, success_count, len(blocks))
            return FanOutResult("update", success_count, len(blocks), mapping.id, results)
        except Exception as exc:
            self.store.log_sync_activity("update_failed", source_calendar_id, event_id, "error", f"Update failed: {exc}")
            raise

    def _delete(self, event_id: str, source_calendar_id: str) -> FanOutResult:
        try:
            mapping = self.store.get_mapping(event_id, source_calendar_id)
            if mapping is None:
                logger.info("No mapping found for deleted event %s, nothing to remove", event_id)
                return FanOutResult("delete", 0, 0)

            self.store.log_sync_activity("delete_started", source_calendar_id, event_id, "info", "Starting delete process")

            blocks = self.store.list_block_entries(mapping.id)
            accounts = {c.id: c for c in self.registry.active_calendars()}

            def delete_block(block):
                target = accounts.get(block.target_calendar_id)
                if target is None:
                    raise CalendarNotFoundError(block.target_calendar_id)
                session = self.provider.authenticate(target.credential)
                self.provider.delete_event(session, block.target_calendar_id, block.block_entry_id)

            results = []
            for block, _, error in self._fan_out(blocks, delete_block):
                if error is None or isinstance(error, ProviderNotFoundError):
                    self.store.log_sync_activity(
                        "block_deleted", block.target_calendar_id, block.block_entry_id, "success",
                        "Block event deleted successfully",
                    )
                    results.append(TargetOutcome(block.target_calendar_id, True, block_event_id=block.block_entry_id))
                else:
                    self.store.log_sync_activity(
                        "block_delete_failed", block.target_calendar_id, block.block_entry_id, "error",
                        f"Delete failed: {error}",
                    )
                    results.append(TargetOutcome(
                        block.target_calendar_id, False, block_event_id=block.block_entry_id, error=str(error),
                    ))

            success_count = sum(1 for r in results if r.success)
            self.store.delete_mapping(mapping.id)
            self.store.log_sync_activity(
                "delete_completed", source_calendar_id, event_id, "success",
                f"Delete completed: {success_count}/{len(blocks)} block events removed",
                {"successCount": success_count, "totalTargets": len(blocks)},
            )
            logger.info("Delete completed for event %s: %d/%d successful", event_id, success_count, len(blocks))
            return FanOutResult("delete", success_count, len(blocks), mapping.id, results)
        except Exception as exc:
            self.store.log_sync_activity("delete_failed", source_calendar_id, event_id, "error", f"Delete failed: {exc}")
            raise

    # ── Concurrency ─────────────────────────────────────────────────

    def _fan_out(
        self,
        items: list[T],
        work: Callable[[T], Any],
        on_late: Optional[Callable[[T, Any], None]] = None,
    ) -> list[tuple[T, Any, Optional[Exception]]]:
        """Run ``work`` for every item concurrently and collect each outcome.

        Never fails fast: each item yields ``(item, value, None)`` or
        ``(item, None, error)``. An item still running when its deadline
        passes is reported as a ProviderTimeoutError; its thread is abandoned.
        If that call later succeeds, ``on_late(item, value)`` runs on the
        abandoned thread.
        """
        if not items:
            return []
        width = min(len(items), self.max_workers)
        waves = math.ceil(len(items) / width)
        deadline = time.monotonic() + self.provider_timeout * waves

        executor = ThreadPoolExecutor(max_workers=width, thread_name_prefix="calmirror-fanout")
        outcomes = []
        try:
            futures = [(item, executor.submit(work, item)) for item in items]
            for item, future in futures:
                remaining = max(0.0, deadline - time.monotonic())
                try:
                    outcomes.append((item, future.result(timeout=remaining), None))
                except FutureTimeout:
                    outcomes.append((item, None, ProviderTimeoutError(
                        f"Provider call exceeded {self.provider_timeout:g}s deadline"
                    )))
                    if on_late is not None:
                        future.add_done_callback(partial(_deliver_late, item, on_late))
                except Exception as exc:
                    outcomes.append((item, None, exc))
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return outcomes


def _unchanged(mapping: MappingRecord, event: dict[str, Any]) -> bool:
    return (
        mapping.summary_snapshot == event.get("summary")
        and same_instant(mapping.start_time, parse_event_time(event.get("start")))
        and same_instant(mapping.end_time, parse_event_time(event.get("end")))
    )


def _deliver_late(item: Any, on_late: Callable[[Any, Any], None], future) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    try:
        on_late(item, future.result())
    except Exception:
        logger.exception("Handling a late provider result failed")
