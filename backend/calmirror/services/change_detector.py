"""Change detector: turns a push notification into queued sync jobs."""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

import pytz

from calmirror.config import settings
from calmirror.errors import ConfigurationError, ProviderAuthError
from calmirror.services.calendar_registry import CalendarRegistry
from calmirror.services.classifier import is_block_entry
from calmirror.services.event_times import to_rfc3339
from calmirror.services.mapping_store import MappingStore
from calmirror.services.provider import CalendarProvider
from calmirror.services.queue_service import JobHandle, SyncJobQueue

logger = logging.getLogger(__name__)

SYNC_HANDSHAKE_STATE = "sync"


class BlockEventSyncError(ConfigurationError):
    """A placeholder was submitted for synchronisation."""


@dataclass
class DetectionResult:
    calendar_id: str
    acknowledged_only: bool = False
    events_found: int = 0
    skipped_blocks: int = 0
    skipped_cancelled: int = 0
    jobs: list[JobHandle] = field(default_factory=list)


class ChangeDetector:
    def __init__(
        self,
        registry: CalendarRegistry,
        store: MappingStore,
        provider: CalendarProvider,
        queue: SyncJobQueue,
        product_tag: str = settings.PRODUCT_TAG,
        lookback: timedelta = timedelta(minutes=settings.CHANGE_LOOKBACK_MINUTES),
        lookahead: timedelta = timedelta(hours=settings.CHANGE_LOOKAHEAD_HOURS),
    ):
        self.registry = registry
        self.store = store
        self.provider = provider
        self.queue = queue
        self.product_tag = product_tag
        self.lookback = lookback
        self.lookahead = lookahead

    def handle_notification(self, calendar_id: str, resource_state: Optional[str]) -> DetectionResult:
        """Entry point for the push receiver. ``sync`` handshakes are only acknowledged."""
        if resource_state == SYNC_HANDSHAKE_STATE:
            logger.info("Sync handshake received for %s, acknowledging", calendar_id)
            return DetectionResult(calendar_id, acknowledged_only=True)
        return self.detect_changes(calendar_id)

    def detect_changes(self, calendar_id: str, now: Optional[datetime] = None) -> DetectionResult:
        """Queue one ``normal`` job per genuine event changed around ``now``.

        Raises CalendarNotFoundError for unknown or inactive calendars and
        ProviderAuthError when the calendar's credential is rejected.
        """
        source = self.registry.get_active(calendar_id)
        now = now or datetime.now(pytz.utc)
        try:
            session = self.provider.authenticate(source.credential)
            events = self.provider.list_events(
                session, calendar_id, to_rfc3339(now - self.lookback), to_rfc3339(now + self.lookahead),
            )
        except ProviderAuthError as exc:
            self.store.log_sync_activity(
                "webhook_auth_failed", calendar_id, None, "error", f"Authentication failed: {exc}",
            )
            raise

        result = DetectionResult(calendar_id, events_found=len(events))
        if not events:
            logger.info("No recent events found to process on %s", calendar_id)
            return result

        for event in events:
            if is_block_entry(event, source.alias, self.product_tag):
                result.skipped_blocks += 1
                continue
            if event.get("status") == "cancelled" and self.store.get_mapping(event.get("id"), calendar_id) is None:
                result.skipped_cancelled += 1
                continue
            logger.info("Queueing sync for event %s on %s", event.get("id"), calendar_id)
            result.jobs.append(self.queue.enqueue(event, calendar_id, "normal"))

        self.store.log_sync_activity(
            "webhook_processed", calendar_id, None, "success", f"{len(result.jobs)} sync jobs queued",
            {
                "eventsFound": result.events_found,
                "skippedBlocks": result.skipped_blocks,
                "skippedCancelled": result.skipped_cancelled,
            },
        )
        return result

    def request_manual_sync(self, calendar_id: str, event_id: str) -> JobHandle:
        """Queue a ``high`` priority resync of one event picked by a user."""
        source = self.registry.get_active(calendar_id)
        session = self.provider.authenticate(source.credential)
        event = self.provider.get_event(session, calendar_id, event_id)
        if is_block_entry(event, source.alias, self.product_tag):
            raise BlockEventSyncError("Cannot sync block events")

        job = self.queue.enqueue(event, calendar_id, "high")
        self.store.log_sync_activity("manual_sync_requested", calendar_id, event_id, "info", "Manual sync job queued")
        return job
