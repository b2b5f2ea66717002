"""Composition root: builds the sync engine from explicit collaborators."""
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.orm import sessionmaker

from calmirror.config import settings
from calmirror.services.calendar_registry import CalendarRegistry
from calmirror.services.change_detector import ChangeDetector
from calmirror.services.mapping_store import MappingStore
from calmirror.services.provider import CalendarProvider, GoogleCalendarProvider
from calmirror.services.queue_service import SyncJobQueue
from calmirror.services.sync_service import FanOutOrchestrator


@dataclass
class SyncRuntime:
    registry: CalendarRegistry
    store: MappingStore
    orchestrator: FanOutOrchestrator
    queue: SyncJobQueue
    detector: ChangeDetector
    provider: CalendarProvider


def build_runtime(session_factory: sessionmaker, provider: Optional[CalendarProvider] = None, **queue_options) -> SyncRuntime:
    provider = provider or GoogleCalendarProvider()
    registry = CalendarRegistry(session_factory)
    store = MappingStore(session_factory, audit_attempts=settings.AUDIT_LOG_ATTEMPTS)
    orchestrator = FanOutOrchestrator(registry, store, provider)

    def process_sync_job(event_data, source_calendar_id):
        return orchestrator.handle_event_change(event_data, source_calendar_id).to_dict()

    queue = SyncJobQueue(session_factory, process_sync_job, **queue_options)
    detector = ChangeDetector(registry, store, provider, queue)
    return SyncRuntime(registry, store, orchestrator, queue, detector, provider)


def get_runtime(request: Request) -> SyncRuntime:
    """FastAPI dependency returning the runtime wired at startup."""
    return request.app.state.runtime
