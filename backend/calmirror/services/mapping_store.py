"""Mapping Store: persistence for mappings, block entries and the audit log.

No business logic lives here; the fan-out orchestrator makes every decision.
Each call opens its own session so concurrent workers never share one.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from calmirror.errors import MappingExistsError
from calmirror.models.event_mapping import BlockEvent, EventMapping, SyncStatus
from calmirror.models.sync_log import LogStatus, SyncLog
from calmirror.services.event_times import parse_event_time

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MappingRecord:
    id: str
    source_event_id: str
    source_calendar_id: str
    summary_snapshot: Optional[str]
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    sync_status: SyncStatus


@dataclass(frozen=True)
class BlockEntryRecord:
    mapping_id: str
    target_calendar_id: str
    block_entry_id: str
    title: str


def _mapping_record(row: EventMapping) -> MappingRecord:
    return MappingRecord(
        id=row.id,
        source_event_id=row.original_event_id,
        source_calendar_id=row.original_calendar_id,
        summary_snapshot=row.original_summary,
        start_time=row.event_start,
        end_time=row.event_end,
        sync_status=row.sync_status,
    )


def _block_record(row: BlockEvent) -> BlockEntryRecord:
    return BlockEntryRecord(
        mapping_id=row.mapping_id,
        target_calendar_id=row.target_calendar_id,
        block_entry_id=row.block_event_id,
        title=row.block_title,
    )


class MappingStore:
    def __init__(self, session_factory: sessionmaker, audit_attempts: int = 2):
        self.session_factory = session_factory
        self.audit_attempts = max(1, audit_attempts)

    def create_mapping(self, event: dict[str, Any], source_calendar_id: str) -> MappingRecord:
        """Insert a pending mapping; raises MappingExistsError if one is already there."""
        with self.session_factory() as db:
            row = EventMapping(
                original_event_id=event["id"],
                original_calendar_id=source_calendar_id,
                original_summary=event.get("summary"),
                event_start=parse_event_time(event.get("start")),
                event_end=parse_event_time(event.get("end")),
                sync_status=SyncStatus.pending,
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise MappingExistsError(event["id"], source_calendar_id) from exc
            db.refresh(row)
            return _mapping_record(row)

    def get_mapping(self, source_event_id: str, source_calendar_id: str) -> Optional[MappingRecord]:
        with self.session_factory() as db:
            row = (
                db.query(EventMapping)
                .filter(
                    EventMapping.original_event_id == source_event_id,
                    EventMapping.original_calendar_id == source_calendar_id,
                )
                .first()
            )
            return _mapping_record(row) if row else None

    def list_block_entries(self, mapping_id: str) -> list[BlockEntryRecord]:
        with self.session_factory() as db:
            rows = (
                db.query(BlockEvent)
                .filter(BlockEvent.mapping_id == mapping_id)
                .order_by(BlockEvent.target_calendar_id)
                .all()
            )
            return [_block_record(row) for row in rows]

    def add_block_entry(self, mapping_id: str, block_entry_id: str, target_calendar_id: str, title: str) -> BlockEntryRecord:
        with self.session_factory() as db:
            row = BlockEvent(
                mapping_id=mapping_id,
                block_event_id=block_entry_id,
                target_calendar_id=target_calendar_id,
                block_title=title,
            )
            db.add(row)
            db.commit()
            return _block_record(row)

    def remove_block_entry(self, mapping_id: str, target_calendar_id: str) -> None:
        with self.session_factory() as db:
            db.query(BlockEvent).filter(
                BlockEvent.mapping_id == mapping_id,
                BlockEvent.target_calendar_id == target_calendar_id,
            ).delete(synchronize_session=False)
            db.commit()

    def update_snapshot(self, mapping_id: str, event: dict[str, Any]) -> None:
        with self.session_factory() as db:
            row = db.get(EventMapping, mapping_id)
            if row is None:
                return
            row.original_summary = event.get("summary")
            row.event_start = parse_event_time(event.get("start"))
            row.event_end = parse_event_time(event.get("end"))
            db.commit()

    def update_status(self, mapping_id: str, status: SyncStatus) -> None:
        with self.session_factory() as db:
            row = db.get(EventMapping, mapping_id)
            if row is None:
                return
            row.sync_status = status
            db.commit()

    def delete_mapping(self, mapping_id: str) -> None:
        """Delete a mapping together with its block entries."""
        with self.session_factory() as db:
            db.query(BlockEvent).filter(BlockEvent.mapping_id == mapping_id).delete(synchronize_session=False)
            db.query(EventMapping).filter(EventMapping.id == mapping_id).delete(synchronize_session=False)
            db.commit()

    def log_sync_activity(
        self,
        event_type: str,
        calendar_id: Optional[str],
        event_id: Optional[str],
        status: str,
        message: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Append an audit entry. Never raises: a failed write is logged and dropped."""
        for attempt in range(1, self.audit_attempts + 1):
            try:
                with self.session_factory() as db:
                    db.add(SyncLog(
                        event_type=event_type,
                        calendar_id=calendar_id,
                        event_id=event_id,
                        status=LogStatus(status),
                        message=message,
                        metadata_=metadata,
                    ))
                    db.commit()
                return True
            except (SQLAlchemyError, ValueError) as exc:
                logger.warning(
                    "Failed to log sync activity %s (attempt %d/%d): %s",
                    event_type, attempt, self.audit_attempts, exc,
                )
        logger.error("Dropped sync activity %s for calendar %s", event_type, calendar_id)
        return False
