"""Read access to configured calendar accounts."""
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.orm import Session, sessionmaker

from calmirror.errors import CalendarNotFoundError, ConfigurationError
from calmirror.models.calendar_config import CalendarConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CalendarAccount:
    id: str
    alias: str
    active: bool
    credential: Optional[str]


def _to_account(row: CalendarConfig) -> CalendarAccount:
    return CalendarAccount(
        id=row.calendar_id,
        alias=row.calendar_alias,
        active=bool(row.is_active),
        credential=row.refresh_token,
    )


class CalendarRegistry:
    """Loads CalendarAccounts; the sync engine never writes them."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def active_calendars(self) -> list[CalendarAccount]:
        with self.session_factory() as db:
            rows = (
                db.query(CalendarConfig)
                .filter(CalendarConfig.is_active.is_(True))
                .order_by(CalendarConfig.calendar_alias)
                .all()
            )
            return [_to_account(row) for row in rows]

    def get_active(self, calendar_id: str) -> CalendarAccount:
        """Return the active account for ``calendar_id`` or raise CalendarNotFoundError."""
        for account in self.active_calendars():
            if account.id == calendar_id:
                return account
        raise CalendarNotFoundError(calendar_id)


def set_calendar_active(db: Session, calendar_id: str, active: bool) -> CalendarConfig:
    """Activate or deactivate a calendar. Calendars are never deleted."""
    row = db.query(CalendarConfig).filter(CalendarConfig.calendar_id == calendar_id).first()
    if row is None:
        raise CalendarNotFoundError(calendar_id)
    row.is_active = active
    db.commit()
    db.refresh(row)
    logger.info("Calendar %s (%s) is now %s", row.calendar_alias, calendar_id, "active" if active else "inactive")
    return row


def register_watch(db: Session, provider: Any, calendar_id: str, base_url: str, ttl_seconds: int) -> CalendarConfig:
    """Open a push channel for ``calendar_id`` and store its channel and resource ids.

    Notifications are delivered to ``<base_url>/webhooks/calendar/<calendar_id>``.
    """
    row = db.query(CalendarConfig).filter(CalendarConfig.calendar_id == calendar_id).first()
    if row is None:
        raise CalendarNotFoundError(calendar_id)
    if not base_url:
        raise ConfigurationError("WEBHOOK_BASE_URL is not configured")

    address = f"{base_url.rstrip('/')}/webhooks/calendar/{calendar_id}"
    session = provider.authenticate(row.refresh_token)
    channel = provider.watch(session, calendar_id, f"calmirror-{uuid.uuid4().hex}", address, ttl_seconds)
    row.webhook_id = channel.get("id")
    row.webhook_resource_id = channel.get("resourceId")
    db.commit()
    db.refresh(row)
    logger.info("Calendar %s (%s) now pushes to %s", row.calendar_alias, calendar_id, address)
    return row
