"""Seed calendar configurations.

Usage: ``CALENDAR_SEED="a@example.com:Calendar 01,b@example.com:Calendar 02" python -m calmirror.seed``

Existing rows are left untouched; refresh tokens are stored later by the
OAuth flow.
"""
import logging

from sqlalchemy.orm import Session

from calmirror.config import settings
from calmirror.database import Base, SessionLocal, engine
from calmirror.models.calendar_config import CalendarConfig

logger = logging.getLogger(__name__)


def parse_calendar_seed(raw: str) -> list[tuple[str, str]]:
    """Parse ``"id:Alias,id:Alias"``; aliases default to ``Calendar NN``."""
    calendars = []
    for index, entry in enumerate(filter(None, (part.strip() for part in raw.split(","))), start=1):
        calendar_id, _, alias = entry.partition(":")
        calendars.append((calendar_id.strip(), alias.strip() or f"Calendar {index:02d}"))
    return calendars


def seed_calendar_configs(db: Session, calendars: list[tuple[str, str]]) -> int:
    """Insert missing calendar configs; returns how many were added."""
    added = 0
    for calendar_id, alias in calendars:
        if db.get(CalendarConfig, calendar_id) is not None:
            logger.info("Calendar configuration for %s already exists", alias)
            continue
        db.add(CalendarConfig(calendar_id=calendar_id, calendar_alias=alias, calendar_name=alias, is_active=True))
        added += 1
        logger.info("Added calendar configuration for %s", alias)
    db.commit()
    return added


def main() -> None:
    logging.basicConfig(level=settings.LOG_LEVEL.upper())
    if settings.DATABASE_URL.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)
    calendars = parse_calendar_seed(settings.CALENDAR_SEED)
    if not calendars:
        logger.warning("CALENDAR_SEED is empty, nothing to seed")
        return
    with SessionLocal() as db:
        added = seed_calendar_configs(db, calendars)
    logger.info("Seeded %d of %d calendars", added, len(calendars))


if __name__ == "__main__":
    main()
