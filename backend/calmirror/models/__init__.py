"""ORM models; importing this package registers every table on Base.metadata."""
from calmirror.models.calendar_config import CalendarConfig  # noqa: F401
from calmirror.models.event_mapping import EventMapping, BlockEvent, SyncStatus  # noqa: F401
from calmirror.models.sync_log import SyncLog, LogStatus  # noqa: F401
from calmirror.models.sync_job import SyncJob, JobState  # noqa: F401
