"""Domain exceptions raised by the sync engine."""


class CalMirrorError(Exception):
    """Base class for every error raised by calmirror."""


class NonRetryableError(CalMirrorError):
    """Marker: the job queue fails these immediately instead of backing off."""


class ConfigurationError(NonRetryableError):
    """The calendar configuration cannot satisfy the request."""


class CalendarNotFoundError(ConfigurationError):
    def __init__(self, calendar_id: str):
        super().__init__(f"Calendar {calendar_id} not found in configurations")
        self.calendar_id = calendar_id


class ProviderError(CalMirrorError):
    """A call to the calendar provider failed (network, quota, 5xx...)."""


class ProviderAuthError(ProviderError):
    """The provider rejected the stored credential."""


class ProviderNotFoundError(ProviderError):
    """The provider has no such calendar or event."""


class ProviderTimeoutError(ProviderError):
    """A provider call did not finish within its deadline."""


class MappingExistsError(CalMirrorError):
    """An EventMapping already exists for the (event, calendar) pair."""

    def __init__(self, source_event_id: str, source_calendar_id: str):
        super().__init__(
            f"Mapping already exists for event {source_event_id} on {source_calendar_id}"
        )
        self.source_event_id = source_event_id
        self.source_calendar_id = source_calendar_id
