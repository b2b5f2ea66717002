"""Calendar-provider collaborator.

``CalendarProvider`` is the contract the sync engine consumes;
``GoogleCalendarProvider`` implements it against the Google Calendar v3 API.
Provider failures surface as ``calmirror.errors.ProviderError`` subclasses so
callers never need to know about ``googleapiclient``.
"""
import logging
from typing import Any, Optional, Protocol

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from calmirror.config import settings
from calmirror.errors import (
    ProviderAuthError,
    ProviderError,
    ProviderNotFoundError,
)
from calmirror.services.classifier import block_description, marker_properties

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar"]
MAX_RESULTS = 2500


class CalendarProvider(Protocol):
    def authenticate(self, credential: Optional[str]) -> Any: ...

    def list_events(self, session: Any, calendar_id: str, time_min: str, time_max: str) -> list[dict]: ...

    def get_event(self, session: Any, calendar_id: str, event_id: str) -> dict: ...

    def create_event(self, session: Any, calendar_id: str, draft: dict) -> dict: ...

    def update_event(self, session: Any, calendar_id: str, event_id: str, patch: dict) -> dict: ...

    def delete_event(self, session: Any, calendar_id: str, event_id: str) -> None: ...

    def watch(self, session: Any, calendar_id: str, channel_id: str, address: str, ttl_seconds: int) -> dict: ...


def build_block_draft(event: dict, source_alias: str, source_calendar_id: str, product_tag: str) -> dict:
    """Placeholder body for ``event``: same time span, none of its details."""
    return {
        "summary": f"{source_alias} Block",
        "start": event.get("start"),
        "end": event.get("end"),
        "description": block_description(product_tag),
        "visibility": "private",
        "transparency": "opaque",
        "extendedProperties": marker_properties(source_calendar_id),
    }


def build_block_patch(event: dict) -> dict:
    return {"start": event.get("start"), "end": event.get("end")}


def _translate(exc: HttpError, action: str) -> ProviderError:
    code = exc.resp.status
    if code in (401, 403):
        return ProviderAuthError(f"{action}: HTTP {code}")
    if code in (404, 410):
        return ProviderNotFoundError(f"{action}: HTTP {code}")
    return ProviderError(f"{action}: HTTP {code} {exc}")


class GoogleCalendarProvider:
    """Google Calendar v3 implementation of ``CalendarProvider``."""

    def __init__(
        self,
        client_id: str = settings.GOOGLE_CLIENT_ID,
        client_secret: str = settings.GOOGLE_CLIENT_SECRET,
        token_uri: str = settings.GOOGLE_TOKEN_URI,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_uri = token_uri

    def authenticate(self, credential: Optional[str]) -> Any:
        """Exchange a stored refresh token for an authorised API service."""
        if not credential:
            raise ProviderAuthError("No refresh token stored for calendar")
        creds = Credentials(
            token=None,
            refresh_token=credential,
            client_id=self.client_id,
            client_secret=self.client_secret,
            token_uri=self.token_uri,
            scopes=SCOPES,
        )
        try:
            creds.refresh(Request())
        except RefreshError as exc:
            raise ProviderAuthError(f"Token refresh failed: {exc}") from exc
        except TransportError as exc:
            raise ProviderError(f"Token refresh failed: {exc}") from exc
        return build("calendar", "v3", credentials=creds, cache_discovery=False)

    def list_events(self, session: Any, calendar_id: str, time_min: str, time_max: str) -> list[dict]:
        params = {
            "calendarId": calendar_id,
            "singleEvents": True,
            "orderBy": "startTime",
            "showDeleted": True,
            "maxResults": MAX_RESULTS,
            "timeMin": time_min,
            "timeMax": time_max,
        }
        items: list[dict] = []
        try:
            while True:
                response = session.events().list(**params).execute()
                items.extend(response.get("items", []))
                page_token = response.get("nextPageToken")
                if not page_token:
                    break
                params["pageToken"] = page_token
        except HttpError as exc:
            raise _translate(exc, f"list events on {calendar_id}") from exc
        return items

    def get_event(self, session: Any, calendar_id: str, event_id: str) -> dict:
        try:
            return session.events().get(calendarId=calendar_id, eventId=event_id).execute()
        except HttpError as exc:
            raise _translate(exc, f"get event {event_id}") from exc

    def create_event(self, session: Any, calendar_id: str, draft: dict) -> dict:
        try:
            created = session.events().insert(calendarId=calendar_id, body=draft).execute()
        except HttpError as exc:
            raise _translate(exc, f"create event on {calendar_id}") from exc
        logger.info("Created event %s on %s", created.get("id"), calendar_id)
        return created

    def update_event(self, session: Any, calendar_id: str, event_id: str, patch: dict) -> dict:
        try:
            updated = session.events().patch(calendarId=calendar_id, eventId=event_id, body=patch).execute()
        except HttpError as exc:
            raise _translate(exc, f"update event {event_id}") from exc
        logger.info("Updated event %s on %s", event_id, calendar_id)
        return updated

    def delete_event(self, session: Any, calendar_id: str, event_id: str) -> None:
        """Delete an event; an already-missing event is a successful no-op."""
        try:
            session.events().delete(calendarId=calendar_id, eventId=event_id).execute()
        except HttpError as exc:
            if exc.resp.status in (404, 410):
                logger.info("Event %s already deleted from %s", event_id, calendar_id)
                return
            raise _translate(exc, f"delete event {event_id}") from exc
        logger.info("Deleted event %s from %s", event_id, calendar_id)

    def watch(self, session: Any, calendar_id: str, channel_id: str, address: str, ttl_seconds: int) -> dict:
        """Open a push channel that posts change notifications for ``calendar_id`` to ``address``."""
        body = {
            "id": channel_id,
            "type": "web_hook",
            "address": address,
            "params": {"ttl": str(ttl_seconds)},
        }
        try:
            channel = session.events().watch(calendarId=calendar_id, body=body).execute()
        except HttpError as exc:
            raise _translate(exc, f"watch {calendar_id}") from exc
        logger.info("Push channel %s opened for %s", channel.get("id"), calendar_id)
        return channel
