"""
Multi-calendar gateway: calendar-scoped fetch/create/update/delete on top of
the protocol transport, the event codec and the calendar directory.

The gateway is stateless.  Write operations return a bool and never raise.
"""

import logging
import xml.etree.ElementTree as ET
from datetime import datetime

from caldav_calendar_sync import codec
from caldav_calendar_sync.directory import CalendarDirectory
from caldav_calendar_sync.models import CalendarSyncError
from caldav_calendar_sync.models import CodecError
from caldav_calendar_sync.models import Event
from caldav_calendar_sync.transport import CalDAVTransport

logger = logging.getLogger(__name__)

DAV_NS = "DAV:"
CALDAV_NS = "urn:ietf:params:xml:ns:caldav"


def filename_from_href(href: str | None) -> str:
    """Return the last path segment of an href when it names an .ics resource."""
    if not href:
        return ""
    segment = href.strip().rstrip("/").split("/")[-1]
    if segment.endswith(codec.EVENT_FILE_EXTENSION):
        return segment
    return ""


def resource_path(calendar_path: str, filename: str) -> str:
    """Join a collection path and a resource name with exactly one slash."""
    return calendar_path.rstrip("/") + "/" + filename.lstrip("/")


def parse_multistatus(payload: str) -> list[tuple[Event, str]]:
    """Decode every calendar-data entry in a multistatus REPORT response.

    Each event is paired with the remote filename of its response entry
    (falling back to the id-derived filename).  A malformed entry is logged
    and skipped.
    """
    try:
        root = ET.fromstring(payload)
    except ET.ParseError as e:
        raise CodecError(f"Invalid multistatus response: {e}") from e

    results: list[tuple[Event, str]] = []
    for response in root.iter(f"{{{DAV_NS}}}response"):
        href_el = response.find(f"{{{DAV_NS}}}href")
        filename = filename_from_href(href_el.text if href_el is not None else None)
        data_el = response.find(f".//{{{CALDAV_NS}}}calendar-data")
        if data_el is None or not (data_el.text or "").strip():
            continue
        for event in codec.decode(data_el.text):
            results.append((event, filename or codec.event_filename(event.id)))
    return results


class MultiCalendarGateway:
    """Calendar-name-scoped CalDAV operations."""

    def __init__(self, transport: CalDAVTransport, directory: CalendarDirectory):
        self.transport = transport
        self.directory = directory

    def fetch_all(
        self,
        calendar_name: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[tuple[Event, str]]:
        """Fetch and decode every event in one calendar.

        Transport errors propagate so the caller can record the calendar as
        failed; an unknown calendar name yields an empty list.
        """
        calendar = self.directory.get(calendar_name)
        if calendar is None:
            logger.error(f"Cannot fetch unknown calendar '{calendar_name}'")
            return []
        payload = self.transport.query(calendar.path, start, end)
        results = parse_multistatus(payload)
        logger.debug(f"Fetched {len(results)} event(s) from '{calendar_name}'")
        return results

    def count(self, calendar_name: str) -> int:
        """Number of remote events in a calendar, or -1 when the fetch fails."""
        try:
            return len(self.fetch_all(calendar_name))
        except CalendarSyncError as e:
            logger.error(f"Failed to count calendar '{calendar_name}': {e}")
            return -1

    def create(self, calendar_name: str, event: Event, wire_text: str | None = None) -> bool:
        """PUT the event at its id-derived filename (idempotent upsert).

        ``wire_text`` is the already-encoded event, when the caller has it.
        """
        calendar = self.directory.get(calendar_name)
        if calendar is None:
            logger.error(f"Cannot create event {event.id}: unknown calendar '{calendar_name}'")
            return False
        try:
            if wire_text is None:
                wire_text = codec.encode(event)
            result = self.transport.put(
                resource_path(calendar.path, codec.event_filename(event.id)), wire_text
            )
        except CalendarSyncError as e:
            logger.error(f"Failed to create event {event.id} in '{calendar_name}': {e}")
            return False
        if not result.success:
            logger.error(
                f"Failed to create event {event.id} in '{calendar_name}': "
                f"HTTP {result.status_code}"
            )
        return result.success

    def update(self, calendar_name: str, event: Event, filename: str | None = None) -> bool:
        """Replace the remote copy of an event.

        The event is encoded first; if that fails nothing is sent.  Then the
        current remote resource (``filename``, or the id-derived one) is
        deleted best-effort and the event is created again.  Delete failures
        are ignored: the event may not exist remotely yet.
        """
        calendar = self.directory.get(calendar_name)
        if calendar is None:
            logger.error(f"Cannot update event {event.id}: unknown calendar '{calendar_name}'")
            return False
        try:
            wire_text = codec.encode(event)
        except CodecError as e:
            logger.error(f"Not updating {event.id} in '{calendar_name}': {e}")
            return False
        target = filename or codec.event_filename(event.id)
        try:
            self.transport.delete(resource_path(calendar.path, target))
        except CalendarSyncError as e:
            logger.debug(f"Pre-update delete of {target} failed (ignored): {e}")
        return self.create(calendar_name, event, wire_text)

    def delete(self, calendar_name: str, filename: str) -> bool:
        """DELETE a specific remote resource by filename."""
        calendar = self.directory.get(calendar_name)
        if calendar is None:
            logger.error(f"Cannot delete {filename}: unknown calendar '{calendar_name}'")
            return False
        try:
            result = self.transport.delete(resource_path(calendar.path, filename))
        except CalendarSyncError as e:
            logger.error(f"Failed to delete {filename} from '{calendar_name}': {e}")
            return False
        if not result.success:
            logger.error(
                f"Failed to delete {filename} from '{calendar_name}': HTTP {result.status_code}"
            )
        return result.success
