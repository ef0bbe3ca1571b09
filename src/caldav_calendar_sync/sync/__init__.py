"""
CalendarSyncService — library surface wiring cache, gateway, reconciler and timer.

Reads come from the local cache and never raise.  Writes land in the cache
first and are pushed to the server in the background.
"""

import dataclasses
import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import date

import requests

from caldav_calendar_sync import codec
from caldav_calendar_sync.db import CacheDatabase
from caldav_calendar_sync.directory import DEFAULT_CALENDARS
from caldav_calendar_sync.directory import CalendarDirectory
from caldav_calendar_sync.gateway import MultiCalendarGateway
from caldav_calendar_sync.models import CachedEvent
from caldav_calendar_sync.models import CalendarSyncError
from caldav_calendar_sync.models import CodecError
from caldav_calendar_sync.models import Event
from caldav_calendar_sync.models import SyncConfig
from caldav_calendar_sync.models import SyncReport
from caldav_calendar_sync.models import SyncStatus
from caldav_calendar_sync.sync.reconciler import SyncReconciler
from caldav_calendar_sync.sync.scheduler import SingleFlight
from caldav_calendar_sync.sync.scheduler import SyncScheduler
from caldav_calendar_sync.transport import CalDAVTransport

PLACEHOLDER_ID = "1"
PLACEHOLDER_TITLE = "No Calendar Access - Demo Event"


def placeholder_event(today: date | None = None) -> Event:
    """Stand-in event returned when the cache cannot be read."""
    today = today or date.today()
    return Event(id=PLACEHOLDER_ID, title=PLACEHOLDER_TITLE, date=today.isoformat(), time="10:00")


def validate_event(event: Event) -> bool:
    """True when id, title and date are filled in and the event can be encoded."""
    if not all(
        isinstance(value, str) and value.strip()
        for value in (event.id, event.title, event.date)
    ):
        return False
    try:
        codec.encode(event)
    except CodecError:
        return False
    return True


class CalendarSyncService:
    """Cache-first calendar access with background CalDAV synchronisation."""

    def __init__(
        self,
        config: SyncConfig,
        gateway: MultiCalendarGateway | None = None,
        cache: CacheDatabase | None = None,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self.directory = (
            gateway.directory
            if gateway is not None
            else CalendarDirectory(config.calendars or DEFAULT_CALENDARS)
        )
        if gateway is None:
            transport = CalDAVTransport(
                config.credentials, session=session, timeout=config.request_timeout
            )
            gateway = MultiCalendarGateway(transport, self.directory)
        self.gateway = gateway

        if cache is None:
            cache = CacheDatabase(config.db_path, clock=clock)
            cache.connect()
        self.cache = cache

        self.guard = SingleFlight()
        self.reconciler = SyncReconciler(
            self.gateway, self.cache, self.directory, self.guard, config
        )
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="caldav-background")
        self.scheduler = SyncScheduler(
            self.reconciler,
            self.cache,
            config.sync_interval_minutes,
            clock=clock,
            executor=self._executor,
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def start(self):
        """Start the periodic sync timer."""
        self.scheduler.start()

    # ------------------------------------------------------------------ #
    # Reads                                                                #
    # ------------------------------------------------------------------ #

    def get_events(self, start=None, end=None, calendar: str | None = None) -> list[Event]:
        try:
            events = self.cache.query(start, end, calendar)
        except CalendarSyncError as e:
            self.logger.error(f"Could not read cached events: {e}")
            return [placeholder_event()]
        self.scheduler.trigger()
        return events

    def list_calendars(self) -> list[dict]:
        """Every configured calendar with its cached count (-1 if its last pull failed)."""
        try:
            counts = self.cache.calendar_counts()
        except CalendarSyncError as e:
            self.logger.error(f"Could not count cached events: {e}")
            counts = {}
        report = self.reconciler.last_report
        failed = set(report.failed_calendars) if report else set()
        return [
            {
                "name": calendar.name,
                "display_name": calendar.display_name,
                "count": -1 if calendar.name in failed else counts.get(calendar.name, 0),
            }
            for calendar in self.directory
        ]

    # ------------------------------------------------------------------ #
    # Writes                                                               #
    # ------------------------------------------------------------------ #

    def create_event(self, event: Event, calendar: str | None = None) -> bool:
        if not validate_event(event):
            self.logger.error(f"Refusing to create invalid event {event.id!r}")
            return False
        calendar_name = calendar or self.config.default_calendar
        target = self.directory.get(calendar_name)
        if target is None:
            self.logger.error(f"Cannot create event in unknown calendar '{calendar_name}'")
            return False
        try:
            existing = self.cache.get(event.id)
            row = CachedEvent(
                event=event,
                calendar_name=target.name,
                calendar_path=target.path,
                caldav_filename=existing.caldav_filename if existing else None,
                sync_status=SyncStatus.PENDING,
                local_modified=self.clock(),
            )
            self.cache.upsert_many([row], preserve_metadata=False)
        except CalendarSyncError as e:
            self.logger.error(f"Failed to create event {event.id} locally: {e}")
            return False
        self.logger.debug(f"Created {event.id} locally in '{target.name}'")
        self._submit_push(event.id)
        return True

    def update_event(self, event: Event) -> bool:
        if not validate_event(event):
            self.logger.error(f"Refusing to store invalid event {event.id!r}")
            return False
        try:
            existing = self.cache.get(event.id)
            if existing is None:
                self.logger.error(f"Cannot update unknown event {event.id}")
                return False
            sequence = max(existing.event.sequence or 0, event.sequence or 0) + 1
            row = dataclasses.replace(
                existing,
                event=dataclasses.replace(event, sequence=sequence),
                sync_status=SyncStatus.PENDING,
                local_modified=self.clock(),
            )
            self.cache.upsert_many([row], preserve_metadata=False)
        except CalendarSyncError as e:
            self.logger.error(f"Failed to update event {event.id} locally: {e}")
            return False
        self._submit_push(event.id)
        return True

    def delete_event(self, event_id: str) -> bool:
        try:
            deleted = self.cache.delete(event_id)
        except CalendarSyncError as e:
            self.logger.error(f"Failed to delete event {event_id} locally: {e}")
            return False
        if not deleted:
            self.logger.warning(f"Cannot delete unknown event {event_id}")
            return False
        self._submit_push(event_id)
        return True

    def force_sync(self) -> SyncReport | None:
        return self.reconciler.force_sync()

    def _submit_push(self, event_id: str):
        return self._executor.submit(self._push_quietly, event_id)

    def _push_quietly(self, event_id: str):
        try:
            return self.reconciler.push_event(event_id)
        except Exception as e:
            self.logger.error(f"Background push of {event_id} failed: {e}", exc_info=True)
            return None

    def flush(self):
        """Block until background pushes and sync triggers queued so far have run."""
        self._executor.submit(lambda: None).result()

    def close(self):
        """Stop the timer, drain background pushes and close the cache."""
        self.scheduler.stop()
        self._executor.shutdown(wait=True)
        self.cache.close()
