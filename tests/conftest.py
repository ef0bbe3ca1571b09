"""
Shared pytest fixtures and iCal / multistatus helpers.
"""

import logging
from xml.sax.saxutils import escape

import pytest

from caldav_calendar_sync.db import CacheDatabase
from caldav_calendar_sync.directory import CalendarDirectory
from caldav_calendar_sync.gateway import MultiCalendarGateway
from caldav_calendar_sync.models import CachedEvent
from caldav_calendar_sync.models import CalDAVCredentials
from caldav_calendar_sync.models import Event
from caldav_calendar_sync.models import SyncConfig
from caldav_calendar_sync.models import SyncReport
from caldav_calendar_sync.models import SyncStatus
from caldav_calendar_sync.sync.reconciler import SyncReconciler
from caldav_calendar_sync.sync.scheduler import SingleFlight

# 2026-03-01T12:00:00Z
START_TIME = 1772366400.0


class FixedClock:
    """Manually advanced clock for cache timestamps and staleness checks."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_vevent(
    uid: str,
    summary: str = "Test Event",
    dtstart: str = "20260301T100000Z",
    dtend: str = "20260301T110000Z",
    extra: tuple = (),
) -> str:
    """Return a minimal, valid VEVENT iCal string (no VCALENDAR wrapper)."""
    lines = [
        "BEGIN:VEVENT",
        f"UID:{uid}",
        f"SUMMARY:{summary}",
        f"DTSTART:{dtstart}",
        f"DTEND:{dtend}",
        "DTSTAMP:20260224T000000Z",
        *extra,
        "END:VEVENT",
    ]
    return "\r\n".join(lines) + "\r\n"


def make_vcalendar(*vevents: str) -> str:
    return (
        "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//test//EN\r\n"
        + "".join(vevents)
        + "END:VCALENDAR\r\n"
    )


def make_multistatus(entries) -> str:
    """Build a REPORT multistatus body from ``(href, calendar_data)`` pairs."""
    responses = "".join(
        "<D:response>"
        f"<D:href>{escape(href)}</D:href>"
        "<D:propstat><D:prop>"
        '<D:getetag>"1"</D:getetag>'
        f"<C:calendar-data>{escape(data)}</C:calendar-data>"
        "</D:prop><D:status>HTTP/1.1 200 OK</D:status></D:propstat>"
        "</D:response>"
        for href, data in entries
    )
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<D:multistatus xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">'
        f"{responses}</D:multistatus>"
    )


def make_event(event_id: str, title: str = "Test Event", **kwargs) -> Event:
    kwargs.setdefault("date", "2026-03-02")
    kwargs.setdefault("time", "09:00")
    return Event(id=event_id, title=title, **kwargs)


def make_row(event_id: str, calendar: str = "work", **kwargs) -> CachedEvent:
    status = kwargs.pop("sync_status", SyncStatus.SYNCED)
    local_modified = kwargs.pop("local_modified", None)
    filename = kwargs.pop("caldav_filename", f"{event_id}.ics")
    return CachedEvent(
        event=make_event(event_id, **kwargs),
        calendar_name=calendar,
        calendar_path=f"/{calendar}/" if calendar else None,
        caldav_filename=filename,
        sync_status=status,
        local_modified=local_modified,
    )


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_cache.db"


@pytest.fixture
def cache(db_path, clock):
    with CacheDatabase(db_path, clock=clock) as db:
        yield db


@pytest.fixture
def credentials():
    return CalDAVCredentials(
        username="user",
        password="secret",
        hostname="caldav.example.com",
        collections_base_path="/123/calendars",
    )


@pytest.fixture
def sync_config(credentials, db_path):
    return SyncConfig(credentials=credentials, db_path=db_path)


@pytest.fixture
def directory():
    return CalendarDirectory()


@pytest.fixture
def transport():
    from tests.fake_transport import FakeTransport

    return FakeTransport()


@pytest.fixture
def gateway(transport, directory):
    return MultiCalendarGateway(transport, directory)


@pytest.fixture
def reconciler(gateway, cache, directory, sync_config):
    return SyncReconciler(gateway, cache, directory, SingleFlight(), sync_config)


@pytest.fixture
def sync_logger():
    return logging.getLogger("test_sync")


@pytest.fixture
def sync_report():
    return SyncReport()
