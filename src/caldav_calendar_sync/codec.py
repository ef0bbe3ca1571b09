"""
iCalendar wire codec: VEVENT text <-> Event.

Timed events are always written as absolute UTC (``YYYYMMDDTHHMMSSZ``); the
event's timezone name travels alongside in ``X-SYNC-TIMEZONE`` and is only
used to render the wall-clock date/time on decode.  All-day events are
written as ``VALUE=DATE`` values.
"""

import logging
import re
from datetime import date
from datetime import datetime
from datetime import time as dt_time
from datetime import timedelta
from datetime import timezone
from urllib.parse import quote
from zoneinfo import ZoneInfo
from zoneinfo import ZoneInfoNotFoundError

from icalendar import Calendar as ICalCalendar
from icalendar import Event as ICalEvent
from icalendar import vRecur

from caldav_calendar_sync.models import ALL_DAY_DURATION
from caldav_calendar_sync.models import ALL_DAY_SENTINEL
from caldav_calendar_sync.models import CodecError
from caldav_calendar_sync.models import Event
from caldav_calendar_sync.models import EventStatus
from caldav_calendar_sync.models import EventTransparency
from caldav_calendar_sync.models import EventVisibility
from caldav_calendar_sync.models import GeoPoint

logger = logging.getLogger(__name__)

PRODID = "-//caldav-calendar-sync//EN"
TIMEZONE_PROPERTY = "X-SYNC-TIMEZONE"
EVENT_FILE_EXTENSION = ".ics"
DEFAULT_EVENT_LENGTH = timedelta(hours=1)

_DURATION_RE = re.compile(r"^PT(\d+)H(\d+)M$")
_UTC_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def event_filename(event_id: str) -> str:
    """Remote resource name for an event id (percent-encoded id + .ics)."""
    return quote(event_id, safe="") + EVENT_FILE_EXTENSION


def is_all_day(event: Event) -> bool:
    """True when the event has no time of day, the all-day sentinel, or lasts exactly 24h."""
    if not event.time or event.time.strip() == ALL_DAY_SENTINEL:
        return True
    return event.duration == ALL_DAY_DURATION


def format_duration(delta: timedelta) -> str | None:
    """Render a timedelta as ``PT{h}H{m}M``, truncated to whole minutes."""
    total_minutes = int(delta.total_seconds() // 60)
    if total_minutes < 0:
        return None
    hours, minutes = divmod(total_minutes, 60)
    return f"PT{hours}H{minutes}M"


def parse_duration(value: str | None) -> timedelta | None:
    if not value:
        return None
    m = _DURATION_RE.match(value)
    if not m:
        return None
    return timedelta(hours=int(m.group(1)), minutes=int(m.group(2)))


def _zone(name: str | None):
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, using UTC")
        return timezone.utc


def _to_utc_string(value) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).strftime(_UTC_FORMAT)
    return value.isoformat()


def _parse_iso_datetime(value: str, tz) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


# ---------------------------------------------------------------------------
# Encode
# ---------------------------------------------------------------------------


def _all_day_bounds(event: Event) -> tuple[date, date]:
    start = date.fromisoformat(event.date[:10])
    end = start + timedelta(days=1)
    if event.dtend:
        explicit = date.fromisoformat(event.dtend[:10])
        if explicit > start:
            end = explicit
    return start, end


def _timed_bounds(event: Event) -> tuple[datetime, datetime]:
    tz = _zone(event.timezone)
    try:
        start_day = date.fromisoformat(event.date[:10])
        start_time = dt_time.fromisoformat(event.time.strip())
    except ValueError as e:
        raise CodecError(f"Invalid date/time for event {event.id}: {e}") from e
    start = datetime.combine(start_day, start_time, tzinfo=tz)

    end = None
    if event.dtend:
        try:
            end = _parse_iso_datetime(event.dtend, tz)
        except ValueError:
            logger.warning(f"Ignoring unparseable end {event.dtend!r} on event {event.id}")
        if end is not None and end <= start:
            end = None
    if end is None:
        end = start + (parse_duration(event.duration) or DEFAULT_EVENT_LENGTH)

    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def build_vevent(event: Event, now: datetime | None = None) -> ICalEvent:
    """Build an icalendar VEVENT component for an Event."""
    now = now or datetime.now(timezone.utc)
    vevent = ICalEvent()
    vevent.add("uid", event.id)
    vevent.add("dtstamp", now)

    if is_all_day(event):
        start, end = _all_day_bounds(event)
    else:
        start, end = _timed_bounds(event)
        if event.timezone:
            vevent.add(TIMEZONE_PROPERTY, event.timezone)
    vevent.add("dtstart", start)
    vevent.add("dtend", end)

    vevent.add("summary", event.title)
    if event.description is not None:
        vevent.add("description", event.description)
    if event.location is not None:
        vevent.add("location", event.location)
    if event.organizer:
        vevent.add("organizer", event.organizer)
    for attendee in event.attendees or []:
        vevent.add("attendee", attendee)
    if event.categories:
        vevent.add("categories", event.categories)
    if event.status is not None:
        vevent.add("status", EventStatus(event.status).value)
    if event.visibility is not None:
        vevent.add("class", EventVisibility(event.visibility).value)
    if event.transparency is not None:
        vevent.add("transp", EventTransparency(event.transparency).value)
    if event.priority is not None:
        vevent.add("priority", event.priority)
    if event.url:
        vevent.add("url", event.url)
    if event.geo is not None:
        vevent.add("geo", (event.geo.lat, event.geo.lon))
    for attachment in event.attachments or []:
        vevent.add("attach", attachment)
    if event.rrule:
        vevent.add("rrule", vRecur.from_ical(event.rrule))
    vevent.add("sequence", event.sequence or 0)
    if event.created:
        try:
            vevent.add("created", _parse_iso_datetime(event.created, timezone.utc))
        except ValueError:
            logger.debug(f"Dropping unparseable CREATED {event.created!r} on {event.id}")
    vevent.add("last-modified", now)
    return vevent


def encode(event: Event) -> str:
    """Serialize an Event into a VCALENDAR document for a PUT.

    Raises CodecError for any field that cannot be represented.
    """
    try:
        vevent = build_vevent(event)
    except (ValueError, TypeError, AttributeError) as e:
        raise CodecError(f"Cannot encode event {event.id}: {e}") from e
    cal = ICalCalendar()
    cal.add("prodid", PRODID)
    cal.add("version", "2.0")
    cal.add_component(vevent)
    return cal.to_ical().decode("utf-8")


# ---------------------------------------------------------------------------
# Decode
# ---------------------------------------------------------------------------


def _text(comp, name: str) -> str | None:
    value = comp.get(name)
    if value is None:
        return None
    if isinstance(value, list):
        value = value[0]
    return str(value)


def _text_list(comp, name: str) -> list[str] | None:
    value = comp.get(name)
    if value is None:
        return None
    values = value if isinstance(value, list) else [value]
    result = [str(v) for v in values if str(v)]
    return result or None


def _categories(comp) -> list[str] | None:
    value = comp.get("CATEGORIES")
    if value is None:
        return None
    values = value if isinstance(value, list) else [value]
    result: list[str] = []
    for v in values:
        cats = getattr(v, "cats", None)
        if cats is None:
            cats = str(v).split(",")
        result.extend(str(c).strip() for c in cats if str(c).strip())
    return result or None


def _enum(enum_cls, comp, name: str):
    raw = _text(comp, name)
    if raw is None:
        return None
    try:
        return enum_cls(raw.strip().upper())
    except ValueError:
        logger.debug(f"Ignoring unknown {name} value {raw!r}")
        return None


def _int(comp, name: str) -> int | None:
    if comp.get(name) is None:
        return None
    try:
        return int(comp.decoded(name))
    except (TypeError, ValueError):
        return None


def _geo(comp) -> GeoPoint | None:
    value = comp.get("GEO")
    if value is None:
        return None
    lat = getattr(value, "latitude", None)
    lon = getattr(value, "longitude", None)
    if lat is None or lon is None:
        try:
            lat, lon = comp.decoded("GEO")
        except (TypeError, ValueError):
            return None
    return GeoPoint(float(lat), float(lon))


def _timestamp(comp, name: str) -> str | None:
    if comp.get(name) is None:
        return None
    return _to_utc_string(comp.decoded(name))


def _end_value(comp, start):
    if comp.get("DTEND") is not None:
        return comp.decoded("DTEND")
    if comp.get("DURATION") is not None:
        return start + comp.decoded("DURATION")
    return None


def _vevent_to_event(comp) -> Event:
    uid = _text(comp, "UID")
    if not uid:
        raise CodecError("VEVENT has no UID")
    if comp.get("DTSTART") is None:
        raise CodecError(f"VEVENT {uid} has no DTSTART")

    start = comp.decoded("DTSTART")
    end = _end_value(comp, start)
    tz_name = _text(comp, TIMEZONE_PROPERTY) or comp["DTSTART"].params.get("TZID")

    fields: dict = {}
    if isinstance(start, datetime):
        tz = _zone(tz_name)
        if start.tzinfo is None:
            start = start.replace(tzinfo=tz)
        local = start.astimezone(tz)
        fields["date"] = local.date().isoformat()
        fields["time"] = local.strftime("%H:%M")
        if tz_name:
            fields["timezone"] = tz_name
        if isinstance(end, datetime):
            if end.tzinfo is None:
                end = end.replace(tzinfo=tz)
            fields["dtend"] = _to_utc_string(end)
            fields["duration"] = format_duration(end - start)
    else:
        fields["date"] = start.isoformat()
        fields["time"] = ""
        if isinstance(end, date) and not isinstance(end, datetime):
            fields["dtend"] = end.isoformat()
            fields["duration"] = format_duration(end - start)

    rrule = comp.get("RRULE")
    if rrule is not None:
        fields["rrule"] = rrule.to_ical().decode("utf-8")

    return Event(
        id=uid,
        title=_text(comp, "SUMMARY") or "No Title",
        description=_text(comp, "DESCRIPTION"),
        location=_text(comp, "LOCATION"),
        organizer=_text(comp, "ORGANIZER"),
        attendees=_text_list(comp, "ATTENDEE"),
        categories=_categories(comp),
        priority=_int(comp, "PRIORITY"),
        status=_enum(EventStatus, comp, "STATUS"),
        visibility=_enum(EventVisibility, comp, "CLASS"),
        transparency=_enum(EventTransparency, comp, "TRANSP"),
        geo=_geo(comp),
        url=_text(comp, "URL"),
        attachments=_text_list(comp, "ATTACH"),
        sequence=_int(comp, "SEQUENCE"),
        created=_timestamp(comp, "CREATED"),
        last_modified=_timestamp(comp, "LAST-MODIFIED"),
        **fields,
    )


def decode(wire_text: str) -> list[Event]:
    """Parse every VEVENT in an iCalendar payload.

    A VEVENT that fails to decode is logged and skipped; the remaining events
    are still returned.  Exception instances (RECURRENCE-ID) share the master's
    UID and are skipped.
    """
    try:
        components = ICalCalendar.from_ical(wire_text, multiple=True)
    except ValueError as e:
        logger.error(f"Failed to parse iCalendar payload: {e}")
        return []

    events: list[Event] = []
    for component in components:
        for vevent in component.walk("VEVENT"):
            if vevent.get("RECURRENCE-ID") is not None:
                logger.debug(f"Skipping recurrence exception of {vevent.get('UID')}")
                continue
            try:
                events.append(_vevent_to_event(vevent))
            except (CodecError, ValueError, TypeError, KeyError) as e:
                logger.error(f"Skipping undecodable VEVENT {vevent.get('UID')}: {e}")
    return events
