"""
CalDAV protocol transport: REPORT / PUT / DELETE against one collection path.

Every call is a single attempt.  Authentication is attached per request;
no session login state is kept.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from datetime import timezone

import requests
from requests.auth import HTTPBasicAuth

from caldav_calendar_sync.models import CalDAVCredentials
from caldav_calendar_sync.models import TransportError

logger = logging.getLogger(__name__)

USER_AGENT = "caldav-calendar-sync/1.0"

PUT_SUCCESS_CODES = frozenset({200, 201, 204})
# 404 on DELETE means the resource is already gone, which is the goal.
DELETE_SUCCESS_CODES = frozenset({200, 204, 404})

_CALENDAR_QUERY = """<?xml version="1.0" encoding="utf-8" ?>
<C:calendar-query xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:prop>
    <D:getetag />
    <C:calendar-data />
  </D:prop>
  <C:filter>
    <C:comp-filter name="VCALENDAR">
      <C:comp-filter name="VEVENT">{time_range}</C:comp-filter>
    </C:comp-filter>
  </C:filter>
</C:calendar-query>"""


@dataclass(frozen=True)
class TransportResult:
    success: bool
    status_code: int | None = None


def format_caldav_datetime(value: datetime) -> str:
    """UTC ``YYYYMMDDTHHMMSSZ`` as used by CalDAV time-range filters."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def build_calendar_query(start: datetime | None = None, end: datetime | None = None) -> str:
    """Build a calendar-query REPORT body; absent bounds are left open."""
    if start is None and end is None:
        time_range = ""
    else:
        attrs = []
        if start is not None:
            attrs.append(f'start="{format_caldav_datetime(start)}"')
        if end is not None:
            attrs.append(f'end="{format_caldav_datetime(end)}"')
        time_range = f"<C:time-range {' '.join(attrs)} />"
    return _CALENDAR_QUERY.format(time_range=time_range)


class CalDAVTransport:
    """Raw CalDAV operations over HTTPS with basic auth."""

    def __init__(
        self,
        credentials: CalDAVCredentials,
        session: requests.Session | None = None,
        timeout: float | None = None,
        scheme: str = "https",
    ):
        self.credentials = credentials
        self.session = session or requests.Session()
        self.timeout = timeout
        self.scheme = scheme

    def url_for(self, path: str) -> str:
        base = self.credentials.collections_base_path.rstrip("/")
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.scheme}://{self.credentials.hostname}{base}{path}"

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = self.url_for(path)
        headers = {"User-Agent": USER_AGENT}
        headers.update(kwargs.pop("headers", {}))
        logger.debug(f"{method} {url}")
        try:
            response = self.session.request(
                method,
                url,
                headers=headers,
                auth=HTTPBasicAuth(self.credentials.username, self.credentials.password),
                timeout=self.timeout,
                **kwargs,
            )
        except requests.RequestException as e:
            raise TransportError(f"{method} {url} failed: {e}") from e
        logger.debug(f"{method} {url} -> {response.status_code}")
        return response

    def query(
        self, path: str, start: datetime | None = None, end: datetime | None = None
    ) -> str:
        """Run a calendar-query REPORT and return the raw multistatus payload."""
        body = build_calendar_query(start, end)
        response = self._request(
            "REPORT",
            path,
            headers={"Content-Type": "application/xml; charset=utf-8", "Depth": "1"},
            data=body.encode("utf-8"),
        )
        if not 200 <= response.status_code < 300:
            raise TransportError(
                f"REPORT {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        response.encoding = response.encoding or "utf-8"
        return response.text

    def put(self, path: str, wire_text: str) -> TransportResult:
        """Upsert one calendar resource."""
        response = self._request(
            "PUT",
            path,
            headers={"Content-Type": "text/calendar; charset=utf-8"},
            data=wire_text.encode("utf-8"),
        )
        return TransportResult(response.status_code in PUT_SUCCESS_CODES, response.status_code)

    def delete(self, path: str) -> TransportResult:
        """Delete one calendar resource; an already-missing resource counts as success."""
        response = self._request("DELETE", path)
        return TransportResult(
            response.status_code in DELETE_SUCCESS_CODES, response.status_code
        )
