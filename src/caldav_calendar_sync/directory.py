"""
Static directory of logical calendars (name -> remote collection path).
"""

from collections.abc import Iterator
from collections.abc import Mapping

from caldav_calendar_sync.models import Calendar
from caldav_calendar_sync.models import ConfigError

DEFAULT_CALENDARS = (
    Calendar(name="shared", path="/shared/", display_name="Shared"),
    Calendar(name="home", path="/home/", display_name="Home"),
    Calendar(name="work", path="/work/", display_name="Work"),
    Calendar(name="meals", path="/meals/", display_name="Meals"),
)


class CalendarDirectory:
    """Ordered, immutable name -> Calendar map."""

    def __init__(self, calendars=DEFAULT_CALENDARS):
        self._calendars: dict[str, Calendar] = {}
        for calendar in calendars:
            if calendar.name in self._calendars:
                raise ConfigError(f"Duplicate calendar name '{calendar.name}'")
            self._calendars[calendar.name] = calendar

    @classmethod
    def from_mapping(cls, mapping: Mapping) -> "CalendarDirectory":
        """Build from ``{name: path}`` or ``{name: {"path": ..., "display_name": ...}}``.

        Paths are normalised to ``/name/`` form.
        """
        calendars = []
        for name, value in mapping.items():
            if isinstance(value, Mapping):
                path = value.get("path")
                display_name = value.get("display_name") or name.title()
            else:
                path = value
                display_name = name.title()
            if not path or not path.strip("/"):
                raise ConfigError(f"Calendar '{name}' has no remote path")
            path = "/" + path.strip().strip("/") + "/"
            calendars.append(Calendar(name=name, path=path, display_name=display_name))
        return cls(calendars)

    def get(self, name: str | None) -> Calendar | None:
        if name is None:
            return None
        return self._calendars.get(name)

    def names(self) -> list[str]:
        return list(self._calendars)

    def __iter__(self) -> Iterator[Calendar]:
        return iter(self._calendars.values())

    def __len__(self) -> int:
        return len(self._calendars)

    def __contains__(self, name: object) -> bool:
        return name in self._calendars
