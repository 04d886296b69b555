"""Utility helpers for StageCall."""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta
from html.parser import HTMLParser
from zoneinfo import ZoneInfo
import re

from markupsafe import Markup, escape

_date_pattern = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_time_pattern = re.compile(r"^\d{1,2}:\d{2}$")

ALLOWED_TAGS = frozenset(
    {
        "p",
        "br",
        "strong",
        "em",
        "u",
        "s",
        "ul",
        "ol",
        "li",
        "a",
        "h1",
        "h2",
        "h3",
        "blockquote",
        "code",
    }
)
ALLOWED_ATTRIBUTES = {"a": frozenset({"href"})}
_VOID_TAGS = frozenset({"br"})
_DROP_CONTENT_TAGS = frozenset({"script", "style", "iframe", "object", "embed"})


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Normalize aware datetimes to naive UTC; naive values are assumed UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def next_full_hour(now: datetime) -> datetime:
    """Return the first full hour strictly after ``now``."""

    return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)


def parse_date(raw: str) -> date:
    cleaned = (raw or "").strip()
    if not _date_pattern.match(cleaned):
        raise ValueError(f"Invalid date {raw!r}; expected YYYY-MM-DD")
    return date.fromisoformat(cleaned)


def parse_time(raw: str) -> time:
    cleaned = (raw or "").strip()
    if not _time_pattern.match(cleaned):
        raise ValueError(f"Invalid time {raw!r}; expected HH:MM")
    hours, minutes = (int(part) for part in cleaned.split(":"))
    if hours > 23 or minutes > 59:
        raise ValueError(f"Invalid time {raw!r}; expected HH:MM")
    return time(hours, minutes)


def local_to_utc(day: date, clock_time: time, tz_name: str) -> datetime:
    """Interpret a wall-clock date/time in ``tz_name`` and return naive UTC."""

    local = datetime.combine(day, clock_time, tzinfo=ZoneInfo(tz_name))
    return to_naive_utc(local)


def utc_to_local(value: datetime, tz_name: str) -> datetime:
    return value.replace(tzinfo=UTC).astimezone(ZoneInfo(tz_name))


def format_local(value: datetime, tz_name: str) -> str:
    """Return a long human readable local timestamp for notification bodies."""

    return utc_to_local(value, tz_name).strftime("%A, %d %B %Y, %H:%M")


def duration_between(start: datetime | None, end: datetime | None) -> str:
    """Return a short "2h 30m" style duration string."""
    if not start or not end:
        return ""
    seconds = max(int((end - start).total_seconds()), 0)
    if seconds == 0:
        return "less than 1 minute"
    minutes, sec = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    parts: list[str] = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if not parts:
        parts.append("<1m")
    return " ".join(parts)


def _safe_href(raw: str | None) -> str | None:
    """Return the href when it uses an allowed scheme, else ``None``."""

    normalized = (raw or "").strip()
    if not normalized:
        return None
    lowered = normalized.lower()
    if lowered.startswith(("http://", "https://", "mailto:")):
        return normalized
    return None


class _AllowListSanitizer(HTMLParser):
    """Re-emit only allow-listed tags and attributes, escaping everything else."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.parts: list[str] = []
        self.open_tags: list[str] = []
        self.drop_depth = 0

    def handle_starttag(self, tag, attrs):
        if tag in _DROP_CONTENT_TAGS:
            self.drop_depth += 1
            return
        if self.drop_depth or tag not in ALLOWED_TAGS:
            return
        rendered = [tag]
        for name, value in attrs:
            if name not in ALLOWED_ATTRIBUTES.get(tag, ()):
                continue
            if name == "href":
                value = _safe_href(value)
                if value is None:
                    continue
            rendered.append(f'{name}="{escape(value)}"')
        if tag == "a":
            rendered.append('rel="nofollow noopener noreferrer"')
        self.parts.append(f"<{' '.join(rendered)}>")
        if tag not in _VOID_TAGS:
            self.open_tags.append(tag)

    def handle_startendtag(self, tag, attrs):
        self.handle_starttag(tag, attrs)
        if tag in self.open_tags and tag not in _VOID_TAGS:
            self.handle_endtag(tag)

    def handle_endtag(self, tag):
        if tag in _DROP_CONTENT_TAGS:
            self.drop_depth = max(self.drop_depth - 1, 0)
            return
        if self.drop_depth or tag not in self.open_tags:
            return
        while self.open_tags:
            current = self.open_tags.pop()
            self.parts.append(f"</{current}>")
            if current == tag:
                break

    def handle_data(self, data):
        if self.drop_depth:
            return
        self.parts.append(str(escape(data)))

    def render(self) -> str:
        while self.open_tags:
            self.parts.append(f"</{self.open_tags.pop()}>")
        return "".join(self.parts)


def sanitize_rich_text(value: str | None) -> Markup | None:
    """Strip unsafe markup from a free-form description.

    Returns ``None`` for empty input so the column stays NULL.
    """

    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    parser = _AllowListSanitizer()
    parser.feed(cleaned)
    parser.close()
    rendered = parser.render().strip()
    return Markup(rendered) if rendered else None
