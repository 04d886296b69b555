"""Registration deadline options and the policy that turns them into timestamps."""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum


class DeadlineOption(str, Enum):
    NONE = "none"
    HOURS_12 = "12h"
    HOURS_24 = "24h"
    HOURS_48 = "48h"
    HOURS_72 = "72h"
    WEEK_1 = "1w"
    WEEKS_2 = "2w"

    @property
    def offset(self) -> timedelta | None:
        return DEADLINE_OFFSETS[self]

    @property
    def label(self) -> str:
        return DEADLINE_LABELS[self]


DEADLINE_OFFSETS: dict[DeadlineOption, timedelta | None] = {
    DeadlineOption.NONE: None,
    DeadlineOption.HOURS_12: timedelta(hours=12),
    DeadlineOption.HOURS_24: timedelta(hours=24),
    DeadlineOption.HOURS_48: timedelta(hours=48),
    DeadlineOption.HOURS_72: timedelta(hours=72),
    DeadlineOption.WEEK_1: timedelta(weeks=1),
    DeadlineOption.WEEKS_2: timedelta(weeks=2),
}

DEADLINE_LABELS: dict[DeadlineOption, str] = {
    DeadlineOption.NONE: "No deadline",
    DeadlineOption.HOURS_12: "12 hours before",
    DeadlineOption.HOURS_24: "24 hours before",
    DeadlineOption.HOURS_48: "48 hours before",
    DeadlineOption.HOURS_72: "72 hours before",
    DeadlineOption.WEEK_1: "1 week before",
    DeadlineOption.WEEKS_2: "2 weeks before",
}


def parse_deadline_option(raw: str | DeadlineOption | None) -> DeadlineOption:
    """Return the option for ``raw``; raise ``ValueError`` for unknown tags."""

    if isinstance(raw, DeadlineOption):
        return raw
    normalized = (raw or "").strip().lower()
    try:
        return DeadlineOption(normalized)
    except ValueError as exc:
        raise ValueError(f"Unknown registration deadline option {raw!r}") from exc


def compute_deadline(start: datetime, option: DeadlineOption) -> datetime | None:
    """Return the absolute registration deadline, or ``None`` for no deadline."""

    offset = DEADLINE_OFFSETS[option]
    if offset is None:
        return None
    return start - offset


def detect_deadline_option(
    start: datetime, deadline: datetime | None
) -> DeadlineOption:
    """Map a stored deadline back onto the closest option."""

    if deadline is None:
        return DeadlineOption.NONE
    diff = start - deadline
    if diff <= timedelta(0):
        return DeadlineOption.NONE
    closest = DeadlineOption.WEEK_1
    smallest: timedelta | None = None
    for option, offset in DEADLINE_OFFSETS.items():
        if offset is None:
            continue
        delta = abs(diff - offset)
        if smallest is None or delta < smallest:
            smallest = delta
            closest = option
    return closest


def deadline_catalogue() -> list[dict[str, str | int | None]]:
    """Return the option list for editors."""

    return [
        {
            "value": option.value,
            "label": option.label,
            "offset_seconds": int(offset.total_seconds()) if offset else None,
        }
        for option, offset in DEADLINE_OFFSETS.items()
    ]
