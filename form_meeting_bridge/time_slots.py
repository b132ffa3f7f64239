from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable

from .forms import FormSlotEntry

_CLOCK_RANGE_RE = re.compile(
    r"(?<!\d)(?P<start_hour>[01]?\d|2[0-3]):(?P<start_minute>[0-5]\d)\s*[~\-]\s*"
    r"(?P<end_hour>[01]?\d|2[0-3]):(?P<end_minute>[0-5]\d)(?!\d)"
)
PAST_SLOT_GRACE = timedelta(minutes=2)


class SlotParseError(ValueError):
    pass


class SlotEntirelyInPastError(ValueError):
    pass


@dataclass(frozen=True)
class TimeSlot:
    room_identity: str
    room_label: str
    start: datetime
    end: datetime
    raw_label: str
    item_number: int | None = None
    api_code: str | None = None

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise ValueError("Time slot start must be earlier than end.")

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


@dataclass(frozen=True)
class SlotFailure:
    raw_label: str
    room_label: str
    reason: str
    in_past: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "raw_label": self.raw_label,
            "room": self.room_label,
            "reason": self.reason,
            "in_past": self.in_past,
        }


def parse_clock_range(raw_label: str) -> tuple[int, int]:
    """Return the start and end of ``HH:MM-HH:MM`` in minutes since midnight."""
    match = _CLOCK_RANGE_RE.search(raw_label or "")
    if not match:
        raise SlotParseError(f"Could not find HH:MM-HH:MM range in label: {raw_label!r}")

    start_minutes = int(match.group("start_hour")) * 60 + int(match.group("start_minute"))
    end_minutes = int(match.group("end_hour")) * 60 + int(match.group("end_minute"))
    if end_minutes <= start_minutes:
        raise SlotParseError(f"Slot end must be later than start on the same day: {raw_label!r}")
    return start_minutes, end_minutes


def parse_instant(value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text:
            raise SlotParseError("scheduled_at must not be empty")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as error:
            raise SlotParseError(f"Failed to parse scheduled_at time: {text!r}") from error

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_time_slot(
    raw_label: str,
    scheduled_at: str | datetime,
    *,
    room_name: str,
    now: datetime | None = None,
    item_number: int | None = None,
    api_code: str | None = None,
) -> TimeSlot:
    room_label = (room_name or "").strip()
    if not room_label:
        raise SlotParseError("room name must not be empty")

    start_minutes, end_minutes = parse_clock_range(raw_label)
    start = parse_instant(scheduled_at)
    end = start + timedelta(minutes=end_minutes - start_minutes)

    effective_now = parse_instant(now) if now is not None else datetime.now(timezone.utc)
    if end <= effective_now:
        raise SlotEntirelyInPastError(f"Time slot has already ended: {raw_label}")
    if start <= effective_now:
        # Whole minutes; the end is kept so the slot stays contiguous with the next one.
        start = effective_now.replace(second=0, microsecond=0) + PAST_SLOT_GRACE
        if start >= end:
            raise SlotEntirelyInPastError(f"Time slot has no bookable time left: {raw_label}")

    return TimeSlot(
        room_identity=" ".join(room_label.split()),
        room_label=room_label,
        start=start,
        end=end,
        raw_label=raw_label,
        item_number=item_number,
        api_code=api_code,
    )


def _item_number(value: object) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise SlotParseError(f"item number is not an integer: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as error:
        raise SlotParseError(f"item number is not an integer: {value!r}") from error


def parse_form_slot(entry: FormSlotEntry, now: datetime | None = None) -> TimeSlot:
    return parse_time_slot(
        entry.scheduled_label,
        entry.scheduled_at,
        room_name=entry.item_name,
        now=now,
        item_number=_item_number(entry.number),
        api_code=entry.api_code,
    )


def parse_form_slots(
    entries: Iterable[FormSlotEntry],
    now: datetime | None = None,
) -> tuple[list[TimeSlot], list[SlotFailure]]:
    slots: list[TimeSlot] = []
    failures: list[SlotFailure] = []
    for entry in entries:
        try:
            slots.append(parse_form_slot(entry, now=now))
        except SlotEntirelyInPastError as error:
            failures.append(SlotFailure(entry.scheduled_label, entry.item_name, str(error), in_past=True))
        except SlotParseError as error:
            failures.append(SlotFailure(entry.scheduled_label, entry.item_name, str(error)))
    return slots, failures
