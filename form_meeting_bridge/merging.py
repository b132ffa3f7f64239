from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from .time_slots import TimeSlot


def is_contiguous(previous: TimeSlot, following: TimeSlot) -> bool:
    """Return True when ``following`` starts exactly where ``previous`` ends.

    Both slots must belong to the same room. Boundaries are compared as
    exact instants, so a gap of even one second keeps the slots apart.
    """
    return previous.room_identity == following.room_identity and previous.end == following.start


@dataclass(frozen=True)
class MergeGroup:
    slots: tuple[TimeSlot, ...]

    def __post_init__(self) -> None:
        if not self.slots:
            raise ValueError("MergeGroup must contain at least one slot.")
        for previous, following in zip(self.slots, self.slots[1:]):
            if not is_contiguous(previous, following):
                raise ValueError("MergeGroup slots must be contiguous and share one room.")

    @property
    def room_identity(self) -> str:
        return self.slots[0].room_identity

    @property
    def room_label(self) -> str:
        return self.slots[0].room_label

    @property
    def start(self) -> datetime:
        return self.slots[0].start

    @property
    def end(self) -> datetime:
        return self.slots[-1].end

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    @property
    def is_merged(self) -> bool:
        return len(self.slots) > 1

    @property
    def labels(self) -> list[str]:
        return [slot.raw_label for slot in self.slots]


def merge_time_slots(slots: Iterable[TimeSlot]) -> list[MergeGroup]:
    """Group slots into maximal same-room contiguous runs.

    Rooms are emitted in order of first appearance; within a room the
    slots are stable-sorted by start, so ties keep their input order.
    """
    by_room: dict[str, list[TimeSlot]] = {}
    for slot in slots:
        by_room.setdefault(slot.room_identity, []).append(slot)

    groups: list[MergeGroup] = []
    for room_slots in by_room.values():
        ordered = sorted(room_slots, key=lambda slot: slot.start)
        current = [ordered[0]]
        for slot in ordered[1:]:
            if is_contiguous(current[-1], slot):
                current.append(slot)
            else:
                groups.append(MergeGroup(tuple(current)))
                current = [slot]
        groups.append(MergeGroup(tuple(current)))

    return groups
