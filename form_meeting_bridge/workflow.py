from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from .config import BridgeSettings
from .forms import FormSubmission
from .gateway import MeetingGateway, MeetingGatewayError
from .merging import MergeGroup, merge_time_slots
from .operators import OperatorIdentity
from .time_slots import SlotFailure, parse_form_slots
from .yaml_store import (
    ReservationNotFoundError,
    ReservationRecord,
    ReservationStatus,
    ReservationStorageError,
    ReservationYamlRepository,
)

logger = logging.getLogger(__name__)


class ReservationState(str, Enum):
    NEW = "new"
    MEETING_CREATED = "meeting_created"
    ROOM_BOOKED = "room_booked"
    RECORDED = "recorded"
    ALREADY_RESERVED = "already_reserved"
    FAILED = "failed"


# Step that was running when a group stopped in a given state.
_NEXT_STEP = {
    ReservationState.NEW: "create_meeting",
    ReservationState.MEETING_CREATED: "book_room",
    ReservationState.ROOM_BOOKED: "store",
    ReservationState.RECORDED: "store",
    ReservationState.ALREADY_RESERVED: "lookup",
    ReservationState.FAILED: "unknown",
}


class CancellationState(str, Enum):
    NOT_FOUND = "not_found"
    ROOM_RELEASED = "room_released"
    MEETING_CANCELLED = "meeting_cancelled"
    STATUS_UPDATED = "status_updated"
    FAILED = "failed"


@dataclass
class GroupOutcome:
    room_identity: str
    room_label: str
    start: datetime
    end: datetime
    slot_labels: list[str]
    merged: bool
    state: ReservationState = ReservationState.NEW
    meeting_id: str | None = None
    booking_id: str | None = None
    failed_step: str | None = None
    error: str | None = None
    compensated: bool = False

    @staticmethod
    def for_group(group: MergeGroup) -> "GroupOutcome":
        return GroupOutcome(
            room_identity=group.room_identity,
            room_label=group.room_label,
            start=group.start,
            end=group.end,
            slot_labels=group.labels,
            merged=group.is_merged,
        )

    @property
    def succeeded(self) -> bool:
        return self.state in (ReservationState.RECORDED, ReservationState.ALREADY_RESERVED)

    def fail(self, step: str, reason: str) -> "GroupOutcome":
        logger.error("Group %s %s-%s failed at %s: %s", self.room_label, self.start, self.end, step, reason)
        self.state = ReservationState.FAILED
        self.failed_step = step
        self.error = reason
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "room": self.room_label,
            "start": self.start.isoformat(timespec="minutes"),
            "end": self.end.isoformat(timespec="minutes"),
            "time_slots": self.slot_labels,
            "merged": self.merged,
            "state": self.state.value,
            "success": self.succeeded,
            "meeting_id": self.meeting_id,
            "booking_id": self.booking_id,
            "failed_step": self.failed_step,
            "error": self.error,
            "compensated": self.compensated,
        }


@dataclass
class ReservationResult:
    token: str
    outcomes: list[GroupOutcome] = field(default_factory=list)
    slot_failures: list[SlotFailure] = field(default_factory=list)

    @property
    def succeeded_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.succeeded)

    @property
    def success(self) -> bool:
        return bool(self.outcomes) and not self.slot_failures and self.succeeded_count == len(self.outcomes)

    @property
    def partial(self) -> bool:
        return 0 < self.succeeded_count and not self.success

    @property
    def message(self) -> str:
        slot_count = sum(len(outcome.slot_labels) for outcome in self.outcomes) + len(self.slot_failures)
        merged_count = sum(1 for outcome in self.outcomes if outcome.merged and outcome.succeeded)
        text = f"Created {self.succeeded_count} meetings"
        if merged_count:
            text += f" ({merged_count} merged)"
        text += f" from {slot_count} time slots"
        failed = len(self.outcomes) - self.succeeded_count + len(self.slot_failures)
        if failed:
            text += f", {failed} failed"
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.success,
            "kind": "reservation",
            "token": self.token,
            "partial": self.partial,
            "message": self.message,
            "meetings_count": len(self.outcomes),
            "meetings": [outcome.to_dict() for outcome in self.outcomes],
            "slot_failures": [failure.to_dict() for failure in self.slot_failures],
        }


@dataclass
class MeetingCancellation:
    meeting_id: str
    room_identity: str
    booking_id: str
    state: CancellationState = CancellationState.FAILED
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "meeting_id": self.meeting_id,
            "room": self.room_identity,
            "booking_id": self.booking_id,
            "state": self.state.value,
            "errors": self.errors,
        }


@dataclass
class CancellationResult:
    token: str
    cancellations: list[MeetingCancellation] = field(default_factory=list)
    not_found: bool = False
    error: str | None = None

    @property
    def success(self) -> bool:
        return (
            not self.not_found
            and self.error is None
            and bool(self.cancellations)
            and all(item.state is CancellationState.STATUS_UPDATED and not item.errors for item in self.cancellations)
        )

    @property
    def message(self) -> str:
        if self.not_found:
            return f"No active meetings found with token: {self.token}"
        if self.error is not None:
            return f"Cancellation failed: {self.error}"
        failed = sum(1 for item in self.cancellations if item.errors)
        done = len(self.cancellations) - failed
        if failed:
            return f"Cancelled {done} meetings, but {failed} failed"
        return f"Successfully cancelled {done} meetings"

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.success,
            "kind": "cancellation",
            "token": self.token,
            "not_found": self.not_found,
            "message": self.message,
            "cancellations": [item.to_dict() for item in self.cancellations],
        }


class ReservationWorkflow:
    def __init__(
        self,
        repository: ReservationYamlRepository,
        gateway: MeetingGateway,
        settings: BridgeSettings,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.gateway = gateway
        self.settings = settings
        self.clock: Callable[[], datetime] = now_provider or (lambda: datetime.now(timezone.utc))

    def handle_submission(self, submission: FormSubmission) -> ReservationResult | CancellationResult:
        if submission.is_cancellation:
            logger.info("Form submission with token %s is a cancellation request", submission.token)
            return self.process_cancellation(submission.token)
        return self.process_reservation(submission)

    def process_reservation(self, submission: FormSubmission) -> ReservationResult:
        logger.info("Form %s token %s contains %d time slot entries", submission.form_name, submission.token, len(submission.slots))
        slots, failures = parse_form_slots(submission.slots, now=self.clock())
        for failure in failures:
            logger.warning("Skipping time slot %r: %s", failure.raw_label, failure.reason)

        groups = merge_time_slots(slots)
        logger.info("Parsed %d time slots into %d meeting groups", len(slots), len(groups))

        operator = self.settings.operators.resolve(submission.operator_name(self.settings.user_field_name))
        result = ReservationResult(token=submission.token, slot_failures=failures)
        for group in groups:
            outcome = GroupOutcome.for_group(group)
            try:
                self._reserve_group(submission, group, operator, outcome)
            except Exception as error:
                step = _NEXT_STEP[outcome.state]
                logger.exception("Unexpected error for group %s at %s", group.room_label, step)
                outcome.fail(step, f"{type(error).__name__}: {error}")
            result.outcomes.append(outcome)

        logger.info("Reservation for token %s: %s", submission.token, result.message)
        return result

    def _reserve_group(
        self,
        submission: FormSubmission,
        group: MergeGroup,
        operator: OperatorIdentity,
        outcome: GroupOutcome,
    ) -> GroupOutcome:
        route = self.settings.route_for_form(submission.form_name)
        if route is None and not self.settings.skip_room_booking:
            return outcome.fail("resolve_room", f"no room configured for form {submission.form_name!r}")

        with self.repository.token_lock(submission.token):
            try:
                existing = self.repository.find_covering(submission.token, group.room_identity, group.start, group.end)
            except ReservationStorageError as error:
                return outcome.fail("lookup", str(error))
            if existing is not None:
                logger.info("Token %s already holds meeting %s for %s, skipping", submission.token, existing.external_meeting_id, group.room_label)
                outcome.state = ReservationState.ALREADY_RESERVED
                outcome.meeting_id = existing.external_meeting_id
                outcome.booking_id = existing.room_booking_id
                return outcome

            logger.info(
                "Creating %s meeting for room %s %s-%s with operator %s (%s)",
                "merged" if group.is_merged else "single",
                group.room_label,
                group.start,
                group.end,
                operator.display_name,
                operator.external_id,
            )
            try:
                outcome.meeting_id = self.gateway.create_meeting(
                    submission.subject or group.room_label,
                    group.start,
                    group.duration_minutes,
                    operator.external_id,
                    self.settings.location_for(submission.form_name, group.room_label),
                )
            except MeetingGatewayError as error:
                return outcome.fail(error.step, error.cause)
            outcome.state = ReservationState.MEETING_CREATED

            if self.settings.skip_room_booking:
                logger.info("Room booking disabled, skipping room booking for meeting %s", outcome.meeting_id)
                outcome.booking_id = ""
            else:
                try:
                    outcome.booking_id = self.gateway.book_room(outcome.meeting_id, route.room_id)
                except MeetingGatewayError as error:
                    self._compensate(outcome)
                    return outcome.fail(error.step, error.cause)
                outcome.state = ReservationState.ROOM_BOOKED

            record = ReservationRecord(
                token=submission.token,
                room_identity=group.room_identity,
                external_meeting_id=outcome.meeting_id,
                room_booking_id=outcome.booking_id,
                status=ReservationStatus.RESERVED,
                operator_name=operator.display_name,
                operator_id=operator.external_id,
                created_at=self.clock(),
                slot_start=group.start,
                slot_end=group.end,
                form_id=submission.form_id,
                form_name=submission.form_name,
                subject=submission.subject,
                room_label=group.room_label,
                slot_labels=tuple(group.labels),
            )
            try:
                self.repository.insert_or_get(record)
            except ReservationStorageError as error:
                return outcome.fail("store", str(error))

        outcome.state = ReservationState.RECORDED
        return outcome

    def _compensate(self, outcome: GroupOutcome) -> None:
        if not self.settings.compensate_failed_booking or not outcome.meeting_id:
            return
        try:
            self.gateway.cancel_meeting(outcome.meeting_id)
        except MeetingGatewayError as error:
            logger.error("Could not cancel meeting %s after booking failure: %s", outcome.meeting_id, error)
            return
        logger.info("Cancelled meeting %s after booking failure", outcome.meeting_id)
        outcome.compensated = True

    def process_cancellation(self, token: str) -> CancellationResult:
        result = CancellationResult(token=token)
        with self.repository.token_lock(token):
            try:
                records = self.repository.find_all_active(token)
            except ReservationStorageError as error:
                logger.error("Failed to look up meetings for cancellation: %s", error)
                result.error = str(error)
                return result

            if not records:
                logger.warning("No active meetings found with token: %s", token)
                result.not_found = True
                return result

            logger.info("Found %d meetings to cancel with token %s", len(records), token)
            for record in records:
                result.cancellations.append(self._cancel_record(record))

        logger.info("Cancellation for token %s: %s", token, result.message)
        return result

    def _cancel_record(self, record: ReservationRecord) -> MeetingCancellation:
        item = MeetingCancellation(
            meeting_id=record.external_meeting_id,
            room_identity=record.room_identity,
            booking_id=record.room_booking_id,
        )

        released = False
        if record.room_booking_id:
            try:
                self.gateway.release_room(record.external_meeting_id, record.room_booking_id)
                released = True
            except MeetingGatewayError as error:
                logger.error("Failed to release room %s for meeting %s: %s", record.room_booking_id, record.external_meeting_id, error)
                item.errors.append(str(error))

        try:
            self.gateway.cancel_meeting(record.external_meeting_id)
        except MeetingGatewayError as error:
            logger.error("Failed to cancel meeting %s: %s", record.external_meeting_id, error)
            item.errors.append(str(error))
            item.state = CancellationState.ROOM_RELEASED if released else CancellationState.FAILED
            return item
        item.state = CancellationState.MEETING_CANCELLED

        try:
            self.repository.mark_cancelled(record.token, meeting_id=record.external_meeting_id, now=self.clock())
        except ReservationNotFoundError as error:
            item.errors.append(str(error))
            return item
        except ReservationStorageError as error:
            logger.error("Meeting %s cancelled but status update failed: %s", record.external_meeting_id, error)
            item.errors.append(str(error))
            return item

        item.state = CancellationState.STATUS_UPDATED
        return item
