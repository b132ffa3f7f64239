from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

SLOT_FIELD = "field_1"
SUBJECT_FIELD = "field_8"
STATUS_FIELD = "reservation_status_fsf_field"
CANCELLATION_MARKERS = ("取消", "cancel")
DEFAULT_OPERATOR_NAME = "default"


class FormPayloadError(ValueError):
    pass


@dataclass(frozen=True)
class FormSlotEntry:
    item_name: str
    scheduled_label: str
    scheduled_at: str
    number: Any = None
    api_code: str | None = None

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "FormSlotEntry":
        # Field values are validated per slot by time_slots.parse_form_slot.
        if not isinstance(data, dict):
            raise FormPayloadError(f"{SLOT_FIELD} items must be objects")
        return FormSlotEntry(
            item_name=str(data.get("item_name") or ""),
            scheduled_label=str(data.get("scheduled_label") or ""),
            scheduled_at=str(data.get("scheduled_at") or ""),
            number=data.get("number"),
            api_code=(str(data["api_code"]) if data.get("api_code") is not None else None),
        )


@dataclass(frozen=True)
class FormSubmission:
    form_id: str
    form_name: str
    token: str
    subject: str
    status_label: str
    slots: tuple[FormSlotEntry, ...] = ()
    extra_fields: dict[str, Any] = field(default_factory=dict)

    @property
    def is_cancellation(self) -> bool:
        label = self.status_label.lower()
        return any(marker in label for marker in CANCELLATION_MARKERS)

    def field_text(self, name: str) -> str | None:
        value = self.extra_fields.get(name)
        if value is None:
            return None
        if isinstance(value, dict):
            # Member pickers send {"name": ..., "id": ...}.
            value = value.get("name") or value.get("value")
        text = str(value).strip().strip('"')
        return text or None

    def operator_name(self, user_field_name: str) -> str:
        return self.field_text(user_field_name) or DEFAULT_OPERATOR_NAME

    @staticmethod
    def from_payload(payload: Any) -> "FormSubmission":
        if not isinstance(payload, dict):
            raise FormPayloadError("payload must be a JSON object")
        entry = payload.get("entry")
        if not isinstance(entry, dict):
            raise FormPayloadError("payload.entry must be an object")

        token = str(entry.get("token") or "").strip()
        if not token:
            raise FormPayloadError("payload.entry.token is required")

        raw_slots = entry.get(SLOT_FIELD) or []
        if not isinstance(raw_slots, list):
            raise FormPayloadError(f"payload.entry.{SLOT_FIELD} must be a list")

        known = {"token", SLOT_FIELD, SUBJECT_FIELD, STATUS_FIELD}
        return FormSubmission(
            form_id=str(payload.get("form") or ""),
            form_name=str(payload.get("form_name") or ""),
            token=token,
            subject=str(entry.get(SUBJECT_FIELD) or ""),
            status_label=str(entry.get(STATUS_FIELD) or ""),
            slots=tuple(FormSlotEntry.from_dict(item) for item in raw_slots),
            extra_fields={key: value for key, value in entry.items() if key not in known},
        )
