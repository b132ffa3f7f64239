from __future__ import annotations

import json
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from form_meeting_bridge import BridgeSettings, FormRoute, MeetingGatewayError, OperatorDirectory

UTC = timezone.utc
NOW = datetime(2035, 3, 30, 0, 0, tzinfo=UTC)
XIAN_FORM = "西安会议室预约"
CHENGDU_FORM = "成都会议室预约"


class FakeMeetingGateway:
    """Records every call; ``failures`` maps a step name to the call numbers (1-based) that fail."""

    def __init__(self, failures: dict[str, set[int]] | None = None, delay: float = 0.0) -> None:
        self.failures = failures or {}
        self.delay = delay
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._counts: dict[str, int] = {}
        self._lock = threading.Lock()

    def _record(self, step: str, **kwargs: Any) -> int:
        with self._lock:
            self._counts[step] = self._counts.get(step, 0) + 1
            number = self._counts[step]
            self.calls.append((step, kwargs))
        if self.delay:
            time.sleep(self.delay)
        if number in self.failures.get(step, set()):
            raise MeetingGatewayError(step, "simulated failure")
        return number

    def calls_for(self, step: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == step]

    def create_meeting(self, subject: str, start: datetime, duration_minutes: int, operator_id: str, location: str) -> str:
        number = self._record(
            "create_meeting",
            subject=subject,
            start=start,
            duration_minutes=duration_minutes,
            operator_id=operator_id,
            location=location,
        )
        return f"meeting-{number}"

    def cancel_meeting(self, meeting_id: str) -> None:
        self._record("cancel_meeting", meeting_id=meeting_id)

    def book_room(self, meeting_id: str, room_id: str) -> str:
        self._record("book_room", meeting_id=meeting_id, room_id=room_id)
        return room_id

    def release_room(self, meeting_id: str, booking_id: str) -> None:
        self._record("release_room", meeting_id=meeting_id, booking_id=booking_id)

    def list_rooms(self, page: int, page_size: int) -> dict[str, Any]:
        self._record("list_rooms", page=page, page_size=page_size)
        return {
            "total_count": 1,
            "current_size": 1,
            "current_page": page,
            "total_page": 1,
            "meeting_room_list": [{"meeting_room_id": "xa-room", "meeting_room_name": "大会议室"}],
        }


def make_settings(data_dir: Path, **overrides: Any) -> BridgeSettings:
    values: dict[str, Any] = {
        "operators": OperatorDirectory.from_string("admin:admin_id,Test User:test_user"),
        "form_routes": (
            FormRoute(XIAN_FORM, "xa-room", "西安"),
            FormRoute(CHENGDU_FORM, "cd-room", "成都"),
        ),
        "data_dir": data_dir,
    }
    values.update(overrides)
    return BridgeSettings(**values)


def slot_item(label: str, scheduled_at: str, room: str = "Conference Room A") -> dict[str, Any]:
    return {
        "item_name": room,
        "scheduled_label": label,
        "number": 1,
        "scheduled_at": scheduled_at,
        "api_code": "CODE1",
    }


def make_payload(
    token: str,
    items: list[dict[str, Any]],
    status: str = "已预约",
    form_name: str = XIAN_FORM,
    user: str | None = "Test User",
) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "token": token,
        "field_1": items,
        "field_8": "Weekly sync",
        "reservation_status_fsf_field": status,
    }
    if user is not None:
        entry["user_field_name"] = user
    return {"form": "form-1", "form_name": form_name, "entry": entry}


def three_slot_items() -> list[dict[str, Any]]:
    # 09:00 in the label is 01:00 UTC.
    return [
        slot_item("2035-03-30 09:00-09:30", "2035-03-30T01:00:00.000Z"),
        slot_item("2035-03-30 09:30-10:00", "2035-03-30T01:30:00.000Z"),
        slot_item("2035-03-30 11:00-11:30", "2035-03-30T03:00:00.000Z"),
    ]


class FakeResponse:
    def __init__(self, status_code: int = 200, body: Any = None, text: str | None = None) -> None:
        self.status_code = status_code
        self.text = text if text is not None else ("" if body is None else json.dumps(body))

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self) -> Any:
        return json.loads(self.text)


class FakeSession:
    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.requests: list[dict[str, Any]] = []

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.requests.append({"method": method, "url": url, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response
