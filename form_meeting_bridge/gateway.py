from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Protocol
from uuid import uuid4

import requests

from .auth import current_timestamp, generate_nonce, generate_signature
from .config import ApiCredentials, BridgeSettings

logger = logging.getLogger(__name__)

OPERATOR_ID_TYPE = 1
CANCEL_REASON_CODE = 1


class MeetingGatewayError(RuntimeError):
    def __init__(self, step: str, cause: str) -> None:
        super().__init__(f"{step} failed: {cause}")
        self.step = step
        self.cause = cause


class MeetingGateway(Protocol):
    def create_meeting(
        self,
        subject: str,
        start: datetime,
        duration_minutes: int,
        operator_id: str,
        location: str,
    ) -> str: ...

    def cancel_meeting(self, meeting_id: str) -> None: ...

    def book_room(self, meeting_id: str, room_id: str) -> str: ...

    def release_room(self, meeting_id: str, booking_id: str) -> None: ...

    def list_rooms(self, page: int, page_size: int) -> dict[str, Any]: ...


class HttpMeetingGateway:
    """Signed REST client for the remote meeting API.

    Book/release act on behalf of ``default_operator_id``. The booking id
    returned by ``book_room`` is the room id, since the API addresses a
    booking by meeting id + room id.
    """

    def __init__(
        self,
        credentials: ApiCredentials,
        default_operator_id: str,
        *,
        timeout: float = 10.0,
        instance_id: int = 32,
        meeting_type: int = 0,
        time_zone: str = "Asia/Shanghai",
        session: requests.Session | None = None,
    ) -> None:
        self.credentials = credentials
        self.default_operator_id = default_operator_id
        self.timeout = timeout
        self.instance_id = instance_id
        self.meeting_type = meeting_type
        self.time_zone = time_zone
        self.session = session or requests.Session()

    def _headers(self, method: str, uri: str, body: str) -> dict[str, str]:
        timestamp = current_timestamp()
        nonce = generate_nonce()
        signature = generate_signature(
            self.credentials.secret_id,
            self.credentials.secret_key,
            method,
            uri,
            timestamp,
            nonce,
            body,
        )
        headers = {
            "Content-Type": "application/json",
            "X-TC-Key": self.credentials.secret_id,
            "X-TC-Timestamp": str(timestamp),
            "X-TC-Nonce": nonce,
            "X-TC-Signature": signature,
            "AppId": self.credentials.app_id,
            "X-TC-Registered": "1",
        }
        if self.credentials.sdk_id:
            headers["SdkId"] = self.credentials.sdk_id
        return headers

    def _request(self, step: str, method: str, uri: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        body = json.dumps(payload, ensure_ascii=False) if payload is not None else ""
        url = f"{self.credentials.endpoint.rstrip('/')}{uri}"
        logger.debug("%s %s body=%s", method, url, body)
        try:
            response = self.session.request(
                method,
                url,
                headers=self._headers(method, uri, body),
                data=body.encode("utf-8") if body else None,
                timeout=self.timeout,
            )
        except requests.Timeout as error:
            raise MeetingGatewayError(step, f"timed out after {self.timeout}s") from error
        except requests.RequestException as error:
            raise MeetingGatewayError(step, str(error)) from error

        text = response.text or ""
        if not response.ok:
            logger.error("%s failed with status %s: %s", step, response.status_code, text)
            raise MeetingGatewayError(step, f"HTTP {response.status_code}: {text[:200]}")

        data: dict[str, Any] = {}
        if text.strip():
            try:
                parsed = response.json()
            except ValueError as error:
                raise MeetingGatewayError(step, f"invalid JSON response: {text[:200]}") from error
            if isinstance(parsed, dict):
                data = parsed

        error_info = data.get("error_info")
        if error_info:
            message = error_info.get("message") if isinstance(error_info, dict) else str(error_info)
            logger.error("%s failed with status %s: %s", step, response.status_code, text)
            raise MeetingGatewayError(step, f"HTTP {response.status_code}: {message}")
        return data

    def create_meeting(
        self,
        subject: str,
        start: datetime,
        duration_minutes: int,
        operator_id: str,
        location: str,
    ) -> str:
        end = start + timedelta(minutes=duration_minutes)
        payload = {
            "userid": operator_id,
            "instanceid": self.instance_id,
            "subject": subject,
            "type": self.meeting_type,
            "start_time": str(int(start.timestamp())),
            "end_time": str(int(end.timestamp())),
            "location": location,
            "time_zone": self.time_zone,
        }
        data = self._request("create_meeting", "POST", "/v1/meetings", payload)
        meetings = data.get("meeting_info_list")
        first = meetings[0] if isinstance(meetings, list) and meetings else None
        if not isinstance(first, dict) or not first.get("meeting_id"):
            raise MeetingGatewayError("create_meeting", "response did not include a meeting id")
        meeting_id = str(first["meeting_id"])
        logger.info("Created meeting %s (%s)", meeting_id, subject)
        return meeting_id

    def cancel_meeting(self, meeting_id: str) -> None:
        payload = {
            "userid": self.default_operator_id,
            "instanceid": self.instance_id,
            "reason_code": CANCEL_REASON_CODE,
            "reason_detail": "Form submission cancelled",
        }
        self._request("cancel_meeting", "POST", f"/v1/meetings/{meeting_id}/cancel", payload)

    def book_room(self, meeting_id: str, room_id: str) -> str:
        payload = {
            "operator_id": self.default_operator_id,
            "operator_id_type": OPERATOR_ID_TYPE,
            "meeting_room_id_list": [room_id],
            "subject_visible": True,
        }
        self._request("book_room", "POST", f"/v1/meetings/{meeting_id}/book-rooms", payload)
        return room_id

    def release_room(self, meeting_id: str, booking_id: str) -> None:
        payload = {
            "operator_id": self.default_operator_id,
            "operator_id_type": OPERATOR_ID_TYPE,
            "meeting_room_id_list": [booking_id],
        }
        self._request("release_room", "POST", f"/v1/meetings/{meeting_id}/release-rooms", payload)

    def list_rooms(self, page: int = 1, page_size: int = 20) -> dict[str, Any]:
        uri = (
            f"/v1/meeting-rooms?page={page}&page_size={page_size}"
            f"&operator_id={self.default_operator_id}&operator_id_type={OPERATOR_ID_TYPE}"
        )
        return self._request("list_rooms", "GET", uri)


class SimulatedMeetingGateway:
    """Gateway used when meeting creation is switched off; nothing leaves the process."""

    def create_meeting(
        self,
        subject: str,
        start: datetime,
        duration_minutes: int,
        operator_id: str,
        location: str,
    ) -> str:
        meeting_id = f"simulation-{uuid4().hex[:12]}"
        logger.info("Simulation mode: pretending to create meeting %s for %s", meeting_id, subject)
        return meeting_id

    def cancel_meeting(self, meeting_id: str) -> None:
        logger.info("Simulation mode: pretending to cancel meeting %s", meeting_id)

    def book_room(self, meeting_id: str, room_id: str) -> str:
        return room_id

    def release_room(self, meeting_id: str, booking_id: str) -> None:
        logger.info("Simulation mode: pretending to release room %s for meeting %s", booking_id, meeting_id)

    def list_rooms(self, page: int = 1, page_size: int = 20) -> dict[str, Any]:
        return {
            "total_count": 0,
            "current_size": 0,
            "current_page": page,
            "total_page": 0,
            "meeting_room_list": [],
        }


def build_gateway(settings: BridgeSettings) -> MeetingGateway:
    if settings.skip_meeting_creation:
        return SimulatedMeetingGateway()
    return HttpMeetingGateway(
        settings.api,
        settings.operators.default.external_id,
        timeout=settings.request_timeout_seconds,
        instance_id=settings.instance_id,
        meeting_type=settings.meeting_type,
        time_zone=settings.time_zone,
    )
