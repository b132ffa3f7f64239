from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Any, Callable

from flask import Flask, jsonify, request

from .config import BridgeSettings, load_settings
from .forms import FormPayloadError, FormSubmission
from .gateway import MeetingGateway, MeetingGatewayError, build_gateway
from .time_slots import parse_instant
from .workflow import ReservationWorkflow
from .yaml_store import ReservationStorageError, ReservationYamlRepository

logger = logging.getLogger(__name__)


def create_app(
    settings: BridgeSettings | None = None,
    gateway: MeetingGateway | None = None,
    now_provider: Callable[[], datetime] | None = None,
) -> Flask:
    app = Flask(__name__)
    settings = settings or load_settings()
    repository = ReservationYamlRepository(settings.data_dir)
    gateway = gateway or build_gateway(settings)
    workflow = ReservationWorkflow(repository, gateway, settings, now_provider=now_provider)
    app.extensions["reservation_workflow"] = workflow

    @app.after_request
    def add_cors_headers(response: Any) -> Any:
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return response

    @app.get("/health")
    def health_check() -> str:
        return "OK"

    @app.post("/webhook/form-submission")
    def handle_form_submission() -> Any:
        payload = request.get_json(silent=True)
        try:
            submission = FormSubmission.from_payload(payload)
        except FormPayloadError as error:
            logger.warning("Rejected form submission: %s", error)
            return jsonify({"ok": False, "message": str(error)}), 400

        result = workflow.handle_submission(submission)
        return jsonify(result.to_dict())

    @app.get("/meeting-rooms")
    def list_meeting_rooms() -> Any:
        try:
            page = int(request.args.get("page", 1))
            page_size = int(request.args.get("page_size", 20))
        except ValueError:
            return _bad_request("page and page_size must be integers")
        if page <= 0 or page_size <= 0:
            return _bad_request("page and page_size must be greater than zero")

        try:
            rooms = gateway.list_rooms(page, page_size)
        except MeetingGatewayError as error:
            return _gateway_failure(error)
        return jsonify(rooms)

    @app.post("/meetings")
    def create_meeting() -> Any:
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            return _bad_request("request body must be a JSON object")
        subject = str(body.get("subject") or "").strip()
        if not subject:
            return _bad_request("subject is required")
        try:
            start = parse_instant(body.get("start") or "")
            duration_minutes = int(body.get("duration_minutes"))
        except (TypeError, ValueError) as error:
            return _bad_request(f"start must be an ISO timestamp and duration_minutes an integer: {error}")
        if duration_minutes <= 0:
            return _bad_request("duration_minutes must be greater than zero")

        operator = settings.operators.resolve(body.get("operator_name"))
        try:
            meeting_id = gateway.create_meeting(
                subject,
                start,
                duration_minutes,
                operator.external_id,
                str(body.get("location") or ""),
            )
        except MeetingGatewayError as error:
            return _gateway_failure(error)
        return jsonify({"ok": True, "meeting_id": meeting_id, "operator": operator.to_dict()})

    @app.post("/meetings/<meeting_id>/cancel")
    def cancel_meeting(meeting_id: str) -> Any:
        try:
            gateway.cancel_meeting(meeting_id)
        except MeetingGatewayError as error:
            return _gateway_failure(error)
        return jsonify({"ok": True, "meeting_id": meeting_id})

    @app.post("/meetings/<meeting_id>/book-rooms")
    def book_rooms(meeting_id: str) -> Any:
        body = request.get_json(silent=True) or {}
        room_id = str(body.get("room_id") or "").strip() if isinstance(body, dict) else ""
        if not room_id:
            return _bad_request("room_id is required")
        try:
            booking_id = gateway.book_room(meeting_id, room_id)
        except MeetingGatewayError as error:
            return _gateway_failure(error)
        return jsonify({"ok": True, "meeting_id": meeting_id, "booking_id": booking_id})

    @app.post("/meetings/<meeting_id>/release-rooms")
    def release_rooms(meeting_id: str) -> Any:
        body = request.get_json(silent=True) or {}
        booking_id = str(body.get("booking_id") or "").strip() if isinstance(body, dict) else ""
        if not booking_id:
            return _bad_request("booking_id is required")
        try:
            gateway.release_room(meeting_id, booking_id)
        except MeetingGatewayError as error:
            return _gateway_failure(error)
        return jsonify({"ok": True, "meeting_id": meeting_id, "booking_id": booking_id})

    @app.get("/reservations")
    def list_reservations() -> Any:
        token = str(request.args.get("token", "")).strip() or None
        try:
            records = repository.list_records(token)
        except ReservationStorageError as error:
            return jsonify({"ok": False, "message": str(error)}), 500
        return jsonify({"ok": True, "reservations": [record.to_dict() for record in records]})

    return app


def _bad_request(message: str) -> Any:
    return jsonify({"ok": False, "message": message}), 400


def _gateway_failure(error: MeetingGatewayError) -> Any:
    logger.error("Meeting API call failed: %s", error)
    return jsonify({"ok": False, "step": error.step, "message": str(error)}), 502


if __name__ == "__main__":
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app()
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "3000")), debug=False, threaded=True)
