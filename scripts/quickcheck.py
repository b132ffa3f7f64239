from __future__ import annotations

import tempfile
import traceback
from datetime import datetime, timedelta, timezone
from pathlib import Path

from form_meeting_bridge import (
    BridgeSettings,
    FormRoute,
    FormSubmission,
    OperatorDirectory,
    ReservationWorkflow,
    ReservationYamlRepository,
    SimulatedMeetingGateway,
)


def main() -> int:
    print("[INFO] Meeting Bridge Quick Check")
    print("[INFO] Running a simulated submission and cancellation...")

    data_dir = Path(tempfile.mkdtemp()) / "data"
    settings = BridgeSettings(
        operators=OperatorDirectory.from_string("admin:admin,Test User:test_user"),
        form_routes=(FormRoute("西安会议室预约", "xa-room", "西安"),),
        data_dir=data_dir,
        skip_meeting_creation=True,
    )
    repository = ReservationYamlRepository(data_dir)
    workflow = ReservationWorkflow(repository, SimulatedMeetingGateway(), settings)

    day = datetime.now(timezone.utc) + timedelta(days=1)
    first = day.replace(hour=1, minute=0, second=0, microsecond=0)
    payload = {
        "form": "quickcheck",
        "form_name": "西安会议室预约",
        "entry": {
            "token": "quickcheck-token",
            "field_8": "Quick check meeting",
            "user_field_name": "Test User",
            "reservation_status_fsf_field": "已预约",
            "field_1": [
                {
                    "item_name": "大会议室",
                    "scheduled_label": f"{first:%Y-%m-%d} 09:00-09:30",
                    "scheduled_at": first.isoformat(),
                    "number": 1,
                    "api_code": "A",
                },
                {
                    "item_name": "大会议室",
                    "scheduled_label": f"{first:%Y-%m-%d} 09:30-10:00",
                    "scheduled_at": (first + timedelta(minutes=30)).isoformat(),
                    "number": 1,
                    "api_code": "B",
                },
            ],
        },
    }

    reserved = workflow.process_reservation(FormSubmission.from_payload(payload))
    print(f"[OK] {reserved.message}")
    for outcome in reserved.outcomes:
        print(f"[OK] {outcome.room_label} {outcome.start:%H:%M}~{outcome.end:%H:%M} -> {outcome.state.value} ({outcome.meeting_id})")

    repeated = workflow.process_reservation(FormSubmission.from_payload(payload))
    print(f"[OK] Redelivery states: {[outcome.state.value for outcome in repeated.outcomes]}")

    cancelled = workflow.process_cancellation("quickcheck-token")
    print(f"[OK] {cancelled.message}")
    print(f"[OK] Records YAML: {repository.records_file.resolve()}")
    print(f"[OK] Event Log YAML: {repository.log_file.resolve()}")

    print("[DONE] Quick check completed successfully.")
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except Exception:
        print("[ERROR] Quick check failed.")
        traceback.print_exc()
        raise SystemExit(1)
