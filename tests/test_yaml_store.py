import tempfile
import threading
import unittest
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import yaml

from form_meeting_bridge import (
    DuplicateReservationError,
    InsertOutcome,
    ReservationNotFoundError,
    ReservationRecord,
    ReservationStatus,
    ReservationYamlRepository,
)

UTC = timezone.utc
START = datetime(2035, 3, 30, 1, 0, tzinfo=UTC)


def make_record(token: str = "token-1", meeting_id: str = "meeting-1", **overrides) -> ReservationRecord:
    values = {
        "token": token,
        "room_identity": "Conference Room A",
        "external_meeting_id": meeting_id,
        "room_booking_id": "xa-room",
        "status": ReservationStatus.RESERVED,
        "operator_name": "Test User",
        "operator_id": "test_user",
        "created_at": datetime(2035, 3, 29, 12, 0, tzinfo=UTC),
        "slot_start": START,
        "slot_end": START + timedelta(hours=1),
        "room_label": "Conference Room A",
        "slot_labels": ("2035-03-30 09:00-09:30", "2035-03-30 09:30-10:00"),
    }
    values.update(overrides)
    return ReservationRecord(**values)


class TestReservationYamlRepository(unittest.TestCase):
    def test_insert_then_redelivery_is_already_exists(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            repo = ReservationYamlRepository(Path(temp_dir) / "data")

            self.assertEqual(repo.insert_or_get(make_record()), InsertOutcome.INSERTED)
            self.assertEqual(repo.insert_or_get(make_record()), InsertOutcome.ALREADY_EXISTS)
            self.assertEqual(len(repo.list_records()), 1)

    def test_same_key_with_other_meeting_is_duplicate(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            repo = ReservationYamlRepository(Path(temp_dir) / "data")
            repo.insert_or_get(make_record())

            with self.assertRaises(DuplicateReservationError):
                repo.insert_or_get(make_record(meeting_id="meeting-2"))
            self.assertEqual(len(repo.list_records()), 1)

    def test_rejects_cancelled_or_inverted_records(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            repo = ReservationYamlRepository(Path(temp_dir) / "data")

            with self.assertRaises(ValueError):
                repo.insert_or_get(make_record(status=ReservationStatus.CANCELLED))
            with self.assertRaises(ValueError):
                repo.insert_or_get(make_record(slot_end=START))

    def test_mark_cancelled_flips_status_and_frees_the_key(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            repo = ReservationYamlRepository(Path(temp_dir) / "data")
            repo.insert_or_get(make_record())
            cancelled_at = datetime(2035, 3, 29, 13, 0, tzinfo=UTC)

            cancelled = repo.mark_cancelled("token-1", now=cancelled_at)

            self.assertEqual(len(cancelled), 1)
            self.assertEqual(cancelled[0].status, ReservationStatus.CANCELLED)
            self.assertIsNone(repo.find_active("token-1"))
            stored = repo.list_records("token-1")[0]
            self.assertEqual(stored.cancelled_at, cancelled_at)

            self.assertEqual(repo.insert_or_get(make_record(meeting_id="meeting-2")), InsertOutcome.INSERTED)
            self.assertEqual(repo.find_active("token-1").external_meeting_id, "meeting-2")

    def test_mark_cancelled_without_active_record_raises(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            repo = ReservationYamlRepository(Path(temp_dir) / "data")

            with self.assertRaises(ReservationNotFoundError):
                repo.mark_cancelled("missing")

            repo.insert_or_get(make_record())
            repo.mark_cancelled("token-1")
            with self.assertRaises(ReservationNotFoundError):
                repo.mark_cancelled("token-1")

    def test_mark_cancelled_can_target_one_meeting(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            repo = ReservationYamlRepository(Path(temp_dir) / "data")
            repo.insert_or_get(make_record())
            later = START + timedelta(hours=2)
            repo.insert_or_get(make_record(meeting_id="meeting-2", slot_start=later, slot_end=later + timedelta(minutes=30)))

            repo.mark_cancelled("token-1", meeting_id="meeting-2")

            self.assertEqual([record.external_meeting_id for record in repo.find_all_active("token-1")], ["meeting-1"])

    def test_find_active_returns_most_recent(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            repo = ReservationYamlRepository(Path(temp_dir) / "data")
            later = START + timedelta(hours=2)
            repo.insert_or_get(make_record())
            repo.insert_or_get(
                make_record(
                    meeting_id="meeting-2",
                    slot_start=later,
                    slot_end=later + timedelta(minutes=30),
                    created_at=datetime(2035, 3, 29, 12, 5, tzinfo=UTC),
                )
            )

            self.assertEqual(repo.find_active("token-1").external_meeting_id, "meeting-2")
            self.assertIsNone(repo.find_active("other-token"))

    def test_find_by_key_and_find_covering(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            repo = ReservationYamlRepository(Path(temp_dir) / "data")
            record = make_record()
            repo.insert_or_get(record)

            self.assertEqual(repo.find_by_key(record.key), record)
            self.assertIsNone(repo.find_by_key(("token-1", START, START + timedelta(minutes=30), "Conference Room A")))

            inner = START + timedelta(minutes=12)
            self.assertIsNotNone(repo.find_covering("token-1", "Conference Room A", inner, START + timedelta(hours=1)))
            self.assertIsNone(repo.find_covering("token-1", "Conference Room B", inner, START + timedelta(hours=1)))
            self.assertIsNone(repo.find_covering("token-1", "Conference Room A", inner, START + timedelta(hours=2)))

    def test_records_persist_across_instances(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            data_dir = Path(temp_dir) / "data"
            record = make_record(form_name="西安会议室预约", subject="周会")
            ReservationYamlRepository(data_dir).insert_or_get(record)

            reloaded = ReservationYamlRepository(data_dir).list_records()

            self.assertEqual(reloaded, [record])

    def test_status_labels_accept_form_aliases(self) -> None:
        self.assertIs(ReservationStatus.from_label("已预约"), ReservationStatus.RESERVED)
        self.assertIs(ReservationStatus.from_label("已取消"), ReservationStatus.CANCELLED)
        self.assertIs(ReservationStatus.from_label("Canceled"), ReservationStatus.CANCELLED)
        with self.assertRaises(ValueError):
            ReservationStatus.from_label("pending")

    def test_unknown_status_row_is_skipped_and_logged(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            repo = ReservationYamlRepository(Path(temp_dir) / "data")
            good = make_record().to_dict()
            bad = dict(good, token="token-2", status="pending")
            repo.records_file.write_text(yaml.safe_dump([good, bad, "not a row"], allow_unicode=True), encoding="utf-8")

            records = repo.list_records()

            self.assertEqual([record.token for record in records], ["token-1"])
            events = yaml.safe_load(repo.log_file.read_text(encoding="utf-8"))
            self.assertEqual([event["event_type"] for event in events], ["YAML_ROW_SKIPPED", "YAML_ROW_SKIPPED"])

    def test_recovers_corrupted_records_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            repo = ReservationYamlRepository(Path(temp_dir) / "data")
            repo.records_file.write_text("token: [unclosed\n", encoding="utf-8")

            self.assertEqual(repo.list_records(), [])
            self.assertEqual(repo.insert_or_get(make_record()), InsertOutcome.INSERTED)

            backups = list(repo.base_dir.glob("reservations.corrupt.*.yaml"))
            self.assertEqual(len(backups), 1)
            events = yaml.safe_load(repo.log_file.read_text(encoding="utf-8"))
            self.assertIn("YAML_RECOVERED", [event["event_type"] for event in events])

    def test_logs_create_and_cancel_events(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            repo = ReservationYamlRepository(Path(temp_dir) / "data")
            repo.insert_or_get(make_record())
            repo.mark_cancelled("token-1")

            events = yaml.safe_load(repo.log_file.read_text(encoding="utf-8"))

            self.assertEqual([event["event_type"] for event in events], ["RESERVATION_CREATED", "RESERVATION_CANCELLED"])
            self.assertEqual(events[0]["payload"]["meeting_id"], "meeting-1")

    def test_event_log_is_appended_not_rewritten(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            data_dir = Path(temp_dir) / "data"
            data_dir.mkdir()
            (data_dir / "reservation_events.yaml").write_text("[]\n", encoding="utf-8")
            repo = ReservationYamlRepository(data_dir)

            repo.insert_or_get(make_record())
            first_text = repo.log_file.read_text(encoding="utf-8")
            repo.mark_cancelled("token-1")
            second_text = repo.log_file.read_text(encoding="utf-8")

            self.assertTrue(second_text.startswith(first_text))
            events = yaml.safe_load(second_text)
            self.assertEqual([event["event_type"] for event in events], ["RESERVATION_CREATED", "RESERVATION_CANCELLED"])

            ReservationYamlRepository(data_dir)
            self.assertEqual(repo.log_file.read_text(encoding="utf-8"), second_text)

    def test_token_lock_does_not_block_other_tokens(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            repo = ReservationYamlRepository(Path(temp_dir) / "data")
            entered = threading.Event()

            def other_token() -> None:
                with repo.token_lock("token-2"):
                    entered.set()

            with repo.token_lock("token-1"):
                worker = threading.Thread(target=other_token)
                worker.start()
                self.assertTrue(entered.wait(timeout=2))
                worker.join(timeout=2)

    def test_token_lock_serializes_same_token(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            repo = ReservationYamlRepository(Path(temp_dir) / "data")
            entered = threading.Event()

            def same_token() -> None:
                with repo.token_lock("token-1"):
                    entered.set()

            with repo.token_lock("token-1"):
                worker = threading.Thread(target=same_token)
                worker.start()
                self.assertFalse(entered.wait(timeout=0.2))
            worker.join(timeout=2)
            self.assertTrue(entered.is_set())

    def test_to_dict_round_trips_cancelled_record(self) -> None:
        record = replace(make_record(), status=ReservationStatus.CANCELLED, cancelled_at=START)
        self.assertEqual(ReservationRecord.from_dict(record.to_dict()), record)


if __name__ == "__main__":
    unittest.main()
