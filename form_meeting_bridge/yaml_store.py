from __future__ import annotations

import logging
import os
import shutil
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator

import yaml

logger = logging.getLogger(__name__)

ReservationKey = tuple[str, datetime, datetime, str]


class ReservationStorageError(RuntimeError):
    pass


class ReservationNotFoundError(ReservationStorageError):
    pass


class DuplicateReservationError(ReservationStorageError):
    pass


class ReservationStatus(str, Enum):
    RESERVED = "Reserved"
    CANCELLED = "Cancelled"

    @classmethod
    def from_label(cls, label: Any) -> "ReservationStatus":
        normalized = str(label or "").strip().lower()
        if normalized in _RESERVED_LABELS:
            return cls.RESERVED
        if normalized in _CANCELLED_LABELS:
            return cls.CANCELLED
        raise ValueError(f"Unknown reservation status: {label!r}")


_RESERVED_LABELS = {"reserved", "已预约", "预约"}
_CANCELLED_LABELS = {"cancelled", "canceled", "已取消", "取消"}


class InsertOutcome(str, Enum):
    INSERTED = "inserted"
    ALREADY_EXISTS = "already_exists"


@dataclass(frozen=True)
class ReservationRecord:
    token: str
    room_identity: str
    external_meeting_id: str
    room_booking_id: str
    status: ReservationStatus
    operator_name: str
    operator_id: str
    created_at: datetime
    slot_start: datetime
    slot_end: datetime
    form_id: str = ""
    form_name: str = ""
    subject: str = ""
    room_label: str = ""
    slot_labels: tuple[str, ...] = ()
    cancelled_at: datetime | None = None

    @property
    def key(self) -> ReservationKey:
        return (self.token, self.slot_start, self.slot_end, self.room_identity)

    @property
    def is_active(self) -> bool:
        return self.status is ReservationStatus.RESERVED

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "token": self.token,
            "room_identity": self.room_identity,
            "external_meeting_id": self.external_meeting_id,
            "room_booking_id": self.room_booking_id,
            "status": self.status.value,
            "operator_name": self.operator_name,
            "operator_id": self.operator_id,
            "created_at": _format_instant(self.created_at),
            "slot_start": _format_instant(self.slot_start),
            "slot_end": _format_instant(self.slot_end),
            "form_id": self.form_id,
            "form_name": self.form_name,
            "subject": self.subject,
            "room_label": self.room_label,
            "slot_labels": list(self.slot_labels),
        }
        if self.cancelled_at is not None:
            payload["cancelled_at"] = _format_instant(self.cancelled_at)
        return payload

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "ReservationRecord":
        return ReservationRecord(
            token=str(data["token"]),
            room_identity=str(data["room_identity"]),
            external_meeting_id=str(data.get("external_meeting_id") or ""),
            room_booking_id=str(data.get("room_booking_id") or ""),
            status=ReservationStatus.from_label(data.get("status")),
            operator_name=str(data.get("operator_name") or ""),
            operator_id=str(data.get("operator_id") or ""),
            created_at=_parse_instant(data["created_at"]),
            slot_start=_parse_instant(data["slot_start"]),
            slot_end=_parse_instant(data["slot_end"]),
            form_id=str(data.get("form_id") or ""),
            form_name=str(data.get("form_name") or ""),
            subject=str(data.get("subject") or ""),
            room_label=str(data.get("room_label") or ""),
            slot_labels=tuple(str(label) for label in data.get("slot_labels") or ()),
            cancelled_at=(_parse_instant(data["cancelled_at"]) if data.get("cancelled_at") else None),
        )


class ReservationYamlRepository:
    def __init__(self, base_dir: str | Path = "data") -> None:
        self.base_dir = Path(base_dir)
        self.records_file = self.base_dir / "reservations.yaml"
        self.log_file = self.base_dir / "reservation_events.yaml"
        self._file_lock = threading.RLock()
        self._token_locks: dict[str, list[Any]] = {}
        self._token_locks_guard = threading.Lock()
        self._ensure_files()

    def _ensure_files(self) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        if not self.records_file.exists():
            self.records_file.write_text("[]\n", encoding="utf-8")
        # The event log is an append-only YAML block sequence.
        if not self.log_file.exists() or (
            self.log_file.stat().st_size <= 8 and self.log_file.read_text(encoding="utf-8").strip() == "[]"
        ):
            self.log_file.write_text("", encoding="utf-8")

    @contextmanager
    def token_lock(self, token: str) -> Iterator[None]:
        """Serialize work on one submission token; other tokens are not blocked."""
        with self._token_locks_guard:
            entry = self._token_locks.setdefault(token, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._token_locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._token_locks.pop(token, None)

    def _read_yaml_list(self, path: Path) -> list[dict[str, Any]]:
        try:
            payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            path.write_text(self._empty_text(path), encoding="utf-8")
            return []
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as error:
            self._recover_corrupted_yaml(path, error)
            return []

        if payload is None:
            return []
        if not isinstance(payload, list):
            self._recover_corrupted_yaml(path, ValueError("top-level YAML is not a list"))
            return []

        sanitized: list[dict[str, Any]] = []
        for index, row in enumerate(payload):
            if isinstance(row, dict):
                sanitized.append(row)
            else:
                self._log_event(
                    "YAML_ROW_SKIPPED",
                    {
                        "file": str(path.name),
                        "index": index,
                        "reason": "row is not a mapping",
                    },
                )
        return sanitized

    def _write_yaml_list(self, path: Path, rows: list[dict[str, Any]]) -> None:
        temp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                handle.write(yaml.safe_dump(rows, allow_unicode=True, sort_keys=False))
                handle.flush()
                os.fsync(handle.fileno())
            temp_path.replace(path)
        except OSError as error:
            raise ReservationStorageError(f"Failed to write YAML file: {path}") from error
        finally:
            if temp_path.exists():
                temp_path.unlink(missing_ok=True)

    def _recover_corrupted_yaml(self, path: Path, error: Exception) -> None:
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        backup_path = path.with_name(f"{path.stem}.corrupt.{timestamp}{path.suffix}")
        try:
            if path.exists():
                shutil.copy2(path, backup_path)
        except OSError:
            logger.warning("Could not back up corrupted file %s", path)

        logger.error("Recovered corrupted YAML file %s: %s", path, error)
        path.write_text(self._empty_text(path), encoding="utf-8")
        if path != self.log_file:
            self._log_event(
                "YAML_RECOVERED",
                {
                    "file": str(path.name),
                    "backup": str(backup_path.name),
                    "reason": str(error),
                },
            )

    def _log_event(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None:
        timestamp = _format_instant(event_time or _utcnow())
        entry = yaml.safe_dump(
            [{"event_time": timestamp, "event_type": event_type, "payload": payload}],
            allow_unicode=True,
            sort_keys=False,
        )
        with self._file_lock:
            try:
                with self.log_file.open("a", encoding="utf-8") as handle:
                    handle.write(entry)
            except OSError as error:
                raise ReservationStorageError(f"Failed to append to event log: {self.log_file}") from error

    def _empty_text(self, path: Path) -> str:
        return "" if path == self.log_file else "[]\n"

    def _parse_rows(self, rows: list[dict[str, Any]]) -> list[tuple[int, ReservationRecord]]:
        parsed: list[tuple[int, ReservationRecord]] = []
        for index, row in enumerate(rows):
            try:
                parsed.append((index, ReservationRecord.from_dict(row)))
            except (KeyError, TypeError, ValueError) as error:
                self._log_event(
                    "YAML_ROW_SKIPPED",
                    {
                        "file": str(self.records_file.name),
                        "index": index,
                        "reason": str(error),
                    },
                )
        return parsed

    def list_records(self, token: str | None = None) -> list[ReservationRecord]:
        with self._file_lock:
            rows = self._read_yaml_list(self.records_file)
        return [record for _, record in self._parse_rows(rows) if token is None or record.token == token]

    def find_all_active(self, token: str) -> list[ReservationRecord]:
        return [record for record in self.list_records(token) if record.is_active]

    def find_active(self, token: str) -> ReservationRecord | None:
        latest: ReservationRecord | None = None
        for record in self.find_all_active(token):
            if latest is None or record.created_at >= latest.created_at:
                latest = record
        return latest

    def find_by_key(self, key: ReservationKey) -> ReservationRecord | None:
        token = key[0]
        for record in self.find_all_active(token):
            if record.key == key:
                return record
        return None

    def find_covering(
        self,
        token: str,
        room_identity: str,
        start: datetime,
        end: datetime,
    ) -> ReservationRecord | None:
        """Active record of ``token`` in the room whose interval contains ``[start, end)``.

        A redelivered submission whose first slot had already begun parses to
        a later start than the first delivery; the stored record still covers it.
        """
        for record in self.find_all_active(token):
            if record.room_identity == room_identity and record.slot_start <= start and end <= record.slot_end:
                return record
        return None

    def insert_or_get(self, record: ReservationRecord) -> InsertOutcome:
        if not record.is_active:
            raise ValueError("Only reserved records can be inserted.")
        if record.slot_start >= record.slot_end:
            raise ValueError("Reservation start time must be earlier than end time.")

        with self._file_lock:
            rows = self._read_yaml_list(self.records_file)
            for _, existing in self._parse_rows(rows):
                if not existing.is_active or existing.key != record.key:
                    continue
                if existing.external_meeting_id != record.external_meeting_id:
                    raise DuplicateReservationError(
                        f"Slot already reserved for token {record.token} by meeting {existing.external_meeting_id}"
                    )
                logger.info("Reservation for token %s already stored, skipping insert", record.token)
                return InsertOutcome.ALREADY_EXISTS

            rows.append(record.to_dict())
            self._write_yaml_list(self.records_file, rows)

        self._log_event(
            "RESERVATION_CREATED",
            {
                "token": record.token,
                "room_identity": record.room_identity,
                "meeting_id": record.external_meeting_id,
                "slot_start": _format_instant(record.slot_start),
                "slot_end": _format_instant(record.slot_end),
            },
            record.created_at,
        )
        logger.info("Stored reservation for token %s with meeting %s", record.token, record.external_meeting_id)
        return InsertOutcome.INSERTED

    def mark_cancelled(
        self,
        token: str,
        *,
        meeting_id: str | None = None,
        now: datetime | None = None,
    ) -> list[ReservationRecord]:
        effective_now = now or _utcnow()
        cancelled: list[ReservationRecord] = []

        with self._file_lock:
            rows = self._read_yaml_list(self.records_file)
            for index, record in self._parse_rows(rows):
                if record.token != token or not record.is_active:
                    continue
                if meeting_id is not None and record.external_meeting_id != meeting_id:
                    continue
                updated = replace(record, status=ReservationStatus.CANCELLED, cancelled_at=effective_now)
                rows[index] = updated.to_dict()
                cancelled.append(updated)

            if not cancelled:
                logger.warning("No active reservation found for token %s", token)
                raise ReservationNotFoundError(f"No active reservation found for token: {token}")
            self._write_yaml_list(self.records_file, rows)

        for record in cancelled:
            self._log_event(
                "RESERVATION_CANCELLED",
                {
                    "token": record.token,
                    "room_identity": record.room_identity,
                    "meeting_id": record.external_meeting_id,
                },
                effective_now,
            )
        return cancelled


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_instant(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_instant(value: Any) -> datetime:
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
