from .config import ApiCredentials, BridgeSettings, ConfigError, FormRoute, load_settings
from .forms import FormPayloadError, FormSlotEntry, FormSubmission
from .gateway import HttpMeetingGateway, MeetingGateway, MeetingGatewayError, SimulatedMeetingGateway, build_gateway
from .merging import MergeGroup, is_contiguous, merge_time_slots
from .operators import OperatorDirectory, OperatorIdentity, resolve_operator
from .time_slots import SlotEntirelyInPastError, SlotFailure, SlotParseError, TimeSlot, parse_form_slots, parse_time_slot
from .workflow import (
    CancellationResult,
    CancellationState,
    GroupOutcome,
    ReservationResult,
    ReservationState,
    ReservationWorkflow,
)
from .yaml_store import (
    DuplicateReservationError,
    InsertOutcome,
    ReservationNotFoundError,
    ReservationRecord,
    ReservationStatus,
    ReservationStorageError,
    ReservationYamlRepository,
)

__all__ = [
    "ApiCredentials",
    "BridgeSettings",
    "ConfigError",
    "FormRoute",
    "load_settings",
    "FormPayloadError",
    "FormSlotEntry",
    "FormSubmission",
    "HttpMeetingGateway",
    "MeetingGateway",
    "MeetingGatewayError",
    "SimulatedMeetingGateway",
    "build_gateway",
    "MergeGroup",
    "is_contiguous",
    "merge_time_slots",
    "OperatorDirectory",
    "OperatorIdentity",
    "resolve_operator",
    "SlotEntirelyInPastError",
    "SlotFailure",
    "SlotParseError",
    "TimeSlot",
    "parse_form_slots",
    "parse_time_slot",
    "CancellationResult",
    "CancellationState",
    "GroupOutcome",
    "ReservationResult",
    "ReservationState",
    "ReservationWorkflow",
    "DuplicateReservationError",
    "InsertOutcome",
    "ReservationNotFoundError",
    "ReservationRecord",
    "ReservationStatus",
    "ReservationStorageError",
    "ReservationYamlRepository",
]
