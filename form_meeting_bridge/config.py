from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml
from dotenv import load_dotenv

from .operators import OperatorDirectory, OperatorIdentity

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "meeting_bridge.yaml"
DEFAULT_API_ENDPOINT = "https://api.meeting.qq.com"
DEFAULT_USER_FIELD = "user_field_name"


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class ApiCredentials:
    app_id: str = ""
    secret_id: str = ""
    secret_key: str = ""
    endpoint: str = DEFAULT_API_ENDPOINT
    sdk_id: str = ""


@dataclass(frozen=True)
class FormRoute:
    form_name: str
    room_id: str
    area: str = ""


@dataclass(frozen=True)
class BridgeSettings:
    operators: OperatorDirectory
    form_routes: tuple[FormRoute, ...] = ()
    api: ApiCredentials = field(default_factory=ApiCredentials)
    user_field_name: str = DEFAULT_USER_FIELD
    data_dir: Path = Path("data")
    request_timeout_seconds: float = 10.0
    instance_id: int = 32
    meeting_type: int = 0
    time_zone: str = "Asia/Shanghai"
    skip_meeting_creation: bool = False
    skip_room_booking: bool = False
    compensate_failed_booking: bool = False

    def route_for_form(self, form_name: str) -> FormRoute | None:
        """Exact form-name route, else the first configured route, else None."""
        for route in self.form_routes:
            if route.form_name == form_name:
                return route
        if self.form_routes:
            logger.warning("Unknown form name %r, using room of %r", form_name, self.form_routes[0].form_name)
            return self.form_routes[0]
        return None

    def location_for(self, form_name: str, room_label: str) -> str:
        for route in self.form_routes:
            if route.form_name == form_name and route.area:
                return f"{route.area}-{room_label}"
        return f"{room_label} (Unknown Location)"


def load_settings(
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> BridgeSettings:
    """Build settings from an optional YAML file plus environment overrides.

    ``.env`` is loaded into the process environment first unless an explicit
    ``environ`` mapping is given.
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    path = Path(config_path or environ.get("MEETING_BRIDGE_CONFIG", DEFAULT_CONFIG_FILE))
    document = _read_config_file(path)

    api_section = document.get("api") or {}
    api = ApiCredentials(
        app_id=environ.get("TENCENT_MEETING_APP_ID", str(api_section.get("app_id", ""))),
        secret_id=environ.get("TENCENT_MEETING_SECRET_ID", str(api_section.get("secret_id", ""))),
        secret_key=environ.get("TENCENT_MEETING_SECRET_KEY", str(api_section.get("secret_key", ""))),
        endpoint=environ.get("TENCENT_MEETING_API_ENDPOINT", str(api_section.get("endpoint", DEFAULT_API_ENDPOINT))),
        sdk_id=environ.get("TENCENT_MEETING_SDK_ID", str(api_section.get("sdk_id", ""))),
    )

    settings = BridgeSettings(
        operators=_load_operators(document, environ),
        form_routes=_load_form_routes(document.get("form_routes")),
        api=api,
        user_field_name=environ.get("USER_FIELD_NAME", str(document.get("user_field_name", DEFAULT_USER_FIELD))),
        data_dir=Path(environ.get("MEETING_DATABASE_PATH", str(document.get("data_dir", "data")))),
        request_timeout_seconds=_as_float(
            environ.get("REQUEST_TIMEOUT_SECONDS", document.get("request_timeout_seconds", 10.0)),
            "request_timeout_seconds",
        ),
        instance_id=int(document.get("instance_id", 32)),
        meeting_type=int(document.get("meeting_type", 0)),
        time_zone=str(document.get("time_zone", "Asia/Shanghai")),
        skip_meeting_creation=_as_bool(environ.get("SKIP_MEETING_CREATION", document.get("skip_meeting_creation", False))),
        skip_room_booking=_as_bool(environ.get("SKIP_ROOM_BOOKING", document.get("skip_room_booking", False))),
        compensate_failed_booking=_as_bool(document.get("compensate_failed_booking", False)),
    )
    logger.info(
        "Loaded settings: %d operators, %d form routes, data_dir=%s",
        len(settings.operators),
        len(settings.form_routes),
        settings.data_dir,
    )
    return settings


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as error:
        raise ConfigError(f"Failed to read config file: {path}") from error
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConfigError(f"Config file must contain a mapping: {path}")
    return payload


def _load_operators(document: dict[str, Any], environ: Mapping[str, str]) -> OperatorDirectory:
    try:
        if "TENCENT_MEETING_OPERATOR_ID" in environ:
            return OperatorDirectory.from_string(environ["TENCENT_MEETING_OPERATOR_ID"])

        configured = document.get("operators")
        if configured is None:
            logger.info("No operators configured, using default admin operator")
            return OperatorDirectory([OperatorIdentity("admin", "admin")])
        if not isinstance(configured, list):
            raise ConfigError("operators must be a list of {name, id} mappings")
        return OperatorDirectory.from_pairs(
            (str(item.get("name", "")), str(item.get("id", ""))) for item in configured if isinstance(item, dict)
        )
    except ValueError as error:
        if isinstance(error, ConfigError):
            raise
        raise ConfigError(str(error)) from error


def _load_form_routes(configured: Any) -> tuple[FormRoute, ...]:
    if configured is None:
        return ()
    if not isinstance(configured, dict):
        raise ConfigError("form_routes must map form names to {room_id, area}")

    routes: list[FormRoute] = []
    for form_name, route in configured.items():
        if not isinstance(route, dict) or not route.get("room_id"):
            raise ConfigError(f"form route {form_name!r} needs a room_id")
        routes.append(FormRoute(str(form_name), str(route["room_id"]), str(route.get("area", ""))))
    return tuple(routes)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _as_float(value: Any, name: str) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError) as error:
        raise ConfigError(f"{name} must be a number") from error
    if parsed <= 0:
        raise ConfigError(f"{name} must be greater than zero")
    return parsed
