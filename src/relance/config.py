from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, tzinfo
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from relance.domain.policy import QuietHours, StopPolicy

WORKSPACES_DIR = Path("workspaces")
CURRENT_WORKSPACE_FILE = WORKSPACES_DIR / ".current"
WORKSPACE_FILENAME = "workspace.yaml"


@dataclass(frozen=True)
class StoreConfig:
    sqlite_path: Path


@dataclass(frozen=True)
class EngineConfig:
    tick_seconds: int = 60
    timezone: str | None = None
    max_messages_per_day: int = 3
    quiet_hours: QuietHours = field(default_factory=QuietHours)
    stop_policy: StopPolicy = field(default_factory=StopPolicy)

    @property
    def tz(self) -> tzinfo:
        return resolve_timezone(self.timezone)


@dataclass(frozen=True)
class MatchingConfig:
    auto_match_threshold: Decimal = Decimal("0.85")
    proposal_threshold: Decimal = Decimal("0.30")


@dataclass(frozen=True)
class ChannelsConfig:
    twilio_from_number: str | None = None
    notification_webhook_url: str | None = None


@dataclass(frozen=True)
class WorkspaceConfig:
    name: str
    store: StoreConfig
    engine: EngineConfig
    matching: MatchingConfig
    channels: ChannelsConfig
    path: Path


class WorkspaceError(RuntimeError):
    pass


def resolve_timezone(name: str | None) -> tzinfo:
    if not name or name.upper() == "UTC":
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise WorkspaceError(f"Unknown timezone: {name}") from exc


def ensure_workspaces_dir() -> None:
    WORKSPACES_DIR.mkdir(parents=True, exist_ok=True)


def set_current_workspace(name: str) -> None:
    ensure_workspaces_dir()
    CURRENT_WORKSPACE_FILE.write_text(f"{name}\n", encoding="utf-8")


def get_current_workspace_name() -> str:
    if not CURRENT_WORKSPACE_FILE.exists():
        raise WorkspaceError("No active workspace. Run `relance workspace use <name>`.")
    return CURRENT_WORKSPACE_FILE.read_text(encoding="utf-8").strip()


def workspace_path(name: str) -> Path:
    return WORKSPACES_DIR / name


def workspace_config_path(name: str) -> Path:
    return workspace_path(name) / WORKSPACE_FILENAME


def load_workspace(name: str | None = None) -> WorkspaceConfig:
    if name is None:
        name = get_current_workspace_name()
    config_path = workspace_config_path(name)
    if not config_path.exists():
        raise WorkspaceError(f"Workspace config not found: {config_path}")
    data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    return parse_workspace(name, data, config_path)


def parse_workspace(name: str, data: dict[str, Any], config_path: Path) -> WorkspaceConfig:
    store = _parse_store(data.get("store"), config_path)
    engine = _parse_engine(data.get("engine"))
    matching = _parse_matching(data.get("matching"))
    channels = _parse_channels(data.get("channels"))
    return WorkspaceConfig(
        name=name,
        store=store,
        engine=engine,
        matching=matching,
        channels=channels,
        path=config_path.parent,
    )


def write_workspace_config(name: str, timezone: str | None = None) -> Path:
    ensure_workspaces_dir()
    ws_dir = workspace_path(name)
    ws_dir.mkdir(parents=True, exist_ok=True)
    config = {
        "workspace": name,
        "store": {"sqlite_path": "./local.sqlite"},
        "engine": {
            "tick_seconds": 60,
            "timezone": timezone or "Europe/Paris",
            "quiet_hours": {"start_hour": 8, "end_hour": 18},
            "max_messages_per_day": 3,
            "stop_on_document_received": True,
            "expired_lines": "stop",
        },
        "matching": {"auto_match_threshold": "0.85", "proposal_threshold": "0.30"},
        "channels": {
            "twilio": {"from_number": ""},
            "notification": {"webhook_url": ""},
        },
    }
    config_path = workspace_config_path(name)
    config_path.write_text(yaml.safe_dump(config, sort_keys=False), encoding="utf-8")
    return config_path


def _parse_store(store_data: Any, config_path: Path) -> StoreConfig:
    if not isinstance(store_data, dict):
        raise WorkspaceError("Invalid workspace store configuration.")
    sqlite_path_raw = store_data.get("sqlite_path")
    if not sqlite_path_raw:
        raise WorkspaceError("Workspace store.sqlite_path is required.")
    sqlite_path = _resolve_sqlite_path(sqlite_path_raw, config_path)
    if sqlite_path is None:
        raise WorkspaceError("Workspace store.sqlite_path must be a string.")
    return StoreConfig(sqlite_path=sqlite_path)


def _resolve_sqlite_path(sqlite_path_raw: Any, config_path: Path) -> Path | None:
    if not isinstance(sqlite_path_raw, str):
        return None
    raw_path = Path(sqlite_path_raw)
    if raw_path.is_absolute():
        return raw_path
    # Prefer paths relative to the workspace directory.
    workspace_dir = config_path.parent
    if raw_path.parts and raw_path.parts[0] == WORKSPACES_DIR.name:
        return (workspace_dir.parent.parent / raw_path).resolve()
    return (workspace_dir / raw_path).resolve()


def _parse_engine(engine_data: Any) -> EngineConfig:
    if engine_data is None:
        return EngineConfig()
    if not isinstance(engine_data, dict):
        raise WorkspaceError("Invalid workspace engine configuration.")
    tick_seconds = engine_data.get("tick_seconds", 60)
    if not isinstance(tick_seconds, int) or tick_seconds <= 0:
        raise WorkspaceError("Workspace engine.tick_seconds must be a positive integer.")
    max_messages = engine_data.get("max_messages_per_day", 3)
    if isinstance(max_messages, bool) or not isinstance(max_messages, int) or max_messages <= 0:
        raise WorkspaceError("Workspace engine.max_messages_per_day must be a positive integer.")
    stop_on_document = engine_data.get("stop_on_document_received", True)
    if not isinstance(stop_on_document, bool):
        raise WorkspaceError("Workspace engine.stop_on_document_received must be true or false.")
    timezone = engine_data.get("timezone") or None
    resolve_timezone(timezone)
    quiet = engine_data.get("quiet_hours") or {}
    if not isinstance(quiet, dict):
        raise WorkspaceError("Workspace engine.quiet_hours must be a mapping.")
    try:
        quiet_hours = QuietHours(
            start_hour=int(quiet.get("start_hour", 8)),
            end_hour=int(quiet.get("end_hour", 18)),
        )
        stop_policy = StopPolicy(
            stop_on_document_received=stop_on_document,
            expired_action=str(engine_data.get("expired_lines", "stop")),
        )
    except (TypeError, ValueError) as exc:
        raise WorkspaceError(f"Invalid workspace engine configuration: {exc}") from exc
    return EngineConfig(
        tick_seconds=tick_seconds,
        timezone=timezone,
        max_messages_per_day=max_messages,
        quiet_hours=quiet_hours,
        stop_policy=stop_policy,
    )


def _parse_matching(matching_data: Any) -> MatchingConfig:
    if matching_data is None:
        return MatchingConfig()
    if not isinstance(matching_data, dict):
        raise WorkspaceError("Invalid workspace matching configuration.")
    try:
        auto = Decimal(str(matching_data.get("auto_match_threshold", "0.85")))
        proposal = Decimal(str(matching_data.get("proposal_threshold", "0.30")))
    except InvalidOperation as exc:
        raise WorkspaceError("Workspace matching thresholds must be decimals.") from exc
    if not Decimal("0") <= proposal <= auto <= Decimal("1"):
        raise WorkspaceError("Workspace matching requires 0 <= proposal_threshold <= auto_match_threshold <= 1.")
    return MatchingConfig(auto_match_threshold=auto, proposal_threshold=proposal)


def _parse_channels(channels_data: Any) -> ChannelsConfig:
    if channels_data is None:
        return ChannelsConfig()
    if not isinstance(channels_data, dict):
        raise WorkspaceError("Invalid workspace channels configuration.")
    twilio = channels_data.get("twilio") or {}
    notification = channels_data.get("notification") or {}
    if not isinstance(twilio, dict) or not isinstance(notification, dict):
        raise WorkspaceError("Workspace channels.twilio and channels.notification must be mappings.")
    return ChannelsConfig(
        twilio_from_number=twilio.get("from_number") or None,
        notification_webhook_url=notification.get("webhook_url") or None,
    )
