"""Global configuration for StageCall."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

DEFAULTS: dict[str, Any] = {
    "default_title": "New rehearsal",
    "default_location": "location TBD",
    "default_duration_hours": 2,
    "default_deadline_option": "1w",
    "time_zone": "Europe/Berlin",
    "planner_roles": "board,admin,tech",
    "push_webhook_url": "",
    "push_timeout_seconds": 5.0,
    "realtime_history_size": 50,
    "notification_retention_days": 90,
    "cleanup_interval_hours": 24,
    "enable_scheduler": True,
    "notifications_page_size": 25,
    "seed_members": 12,
    "app_host": "0.0.0.0",
    "app_port": 8000,
}

TYPE_CASTERS: dict[str, Callable[[Any], Any]] = {
    "default_title": str,
    "default_location": str,
    "default_duration_hours": int,
    "default_deadline_option": str,
    "time_zone": str,
    "planner_roles": str,
    "push_webhook_url": str,
    "push_timeout_seconds": float,
    "realtime_history_size": int,
    "notification_retention_days": int,
    "cleanup_interval_hours": int,
    "enable_scheduler": bool,
    "notifications_page_size": int,
    "seed_members": int,
    "app_host": str,
    "app_port": int,
}


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    database_path: Path
    default_title: str
    default_location: str
    default_duration_hours: int
    default_deadline_option: str
    time_zone: str
    planner_roles: str
    push_webhook_url: str
    push_timeout_seconds: float
    realtime_history_size: int
    notification_retention_days: int
    cleanup_interval_hours: int
    enable_scheduler: bool
    notifications_page_size: int
    seed_members: int
    app_host: str
    app_port: int
    config_path: Path

    @property
    def default_duration(self) -> timedelta:
        return timedelta(hours=self.default_duration_hours)

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.notification_retention_days)

    @property
    def planner_role_set(self) -> frozenset[str]:
        return frozenset(
            role.strip().lower()
            for role in self.planner_roles.split(",")
            if role.strip()
        )


def _boolify(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Cannot parse boolean value from {value!r}")


def _cast_value(key: str, value: Any) -> Any:
    if key not in TYPE_CASTERS:
        return value
    caster = TYPE_CASTERS[key]
    if caster is bool:
        return _boolify(value)
    if key == "planner_roles" and isinstance(value, (list, tuple)):
        return ",".join(str(item) for item in value)
    return caster(value)


def _load_toml_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    with config_path.open("rb") as handle:
        return tomllib.load(handle)


def _config_layered_value(key: str, *, toml_config: dict[str, Any]) -> Any:
    env_key = f"STAGECALL_{key.upper()}"
    if env_key in os.environ:
        return _cast_value(key, os.environ[env_key])
    if key in toml_config:
        return _cast_value(key, toml_config[key])
    return DEFAULTS[key]


def _resolve_paths(
    *,
    base_dir: Path,
    data_dir: str | Path | None,
    database_path: str | Path | None,
):
    resolved_base = Path(base_dir)
    resolved_data = Path(data_dir) if data_dir else resolved_base / "data"
    if not resolved_data.is_absolute():
        resolved_data = resolved_base / resolved_data
    resolved_db = Path(database_path) if database_path else resolved_data / "stagecall.db"
    if not resolved_db.is_absolute():
        resolved_db = resolved_base / resolved_db
    return resolved_base, resolved_data, resolved_db


def load_settings(config_override: Path | None = None) -> Settings:
    base_dir = Path(os.getenv("STAGECALL_BASE_DIR", Path.cwd()))
    env_config = os.getenv("STAGECALL_CONFIG")
    config_path = Path(config_override or env_config or base_dir / "stagecall.toml")
    toml_config = _load_toml_config(config_path)

    base_dir_value, data_dir_value, database_path_value = _resolve_paths(
        base_dir=base_dir,
        data_dir=os.getenv("STAGECALL_DATA_DIR", toml_config.get("data_dir")),
        database_path=os.getenv("STAGECALL_DB", toml_config.get("database_path")),
    )

    layered = {
        key: _config_layered_value(key, toml_config=toml_config) for key in DEFAULTS
    }
    settings = Settings(
        base_dir=base_dir_value,
        data_dir=data_dir_value,
        database_path=database_path_value,
        config_path=config_path,
        **layered,
    )
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    return settings


def settings_as_dict(settings: Settings) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "base_dir": str(settings.base_dir),
        "data_dir": str(settings.data_dir),
        "database_path": str(settings.database_path),
    }
    for key in DEFAULTS:
        payload[key] = getattr(settings, key)
    return payload


def _toml_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_config_file(config: dict[str, Any], *, path: Path) -> None:
    lines = ["# StageCall configuration\n"]
    for key in sorted(config.keys()):
        lines.append(f"{key} = {_toml_literal(config[key])}\n")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(lines), encoding="utf-8")


def update_config_file(updates: dict[str, Any], *, path: Path | None = None) -> Settings:
    current_settings = settings if "settings" in globals() else load_settings()
    target_path = path or current_settings.config_path
    existing = _load_toml_config(target_path)
    merged = {**existing}
    for key, value in updates.items():
        if key not in DEFAULTS:
            continue
        merged[key] = _cast_value(key, value)
    write_config_file(merged, path=target_path)
    new_settings = load_settings(target_path)
    globals()["settings"] = new_settings
    return new_settings


settings = load_settings()
