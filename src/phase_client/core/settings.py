"""Persisted application settings."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
import logging
from pathlib import Path
from typing import Any

from phase_client.core.config_builder import DEFAULT_MIXED_PORT, PROXY_MODES, ProxyMode
from phase_client.core.storage import atomic_write_json, get_config_dir, load_json

logger = logging.getLogger(__name__)

SETTINGS_FILE = "settings.json"


@dataclass(frozen=True, slots=True)
class AppSettings:
    selected_node_id: str | None = None
    mode: ProxyMode = "rule"
    listen_port: int = DEFAULT_MIXED_PORT
    manage_system_proxy: bool = True
    validate_config: bool = False
    readiness_timeout_s: float = 5.0
    binary_path: str | None = None

    def with_changes(self, **changes: Any) -> "AppSettings":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AppSettings":
        defaults = cls()
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}

        mode = values.get("mode", defaults.mode)
        if mode not in PROXY_MODES:
            logger.warning("Ignoring unknown proxy mode in settings: %r", mode)
            mode = defaults.mode

        try:
            port = int(values.get("listen_port", defaults.listen_port))
        except (TypeError, ValueError):
            port = defaults.listen_port
        if not 1 <= port <= 65535:
            port = defaults.listen_port

        try:
            readiness = float(values.get("readiness_timeout_s", defaults.readiness_timeout_s))
        except (TypeError, ValueError):
            readiness = defaults.readiness_timeout_s

        selected = values.get("selected_node_id")
        binary = values.get("binary_path")
        return cls(
            selected_node_id=str(selected) if selected else None,
            mode=mode,
            listen_port=port,
            manage_system_proxy=bool(values.get("manage_system_proxy", defaults.manage_system_proxy)),
            validate_config=bool(values.get("validate_config", defaults.validate_config)),
            readiness_timeout_s=max(0.0, readiness),
            binary_path=str(binary) if binary else None,
        )


def settings_path() -> Path:
    return get_config_dir() / SETTINGS_FILE


def load_settings(path: Path | None = None) -> AppSettings:
    data = load_json(path or settings_path(), {})
    if not isinstance(data, dict):
        return AppSettings()
    return AppSettings.from_dict(data)


def save_settings(settings: AppSettings, path: Path | None = None) -> None:
    atomic_write_json(path or settings_path(), settings.to_dict())
