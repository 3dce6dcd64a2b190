"""Point desktop-wide proxy settings at the local engine and restore them afterwards.

The override targets the GNOME proxy schemas (``org.gnome.system.proxy*``):
HTTP, HTTPS and SOCKS all point at the engine's mixed loopback listener. The
settings found before the first override are snapshotted to the state
directory so they can be restored on stop, or on the next launch after a
crash.

Preferred backend:
- GNOME GSettings via Gio (python3-gi)

Fallback backend:
- `gsettings` CLI
"""

from __future__ import annotations

from dataclasses import dataclass
import ast
import logging
from pathlib import Path
import shlex
import shutil
import socket
import subprocess
from typing import Any, Final, Literal, Sequence, cast

from phase_client.core.config_builder import DEFAULT_LISTEN, DEFAULT_MIXED_PORT
from phase_client.core.errors import NetworkServiceNotFoundError, ProxyApplyError, ProxyWriteError
from phase_client.core.storage import atomic_write_json, get_state_dir, load_json

try:  # pragma: no cover - optional dependency in some environments
    import gi

    gi.require_version("Gio", "2.0")
    from gi.repository import Gio
except (ImportError, ValueError):  # pragma: no cover - optional dependency in some environments
    Gio = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

SNAPSHOT_FILE: Final[str] = "system_proxy_snapshot.json"
SNAPSHOT_VERSION: Final[int] = 1

ProxyBackendName = Literal["gio", "gsettings"]
ValueKind = Literal["string", "bool", "int", "strv"]

_SCHEMA_PROXY: Final[str] = "org.gnome.system.proxy"
_SCHEMA_HTTP: Final[str] = "org.gnome.system.proxy.http"
_SCHEMA_HTTPS: Final[str] = "org.gnome.system.proxy.https"
_SCHEMA_SOCKS: Final[str] = "org.gnome.system.proxy.socks"

DEFAULT_BYPASS_HOSTS: Final[tuple[str, ...]] = (
    "localhost",
    "127.0.0.0/8",
    "::1",
    "*.local",
    "10.0.0.0/8",
    "172.16.0.0/12",
    "192.168.0.0/16",
)
_LOOPBACK_IGNORE_HOSTS: Final[tuple[str, ...]] = ("localhost", "127.0.0.0/8", "::1")


@dataclass(frozen=True, slots=True)
class _Key:
    schema: str
    key: str
    kind: ValueKind

    @property
    def path(self) -> str:
        return f"{self.schema}:{self.key}"


_MODE = _Key(_SCHEMA_PROXY, "mode", "string")
_AUTOCONFIG_URL = _Key(_SCHEMA_PROXY, "autoconfig-url", "string")
_IGNORE_HOSTS = _Key(_SCHEMA_PROXY, "ignore-hosts", "strv")
_USE_SAME_PROXY = _Key(_SCHEMA_PROXY, "use-same-proxy", "bool")
_HTTP_ENABLED = _Key(_SCHEMA_HTTP, "enabled", "bool")
_HTTP_HOST = _Key(_SCHEMA_HTTP, "host", "string")
_HTTP_PORT = _Key(_SCHEMA_HTTP, "port", "int")
_HTTP_USE_AUTH = _Key(_SCHEMA_HTTP, "use-authentication", "bool")
_HTTPS_HOST = _Key(_SCHEMA_HTTPS, "host", "string")
_HTTPS_PORT = _Key(_SCHEMA_HTTPS, "port", "int")
_SOCKS_HOST = _Key(_SCHEMA_SOCKS, "host", "string")
_SOCKS_PORT = _Key(_SCHEMA_SOCKS, "port", "int")

# Restore writes these in order; mode goes last so the desktop never sees a
# half-written manual configuration.
_SNAPSHOT_KEYS: Final[tuple[_Key, ...]] = (
    _AUTOCONFIG_URL,
    _IGNORE_HOSTS,
    _USE_SAME_PROXY,
    _HTTP_ENABLED,
    _HTTP_HOST,
    _HTTP_PORT,
    _HTTP_USE_AUTH,
    _HTTPS_HOST,
    _HTTPS_PORT,
    _SOCKS_HOST,
    _SOCKS_PORT,
    _MODE,
)


@dataclass(frozen=True, slots=True)
class SystemProxyStatus:
    mode: str
    http_enabled: bool
    http_host: str
    http_port: int
    https_host: str
    https_port: int
    socks_host: str
    socks_port: int

    @property
    def any_enabled(self) -> bool:
        if self.mode != "manual":
            return False
        return (
            (self.http_enabled and bool(self.http_host) and self.http_port > 0)
            or (bool(self.https_host) and self.https_port > 0)
            or (bool(self.socks_host) and self.socks_port > 0)
        )


def _parse_gsettings_str(raw: str) -> str:
    raw = (raw or "").strip()
    if not raw:
        return ""
    try:
        parsed = ast.literal_eval(raw)
    except (ValueError, SyntaxError):
        parsed = None
    if isinstance(parsed, str):
        return parsed.strip()
    return raw


def _to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return _parse_gsettings_str(value)
    return str(value).strip()


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0


def _to_strv(value: Any) -> list[str]:
    if isinstance(value, str):
        text = value.strip()
        # gsettings prints empty lists as "@as []"
        if text.startswith("@as"):
            text = text[3:].strip()
        try:
            value = ast.literal_eval(text) if text else []
        except (ValueError, SyntaxError):
            return [text] if text else []
    if not isinstance(value, (list, tuple)):
        return []
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


def _decode(value: Any, kind: ValueKind) -> Any:
    if kind == "string":
        return _to_string(value)
    if kind == "bool":
        return _to_bool(value)
    if kind == "int":
        return _to_int(value)
    return _to_strv(value)


def _quote(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def _encode_for_gsettings(kind: ValueKind, value: Any) -> str:
    if kind == "string":
        return _quote(_to_string(value))
    if kind == "bool":
        return "true" if _to_bool(value) else "false"
    if kind == "int":
        return str(_to_int(value))
    return "[" + ", ".join(_quote(item) for item in _to_strv(value)) + "]"


def _merge_hosts(*sources: Sequence[str]) -> list[str]:
    merged: list[str] = []
    for source in sources:
        for item in source:
            host = (item or "").strip()
            if host and host not in merged:
                merged.append(host)
    return merged


def _is_loopback_host(host: str) -> bool:
    return host.strip().lower() in {"127.0.0.1", "localhost", "::1"}


def _is_tcp_endpoint_reachable(host: str, port: int, *, timeout_s: float = 0.25) -> bool:
    try:
        sock = socket.create_connection((host, int(port)), timeout=timeout_s)
    except OSError:
        return False
    sock.close()
    return True


def _run(cmd: list[str], *, timeout_s: float = 3.0) -> subprocess.CompletedProcess[str]:
    command_text = shlex.join(cmd)
    logger.debug("Running command: %s", command_text)
    try:
        result = subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except subprocess.TimeoutExpired as exc:
        raise ProxyApplyError(
            f"Command timed out: {command_text}",
            user_message="Timed out while changing system proxy settings.",
        ) from exc
    except OSError as exc:
        raise ProxyApplyError(
            f"Command failed: {command_text}: {exc}",
            user_message="Failed to change system proxy settings (missing tools/permissions).",
        ) from exc

    if result.returncode != 0:
        detail = (result.stderr or "").strip() or (result.stdout or "").strip() or "unknown error"
        logger.error("Command failed rc=%s cmd=%s: %s", result.returncode, command_text, detail)
        raise ProxyApplyError(
            f"Command failed: {command_text}: {detail}",
            user_message=f"Failed to change system proxy settings: {detail}",
        )
    return result


class _GsettingsBackend:
    name: ProxyBackendName = "gsettings"

    @staticmethod
    def available() -> bool:
        if shutil.which("gsettings") is None:
            return False
        try:
            out = _run(["gsettings", "list-keys", _SCHEMA_PROXY], timeout_s=2.0).stdout
        except ProxyApplyError:
            return False
        return "mode" in out.split()

    def read(self, key: _Key) -> Any:
        raw = _run(["gsettings", "get", key.schema, key.key], timeout_s=2.5).stdout
        return _decode(raw, key.kind)

    def write(self, key: _Key, value: Any) -> None:
        try:
            _run(
                ["gsettings", "set", key.schema, key.key, _encode_for_gsettings(key.kind, value)],
                timeout_s=2.5,
            )
        except ProxyApplyError as exc:
            raise ProxyWriteError(str(exc), user_message=exc.user_message) from exc

    def sync(self) -> None:
        return None


class _GioBackend:
    name: ProxyBackendName = "gio"

    def __init__(self) -> None:
        self._settings: dict[str, Any] = {}

    @staticmethod
    def available() -> bool:
        if Gio is None:
            return False
        source = Gio.SettingsSchemaSource.get_default()
        if source is None:
            return False
        return all(
            source.lookup(schema, True) is not None
            for schema in (_SCHEMA_PROXY, _SCHEMA_HTTP, _SCHEMA_HTTPS, _SCHEMA_SOCKS)
        )

    def _open(self, schema: str) -> Any:
        settings = self._settings.get(schema)
        if settings is None:
            settings = Gio.Settings.new(schema)
            self._settings[schema] = settings
        return settings

    def read(self, key: _Key) -> Any:
        settings = self._open(key.schema)
        if key.kind == "string":
            return _to_string(settings.get_string(key.key))
        if key.kind == "bool":
            return bool(settings.get_boolean(key.key))
        if key.kind == "int":
            return int(settings.get_int(key.key))
        return _to_strv(list(settings.get_strv(key.key)))

    def write(self, key: _Key, value: Any) -> None:
        settings = self._open(key.schema)
        if key.kind == "string":
            ok = settings.set_string(key.key, _to_string(value))
        elif key.kind == "bool":
            ok = settings.set_boolean(key.key, _to_bool(value))
        elif key.kind == "int":
            ok = settings.set_int(key.key, _to_int(value))
        else:
            ok = settings.set_strv(key.key, _to_strv(value))
        if not ok:
            raise ProxyWriteError(
                f"Gio refused to write {key.path}",
                user_message="Failed to apply GNOME proxy settings.",
            )

    def sync(self) -> None:
        Gio.Settings.sync()


_Backend = _GioBackend | _GsettingsBackend


def _detect_backend(preferred: ProxyBackendName | None = None) -> _Backend | None:
    order: list[type[_GioBackend] | type[_GsettingsBackend]] = [_GioBackend, _GsettingsBackend]
    if preferred == "gsettings":
        order.reverse()
    for backend_cls in order:
        if backend_cls.available():
            logger.info("Using %s system proxy backend", backend_cls.name)
            return backend_cls()
    return None


def _read_status(backend: _Backend) -> SystemProxyStatus:
    return SystemProxyStatus(
        mode=_to_string(backend.read(_MODE)).lower(),
        http_enabled=_to_bool(backend.read(_HTTP_ENABLED)),
        http_host=_to_string(backend.read(_HTTP_HOST)),
        http_port=_to_int(backend.read(_HTTP_PORT)),
        https_host=_to_string(backend.read(_HTTPS_HOST)),
        https_port=_to_int(backend.read(_HTTPS_PORT)),
        socks_host=_to_string(backend.read(_SOCKS_HOST)),
        socks_port=_to_int(backend.read(_SOCKS_PORT)),
    )


def _capture_snapshot(backend: _Backend) -> dict[str, Any]:
    snapshot = {key.path: backend.read(key) for key in _SNAPSHOT_KEYS}
    if not _to_string(snapshot.get(_MODE.path)):
        raise ProxyApplyError(
            "Failed to snapshot proxy mode",
            user_message="Failed to snapshot current system proxy settings.",
        )
    return snapshot


def _normalize_snapshot(raw: Any) -> dict[str, Any] | None:
    if not isinstance(raw, dict):
        return None
    snapshot: dict[str, Any] = {}
    for key in _SNAPSHOT_KEYS:
        if key.path in raw:
            snapshot[key.path] = _decode(raw[key.path], key.kind)
    if not snapshot.get(_MODE.path):
        return None
    return snapshot


def _write_snapshot(backend: _Backend, snapshot: dict[str, Any]) -> None:
    for key in _SNAPSHOT_KEYS:
        if key.path in snapshot:
            backend.write(key, snapshot[key.path])
    backend.sync()


def _verify_snapshot(backend: _Backend, snapshot: dict[str, Any]) -> None:
    mismatches: list[str] = []
    for key in _SNAPSHOT_KEYS:
        if key.path not in snapshot:
            continue
        expected = _decode(snapshot[key.path], key.kind)
        actual = _decode(backend.read(key), key.kind)
        if expected != actual:
            mismatches.append(f"{key.path} expected={expected!r} got={actual!r}")
    if mismatches:
        detail = "; ".join(mismatches)
        logger.error("System proxy restore verification failed: %s", detail)
        raise ProxyWriteError(
            f"System proxy restore verification failed: {detail}",
            user_message="System proxy settings were not restored correctly.",
        )


class SystemProxyCoordinator:
    def __init__(
        self,
        *,
        host: str = DEFAULT_LISTEN,
        port: int = DEFAULT_MIXED_PORT,
        bypass_hosts: Sequence[str] = DEFAULT_BYPASS_HOSTS,
        state_dir: Path | None = None,
    ) -> None:
        self.host = host
        self.port = int(port)
        self.bypass_hosts = tuple(bypass_hosts)
        self._state_dir = state_dir or get_state_dir()
        self._backend: _Backend | None = _detect_backend()

    @property
    def backend(self) -> ProxyBackendName | None:
        return self._backend.name if self._backend is not None else None

    @property
    def snapshot_path(self) -> Path:
        return self._state_dir / SNAPSHOT_FILE

    def is_supported(self) -> bool:
        return self._backend is not None

    def has_snapshot(self) -> bool:
        return self.snapshot_path.exists()

    def _ensure_backend(self, preferred: ProxyBackendName | None = None) -> _Backend:
        if self._backend is None:
            self._backend = _detect_backend(preferred)
        if self._backend is None:
            raise NetworkServiceNotFoundError(
                "No system proxy backend available",
                user_message="No supported system proxy settings were found on this desktop.",
            )
        return self._backend

    def read_status(self) -> SystemProxyStatus:
        return _read_status(self._ensure_backend())

    def is_proxy_enabled(self) -> bool:
        try:
            return self.read_status().any_enabled
        except ProxyApplyError:
            logger.exception("Failed to read system proxy status")
            return False

    def _load_snapshot(self) -> dict[str, Any] | None:
        data = load_json(self.snapshot_path, None)
        if not isinstance(data, dict):
            return None
        return _normalize_snapshot(data.get("snapshot"))

    def _save_snapshot(self, backend: _Backend, snapshot: dict[str, Any]) -> None:
        payload = {"version": SNAPSHOT_VERSION, "backend": backend.name, "snapshot": snapshot}
        try:
            atomic_write_json(self.snapshot_path, payload)
        except OSError as exc:
            logger.exception("Failed to write system proxy snapshot: %s", self.snapshot_path)
            raise ProxyWriteError(
                f"Failed to write system proxy snapshot: {self.snapshot_path}: {exc}",
                user_message="Failed to save the current system proxy settings.",
            ) from exc

    def _discard_snapshot(self) -> None:
        try:
            self.snapshot_path.unlink(missing_ok=True)
        except OSError:
            logger.exception("Failed to remove system proxy snapshot: %s", self.snapshot_path)

    def enable_proxy(self) -> SystemProxyStatus:
        backend = self._ensure_backend()

        snapshot = self._load_snapshot()
        if snapshot is None:
            snapshot = _capture_snapshot(backend)
            self._save_snapshot(backend, snapshot)
        else:
            # Only one override is owned at a time; the first snapshot stays authoritative.
            logger.info("System proxy override already owned; keeping original snapshot")

        try:
            self._apply_override(backend)
            status = self._verify_override(backend)
        except ProxyApplyError as exc:
            logger.exception("System proxy apply failed; rolling back")
            try:
                _write_snapshot(backend, snapshot)
                _verify_snapshot(backend, snapshot)
            except ProxyApplyError:
                logger.exception("Failed to roll back system proxy settings")
            else:
                self._discard_snapshot()
            if isinstance(exc, ProxyWriteError):
                raise
            raise ProxyWriteError(str(exc), user_message=exc.user_message) from exc

        logger.info(
            "System proxy enabled: http/https/socks -> %s:%s", self.host, self.port
        )
        return status

    def disable_proxy(self) -> SystemProxyStatus:
        backend = self._ensure_backend()
        snapshot = self._load_snapshot()
        if snapshot is None:
            if self.snapshot_path.exists():
                logger.warning("System proxy snapshot is invalid; clearing proxy instead")
            self._force_no_proxy(backend)
        else:
            _write_snapshot(backend, snapshot)
            _verify_snapshot(backend, snapshot)
        self._discard_snapshot()

        status = _read_status(backend)
        logger.info("System proxy restored: mode=%s", status.mode)
        return status

    def restore_if_needed(self) -> bool:
        """Restore settings left behind by a previous run that did not shut down cleanly."""
        if not self.snapshot_path.exists():
            return False
        self.disable_proxy()
        return True

    def repair_stale_override(self) -> bool:
        """Clear a loopback override nobody is listening on (and we hold no snapshot for)."""
        if self.snapshot_path.exists():
            return False
        try:
            backend = self._ensure_backend()
        except NetworkServiceNotFoundError:
            return False

        status = _read_status(backend)
        if status.mode != "manual":
            return False
        if not _is_loopback_host(status.http_host) or status.http_port <= 0:
            return False
        if _is_tcp_endpoint_reachable(status.http_host, status.http_port):
            return False

        logger.warning(
            "Clearing stale loopback proxy %s:%s", status.http_host, status.http_port
        )
        self._force_no_proxy(backend)
        return True

    def _apply_override(self, backend: _Backend) -> None:
        existing = cast(list[str], backend.read(_IGNORE_HOSTS))
        ignore_hosts = _merge_hosts(existing, self.bypass_hosts)

        backend.write(_HTTP_ENABLED, True)
        backend.write(_HTTP_HOST, self.host)
        backend.write(_HTTP_PORT, self.port)
        backend.write(_HTTP_USE_AUTH, False)
        backend.write(_HTTPS_HOST, self.host)
        backend.write(_HTTPS_PORT, self.port)
        backend.write(_SOCKS_HOST, self.host)
        backend.write(_SOCKS_PORT, self.port)
        backend.write(_USE_SAME_PROXY, False)
        backend.write(_IGNORE_HOSTS, ignore_hosts)
        backend.write(_MODE, "manual")
        backend.sync()

    def _verify_override(self, backend: _Backend) -> SystemProxyStatus:
        status = _read_status(backend)
        mismatches: list[str] = []
        if status.mode != "manual":
            mismatches.append(f"mode expected='manual' got={status.mode!r}")
        if not status.http_enabled:
            mismatches.append("http.enabled expected=true got=false")
        for label, host, port in (
            ("http", status.http_host, status.http_port),
            ("https", status.https_host, status.https_port),
            ("socks", status.socks_host, status.socks_port),
        ):
            if host != self.host or port != self.port:
                mismatches.append(f"{label} expected={self.host}:{self.port} got={host}:{port}")
        if mismatches:
            detail = "; ".join(mismatches)
            logger.error("System proxy apply verification failed: %s", detail)
            raise ProxyWriteError(
                f"System proxy apply verification failed: {detail}",
                user_message=f"System proxy not applied correctly ({detail}).",
            )
        return status

    def _force_no_proxy(self, backend: _Backend) -> None:
        existing = cast(list[str], backend.read(_IGNORE_HOSTS))
        backend.write(_AUTOCONFIG_URL, "")
        backend.write(_HTTP_ENABLED, False)
        backend.write(_HTTP_HOST, "")
        backend.write(_HTTP_PORT, 0)
        backend.write(_HTTP_USE_AUTH, False)
        backend.write(_HTTPS_HOST, "")
        backend.write(_HTTPS_PORT, 0)
        backend.write(_SOCKS_HOST, "")
        backend.write(_SOCKS_PORT, 0)
        backend.write(_USE_SAME_PROXY, False)
        backend.write(_IGNORE_HOSTS, _merge_hosts(existing, _LOOPBACK_IGNORE_HOSTS))
        backend.write(_MODE, "none")
        backend.sync()
