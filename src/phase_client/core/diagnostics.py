"""Diagnostics collection."""

from __future__ import annotations

import os
import platform
import shutil
import subprocess
import sys
from typing import TYPE_CHECKING

from phase_client.core.engine import BINARY_ENV, find_singbox_binary
from phase_client.core.errors import BinaryNotFoundError
from phase_client.core.logging_setup import redact
from phase_client.core.system_proxy import SNAPSHOT_FILE
from phase_client.core.storage import get_config_dir, get_logs_dir, get_state_dir

if TYPE_CHECKING:
    from phase_client.core.orchestrator import RuntimeState


def _tool_available(name: str) -> bool:
    return shutil.which(name) is not None


def _run_command(cmd: list[str], *, timeout_s: float = 3.0) -> tuple[bool, str]:
    try:
        result = subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        return False, str(exc)
    if result.returncode != 0:
        detail = (result.stderr or "").strip() or (result.stdout or "").strip() or "unknown error"
        return False, detail
    return True, (result.stdout or "").strip()


def _find_engine() -> str | None:
    try:
        return str(find_singbox_binary())
    except BinaryNotFoundError:
        return None


def collect_diagnostics(state: "RuntimeState | None" = None) -> str:
    lines: list[str] = []
    lines.append("phase-client diagnostics")
    lines.append("")

    lines.append("System")
    lines.append(f"- OS: {platform.system()} {platform.release()}")
    lines.append(f"- Arch: {platform.machine()}")
    lines.append(f"- Python: {sys.version.split()[0]}")
    lines.append(f"- XDG_CURRENT_DESKTOP: {os.environ.get('XDG_CURRENT_DESKTOP', '')}")
    lines.append("")

    lines.append("Engine")
    engine = _find_engine()
    if engine is None:
        lines.append("- sing-box: not found")
    else:
        lines.append(f"- sing-box: {engine}")
        ok, output = _run_command([engine, "version"])
        first_line = output.splitlines()[0] if output else ""
        lines.append(f"- Version: {first_line}" if ok else f"- Version error: {output}")
    if os.environ.get(BINARY_ENV):
        lines.append(f"- {BINARY_ENV}: {os.environ[BINARY_ENV]}")
    lines.append("")

    lines.append("Paths")
    lines.append(f"- Config: {get_config_dir()}")
    lines.append(f"- Logs: {get_logs_dir()}")
    snapshot_path = get_state_dir() / SNAPSHOT_FILE
    lines.append(
        f"- System proxy snapshot: {'present' if snapshot_path.exists() else 'absent'} ({snapshot_path})"
    )
    lines.append("")

    lines.append("System Proxy (gsettings)")
    if _tool_available("gsettings"):
        ok, output = _run_command(["gsettings", "list-recursively", "org.gnome.system.proxy"])
        if ok:
            for raw_line in output.splitlines():
                line = raw_line.strip()
                if not line:
                    continue
                schema, key, value = (line.split(maxsplit=2) + ["", ""])[:3]
                if schema and key:
                    lines.append(f"- {schema}:{key} = {redact(value)}")
                else:
                    lines.append(f"- {line}")
        else:
            lines.append(f"- Error reading gsettings: {output}")
    else:
        lines.append("- gsettings unavailable")
    lines.append("")

    if state is not None:
        node = state.selected_node
        lines.append("Runtime")
        lines.append(f"- Phase: {state.phase.value}")
        lines.append(f"- Mode: {state.mode}")
        lines.append(f"- Node: {node.name if node is not None else '<none>'}")
        lines.append(f"- System proxy: {'on' if state.system_proxy_enabled else 'off'}")
        if state.warning:
            lines.append(f"- Warning: {state.warning}")
        if state.last_error:
            lines.append(f"- Last error: {state.last_error}")
        lines.append("")

    return "\n".join(lines)
