"""Logging configuration and redaction helpers."""

from __future__ import annotations

import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path
from urllib.parse import urlparse

from phase_client.core.storage import get_logs_dir

LOG_FILE_NAME = "phase.log"
MAX_LOG_BYTES = 2 * 1024 * 1024
BACKUP_COUNT = 5

_SHARE_LINK_SCHEMES = {"ss", "vmess", "trojan", "vless", "hysteria2", "hy2", "tuic"}


def setup_logging(*, level: int = logging.INFO, logs_dir: Path | None = None) -> Path:
    logs_dir = logs_dir or get_logs_dir()
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / LOG_FILE_NAME

    root = logging.getLogger()
    if root.handlers:
        return log_path

    root.setLevel(level)

    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    file_handler = RotatingFileHandler(
        log_path, maxBytes=MAX_LOG_BYTES, backupCount=BACKUP_COUNT
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root.addHandler(file_handler)
    root.addHandler(console_handler)

    return log_path


_URL_PATTERN = re.compile(r"\b[\w+.-]+://[^\s]+")


def _redact_url(match: re.Match[str]) -> str:
    raw = match.group(0)
    try:
        parsed = urlparse(raw)
        port = parsed.port
    except ValueError:
        return "<redacted>"
    scheme = parsed.scheme.lower()
    if scheme in _SHARE_LINK_SCHEMES:
        # Share links carry credentials in the userinfo or in a base64 body.
        if not parsed.hostname or "@" not in parsed.netloc:
            return f"{scheme}://<redacted>"
    if not scheme or not parsed.hostname:
        return "<redacted>"
    suffix = f":{port}" if port else ""
    return f"{scheme}://{parsed.hostname}{suffix}"


def redact(text: str) -> str:
    """Reduce every URL in ``text`` to scheme://host[:port].

    Subscription URLs usually embed an access token in the path or query and
    share links embed passwords, so neither may reach the log files verbatim.
    """
    if not text:
        return text
    return _URL_PATTERN.sub(_redact_url, text)
