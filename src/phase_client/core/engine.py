"""Locate, launch and supervise the sing-box engine process.

At most one engine process is owned per supervisor. ``stop()`` clears the
handle immediately and reaps the process in the background; callers that need
the exit confirmed await :meth:`EngineSupervisor.wait_stopped`.
"""

from __future__ import annotations

import asyncio
from collections import deque
import logging
import os
from pathlib import Path
import shutil
import subprocess
from typing import Final, Literal, Sequence

from phase_client.core.errors import BinaryNotFoundError, ConfigBuildError, EngineStartError
from phase_client.core.storage import get_bin_dir

logger = logging.getLogger(__name__)

BINARY_NAME: Final[str] = "sing-box"
BINARY_ENV: Final[str] = "PHASE_SINGBOX_BIN"
SYSTEM_PATHS: tuple[str, ...] = (
    "/usr/local/bin/sing-box",
    "/opt/homebrew/bin/sing-box",
    "/usr/bin/sing-box",
)

STOP_POLL_INTERVAL_S: Final[float] = 0.1
STOP_POLL_ATTEMPTS: Final[int] = 30
OUTPUT_TAIL_LINES: Final[int] = 50

StartOutcome = Literal["started", "already-running"]
StopOutcome = Literal["stopping", "not-running"]


def candidate_binary_paths(extra: Sequence[Path | str] = ()) -> list[Path]:
    candidates = [Path(p).expanduser() for p in extra]
    from_env = os.environ.get(BINARY_ENV, "").strip()
    if from_env:
        candidates.append(Path(from_env).expanduser())

    cwd = Path.cwd()
    candidates.append(cwd / "resources" / BINARY_NAME)
    candidates.append(cwd / "Sources" / "Resources" / BINARY_NAME)
    candidates.append(get_bin_dir() / BINARY_NAME)
    candidates.extend(Path(p) for p in SYSTEM_PATHS)
    return candidates


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def find_singbox_binary(extra: Sequence[Path | str] = ()) -> Path:
    candidates = candidate_binary_paths(extra)
    for candidate in candidates:
        if _is_executable(candidate):
            logger.info("Found sing-box: %s", candidate)
            return candidate

    on_path = shutil.which(BINARY_NAME)
    if on_path:
        logger.info("Found sing-box on PATH: %s", on_path)
        return Path(on_path)

    searched = ", ".join(str(c) for c in candidates)
    logger.error("sing-box binary not found; searched: %s", searched)
    raise BinaryNotFoundError(
        f"sing-box binary not found (searched: {searched})",
        user_message=(
            "sing-box was not found. Install it or place the binary at "
            f"{get_bin_dir() / BINARY_NAME}."
        ),
    )


def check_config(binary: Path, config_path: Path, *, timeout_s: float = 10.0) -> None:
    """Run ``sing-box check`` against a written config."""
    cmd = [str(binary), "check", "-c", str(config_path)]
    try:
        result = subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise ConfigBuildError(
            f"Config check failed to run: {exc}",
            user_message="Could not validate the engine configuration.",
        ) from exc

    if result.returncode != 0:
        detail = (result.stderr or "").strip() or (result.stdout or "").strip() or "unknown error"
        logger.error("sing-box rejected config %s: %s", config_path, detail)
        raise ConfigBuildError(
            f"sing-box check failed: {detail}",
            user_message=f"Engine rejected the configuration: {detail}",
        )


class EngineSupervisor:
    def __init__(
        self,
        binary: Path | None = None,
        *,
        extra_search_paths: Sequence[Path | str] = (),
        stop_poll_interval_s: float = STOP_POLL_INTERVAL_S,
        stop_poll_attempts: int = STOP_POLL_ATTEMPTS,
    ) -> None:
        self._binary = binary
        self._extra_search_paths = tuple(extra_search_paths)
        self._stop_poll_interval_s = stop_poll_interval_s
        self._stop_poll_attempts = stop_poll_attempts

        self._process: asyncio.subprocess.Process | None = None
        self._reader: asyncio.Task[None] | None = None
        self._reaper: asyncio.Task[int | None] | None = None
        self._output: deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
        self._generation = 0
        self._last_returncode: int | None = None
        self.config_path: Path | None = None

    @property
    def binary(self) -> Path | None:
        return self._binary

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def generation(self) -> int:
        """Incremented on every launch; identifies the current process handle."""
        return self._generation

    @property
    def returncode(self) -> int | None:
        return self._last_returncode

    def output_tail(self) -> list[str]:
        return list(self._output)

    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def resolve_binary(self) -> Path:
        if self._binary is None:
            self._binary = find_singbox_binary(self._extra_search_paths)
        elif not _is_executable(self._binary):
            raise BinaryNotFoundError(
                f"sing-box binary is not executable: {self._binary}",
                user_message=f"sing-box binary is missing or not executable: {self._binary}",
            )
        return self._binary

    def validate(self, config_path: Path) -> None:
        check_config(self.resolve_binary(), config_path)

    async def start(self, config_path: Path) -> StartOutcome:
        if self.is_running():
            logger.warning("sing-box already running (pid=%s)", self.pid)
            return "already-running"
        if self._process is not None:
            # Exited on its own since the last check.
            self._last_returncode = self._process.returncode
            self._clear_handle()

        binary = self.resolve_binary()
        try:
            process = await asyncio.create_subprocess_exec(
                str(binary),
                "run",
                "-c",
                str(config_path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            logger.exception("Failed to launch sing-box: %s", binary)
            raise EngineStartError(
                f"Failed to launch {binary}: {exc}",
                user_message=f"Failed to launch sing-box: {exc}",
            ) from exc

        self._process = process
        self._generation += 1
        self._last_returncode = None
        self._output.clear()
        self.config_path = config_path
        self._reader = asyncio.create_task(self._read_output(process), name="sing-box-output")
        logger.info("sing-box started (pid=%s, config=%s)", process.pid, config_path)
        return "started"

    def stop(self) -> StopOutcome:
        process = self._process
        if process is None or process.returncode is not None:
            if process is not None:
                self._last_returncode = process.returncode
            self._clear_handle()
            logger.info("sing-box not running")
            return "not-running"

        try:
            process.terminate()
        except ProcessLookupError:
            pass
        self._clear_handle()
        self._reaper = asyncio.create_task(self._reap(process), name="sing-box-reaper")
        logger.info("sing-box stopping (pid=%s)", process.pid)
        return "stopping"

    async def wait_stopped(self) -> int | None:
        reaper = self._reaper
        if reaper is None:
            return self._last_returncode
        return await asyncio.shield(reaper)

    async def stop_and_wait(self) -> StopOutcome:
        outcome = self.stop()
        await self.wait_stopped()
        return outcome

    async def wait_ready(
        self,
        host: str,
        port: int,
        *,
        timeout_s: float = 5.0,
        interval_s: float = 0.2,
    ) -> bool:
        """Poll the local listener until it accepts a connection.

        Returns False when the listener is still closed after ``timeout_s``.
        Raises :class:`EngineStartError` when the process exits first.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        while True:
            process = self._process
            if process is None or process.returncode is not None:
                code = process.returncode if process is not None else None
                tail = "\n".join(self.output_tail()[-10:])
                logger.error("sing-box exited during startup (code=%s)\n%s", code, tail)
                raise EngineStartError(
                    f"sing-box exited during startup (code={code})",
                    user_message=f"sing-box exited right after start (code {code}). {tail}".strip(),
                )
            try:
                _reader, writer = await asyncio.wait_for(
                    asyncio.open_connection(host, port), timeout=interval_s
                )
            except (OSError, asyncio.TimeoutError):
                if loop.time() >= deadline:
                    return False
                await asyncio.sleep(interval_s)
                continue

            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                logger.debug("Readiness probe socket close failed", exc_info=True)
            return True

    def _clear_handle(self) -> None:
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
        self._reader = None
        self._process = None

    async def _read_output(self, process: asyncio.subprocess.Process) -> None:
        stream = process.stdout
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._output.append(text)
                logger.info("sing-box: %s", text)

    async def _reap(self, process: asyncio.subprocess.Process) -> int | None:
        for _ in range(self._stop_poll_attempts):
            if process.returncode is not None:
                break
            await asyncio.sleep(self._stop_poll_interval_s)

        if process.returncode is None:
            logger.warning("sing-box (pid=%s) ignored SIGTERM; killing", process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                pass

        code = await process.wait()
        self._last_returncode = code
        logger.info("sing-box exited (pid=%s, code=%s)", process.pid, code)
        return code
