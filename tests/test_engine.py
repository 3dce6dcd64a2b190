from __future__ import annotations

import asyncio
import os
from pathlib import Path
import socket
import stat

import pytest

import phase_client.core.engine as engine
from phase_client.core.engine import EngineSupervisor, check_config, find_singbox_binary
from phase_client.core.errors import BinaryNotFoundError, ConfigBuildError, EngineStartError

pytestmark = pytest.mark.skipif(os.name != "posix", reason="uses /bin/sh fake engines")


def _fake_engine(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def isolated_search(tmp_path, monkeypatch):  # noqa: ANN001, ANN201
    monkeypatch.setattr(engine, "SYSTEM_PATHS", ())
    monkeypatch.setattr(engine, "get_bin_dir", lambda: tmp_path / "data" / "bin")
    monkeypatch.setattr(engine.shutil, "which", lambda _name: None)
    monkeypatch.delenv(engine.BINARY_ENV, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


def test_find_binary_reports_not_found(isolated_search) -> None:  # noqa: ANN001
    with pytest.raises(BinaryNotFoundError) as excinfo:
        find_singbox_binary()
    assert "sing-box" in excinfo.value.user_message


def test_find_binary_search_order(isolated_search, monkeypatch) -> None:  # noqa: ANN001
    tmp_path = isolated_search
    bundled = _fake_engine(tmp_path / "data" / "bin" / "sing-box", "exit 0")
    assert find_singbox_binary() == bundled

    dev = _fake_engine(tmp_path / "resources" / "sing-box", "exit 0")
    assert find_singbox_binary() == dev

    from_env = _fake_engine(tmp_path / "custom" / "sing-box", "exit 0")
    monkeypatch.setenv(engine.BINARY_ENV, str(from_env))
    assert find_singbox_binary() == from_env

    explicit = _fake_engine(tmp_path / "explicit" / "sing-box", "exit 0")
    assert find_singbox_binary([explicit]) == explicit


def test_find_binary_skips_non_executable(isolated_search, monkeypatch) -> None:  # noqa: ANN001
    tmp_path = isolated_search
    plain = tmp_path / "resources" / "sing-box"
    plain.parent.mkdir(parents=True)
    plain.write_text("not executable", encoding="utf-8")
    monkeypatch.setattr(engine.shutil, "which", lambda _name: "/somewhere/sing-box")
    assert find_singbox_binary() == Path("/somewhere/sing-box")


def test_check_config_raises_on_rejection(tmp_path) -> None:
    binary = _fake_engine(tmp_path / "sing-box", 'echo "decode config: bad outbound" >&2\nexit 1')
    with pytest.raises(ConfigBuildError) as excinfo:
        check_config(binary, tmp_path / "config.json")
    assert "bad outbound" in str(excinfo.value)


def test_check_config_passes(tmp_path) -> None:
    binary = _fake_engine(tmp_path / "sing-box", 'test "$1" = check || exit 2\nexit 0')
    check_config(binary, tmp_path / "config.json")


def test_start_twice_and_stop_outcomes(tmp_path) -> None:
    binary = _fake_engine(tmp_path / "sing-box", 'echo "sing-box started: $1 $2 $3"\nexec sleep 30')
    config = tmp_path / "config.json"
    config.write_text("{}", encoding="utf-8")

    async def scenario() -> None:
        supervisor = EngineSupervisor(binary)
        assert supervisor.stop() == "not-running"

        assert await supervisor.start(config) == "started"
        first_generation = supervisor.generation
        assert supervisor.is_running()
        assert supervisor.pid is not None

        assert await supervisor.start(config) == "already-running"
        assert supervisor.generation == first_generation

        for _ in range(100):
            if supervisor.output_tail():
                break
            await asyncio.sleep(0.02)
        assert supervisor.output_tail() == [f"sing-box started: run -c {config}"]

        assert supervisor.stop() == "stopping"
        # The handle is released before the process is confirmed gone.
        assert not supervisor.is_running()
        assert supervisor.pid is None
        code = await supervisor.wait_stopped()
        assert code is not None
        assert supervisor.stop() == "not-running"

        assert await supervisor.start(config) == "started"
        assert supervisor.generation == first_generation + 1
        assert await supervisor.stop_and_wait() == "stopping"

    asyncio.run(scenario())


def test_stop_escalates_to_kill(tmp_path) -> None:
    binary = _fake_engine(
        tmp_path / "sing-box",
        "trap '' TERM\nwhile :; do :; done",
    )

    async def scenario() -> None:
        supervisor = EngineSupervisor(binary, stop_poll_interval_s=0.02, stop_poll_attempts=5)
        await supervisor.start(tmp_path / "config.json")
        await asyncio.sleep(0.1)
        assert await supervisor.stop_and_wait() == "stopping"
        assert supervisor.returncode == -9

    asyncio.run(scenario())


def test_wait_ready_detects_listener(tmp_path) -> None:
    binary = _fake_engine(tmp_path / "sing-box", "exec sleep 30")

    async def scenario() -> None:
        server = await asyncio.start_server(lambda _r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        supervisor = EngineSupervisor(binary)
        try:
            await supervisor.start(tmp_path / "config.json")
            assert await supervisor.wait_ready("127.0.0.1", port, timeout_s=2.0) is True
            assert await supervisor.wait_ready("127.0.0.1", _free_port(), timeout_s=0.3) is False
        finally:
            await supervisor.stop_and_wait()
            server.close()
            await server.wait_closed()

    asyncio.run(scenario())


def test_wait_ready_raises_when_engine_exits(tmp_path) -> None:
    binary = _fake_engine(tmp_path / "sing-box", 'echo "FATAL: listen tcp: address in use"\nexit 3')

    async def scenario() -> None:
        supervisor = EngineSupervisor(binary)
        await supervisor.start(tmp_path / "config.json")
        with pytest.raises(EngineStartError) as excinfo:
            await supervisor.wait_ready("127.0.0.1", _free_port(), timeout_s=5.0)
        assert "code=3" in str(excinfo.value)

    asyncio.run(scenario())


def test_start_with_missing_binary_raises(tmp_path) -> None:
    async def scenario() -> None:
        supervisor = EngineSupervisor(tmp_path / "missing" / "sing-box")
        with pytest.raises(BinaryNotFoundError):
            await supervisor.start(tmp_path / "config.json")
        assert not supervisor.is_running()

    asyncio.run(scenario())
