from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from phase_client.core.catalog import NodeCatalog
from phase_client.core.errors import (
    BinaryNotFoundError,
    ConfigBuildError,
    ConfigWriteError,
    EngineStartError,
    ProxyWriteError,
)
from phase_client.core.nodes import Node, ProtocolKind
from phase_client.core.orchestrator import LifecycleOrchestrator, RuntimePhase, RuntimeState
from phase_client.core.settings import AppSettings, load_settings, save_settings
from phase_client.core.traffic import TrafficSampler


def _node(name: str, server: str, protocol: ProtocolKind = ProtocolKind.SHADOWSOCKS) -> Node:
    return Node.create(
        name=name,
        protocol=protocol,
        server=server,
        port=8388,
        method="aes-256-gcm",
        password="secret",
        uuid="b345f204-4df1-4d31-8243-dae7845099ad",
    )


class FakeSupervisor:
    def __init__(
        self,
        events: list[str],
        *,
        start_error: Exception | None = None,
        ready: bool = True,
        ready_error: Exception | None = None,
        ready_delay: float = 0.0,
        exit_delay: float = 0.0,
    ) -> None:
        self.events = events
        self.start_error = start_error
        self.ready = ready
        self.ready_error = ready_error
        self.ready_delay = ready_delay
        self.exit_delay = exit_delay
        self.running = False
        self.generation = 0
        self.configs: list[dict] = []

    def is_running(self) -> bool:
        return self.running

    def validate(self, config_path: Path) -> None:
        self.events.append("engine.validate")

    async def start(self, config_path: Path) -> str:
        self.events.append("engine.start")
        if self.start_error is not None:
            raise self.start_error
        if self.running:
            return "already-running"
        self.configs.append(json.loads(config_path.read_text(encoding="utf-8")))
        self.running = True
        self.generation += 1
        return "started"

    async def wait_ready(self, host: str, port: int, *, timeout_s: float) -> bool:
        self.events.append("engine.ready")
        if self.ready_delay:
            await asyncio.sleep(self.ready_delay)
        if self.ready_error is not None:
            self.running = False
            raise self.ready_error
        return self.ready

    def stop(self) -> str:
        self.events.append("engine.stop")
        was_running = self.running
        self.running = False
        return "stopping" if was_running else "not-running"

    async def wait_stopped(self) -> int | None:
        await asyncio.sleep(self.exit_delay)
        return 0

    async def stop_and_wait(self) -> str:
        outcome = self.stop()
        await self.wait_stopped()
        return outcome


class FakeCoordinator:
    def __init__(self, events: list[str], *, enable_error: Exception | None = None) -> None:
        self.events = events
        self.enable_error = enable_error
        self.enabled = False

    def is_supported(self) -> bool:
        return True

    def enable_proxy(self) -> None:
        self.events.append("proxy.enable")
        if self.enable_error is not None:
            raise self.enable_error
        self.enabled = True

    def disable_proxy(self) -> None:
        self.events.append("proxy.disable")
        self.enabled = False

    def restore_if_needed(self) -> bool:
        self.events.append("proxy.restore")
        return True

    def repair_stale_override(self) -> bool:
        self.events.append("proxy.repair")
        return False


def _orchestrator(
    tmp_path: Path,
    events: list[str],
    *,
    supervisor: FakeSupervisor | None = None,
    coordinator: FakeCoordinator | None = None,
    settings: AppSettings | None = None,
    catalog: NodeCatalog | None = None,
) -> tuple[LifecycleOrchestrator, FakeSupervisor, FakeCoordinator]:
    supervisor = supervisor or FakeSupervisor(events)
    coordinator = coordinator or FakeCoordinator(events)
    orchestrator = LifecycleOrchestrator(
        supervisor,  # type: ignore[arg-type]
        coordinator,  # type: ignore[arg-type]
        config_path=tmp_path / "sing-box.json",
        settings=settings or AppSettings(readiness_timeout_s=1.0),
        settings_path=tmp_path / "settings.json",
        sampler=TrafficSampler(interval_s=0.01),
        catalog=catalog,
    )
    return orchestrator, supervisor, coordinator


def test_start_and_stop_run_steps_in_order(tmp_path) -> None:
    events: list[str] = []
    phases: list[RuntimePhase] = []

    async def scenario() -> None:
        orchestrator, supervisor, coordinator = _orchestrator(tmp_path, events)
        orchestrator.subscribe(lambda state: phases.append(state.phase))
        await orchestrator.select_node(_node("Tokyo", "1.2.3.4"))

        state = await orchestrator.start()
        assert state.phase is RuntimePhase.RUNNING
        assert state.system_proxy_enabled is True
        assert state.started_at is not None
        assert state.warning is None
        assert orchestrator.sampler.running
        assert events == ["engine.start", "engine.ready", "proxy.enable"]

        written = json.loads((tmp_path / "sing-box.json").read_text(encoding="utf-8"))
        assert written["outbounds"][0]["server"] == "1.2.3.4"
        assert written["route"]["final"] == "proxy"

        events.clear()
        state = await orchestrator.stop()
        assert state.phase is RuntimePhase.STOPPED
        assert state.system_proxy_enabled is False
        assert not orchestrator.sampler.running
        assert events == ["proxy.disable", "engine.stop"]
        assert not coordinator.enabled
        assert not supervisor.running

    asyncio.run(scenario())
    assert phases == [
        RuntimePhase.STOPPED,  # selection recorded while stopped
        RuntimePhase.STARTING,
        RuntimePhase.RUNNING,
        RuntimePhase.STOPPING,
        RuntimePhase.STOPPED,
    ]


def test_stop_when_stopped_is_a_no_op(tmp_path) -> None:
    events: list[str] = []

    async def scenario() -> None:
        orchestrator, _supervisor, _coordinator = _orchestrator(tmp_path, events)
        state = await orchestrator.stop()
        assert state.phase is RuntimePhase.STOPPED

    asyncio.run(scenario())
    assert events == []


def test_system_proxy_failure_keeps_engine_running(tmp_path) -> None:
    events: list[str] = []

    async def scenario() -> None:
        coordinator = FakeCoordinator(
            events, enable_error=ProxyWriteError("gsettings failed", user_message="write denied")
        )
        orchestrator, supervisor, _ = _orchestrator(tmp_path, events, coordinator=coordinator)

        state = await orchestrator.start()
        assert state.phase is RuntimePhase.RUNNING
        assert state.system_proxy_enabled is False
        assert "write denied" in (state.warning or "")
        assert state.last_error is None
        assert supervisor.running

        events.clear()
        await orchestrator.stop()
        # Nothing to restore when the override never applied.
        assert events == ["engine.stop"]

    asyncio.run(scenario())


def test_missing_binary_reverts_to_stopped(tmp_path) -> None:
    events: list[str] = []

    async def scenario() -> None:
        supervisor = FakeSupervisor(
            events,
            start_error=BinaryNotFoundError("not found", user_message="sing-box was not found."),
        )
        orchestrator, _, _ = _orchestrator(tmp_path, events, supervisor=supervisor)

        with pytest.raises(BinaryNotFoundError):
            await orchestrator.start()
        assert orchestrator.state.phase is RuntimePhase.STOPPED
        assert orchestrator.state.last_error == "sing-box was not found."
        assert not orchestrator.sampler.running

    asyncio.run(scenario())
    assert "proxy.enable" not in events


def test_config_write_failure_never_launches_engine(tmp_path) -> None:
    events: list[str] = []
    blocked = tmp_path / "blocked"
    blocked.write_text("not a directory", encoding="utf-8")

    async def scenario() -> None:
        orchestrator = LifecycleOrchestrator(
            FakeSupervisor(events),  # type: ignore[arg-type]
            FakeCoordinator(events),  # type: ignore[arg-type]
            config_path=blocked / "sing-box.json",
            settings=AppSettings(),
        )
        with pytest.raises(ConfigWriteError):
            await orchestrator.start()
        assert orchestrator.state.phase is RuntimePhase.STOPPED
        assert orchestrator.state.last_error

    asyncio.run(scenario())
    assert events == []


def test_readiness_timeout_is_a_warning(tmp_path) -> None:
    events: list[str] = []

    async def scenario() -> None:
        supervisor = FakeSupervisor(events, ready=False)
        orchestrator, _, _ = _orchestrator(tmp_path, events, supervisor=supervisor)
        state = await orchestrator.start()
        assert state.phase is RuntimePhase.RUNNING
        assert "did not open" in (state.warning or "")
        await orchestrator.stop()

    asyncio.run(scenario())


def test_engine_exit_during_startup_is_fatal(tmp_path) -> None:
    events: list[str] = []

    async def scenario() -> None:
        supervisor = FakeSupervisor(
            events, ready_error=EngineStartError("exited", user_message="sing-box exited (code 1).")
        )
        orchestrator, _, _ = _orchestrator(tmp_path, events, supervisor=supervisor)
        with pytest.raises(EngineStartError):
            await orchestrator.start()
        assert orchestrator.state.phase is RuntimePhase.STOPPED
        assert orchestrator.state.last_error == "sing-box exited (code 1)."

    asyncio.run(scenario())
    assert "proxy.enable" not in events


def test_select_node_while_running_restarts_once(tmp_path) -> None:
    events: list[str] = []

    async def scenario() -> None:
        orchestrator, supervisor, _ = _orchestrator(tmp_path, events)
        await orchestrator.select_node(_node("A", "1.1.1.1"))
        await orchestrator.start()
        generation = supervisor.generation

        events.clear()
        assert await orchestrator.select_node(_node("B", "2.2.2.2")) is True

        assert events.count("engine.stop") == 1
        assert events.count("engine.start") == 1
        assert events.index("engine.stop") < events.index("engine.start")
        assert supervisor.generation == generation + 1
        assert supervisor.configs[-1]["outbounds"][0]["server"] == "2.2.2.2"
        assert orchestrator.state.phase is RuntimePhase.RUNNING
        assert orchestrator.state.selected_node.name == "B"
        await orchestrator.stop()

    asyncio.run(scenario())


def test_select_node_while_stopped_only_records(tmp_path) -> None:
    events: list[str] = []

    async def scenario() -> Node:
        orchestrator, _, _ = _orchestrator(tmp_path, events)
        node = _node("A", "1.1.1.1")
        assert await orchestrator.select_node(node) is True
        assert orchestrator.state.selected_node == node
        assert orchestrator.state.phase is RuntimePhase.STOPPED
        return node

    node = asyncio.run(scenario())
    assert events == []
    assert load_settings(tmp_path / "settings.json").selected_node_id == node.id


def test_rapid_selection_applies_latest(tmp_path) -> None:
    events: list[str] = []

    async def scenario() -> None:
        orchestrator, supervisor, _ = _orchestrator(tmp_path, events)
        await orchestrator.start()
        a, b, c = _node("A", "1.1.1.1"), _node("B", "2.2.2.2"), _node("C", "3.3.3.3")

        results = await asyncio.gather(
            orchestrator.select_node(a),
            orchestrator.select_node(b),
            orchestrator.select_node(c),
        )
        assert results == [False, False, True]
        assert orchestrator.state.selected_node == c
        assert orchestrator.state.phase is RuntimePhase.RUNNING
        assert supervisor.configs[-1]["outbounds"][0]["server"] == "3.3.3.3"
        assert all(cfg["outbounds"][0].get("server") != "2.2.2.2" for cfg in supervisor.configs)
        await orchestrator.stop()

    asyncio.run(scenario())


def test_newer_selection_cancels_restart_in_flight(tmp_path) -> None:
    events: list[str] = []
    seen: list[tuple[RuntimePhase, str | None]] = []

    def record(state: RuntimeState) -> None:
        seen.append((state.phase, state.selected_node.name if state.selected_node else None))

    async def scenario() -> None:
        supervisor = FakeSupervisor(events, ready_delay=0.05)
        orchestrator, _, _ = _orchestrator(tmp_path, events, supervisor=supervisor)
        await orchestrator.start()
        orchestrator.subscribe(record)
        a, b, c = _node("A", "1.1.1.1"), _node("B", "2.2.2.2"), _node("C", "3.3.3.3")

        first = asyncio.create_task(orchestrator.select_node(a))
        await asyncio.sleep(0.02)
        # A's engine is up and waiting for its listener.
        assert supervisor.configs[-1]["outbounds"][0]["server"] == "1.1.1.1"
        assert orchestrator.state.phase is RuntimePhase.STARTING

        results = await asyncio.gather(
            first,
            orchestrator.select_node(b),
            orchestrator.select_node(c),
        )
        assert results == [False, False, True]
        assert orchestrator.state.phase is RuntimePhase.RUNNING
        assert orchestrator.state.selected_node == c
        assert supervisor.running
        assert supervisor.configs[-1]["outbounds"][0]["server"] == "3.3.3.3"
        assert all(cfg["outbounds"][0].get("server") != "2.2.2.2" for cfg in supervisor.configs)
        await orchestrator.stop()

    asyncio.run(scenario())
    started_on = [
        name
        for (before, _), (phase, name) in zip(seen, seen[1:])
        if phase is RuntimePhase.RUNNING and before is not RuntimePhase.RUNNING
    ]
    assert started_on == ["C"]
    assert load_settings(tmp_path / "settings.json").selected_node_id == _node("C", "3.3.3.3").id


def test_cancelled_start_tears_down_engine(tmp_path) -> None:
    events: list[str] = []

    async def scenario() -> None:
        supervisor = FakeSupervisor(events, ready_delay=10)
        orchestrator, _, coordinator = _orchestrator(tmp_path, events, supervisor=supervisor)

        task = asyncio.create_task(orchestrator.start())
        await asyncio.sleep(0.05)
        assert supervisor.running
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert orchestrator.state.phase is RuntimePhase.STOPPED
        assert orchestrator.state.started_at is None
        assert not supervisor.running
        assert not orchestrator.sampler.running
        assert not coordinator.enabled

        # The lock was released, so later transitions still go through.
        supervisor.ready_delay = 0
        state = await asyncio.wait_for(orchestrator.start(), timeout=1.0)
        assert state.phase is RuntimePhase.RUNNING
        await orchestrator.stop()

    asyncio.run(scenario())
    assert events.index("engine.stop") < events.index("proxy.enable")


def test_cancelled_stop_still_ends_stopped(tmp_path) -> None:
    events: list[str] = []

    async def scenario() -> None:
        supervisor = FakeSupervisor(events, exit_delay=10)
        orchestrator, _, coordinator = _orchestrator(tmp_path, events, supervisor=supervisor)
        await orchestrator.start()
        assert coordinator.enabled

        task = asyncio.create_task(orchestrator.stop())
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert orchestrator.state.phase is RuntimePhase.STOPPED
        assert orchestrator.state.system_proxy_enabled is False
        assert not coordinator.enabled
        assert not supervisor.running
        assert not orchestrator.sampler.running

    asyncio.run(scenario())


def test_session_overrides_are_not_persisted(tmp_path) -> None:
    events: list[str] = []
    path = tmp_path / "settings.json"
    save_settings(AppSettings(), path)

    async def scenario() -> Node:
        overrides = load_settings(path).with_changes(
            manage_system_proxy=False, listen_port=9999, readiness_timeout_s=0
        )
        orchestrator, _, _ = _orchestrator(tmp_path, events, settings=overrides)
        node = _node("A", "1.1.1.1")
        await orchestrator.select_node(node)
        await orchestrator.switch_mode("global")
        assert orchestrator.settings.listen_port == 9999
        return node

    node = asyncio.run(scenario())
    stored = load_settings(path)
    assert stored.selected_node_id == node.id
    assert stored.mode == "global"
    assert stored.manage_system_proxy is True
    assert stored.listen_port == 7890
    assert stored.readiness_timeout_s == AppSettings().readiness_timeout_s


def test_switch_mode_restarts_with_new_routing(tmp_path) -> None:
    events: list[str] = []

    async def scenario() -> None:
        orchestrator, supervisor, _ = _orchestrator(tmp_path, events)
        await orchestrator.select_node(_node("A", "1.1.1.1"))
        await orchestrator.start()
        assert len(supervisor.configs[-1]["route"]["rules"]) == 2

        state = await orchestrator.switch_mode("global")
        assert state.mode == "global"
        assert supervisor.configs[-1]["route"] == {"rules": [], "final": "proxy"}

        await orchestrator.switch_mode("direct")
        assert supervisor.configs[-1]["route"]["final"] == "direct"
        assert orchestrator.settings.mode == "direct"

        with pytest.raises(ConfigBuildError):
            await orchestrator.switch_mode("bogus")  # type: ignore[arg-type]
        await orchestrator.stop()

    asyncio.run(scenario())


def test_toggle_proxy_flips_between_running_and_stopped(tmp_path) -> None:
    events: list[str] = []

    async def scenario() -> None:
        orchestrator, _, _ = _orchestrator(tmp_path, events)
        assert (await orchestrator.toggle_proxy()).phase is RuntimePhase.RUNNING
        assert (await orchestrator.toggle_proxy()).phase is RuntimePhase.STOPPED

    asyncio.run(scenario())


def test_unsupported_node_runs_direct_with_warning(tmp_path) -> None:
    events: list[str] = []

    async def scenario() -> None:
        orchestrator, supervisor, _ = _orchestrator(tmp_path, events)
        await orchestrator.select_node(_node("V", "4.4.4.4", ProtocolKind.VLESS))
        state = await orchestrator.start()
        assert state.phase is RuntimePhase.RUNNING
        assert "VLESS" in (state.warning or "")
        assert supervisor.configs[-1]["route"]["final"] == "direct"
        await orchestrator.stop()

    asyncio.run(scenario())


def test_set_system_proxy_applies_immediately_when_running(tmp_path) -> None:
    events: list[str] = []

    async def scenario() -> None:
        orchestrator, _, coordinator = _orchestrator(tmp_path, events)
        await orchestrator.start()
        assert coordinator.enabled

        state = await orchestrator.set_system_proxy(False)
        assert state.system_proxy_enabled is False
        assert not coordinator.enabled

        state = await orchestrator.set_system_proxy(True)
        assert state.system_proxy_enabled is True
        assert coordinator.enabled
        await orchestrator.stop()

    asyncio.run(scenario())
    assert load_settings(tmp_path / "settings.json").manage_system_proxy is True


def test_manage_system_proxy_off_skips_override(tmp_path) -> None:
    events: list[str] = []

    async def scenario() -> None:
        orchestrator, _, _ = _orchestrator(
            tmp_path, events, settings=AppSettings(manage_system_proxy=False, readiness_timeout_s=0)
        )
        state = await orchestrator.start()
        assert state.system_proxy_enabled is False
        await orchestrator.stop()

    asyncio.run(scenario())
    assert "proxy.enable" not in events
    assert "engine.ready" not in events


def test_test_latency_merges_results(tmp_path) -> None:
    events: list[str] = []
    catalog = NodeCatalog(path=tmp_path / "nodes.json")
    a, b = _node("A", "1.1.1.1"), _node("B", "2.2.2.2")
    catalog.set_subscription_nodes("sub-1", [a, b])
    seen: list[str] = []

    async def probe(node: Node) -> int | None:
        return 42 if node.name == "A" else None

    async def scenario() -> dict[str, int | None]:
        orchestrator, _, _ = _orchestrator(tmp_path, events, catalog=catalog)
        await orchestrator.select_node(a)
        results = await orchestrator.test_latency(
            timeout_s=1.0, probe=probe, on_result=lambda node, _ms: seen.append(node.name)
        )
        assert orchestrator.state.selected_node.latency_ms == 42
        return results

    results = asyncio.run(scenario())
    assert results == {a.id: 42, b.id: None}
    assert sorted(seen) == ["A", "B"]
    assert catalog.get(a.id).latency_ms == 42

    reloaded = NodeCatalog(path=tmp_path / "nodes.json")
    reloaded.load()
    assert reloaded.get(a.id).latency_ms == 42


def test_check_connectivity_when_stopped_is_offline(tmp_path) -> None:
    events: list[str] = []

    async def scenario() -> None:
        orchestrator, _, _ = _orchestrator(tmp_path, events)
        result = await orchestrator.check_connectivity()
        assert result.state == "offline"

    asyncio.run(scenario())


def test_recover_restores_leftover_snapshot(tmp_path) -> None:
    events: list[str] = []

    async def scenario() -> None:
        orchestrator, _, _ = _orchestrator(tmp_path, events)
        await orchestrator.recover()

    asyncio.run(scenario())
    assert events == ["proxy.restore"]


def test_listener_errors_do_not_break_transitions(tmp_path) -> None:
    events: list[str] = []
    received: list[RuntimeState] = []

    def broken(_state: RuntimeState) -> None:
        raise RuntimeError("listener bug")

    async def scenario() -> None:
        orchestrator, _, _ = _orchestrator(tmp_path, events)
        orchestrator.subscribe(broken)
        unsubscribe = orchestrator.subscribe(received.append)
        await orchestrator.start()
        unsubscribe()
        await orchestrator.stop()
        assert orchestrator.state.phase is RuntimePhase.STOPPED

    asyncio.run(scenario())
    assert [s.phase for s in received] == [RuntimePhase.STARTING, RuntimePhase.RUNNING]
