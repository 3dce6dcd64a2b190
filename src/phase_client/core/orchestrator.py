"""Lifecycle state machine tying the engine, system proxy and sampler together.

Every transition runs under one ``asyncio.Lock`` and publishes a fresh
:class:`RuntimeState`. Observers register with :meth:`subscribe`; nothing
outside the orchestrator mutates state.

Start order: build config, write it, launch the engine, wait for the local
listener, apply the system proxy, start traffic sampling. A failure before the
engine is up leaves the runtime stopped and re-raises; a system proxy failure
only records a warning. Stop runs the same steps in reverse and tolerates
failures in each of them. A cancelled start or stop still ends in Stopped.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable

from phase_client.core.config_builder import (
    DEFAULT_LISTEN,
    PROXY_MODES,
    ProxyMode,
    build_singbox_config,
    proxy_outbound_supported,
)
from phase_client.core.errors import AppError, ConfigBuildError, ConfigWriteError, ProxyApplyError
from phase_client.core.health_check import ProxyHealthResult, check_http_proxy
from phase_client.core.latency import DEFAULT_PROBE_TIMEOUT_S, Probe, probe_all
from phase_client.core.nodes import Node
from phase_client.core.settings import AppSettings, load_settings, save_settings
from phase_client.core.storage import get_data_dir, save_json
from phase_client.core.traffic import TrafficSampler

if TYPE_CHECKING:
    from phase_client.core.catalog import NodeCatalog
    from phase_client.core.engine import EngineSupervisor
    from phase_client.core.system_proxy import SystemProxyCoordinator

logger = logging.getLogger(__name__)

CONFIG_FILE = "sing-box.json"


class RuntimePhase(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(frozen=True, slots=True)
class RuntimeState:
    phase: RuntimePhase = RuntimePhase.STOPPED
    selected_node: Node | None = None
    system_proxy_enabled: bool = False
    last_error: str | None = None
    warning: str | None = None
    mode: ProxyMode = "rule"
    started_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        return self.phase is RuntimePhase.RUNNING


StateListener = Callable[[RuntimeState], None]


def default_config_path() -> Path:
    return get_data_dir() / CONFIG_FILE


class LifecycleOrchestrator:
    def __init__(
        self,
        supervisor: "EngineSupervisor",
        coordinator: "SystemProxyCoordinator | None" = None,
        *,
        config_path: Path | None = None,
        settings: AppSettings | None = None,
        settings_path: Path | None = None,
        sampler: TrafficSampler | None = None,
        catalog: "NodeCatalog | None" = None,
    ) -> None:
        self._supervisor = supervisor
        self._coordinator = coordinator
        self._config_path = config_path or default_config_path()
        self._settings = settings or AppSettings()
        self._settings_path = settings_path
        self._sampler = sampler or TrafficSampler()
        self._catalog = catalog

        self._lock = asyncio.Lock()
        self._listeners: list[StateListener] = []
        self._select_token = 0
        self._select_task: asyncio.Future[bool] | None = None
        self._resume_pending = False

        selected: Node | None = None
        if catalog is not None and self._settings.selected_node_id:
            selected = catalog.get(self._settings.selected_node_id)
        self._state = RuntimeState(selected_node=selected, mode=self._settings.mode)

    @property
    def state(self) -> RuntimeState:
        return self._state

    @property
    def settings(self) -> AppSettings:
        return self._settings

    @property
    def config_path(self) -> Path:
        return self._config_path

    @property
    def sampler(self) -> TrafficSampler:
        return self._sampler

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register ``listener`` for state changes; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _set_state(self, **changes: Any) -> None:
        self._state = replace(self._state, **changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("State listener %r failed", listener)

    def _update_settings(self, **changes: Any) -> None:
        self._settings = self._settings.with_changes(**changes)
        if self._settings_path is None:
            return
        # Only the changed keys are persisted; session overrides stay in memory.
        try:
            stored = load_settings(self._settings_path)
            save_settings(stored.with_changes(**changes), self._settings_path)
        except OSError:
            logger.exception("Failed to save settings: %s", self._settings_path)

    async def recover(self) -> None:
        """Undo system proxy changes left over from a run that did not exit cleanly."""
        if self._coordinator is None or not self._coordinator.is_supported():
            return
        try:
            if await asyncio.to_thread(self._coordinator.restore_if_needed):
                logger.warning("Restored system proxy settings from a previous session")
            elif await asyncio.to_thread(self._coordinator.repair_stale_override):
                logger.warning("Cleared a stale loopback system proxy")
        except ProxyApplyError:
            logger.exception("System proxy recovery failed")

    async def start(self) -> RuntimeState:
        async with self._lock:
            await self._start_locked()
        return self._state

    async def stop(self, *, wait: bool = True) -> RuntimeState:
        """Stop the runtime. With ``wait=False`` engine exit is not awaited."""
        async with self._lock:
            self._resume_pending = False
            await self._stop_locked(wait=wait)
        return self._state

    async def toggle_proxy(self) -> RuntimeState:
        async with self._lock:
            if self._state.phase is RuntimePhase.RUNNING:
                self._resume_pending = False
                await self._stop_locked()
            else:
                await self._start_locked()
        return self._state

    async def select_node(self, node: Node | None) -> bool:
        """Select ``node``, restarting the engine when it is running.

        A newer selection cancels this one wherever it is, including in the
        middle of its restart; the superseded call then returns False.
        """
        self._select_token += 1
        token = self._select_token
        previous = self._select_task
        if previous is not None and not previous.done():
            previous.cancel()

        task = asyncio.ensure_future(self._apply_selection(token, node))
        self._select_task = task
        try:
            return await task
        except asyncio.CancelledError:
            if token != self._select_token:
                logger.info("Node selection %r superseded", node.name if node else None)
                return False
            raise

    async def _apply_selection(self, token: int, node: Node | None) -> bool:
        async with self._lock:
            if token != self._select_token:
                return False

            self._set_state(selected_node=node)
            self._update_settings(selected_node_id=node.id if node else None)
            logger.info("Selected node: %s", node.name if node else "<none>")
            # An interrupted restart left the engine stopped; the newest selection resumes it.
            if self._state.phase is RuntimePhase.RUNNING or self._resume_pending:
                self._resume_pending = True
                await self._restart_locked()
        return True

    async def switch_mode(self, mode: ProxyMode) -> RuntimeState:
        if mode not in PROXY_MODES:
            raise ConfigBuildError(
                f"Unknown proxy mode: {mode}",
                user_message=f"Unknown proxy mode: {mode}",
            )
        async with self._lock:
            if mode != self._state.mode:
                self._set_state(mode=mode)
                self._update_settings(mode=mode)
                logger.info("Proxy mode switched to %s", mode)
                if self._state.phase is RuntimePhase.RUNNING:
                    await self._restart_locked()
        return self._state

    async def set_system_proxy(self, enabled: bool) -> RuntimeState:
        """Turn system proxy management on or off, applying it now when running.

        Unlike the best-effort step during start, a failure here is raised.
        """
        async with self._lock:
            self._update_settings(manage_system_proxy=enabled)
            if self._state.phase is not RuntimePhase.RUNNING or self._coordinator is None:
                return self._state
            if enabled and not self._state.system_proxy_enabled:
                await asyncio.to_thread(self._coordinator.enable_proxy)
                self._set_state(system_proxy_enabled=True, warning=None)
            elif not enabled and self._state.system_proxy_enabled:
                await asyncio.to_thread(self._coordinator.disable_proxy)
                self._set_state(system_proxy_enabled=False)
        return self._state

    async def test_latency(
        self,
        nodes: Iterable[Node] | None = None,
        *,
        timeout_s: float = DEFAULT_PROBE_TIMEOUT_S,
        on_result: Callable[[Node, int | None], None] | None = None,
        probe: Probe | None = None,
    ) -> dict[str, int | None]:
        if nodes is None:
            nodes = self._catalog.all_nodes() if self._catalog is not None else []

        def _merge(node: Node, latency: int | None) -> None:
            if self._catalog is not None:
                self._catalog.apply_latency(node.id, latency)
            selected = self._state.selected_node
            if selected is not None and selected.id == node.id:
                self._set_state(selected_node=selected.with_latency(latency))
            if on_result is not None:
                on_result(node, latency)

        results = await probe_all(nodes, timeout_s=timeout_s, on_result=_merge, probe=probe)
        if self._catalog is not None:
            try:
                self._catalog.save()
            except OSError:
                logger.exception("Failed to save node catalog")
        return results

    async def check_connectivity(self, *, timeout_s: float = 4.0) -> ProxyHealthResult:
        if self._state.phase is not RuntimePhase.RUNNING:
            return ProxyHealthResult("offline", None, None, None, "Engine is not running")
        return await asyncio.to_thread(
            check_http_proxy, DEFAULT_LISTEN, self._settings.listen_port, timeout_s=timeout_s
        )

    async def _restart_locked(self) -> None:
        await self._stop_locked(wait=True)
        await self._start_locked()

    async def _start_locked(self) -> None:
        if self._state.phase is RuntimePhase.RUNNING and self._supervisor.is_running():
            logger.info("Start requested while running; ignoring")
            return

        node = self._state.selected_node
        port = self._settings.listen_port
        self._set_state(phase=RuntimePhase.STARTING, last_error=None, warning=None)
        warnings: list[str] = []
        proxy_enabled = False

        try:
            await self._launch_engine(node, port, warnings)
            if node is not None and not proxy_outbound_supported(node):
                warnings.append(
                    f"{node.protocol.display_name} nodes are not supported yet; traffic goes direct."
                )
            if self._settings.manage_system_proxy and self._coordinator is not None:
                proxy_enabled = await self._apply_system_proxy(warnings)
        except AppError as exc:
            logger.error("Start failed: %s", exc)
            self._resume_pending = False
            await self._abort_engine()
            self._set_state(
                phase=RuntimePhase.STOPPED,
                last_error=exc.user_message,
                started_at=None,
            )
            raise
        except asyncio.CancelledError:
            logger.warning("Start cancelled; rolling back")
            await self._abort_engine()
            self._set_state(
                phase=RuntimePhase.STOPPED,
                system_proxy_enabled=False,
                started_at=None,
            )
            raise

        self._resume_pending = False
        self._sampler.start()
        self._set_state(
            phase=RuntimePhase.RUNNING,
            system_proxy_enabled=proxy_enabled,
            warning=" ".join(warnings) or None,
            started_at=datetime.now(timezone.utc),
        )
        logger.info(
            "Runtime running (node=%s, mode=%s, port=%s, system_proxy=%s)",
            node.name if node else "<direct>",
            self._state.mode,
            port,
            proxy_enabled,
        )

    async def _launch_engine(self, node: Node | None, port: int, warnings: list[str]) -> None:
        document = build_singbox_config(node, listen_port=port, mode=self._state.mode)
        self._write_config(document)
        if self._settings.validate_config:
            await asyncio.to_thread(self._supervisor.validate, self._config_path)
        await self._supervisor.start(self._config_path)
        if self._settings.readiness_timeout_s > 0:
            ready = await self._supervisor.wait_ready(
                DEFAULT_LISTEN, port, timeout_s=self._settings.readiness_timeout_s
            )
            if not ready:
                logger.warning("Local listener %s:%s not ready in time", DEFAULT_LISTEN, port)
                warnings.append(
                    f"Local proxy port {port} did not open within "
                    f"{self._settings.readiness_timeout_s:g}s."
                )

    async def _abort_engine(self) -> None:
        if self._supervisor.is_running():
            await self._supervisor.stop_and_wait()

    async def _apply_system_proxy(self, warnings: list[str]) -> bool:
        assert self._coordinator is not None
        pending = asyncio.ensure_future(asyncio.to_thread(self._coordinator.enable_proxy))
        try:
            await asyncio.shield(pending)
        except asyncio.CancelledError:
            # The worker thread cannot be interrupted; undo its override once it finishes.
            await asyncio.wait([pending])
            if not pending.cancelled() and pending.exception() is None:
                await self._restore_system_proxy()
            raise
        except ProxyApplyError as exc:
            logger.warning("System proxy not applied: %s", exc)
            warnings.append(f"System proxy not applied: {exc.user_message}")
            return False
        return True

    async def _restore_system_proxy(self) -> None:
        assert self._coordinator is not None
        try:
            await asyncio.to_thread(self._coordinator.disable_proxy)
        except ProxyApplyError:
            logger.exception("Failed to restore system proxy during stop")

    async def _stop_locked(self, *, wait: bool = True) -> None:
        if self._state.phase is RuntimePhase.STOPPED and not self._supervisor.is_running():
            return

        self._set_state(phase=RuntimePhase.STOPPING)

        try:
            if self._state.system_proxy_enabled and self._coordinator is not None:
                await self._restore_system_proxy()

            await self._sampler.stop()

            outcome = self._supervisor.stop()
            if wait:
                code = await self._supervisor.wait_stopped()
                logger.info("Engine stop: %s (exit code %s)", outcome, code)
            else:
                logger.info("Engine stop: %s", outcome)
        except asyncio.CancelledError:
            logger.warning("Stop cancelled; engine exit is left to the supervisor")
            self._sampler.cancel()
            if self._supervisor.is_running():
                self._supervisor.stop()
            self._set_state(
                phase=RuntimePhase.STOPPED,
                system_proxy_enabled=False,
                started_at=None,
            )
            raise

        self._set_state(
            phase=RuntimePhase.STOPPED,
            system_proxy_enabled=False,
            started_at=None,
        )

    def _write_config(self, document: dict[str, Any]) -> None:
        try:
            save_json(self._config_path, document)
        except OSError as exc:
            logger.exception("Failed to write engine config: %s", self._config_path)
            raise ConfigWriteError(
                f"Failed to write config {self._config_path}: {exc}",
                user_message=f"Could not write the engine configuration: {exc}",
            ) from exc
