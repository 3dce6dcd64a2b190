"""Command line entry point: ``python -m phase_client``."""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
import signal
import sys

from phase_client.core.catalog import NodeCatalog
from phase_client.core.config_builder import PROXY_MODES
from phase_client.core.diagnostics import collect_diagnostics
from phase_client.core.engine import EngineSupervisor
from phase_client.core.errors import AppError
from phase_client.core.link_decoder import decode_link, decode_subscription
from phase_client.core.logging_setup import setup_logging
from phase_client.core.nodes import Node
from phase_client.core.orchestrator import LifecycleOrchestrator, RuntimeState
from phase_client.core.settings import load_settings, settings_path
from phase_client.core.storage import ensure_dirs
from phase_client.core.subscriptions import (
    Subscription,
    SubscriptionStore,
    refresh_due,
    refresh_subscription,
)
from phase_client.core.system_proxy import SystemProxyCoordinator

logger = logging.getLogger("phase_client")


def _format_node(index: int, node: Node) -> str:
    latency = f"{node.latency_ms} ms" if node.latency_ms is not None else "-"
    return f"{index:>3}  {node.protocol.display_name:<12} {node.address():<32} {latency:>8}  {node.name}"


def _read_input(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    return Path(source).read_text(encoding="utf-8")


def cmd_decode(args: argparse.Namespace) -> int:
    nodes = decode_subscription(_read_input(args.source))
    for index, node in enumerate(nodes, start=1):
        print(_format_node(index, node))
    return 0


def cmd_subscribe(args: argparse.Namespace) -> int:
    store = SubscriptionStore()
    store.load()
    catalog = NodeCatalog()
    catalog.load()
    sub = store.add(Subscription.create(name=args.name or args.url, url=args.url))
    refreshed = refresh_subscription(store, catalog, sub.id)
    print(f"Added subscription {refreshed.name!r} with {refreshed.node_count} nodes")
    return 0


def cmd_refresh(args: argparse.Namespace) -> int:
    store = SubscriptionStore()
    store.load()
    catalog = NodeCatalog()
    catalog.load()
    if args.all:
        failures = 0
        for sub in list(store.subscriptions):
            try:
                refresh_subscription(store, catalog, sub.id)
            except AppError as exc:
                failures += 1
                print(f"{sub.name}: {exc.user_message}", file=sys.stderr)
        return 1 if failures else 0

    results = refresh_due(store, catalog)
    for sub_id, error in results.items():
        sub = store.get_by_id(sub_id)
        label = sub.name if sub else sub_id
        print(f"{label}: {'ok' if error is None else error.user_message}")
    return 1 if any(error is not None for error in results.values()) else 0


def cmd_nodes(args: argparse.Namespace) -> int:
    catalog = NodeCatalog()
    catalog.load()
    nodes = catalog.all_nodes()
    if args.latency:
        supervisor = EngineSupervisor()
        orchestrator = LifecycleOrchestrator(supervisor, catalog=catalog)
        asyncio.run(orchestrator.test_latency(nodes, timeout_s=args.timeout))
        nodes = catalog.all_nodes()
    for index, node in enumerate(nodes, start=1):
        print(_format_node(index, node))
    return 0


def _pick_node(catalog: NodeCatalog, args: argparse.Namespace, selected_id: str | None) -> Node | None:
    if args.link:
        node = decode_link(args.link)
        catalog.add_manual(node)
        catalog.save()
        return node
    if args.node:
        for node in catalog.all_nodes():
            if node.id == args.node or node.name == args.node:
                return node
        raise AppError(f"Node not found: {args.node}", user_message=f"No node named {args.node!r}.")
    if selected_id:
        node = catalog.get(selected_id)
        if node is not None:
            return node
    nodes = catalog.all_nodes()
    return nodes[0] if nodes else None


async def _run(args: argparse.Namespace) -> int:
    path = settings_path()
    settings = load_settings(path)
    changes: dict[str, object] = {}
    if args.mode:
        changes["mode"] = args.mode
    if args.port:
        changes["listen_port"] = args.port
    if args.no_system_proxy:
        changes["manage_system_proxy"] = False
    if args.check:
        changes["validate_config"] = True
    # Flags apply to this run only; the orchestrator persists just what it changes.
    settings = settings.with_changes(**changes)

    catalog = NodeCatalog()
    catalog.load()
    node = _pick_node(catalog, args, settings.selected_node_id)

    binary = Path(settings.binary_path) if settings.binary_path else None
    supervisor = EngineSupervisor(binary)
    coordinator = SystemProxyCoordinator(port=settings.listen_port)
    orchestrator = LifecycleOrchestrator(
        supervisor,
        coordinator,
        settings=settings,
        settings_path=path,
        catalog=catalog,
    )
    orchestrator.subscribe(
        lambda state: logger.info(
            "State: %s%s", state.phase.value, f" ({state.warning})" if state.warning else ""
        )
    )

    await orchestrator.recover()
    await orchestrator.select_node(node)
    await orchestrator.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            logger.debug("Signal handlers unavailable for %s", sig)

    try:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=1.0)
            except asyncio.TimeoutError:
                if not supervisor.is_running():
                    logger.error("sing-box exited unexpectedly (code=%s)", supervisor.returncode)
                    break
    finally:
        await orchestrator.stop()
    return 0 if stop_event.is_set() else 1


def cmd_run(args: argparse.Namespace) -> int:
    return asyncio.run(_run(args))


def cmd_restore_proxy(_args: argparse.Namespace) -> int:
    coordinator = SystemProxyCoordinator()
    if not coordinator.is_supported():
        print("No supported system proxy settings found", file=sys.stderr)
        return 1
    if coordinator.restore_if_needed():
        print("System proxy restored from snapshot")
    elif coordinator.repair_stale_override():
        print("Stale loopback proxy cleared")
    else:
        print("Nothing to restore")
    return 0


def cmd_diagnostics(_args: argparse.Namespace) -> int:
    settings = load_settings(settings_path())
    catalog = NodeCatalog()
    catalog.load()
    selected = catalog.get(settings.selected_node_id) if settings.selected_node_id else None
    print(collect_diagnostics(RuntimeState(selected_node=selected, mode=settings.mode)))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="phase-client", description="sing-box proxy front-end")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    decode = subparsers.add_parser("decode", help="decode share links or a subscription body")
    decode.add_argument("source", help="file path, or - for stdin")
    decode.set_defaults(func=cmd_decode)

    subscribe = subparsers.add_parser("subscribe", help="add a subscription and fetch it")
    subscribe.add_argument("url")
    subscribe.add_argument("--name")
    subscribe.set_defaults(func=cmd_subscribe)

    refresh = subparsers.add_parser("refresh", help="refresh subscriptions that are due")
    refresh.add_argument("--all", action="store_true", help="refresh every subscription")
    refresh.set_defaults(func=cmd_refresh)

    nodes = subparsers.add_parser("nodes", help="list known nodes")
    nodes.add_argument("--latency", action="store_true", help="probe TCP latency first")
    nodes.add_argument("--timeout", type=float, default=3.0)
    nodes.set_defaults(func=cmd_nodes)

    run = subparsers.add_parser("run", help="start the engine until interrupted")
    run.add_argument("--node", help="node id or name")
    run.add_argument("--link", help="share link to use directly")
    run.add_argument("--mode", choices=PROXY_MODES)
    run.add_argument("--port", type=int)
    run.add_argument("--no-system-proxy", action="store_true")
    run.add_argument("--check", action="store_true", help="run 'sing-box check' before start")
    run.set_defaults(func=cmd_run)

    restore = subparsers.add_parser("restore-proxy", help="undo a leftover system proxy override")
    restore.set_defaults(func=cmd_restore_proxy)

    diagnostics = subparsers.add_parser("diagnostics", help="print a diagnostics report")
    diagnostics.set_defaults(func=cmd_diagnostics)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    ensure_dirs()
    setup_logging(level=logging.DEBUG if args.verbose else logging.INFO)
    try:
        return args.func(args)
    except AppError as exc:
        logger.error("%s", exc)
        print(exc.user_message, file=sys.stderr)
        return 1
    except OSError as exc:
        print(str(exc), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
