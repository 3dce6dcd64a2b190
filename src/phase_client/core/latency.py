"""Concurrent TCP latency probes against proxy nodes.

Every node is probed independently; results are reported as each probe
finishes, in no particular order. A probe that hangs is cut off by its own
timeout and never holds up the rest.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, Awaitable, Callable, Final, Iterable

from phase_client.core.nodes import Node

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT_S: Final[float] = 3.0
DEFAULT_MAX_CONCURRENCY: Final[int] = 32


async def probe_tcp_latency(
    host: str, port: int, *, timeout_s: float = DEFAULT_PROBE_TIMEOUT_S
) -> int | None:
    """Milliseconds to complete a TCP handshake, or None when unreachable."""
    started = time.monotonic()
    try:
        _reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout_s
        )
    except (OSError, asyncio.TimeoutError) as exc:
        logger.debug("Probe %s:%s failed: %s", host, port, exc or type(exc).__name__)
        return None
    latency_ms = int((time.monotonic() - started) * 1000)
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        logger.debug("Probe socket close failed for %s:%s", host, port, exc_info=True)
    return latency_ms


Probe = Callable[[Node], Awaitable["int | None"]]


async def iter_latencies(
    nodes: Iterable[Node],
    *,
    timeout_s: float = DEFAULT_PROBE_TIMEOUT_S,
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    probe: Probe | None = None,
) -> AsyncIterator[tuple[Node, int | None]]:
    """Yield ``(node, latency_ms)`` pairs in completion order."""
    semaphore = asyncio.Semaphore(max(1, max_concurrency))
    probe_fn = probe or (lambda node: probe_tcp_latency(node.server, node.port, timeout_s=timeout_s))

    async def _one(node: Node) -> tuple[Node, int | None]:
        async with semaphore:
            try:
                latency = await asyncio.wait_for(probe_fn(node), timeout=timeout_s)
            except asyncio.TimeoutError:
                latency = None
        return node, latency

    tasks = [asyncio.create_task(_one(node)) for node in nodes]
    try:
        for next_done in asyncio.as_completed(tasks):
            yield await next_done
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()


async def probe_all(
    nodes: Iterable[Node],
    *,
    timeout_s: float = DEFAULT_PROBE_TIMEOUT_S,
    on_result: Callable[[Node, int | None], None] | None = None,
    probe: Probe | None = None,
) -> dict[str, int | None]:
    results: dict[str, int | None] = {}
    async for node, latency in iter_latencies(nodes, timeout_s=timeout_s, probe=probe):
        results[node.id] = latency
        if on_result is not None:
            on_result(node, latency)
    reachable = sum(1 for value in results.values() if value is not None)
    logger.info("Latency probe finished: %d/%d nodes reachable", reachable, len(results))
    return results
