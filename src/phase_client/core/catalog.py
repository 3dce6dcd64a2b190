"""In-memory node list, tagged by the subscription each node came from."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from phase_client.core.nodes import Node
from phase_client.core.storage import atomic_write_json, get_data_dir, load_json

logger = logging.getLogger(__name__)

NODES_FILE = "nodes.json"
NODES_SCHEMA_VERSION = 1


class NodeCatalog:
    def __init__(self, path: Path | None = None) -> None:
        self.path = path or (get_data_dir() / NODES_FILE)
        self._manual: list[Node] = []
        self._by_subscription: dict[str, list[Node]] = {}

    def load(self) -> None:
        data = load_json(self.path, {})
        self._manual = []
        self._by_subscription = {}
        if not isinstance(data, dict):
            return

        self._manual = _parse_nodes(data.get("manual"))
        raw_subs = data.get("subscriptions")
        if isinstance(raw_subs, dict):
            for sub_id, raw_nodes in raw_subs.items():
                self._by_subscription[str(sub_id)] = _parse_nodes(raw_nodes)

    def save(self) -> None:
        payload = {
            "schema_version": NODES_SCHEMA_VERSION,
            "manual": [node.to_dict() for node in self._manual],
            "subscriptions": {
                sub_id: [node.to_dict() for node in nodes]
                for sub_id, nodes in self._by_subscription.items()
            },
        }
        atomic_write_json(self.path, payload, private=True)

    def all_nodes(self) -> list[Node]:
        seen: set[str] = set()
        out: list[Node] = []
        for node in [*self._manual, *(n for nodes in self._by_subscription.values() for n in nodes)]:
            if node.id in seen:
                continue
            seen.add(node.id)
            out.append(node)
        return out

    def nodes_for(self, subscription_id: str) -> list[Node]:
        return list(self._by_subscription.get(subscription_id, []))

    def get(self, node_id: str) -> Node | None:
        for node in self.all_nodes():
            if node.id == node_id:
                return node
        return None

    def subscription_of(self, node_id: str) -> str | None:
        for sub_id, nodes in self._by_subscription.items():
            if any(node.id == node_id for node in nodes):
                return sub_id
        return None

    def set_subscription_nodes(self, subscription_id: str, nodes: Iterable[Node]) -> None:
        # Keep measured latency for endpoints that survive a refresh.
        previous = {node.id: node.latency_ms for node in self._by_subscription.get(subscription_id, [])}
        merged: list[Node] = []
        for node in nodes:
            if node.latency_ms is None and previous.get(node.id) is not None:
                node = node.with_latency(previous[node.id])
            merged.append(node)
        self._by_subscription[subscription_id] = merged

    def remove_subscription(self, subscription_id: str) -> list[Node]:
        removed = self._by_subscription.pop(subscription_id, [])
        if removed:
            logger.info("Removed %d nodes of subscription %s", len(removed), subscription_id)
        return removed

    def add_manual(self, node: Node) -> Node:
        self._manual = [n for n in self._manual if n.id != node.id]
        self._manual.append(node)
        return node

    def remove_manual(self, node_id: str) -> None:
        self._manual = [n for n in self._manual if n.id != node_id]

    def apply_latency(self, node_id: str, latency_ms: int | None) -> None:
        self._manual = [_with_latency_if(n, node_id, latency_ms) for n in self._manual]
        for sub_id, nodes in self._by_subscription.items():
            self._by_subscription[sub_id] = [_with_latency_if(n, node_id, latency_ms) for n in nodes]

    def rename(self, node_id: str, name: str) -> None:
        self._manual = [n.renamed(name) if n.id == node_id else n for n in self._manual]
        for sub_id, nodes in self._by_subscription.items():
            self._by_subscription[sub_id] = [n.renamed(name) if n.id == node_id else n for n in nodes]


def _with_latency_if(node: Node, node_id: str, latency_ms: int | None) -> Node:
    return node.with_latency(latency_ms) if node.id == node_id else node


def _parse_nodes(raw: object) -> list[Node]:
    if not isinstance(raw, list):
        return []
    nodes: list[Node] = []
    for item in raw:
        if isinstance(item, dict):
            node = Node.from_dict(item)
            if node is not None:
                nodes.append(node)
    return nodes
