"""Subscription sources: model, JSON persistence and HTTP refresh."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
import json
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable
import urllib.error
from urllib.parse import urlparse
import urllib.request
from uuid import uuid4

from phase_client.core.errors import (
    DownloadFailedError,
    InvalidSubscriptionURLError,
    SubscriptionError,
)
from phase_client.core.link_decoder import decode_subscription
from phase_client.core.logging_setup import redact
from phase_client.core.nodes import Node
from phase_client.core.storage import atomic_write_json, get_config_dir

if TYPE_CHECKING:
    from phase_client.core.catalog import NodeCatalog

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_SCHEMA_VERSION = 1
SUBSCRIPTIONS_FILE = "subscriptions.json"
DEFAULT_UPDATE_INTERVAL_HOURS = 24
USER_AGENT = "phase-client/0.1"


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


@dataclass(frozen=True, slots=True)
class Subscription:
    id: str
    name: str
    url: str
    update_interval_hours: int = DEFAULT_UPDATE_INTERVAL_HOURS
    last_update: datetime | None = None
    node_count: int = 0
    enabled: bool = True

    @classmethod
    def create(
        cls,
        *,
        name: str,
        url: str,
        update_interval_hours: int = DEFAULT_UPDATE_INTERVAL_HOURS,
        enabled: bool = True,
    ) -> "Subscription":
        return cls(
            id=str(uuid4()),
            name=name.strip(),
            url=url.strip(),
            update_interval_hours=max(1, int(update_interval_hours)),
            enabled=bool(enabled),
        )

    def needs_update(self, now: datetime | None = None) -> bool:
        if self.last_update is None:
            return True
        now = now or _now()
        return now - self.last_update > timedelta(hours=self.update_interval_hours)

    def mark_refreshed(self, node_count: int, now: datetime | None = None) -> "Subscription":
        return replace(self, last_update=now or _now(), node_count=node_count)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Subscription" | None:
        sub_id = str(data.get("id", "")).strip()
        name = str(data.get("name", "")).strip()
        url = str(data.get("url", "")).strip()
        if not sub_id or not url:
            return None

        last_update: datetime | None = None
        raw_last = data.get("last_update")
        if isinstance(raw_last, str) and raw_last:
            try:
                last_update = datetime.fromisoformat(raw_last)
            except ValueError:
                last_update = None
            if last_update is not None and last_update.tzinfo is None:
                last_update = last_update.replace(tzinfo=timezone.utc)

        try:
            interval = int(data.get("update_interval_hours", DEFAULT_UPDATE_INTERVAL_HOURS))
            node_count = int(data.get("node_count", 0))
        except (TypeError, ValueError):
            return None

        return cls(
            id=sub_id,
            name=name or url,
            url=url,
            update_interval_hours=max(1, interval),
            last_update=last_update,
            node_count=max(0, node_count),
            enabled=bool(data.get("enabled", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "update_interval_hours": self.update_interval_hours,
            "last_update": self.last_update.isoformat() if self.last_update else None,
            "node_count": self.node_count,
            "enabled": self.enabled,
        }


def validate_subscription_url(url: str) -> str:
    cleaned = (url or "").strip()
    parsed = urlparse(cleaned)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise InvalidSubscriptionURLError(
            f"Invalid subscription URL: {redact(cleaned) or '<empty>'}",
            user_message="Subscription URL must be an http:// or https:// address.",
        )
    return cleaned


def download_subscription(url: str, *, timeout_s: float = 15.0) -> str:
    request = urllib.request.Request(url, headers={"User-Agent": USER_AGENT}, method="GET")
    try:
        with urllib.request.urlopen(request, timeout=timeout_s) as response:
            status = getattr(response, "status", None)
            body = response.read()
    except urllib.error.HTTPError as exc:
        raise DownloadFailedError(
            f"Subscription download failed: HTTP {exc.code} ({redact(url)})",
            user_message=f"Subscription download failed (HTTP {exc.code}).",
        ) from exc
    except (urllib.error.URLError, TimeoutError, OSError) as exc:
        raise DownloadFailedError(
            f"Subscription download failed: {exc} ({redact(url)})",
            user_message=f"Subscription download failed: {exc}",
        ) from exc

    if status != 200:
        raise DownloadFailedError(
            f"Subscription download returned HTTP {status} ({redact(url)})",
            user_message=f"Subscription download failed (HTTP {status}).",
        )
    return body.decode("utf-8-sig", errors="replace")


def fetch_subscription_nodes(subscription: Subscription, *, timeout_s: float = 15.0) -> list[Node]:
    url = validate_subscription_url(subscription.url)
    logger.info("Refreshing subscription %r from %s", subscription.name, redact(url))
    nodes = decode_subscription(download_subscription(url, timeout_s=timeout_s))
    logger.info("Subscription %r yielded %d nodes", subscription.name, len(nodes))
    return nodes


class SubscriptionStore:
    def __init__(self, path: Path | None = None) -> None:
        self.path = path or (get_config_dir() / SUBSCRIPTIONS_FILE)
        self.subscriptions: list[Subscription] = []
        self.last_load_error: str | None = None

    def load(self) -> None:
        self.last_load_error = None
        self.subscriptions = []
        if not self.path.exists():
            return

        try:
            with self.path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except json.JSONDecodeError as exc:
            backup_path = self.path.with_suffix(".json.bak")
            try:
                os.replace(self.path, backup_path)
                backup_note = f" Backed up as {backup_path.name}."
            except OSError:
                backup_note = " Failed to create backup file."
            self.last_load_error = (
                f"Saved subscriptions file is corrupted ({exc})."
                f" Started with an empty subscription list.{backup_note}"
            )
            logger.warning(self.last_load_error)
            return

        raw_items = payload.get("subscriptions") if isinstance(payload, dict) else None
        if not isinstance(raw_items, list):
            self.last_load_error = "Saved subscriptions file format is invalid."
            return

        for item in raw_items:
            if isinstance(item, dict):
                parsed = Subscription.from_dict(item)
                if parsed is not None:
                    self.subscriptions.append(parsed)

    def save(self) -> None:
        payload = {
            "schema_version": SUBSCRIPTIONS_SCHEMA_VERSION,
            "subscriptions": [sub.to_dict() for sub in self.subscriptions],
        }
        atomic_write_json(self.path, payload, private=True)

    def get_by_id(self, subscription_id: str) -> Subscription | None:
        for sub in self.subscriptions:
            if sub.id == subscription_id:
                return sub
        return None

    def add(self, subscription: Subscription) -> Subscription:
        validate_subscription_url(subscription.url)
        if self.get_by_id(subscription.id) is not None:
            subscription = replace(subscription, id=str(uuid4()))
        self.subscriptions.append(subscription)
        self.save()
        return subscription

    def update(self, subscription: Subscription) -> Subscription:
        for idx, current in enumerate(self.subscriptions):
            if current.id == subscription.id:
                self.subscriptions[idx] = subscription
                self.save()
                return subscription
        raise KeyError(f"Subscription not found: {subscription.id}")

    def delete(self, subscription_id: str) -> None:
        self.subscriptions = [s for s in self.subscriptions if s.id != subscription_id]
        self.save()


NodeFetcher = Callable[[Subscription], "list[Node]"]


def refresh_subscription(
    store: SubscriptionStore,
    catalog: "NodeCatalog",
    subscription_id: str,
    *,
    fetch: NodeFetcher = fetch_subscription_nodes,
    now: datetime | None = None,
) -> Subscription:
    """Fetch one subscription and replace its nodes in the catalog.

    Any failure leaves the catalog untouched, so nodes from the previous
    successful refresh stay usable.
    """
    subscription = store.get_by_id(subscription_id)
    if subscription is None:
        raise KeyError(f"Subscription not found: {subscription_id}")

    nodes = fetch(subscription)
    catalog.set_subscription_nodes(subscription.id, nodes)
    catalog.save()
    return store.update(subscription.mark_refreshed(len(nodes), now))


def refresh_due(
    store: SubscriptionStore,
    catalog: "NodeCatalog",
    *,
    fetch: NodeFetcher = fetch_subscription_nodes,
    now: datetime | None = None,
) -> dict[str, SubscriptionError | None]:
    results: dict[str, SubscriptionError | None] = {}
    for subscription in list(store.subscriptions):
        if not subscription.enabled or not subscription.needs_update(now):
            continue
        try:
            refresh_subscription(store, catalog, subscription.id, fetch=fetch, now=now)
        except SubscriptionError as exc:
            logger.warning("Subscription %r refresh failed: %s", subscription.name, exc)
            results[subscription.id] = exc
        else:
            results[subscription.id] = None
    return results


def remove_subscription(store: SubscriptionStore, catalog: "NodeCatalog", subscription_id: str) -> None:
    store.delete(subscription_id)
    catalog.remove_subscription(subscription_id)
    catalog.save()
