"""Build sing-box configuration documents.

The engine consumes a JSON document with top-level ``log``, ``dns``,
``inbounds``, ``outbounds`` and ``route`` keys. Key names below are the
engine's wire format and must not be renamed.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Final, Literal, Sequence

from phase_client.core.errors import ConfigBuildError
from phase_client.core.nodes import Node, ProtocolKind

logger = logging.getLogger(__name__)

DEFAULT_LISTEN: Final[str] = "127.0.0.1"
DEFAULT_MIXED_PORT: Final[int] = 7890

PROXY_TAG: Final[str] = "proxy"
DIRECT_TAG: Final[str] = "direct"
BLOCK_TAG: Final[str] = "block"
INBOUND_TAG: Final[str] = "mixed-in"

ProxyMode = Literal["rule", "global", "direct"]
PROXY_MODES: Final[tuple[str, ...]] = ("rule", "global", "direct")

SUPPORTED_PROTOCOLS: Final[frozenset[ProtocolKind]] = frozenset(
    {ProtocolKind.SHADOWSOCKS, ProtocolKind.VMESS, ProtocolKind.TROJAN}
)

DEFAULT_DNS_SERVERS: Final[tuple[tuple[str, str], ...]] = (
    ("223.5.5.5", "ali"),
    ("8.8.8.8", "google"),
)


@dataclass(frozen=True, slots=True)
class RouteRule:
    outbound: str
    domain: tuple[str, ...] = ()
    ip_cidr: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        rule: dict[str, Any] = {}
        if self.domain:
            rule["domain"] = list(self.domain)
        if self.ip_cidr:
            rule["ip_cidr"] = list(self.ip_cidr)
        rule["outbound"] = self.outbound
        return rule


DEFAULT_ROUTE_RULES: Final[tuple[RouteRule, ...]] = (
    RouteRule(outbound=DIRECT_TAG, domain=("geosite:cn",)),
    RouteRule(outbound=DIRECT_TAG, ip_cidr=("geoip:cn", "geoip:private")),
)


def proxy_outbound_supported(node: Node | None) -> bool:
    return node is not None and node.protocol in SUPPORTED_PROTOCOLS


def build_singbox_config(
    node: Node | None = None,
    *,
    listen_port: int = DEFAULT_MIXED_PORT,
    mode: ProxyMode = "rule",
    rules: Sequence[RouteRule] = DEFAULT_ROUTE_RULES,
    log_level: str = "info",
) -> dict[str, Any]:
    if mode not in PROXY_MODES:
        raise ConfigBuildError(
            f"Unknown proxy mode: {mode}",
            user_message=f"Unknown proxy mode: {mode}",
        )
    if not 0 < int(listen_port) < 65536:
        raise ConfigBuildError(
            f"Invalid listen port: {listen_port}",
            user_message="Local proxy port must be between 1 and 65535.",
        )

    outbounds: list[dict[str, Any]] = []
    if node is not None:
        if proxy_outbound_supported(node):
            outbounds.append(_build_proxy_outbound(node))
        else:
            logger.warning(
                "Node %r uses %s which has no outbound mapping; routing everything direct",
                node.name,
                node.protocol.value,
            )
    has_proxy = bool(outbounds)

    outbounds.append({"type": "direct", "tag": DIRECT_TAG})
    outbounds.append({"type": "block", "tag": BLOCK_TAG})

    route_rules: list[dict[str, Any]] = []
    if mode == "rule":
        route_rules = [rule.to_dict() for rule in rules]
    final = PROXY_TAG if has_proxy and mode != "direct" else DIRECT_TAG

    return {
        "log": {"level": log_level, "timestamp": True},
        "dns": {
            "servers": [
                {"address": address, "tag": tag} for address, tag in DEFAULT_DNS_SERVERS
            ]
        },
        "inbounds": [
            {
                "type": "mixed",
                "tag": INBOUND_TAG,
                "listen": DEFAULT_LISTEN,
                "listen_port": int(listen_port),
            }
        ],
        "outbounds": outbounds,
        "route": {"rules": route_rules, "final": final},
    }


def _require(node: Node, field: str, value: str | None) -> str:
    if not value:
        raise ConfigBuildError(
            f"{node.protocol.value} node {node.name!r} is missing {field}",
            user_message=f"Node '{node.name}' is missing its {field}.",
        )
    return value


def _build_proxy_outbound(node: Node) -> dict[str, Any]:
    outbound: dict[str, Any] = {
        "type": node.protocol.value,
        "tag": PROXY_TAG,
        "server": node.server,
        "server_port": node.port,
    }

    if node.protocol is ProtocolKind.SHADOWSOCKS:
        outbound["method"] = _require(node, "method", node.method)
        outbound["password"] = _require(node, "password", node.password)
    elif node.protocol is ProtocolKind.VMESS:
        outbound["uuid"] = _require(node, "uuid", node.uuid)
        outbound["alter_id"] = node.alter_id or 0
        outbound["security"] = node.security or "auto"
        if node.tls:
            outbound["tls"] = _build_tls(node)
    elif node.protocol is ProtocolKind.TROJAN:
        outbound["password"] = _require(node, "password", node.password)
        outbound["tls"] = _build_tls(node)
    else:  # pragma: no cover - guarded by proxy_outbound_supported
        raise ConfigBuildError(f"Unsupported protocol: {node.protocol.value}")

    return outbound


def _build_tls(node: Node) -> dict[str, Any]:
    return {"enabled": True, "server_name": node.sni or node.server}
