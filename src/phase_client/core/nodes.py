"""Proxy node model shared by the decoder, catalog and config builder."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any
from uuid import NAMESPACE_URL, uuid5


class ProtocolKind(str, Enum):
    SHADOWSOCKS = "shadowsocks"
    VMESS = "vmess"
    TROJAN = "trojan"
    VLESS = "vless"
    HYSTERIA2 = "hysteria2"
    TUIC = "tuic"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES: dict[ProtocolKind, str] = {
    ProtocolKind.SHADOWSOCKS: "Shadowsocks",
    ProtocolKind.VMESS: "VMess",
    ProtocolKind.TROJAN: "Trojan",
    ProtocolKind.VLESS: "VLESS",
    ProtocolKind.HYSTERIA2: "Hysteria2",
    ProtocolKind.TUIC: "TUIC",
}


def node_identity(
    protocol: ProtocolKind, server: str, port: int, credential: str | None
) -> str:
    """Deterministic id for an endpoint, stable across subscription refreshes."""
    key = f"{protocol.value}://{credential or ''}@{server.lower()}:{port}"
    return str(uuid5(NAMESPACE_URL, key))


@dataclass(frozen=True, slots=True)
class Node:
    id: str
    name: str
    protocol: ProtocolKind
    server: str
    port: int
    latency_ms: int | None = None

    # shadowsocks
    method: str | None = None
    password: str | None = None  # shared with trojan

    # vmess / vless
    uuid: str | None = None
    alter_id: int | None = None
    security: str | None = None
    network: str | None = None

    tls: bool | None = None
    sni: str | None = None

    @classmethod
    def create(
        cls,
        *,
        name: str,
        protocol: ProtocolKind,
        server: str,
        port: int,
        node_id: str | None = None,
        **fields: Any,
    ) -> "Node":
        credential = fields.get("password") or fields.get("uuid")
        return cls(
            id=node_id or node_identity(protocol, server, port, credential),
            name=name.strip() or protocol.display_name,
            protocol=protocol,
            server=server.strip(),
            port=int(port),
            **fields,
        )

    def with_latency(self, latency_ms: int | None) -> "Node":
        return replace(self, latency_ms=latency_ms)

    def renamed(self, name: str) -> "Node":
        return replace(self, name=name.strip() or self.name)

    def address(self) -> str:
        if ":" in self.server:
            return f"[{self.server}]:{self.port}"
        return f"{self.server}:{self.port}"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "protocol": self.protocol.value,
            "server": self.server,
            "port": self.port,
            "latency_ms": self.latency_ms,
        }
        for key in ("method", "password", "uuid", "alter_id", "security", "network", "tls", "sni"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Node" | None:
        try:
            protocol = ProtocolKind(str(data.get("protocol", "")).strip().lower())
            node_id = str(data.get("id", "")).strip()
            server = str(data.get("server", "")).strip()
            port = int(data.get("port", 0))
        except (TypeError, ValueError):
            return None
        if not node_id or not server or not 0 < port < 65536:
            return None

        latency_raw = data.get("latency_ms")
        alter_raw = data.get("alter_id")
        tls_raw = data.get("tls")
        return cls(
            id=node_id,
            name=str(data.get("name") or protocol.display_name),
            protocol=protocol,
            server=server,
            port=port,
            latency_ms=latency_raw if isinstance(latency_raw, int) else None,
            method=_opt_str(data.get("method")),
            password=_opt_str(data.get("password")),
            uuid=_opt_str(data.get("uuid")),
            alter_id=alter_raw if isinstance(alter_raw, int) else None,
            security=_opt_str(data.get("security")),
            network=_opt_str(data.get("network")),
            tls=tls_raw if isinstance(tls_raw, bool) else None,
            sni=_opt_str(data.get("sni")),
        )


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text else None
