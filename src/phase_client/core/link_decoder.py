"""Decode subscription share links into :class:`Node` records.

Supported schemes:
- ``ss://`` in both SIP002 (``base64(method:password)@host:port``) and legacy
  (``base64(method:password@host:port)``) form
- ``vmess://`` carrying a base64 JSON object
- ``trojan://password@host:port``

Decoding a single line either returns a node or raises; batch decoding skips
bad lines and only fails when a whole document yields nothing.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any, Final
from urllib.parse import parse_qs, quote, unquote

from phase_client.core.errors import InvalidLinkError, SubscriptionParseError, UnsupportedSchemeError
from phase_client.core.nodes import Node, ProtocolKind

logger = logging.getLogger(__name__)

SS_PREFIX: Final[str] = "ss://"
VMESS_PREFIX: Final[str] = "vmess://"
TROJAN_PREFIX: Final[str] = "trojan://"


def decode_urlsafe_b64(data: str) -> bytes:
    normalized = data.strip().replace("-", "+").replace("_", "/")
    padded = normalized + "=" * (-len(normalized) % 4)
    try:
        return base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidLinkError(f"Invalid base64 payload: {exc}") from exc


def decode_urlsafe_b64_text(data: str) -> str:
    raw = decode_urlsafe_b64(data)
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidLinkError("Base64 payload is not UTF-8 text") from exc


def _split_fragment(body: str, default_name: str) -> tuple[str, str]:
    main, sep, fragment = body.partition("#")
    if not sep:
        return body, default_name
    name = unquote(fragment).strip()
    return main, name or default_name


def _parse_port(raw: str) -> int:
    text = raw.strip()
    if not text.isdigit():
        raise InvalidLinkError(f"Invalid port: {raw!r}")
    port = int(text)
    if not 0 < port < 65536:
        raise InvalidLinkError(f"Port out of range: {port}")
    return port


def _split_host_port(raw: str) -> tuple[str, int]:
    text = raw.strip()
    if text.startswith("["):
        host, sep, rest = text[1:].partition("]")
        if not sep or not rest.startswith(":"):
            raise InvalidLinkError(f"Invalid server address: {raw!r}")
        return host, _parse_port(rest[1:])

    host, sep, port = text.rpartition(":")
    if not sep or not host or ":" in host:
        raise InvalidLinkError(f"Invalid server address: {raw!r}")
    return host, _parse_port(port)


def _split_auth(decoded: str) -> tuple[str, str]:
    method, sep, password = decoded.partition(":")
    if not sep or not method or not password:
        raise InvalidLinkError("Shadowsocks credentials must be method:password")
    return method, password


def decode_shadowsocks(link: str) -> Node:
    body = link[len(SS_PREFIX):]
    main, name = _split_fragment(body, ProtocolKind.SHADOWSOCKS.display_name)

    if "@" in main:
        auth_part, _, server_part = main.partition("@")
        # SIP002 allows a plugin query and an optional slash before it.
        server_part = server_part.split("?", 1)[0].rstrip("/")
        method, password = _split_auth(decode_urlsafe_b64_text(auth_part))
        host, port = _split_host_port(server_part)
    else:
        decoded = decode_urlsafe_b64_text(main.split("?", 1)[0])
        auth_part, sep, server_part = decoded.rpartition("@")
        if not sep:
            raise InvalidLinkError("Legacy shadowsocks payload is missing '@'")
        method, password = _split_auth(auth_part)
        host, port = _split_host_port(server_part)

    return Node.create(
        name=name,
        protocol=ProtocolKind.SHADOWSOCKS,
        server=host,
        port=port,
        method=method,
        password=password,
    )


def _coerce_vmess_port(value: Any) -> int:
    # Integers and numeric strings only; JSON booleans are ints in Python.
    if isinstance(value, bool):
        raise InvalidLinkError("VMess port must be a number")
    if isinstance(value, int):
        port = value
    elif isinstance(value, str) and value.strip().isdigit():
        port = int(value.strip())
    else:
        raise InvalidLinkError(f"VMess port must be an integer or numeric string, got {value!r}")
    if not 0 < port < 65536:
        raise InvalidLinkError(f"Port out of range: {port}")
    return port


def decode_vmess(link: str) -> Node:
    text = decode_urlsafe_b64_text(link[len(VMESS_PREFIX):])
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidLinkError(f"VMess payload is not JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise InvalidLinkError("VMess payload must be a JSON object")

    host = payload.get("add")
    if not isinstance(host, str) or not host.strip():
        raise InvalidLinkError("VMess payload is missing 'add'")
    if "port" not in payload:
        raise InvalidLinkError("VMess payload is missing 'port'")
    port = _coerce_vmess_port(payload["port"])

    name = payload.get("ps")
    if not isinstance(name, str) or not name.strip():
        name = ProtocolKind.VMESS.display_name

    alter_raw = payload.get("aid")
    alter_id: int | None = None
    if isinstance(alter_raw, int) and not isinstance(alter_raw, bool):
        alter_id = alter_raw
    elif isinstance(alter_raw, str) and alter_raw.strip().isdigit():
        alter_id = int(alter_raw.strip())

    tls_raw = str(payload.get("tls") or "").strip().lower()
    return Node.create(
        name=name,
        protocol=ProtocolKind.VMESS,
        server=host.strip(),
        port=port,
        uuid=_text_or_none(payload.get("id")),
        alter_id=alter_id,
        security=_text_or_none(payload.get("scy")),
        network=_text_or_none(payload.get("net")),
        tls=True if tls_raw == "tls" else None,
        sni=_text_or_none(payload.get("sni")),
    )


def decode_trojan(link: str) -> Node:
    body = link[len(TROJAN_PREFIX):]
    main, name = _split_fragment(body, ProtocolKind.TROJAN.display_name)

    password, sep, server_part = main.rpartition("@")
    if not sep or not password:
        raise InvalidLinkError("Trojan link must be password@host:port")

    address, _, query = server_part.partition("?")
    host, port = _split_host_port(address.rstrip("/"))
    params = parse_qs(query)
    sni = (params.get("sni") or params.get("peer") or [None])[0]

    return Node.create(
        name=name,
        protocol=ProtocolKind.TROJAN,
        server=host,
        port=port,
        password=unquote(password),
        tls=True,
        sni=sni or None,
    )


def decode_link(line: str) -> Node:
    raw = (line or "").strip()
    if raw.startswith(SS_PREFIX):
        return decode_shadowsocks(raw)
    if raw.startswith(VMESS_PREFIX):
        return decode_vmess(raw)
    if raw.startswith(TROJAN_PREFIX):
        return decode_trojan(raw)
    raise UnsupportedSchemeError(
        f"Unsupported link scheme: {raw.split('://', 1)[0] if '://' in raw else raw[:16]!r}",
        user_message="Only ss://, vmess:// and trojan:// links are supported.",
    )


def try_decode_link(line: str) -> Node | None:
    try:
        return decode_link(line)
    except UnsupportedSchemeError:
        return None
    except InvalidLinkError as exc:
        logger.debug("Skipping undecodable link: %s", exc)
        return None


def decode_lines(text: str) -> list[Node]:
    nodes: list[Node] = []
    for line in text.splitlines():
        trimmed = line.strip()
        if not trimmed:
            continue
        node = try_decode_link(trimmed)
        if node is not None:
            nodes.append(node)
    return nodes


def decode_subscription(text: str) -> list[Node]:
    """Decode a subscription document into nodes.

    Raw link lines are tried first. When none decode, the whole body is
    treated as one base64 blob (the common subscription encoding) and its
    decoded text is scanned again.
    """
    nodes = decode_lines(text)
    if nodes:
        return nodes

    blob = "".join(text.split())
    if blob:
        try:
            decoded = decode_urlsafe_b64_text(blob)
        except InvalidLinkError:
            decoded = ""
        nodes = decode_lines(decoded)
        if nodes:
            logger.info("Decoded base64 subscription body: %d nodes", len(nodes))
            return nodes

    raise SubscriptionParseError(
        "Subscription contains no decodable links",
        user_message="Failed to parse subscription: no supported nodes found.",
    )


def _text_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def encode_shadowsocks_link(node: Node, *, legacy: bool = False) -> str:
    """Build an ``ss://`` share link for ``node`` (SIP002 unless ``legacy``)."""
    if node.protocol is not ProtocolKind.SHADOWSOCKS or not node.method or not node.password:
        raise InvalidLinkError("Only shadowsocks nodes with credentials can be shared as ss://")

    fragment = quote(node.name, safe="")
    if legacy:
        plain = f"{node.method}:{node.password}@{node.address()}"
        body = base64.urlsafe_b64encode(plain.encode("utf-8")).decode("ascii").rstrip("=")
        return f"{SS_PREFIX}{body}#{fragment}"

    auth = base64.urlsafe_b64encode(f"{node.method}:{node.password}".encode("utf-8"))
    return f"{SS_PREFIX}{auth.decode('ascii').rstrip('=')}@{node.address()}#{fragment}"
