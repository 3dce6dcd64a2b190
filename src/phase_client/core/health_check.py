"""Connectivity checks through the engine's local mixed listener.

The engine counts as "online" when an HTTPS request succeeds *through* the
local HTTP proxy, which proves both that the listener is up and that the
selected outbound can reach the internet.
"""

from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Literal, Sequence
import urllib.error
import urllib.request

DEFAULT_HTTP_TEST_URLS: tuple[str, ...] = (
    # Plain HTTP first so proxy status codes (e.g. 503) surface directly
    # instead of as TLS handshake errors.
    "http://www.gstatic.com/generate_204",
    "http://cp.cloudflare.com/",
)

DEFAULT_HTTPS_TEST_URLS: tuple[str, ...] = (
    "https://www.gstatic.com/generate_204",
    "https://1.1.1.1/cdn-cgi/trace",
)

HealthState = Literal["online", "degraded", "offline"]


@dataclass(frozen=True, slots=True)
class ProxyHealthResult:
    state: HealthState
    checked_url: str | None
    status_code: int | None
    latency_ms: int | None
    error: str | None


def check_http_proxy(
    proxy_host: str,
    proxy_port: int,
    *,
    http_urls: Sequence[str] = DEFAULT_HTTP_TEST_URLS,
    https_urls: Sequence[str] = DEFAULT_HTTPS_TEST_URLS,
    timeout_s: float = 4.0,
) -> ProxyHealthResult:
    proxy_url = f"http://{proxy_host}:{proxy_port}"
    handler = urllib.request.ProxyHandler({"http": proxy_url, "https": proxy_url})
    opener = urllib.request.build_opener(handler)

    http_result = _first_success(opener, http_urls, timeout_s)
    if http_result.state != "online":
        return http_result

    https_result = _first_success(opener, https_urls, timeout_s)
    if https_result.state == "online":
        return https_result

    return ProxyHealthResult(
        state="degraded",
        checked_url=https_result.checked_url,
        status_code=https_result.status_code,
        latency_ms=https_result.latency_ms,
        error=f"HTTP ok, HTTPS failed: {https_result.error or 'unknown error'}",
    )


def _probe(opener: urllib.request.OpenerDirector, url: str, timeout_s: float) -> ProxyHealthResult:
    request = urllib.request.Request(
        url, headers={"User-Agent": "phase-client/0.1"}, method="GET"
    )
    started = time.monotonic()
    status: int | None = None
    error: str | None = None
    try:
        with opener.open(request, timeout=timeout_s) as response:
            status = getattr(response, "status", None)
            response.read(1)
    except urllib.error.HTTPError as exc:
        status = int(exc.code) or None
        error = f"HTTP {exc.code} {exc.reason}"
    except (urllib.error.URLError, TimeoutError, OSError) as exc:
        error = str(exc)
    latency_ms = int((time.monotonic() - started) * 1000)

    if error is None and (status is None or 200 <= int(status) < 400):
        return ProxyHealthResult("online", url, status, latency_ms, None)
    return ProxyHealthResult("offline", url, status, latency_ms, error or f"HTTP {status}")


def _first_success(
    opener: urllib.request.OpenerDirector,
    urls: Sequence[str],
    timeout_s: float,
) -> ProxyHealthResult:
    best_failure: ProxyHealthResult | None = None
    for url in urls:
        result = _probe(opener, url, timeout_s)
        if result.state == "online":
            return result
        # Prefer failures that carry an HTTP status over bare socket errors.
        if best_failure is None or (best_failure.status_code is None and result.status_code is not None):
            best_failure = result

    if best_failure is not None:
        return best_failure
    return ProxyHealthResult(
        state="offline", checked_url=None, status_code=None, latency_ms=None, error="No test URLs"
    )
