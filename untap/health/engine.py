"""Check executor — runs one probe against one service.

Supports: HTTP(S) GET, TCP connect, ICMP (approximated, see below).
Every probe produces a CheckResult; no exception escapes execute_check.

ICMP approximation: a real echo request needs a raw socket (root or
CAP_NET_RAW). "icmp" services are probed with a TCP connect to the target
host instead, on port 80 unless the target names a port. A host that
answers pings but filters that port reads as down.
"""

from __future__ import annotations

import asyncio
import errno
import ipaddress
import logging
import socket
import time
from collections.abc import Callable, Iterator
from concurrent.futures import Executor
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import httpx

from untap.config import settings
from untap.services.registry import Service

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 5_000
DEFAULT_EXPECTED_STATUS = 200
ICMP_FALLBACK_PORT = 80


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Models ───────────────────────────────────────────────────────────────────


class ErrorCode(str, Enum):
    # network
    TIMEOUT = "TIMEOUT"
    ECONNRESET = "ECONNRESET"
    ECONNREFUSED = "ECONNREFUSED"
    DNS_FAIL = "DNS_FAIL"
    TCP_ERROR = "TCP_ERROR"
    UNKNOWN = "UNKNOWN"
    # configuration
    INVALID_TARGET = "INVALID_TARGET"
    UNSUPPORTED_CHECK_TYPE = "UNSUPPORTED_CHECK_TYPE"
    # application
    STATUS_MISMATCH = "STATUS_MISMATCH"


@dataclass
class CheckResult:
    """Outcome of a single probe. Append-only once persisted."""

    service_id: int | None
    check_type: str
    success: bool
    latency_ms: int | None = None  # None only when no attempt was made
    http_status: int | None = None
    error_code: str | None = None  # an ErrorCode value or an OS errno name
    error_message: str | None = None
    checked_at: datetime | None = None  # probe start
    id: int | None = None

    def __post_init__(self) -> None:
        if self.checked_at is None:
            self.checked_at = utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "serviceId": self.service_id,
            "checkedAt": self.checked_at.isoformat() if self.checked_at else None,
            "checkType": self.check_type,
            "success": self.success,
            "latencyMs": self.latency_ms,
            "httpStatus": self.http_status,
            "errorCode": self.error_code,
            "errorMessage": self.error_message,
        }


def _elapsed_ms(t0: float) -> int:
    return round((time.perf_counter() - t0) * 1000)


def _failure(
    check_type: str,
    code: ErrorCode | str,
    message: str,
    latency_ms: int | None = None,
    http_status: int | None = None,
) -> CheckResult:
    return CheckResult(
        service_id=0, check_type=check_type, success=False,
        latency_ms=latency_ms, http_status=http_status,
        error_code=code.value if isinstance(code, ErrorCode) else code,
        error_message=message,
    )


# ── HTTP ─────────────────────────────────────────────────────────────────────


class _DeadlineExceeded(Exception):
    """The response body did not arrive within the probe budget."""


_HTTP_MESSAGES = {
    ErrorCode.ECONNRESET: "Connection reset by peer",
    ErrorCode.ECONNREFUSED: "Connection refused",
    ErrorCode.DNS_FAIL: "DNS lookup failed",
}

_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "getaddrinfo failed",
    "no address associated with hostname",
)


def _exception_chain(exc: BaseException | None) -> Iterator[BaseException]:
    seen: set[int] = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        yield exc
        exc = exc.__cause__ or exc.__context__


def classify_http_error(exc: BaseException) -> ErrorCode:
    """Map an httpx failure onto the probe error taxonomy."""
    for e in _exception_chain(exc):
        if isinstance(e, (httpx.TimeoutException, TimeoutError, _DeadlineExceeded)):
            return ErrorCode.TIMEOUT
        if isinstance(e, socket.gaierror):
            return ErrorCode.DNS_FAIL
        if isinstance(e, ConnectionRefusedError):
            return ErrorCode.ECONNREFUSED
        if isinstance(e, ConnectionResetError):
            return ErrorCode.ECONNRESET
        if isinstance(e, OSError) and e.errno == errno.ECONNREFUSED:
            return ErrorCode.ECONNREFUSED
        if isinstance(e, OSError) and e.errno == errno.ECONNRESET:
            return ErrorCode.ECONNRESET

    # httpcore sometimes flattens the OS error into its message
    text = str(exc).lower()
    if any(marker in text for marker in _DNS_MARKERS):
        return ErrorCode.DNS_FAIL
    if "connection refused" in text:
        return ErrorCode.ECONNREFUSED
    if "connection reset" in text:
        return ErrorCode.ECONNRESET
    return ErrorCode.UNKNOWN


def _read_body(resp: httpx.Response, deadline: float, limit: int) -> str:
    chunks: list[bytes] = []
    size = 0
    for chunk in resp.iter_bytes():
        if time.perf_counter() > deadline:
            raise _DeadlineExceeded()
        chunks.append(chunk)
        size += len(chunk)
        if size >= limit:
            break
    return b"".join(chunks)[:limit].decode(resp.charset_encoding or "utf-8", errors="replace")


def run_http_check(
    url: str,
    expected_status: int = DEFAULT_EXPECTED_STATUS,
    expected_body: str | None = None,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    *,
    transport: httpx.BaseTransport | None = None,
    max_body_bytes: int | None = None,
) -> CheckResult:
    """HTTP(S) GET — status code (and optional body substring) + latency."""
    timeout_s = timeout_ms / 1000
    limit = max_body_bytes or settings.http_max_body_bytes
    status_code: int | None = None
    latency: int | None = None

    t0 = time.perf_counter()
    deadline = t0 + timeout_s
    try:
        with httpx.Client(
            timeout=timeout_s,
            follow_redirects=True,
            transport=transport,
            headers={"User-Agent": settings.http_user_agent},
        ) as client:
            with client.stream("GET", url) as resp:
                status_code = resp.status_code
                latency = _elapsed_ms(t0)

                success = status_code == expected_status
                message = f"Expected {expected_status}, got {status_code}"
                if success and expected_body:
                    success = expected_body in _read_body(resp, deadline, limit)
                    message = f"Response body does not contain {expected_body!r}"

        if success:
            return CheckResult(
                service_id=0, check_type="http", success=True,
                latency_ms=latency, http_status=status_code,
            )
        return _failure("http", ErrorCode.STATUS_MISMATCH, message, latency, status_code)
    except Exception as e:
        code = classify_http_error(e)
        if latency is None:
            latency = _elapsed_ms(t0)
        if code is ErrorCode.TIMEOUT:
            message = f"Request timed out after {timeout_ms}ms"
        else:
            message = _HTTP_MESSAGES.get(code) or f"{type(e).__name__}: {e}"
        return _failure("http", code, message, latency, status_code)


# ── TCP / ICMP ───────────────────────────────────────────────────────────────


def parse_host_port(target: str) -> tuple[str, int] | None:
    """Split ``host:port``; None when either half is missing or malformed."""
    host, sep, port_str = (target or "").strip().rpartition(":")
    if not sep or not host or not (port_str.isascii() and port_str.isdigit()):
        return None
    port = int(port_str)
    if not 0 < port < 65536:
        return None
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        # an IPv6 host must be bracketed; "a:80:90" is not a target
        return None
    return host, port


def run_tcp_check(
    target: str,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    check_type: str = "tcp",
) -> CheckResult:
    """Raw TCP connect to ``host:port``."""
    parsed = parse_host_port(target)
    if parsed is None:
        return _failure(
            check_type, ErrorCode.INVALID_TARGET,
            f"Invalid TCP target: {target}. Expected format: host:port",
        )
    host, port = parsed

    t0 = time.perf_counter()
    try:
        sock = socket.create_connection((host, port), timeout=timeout_ms / 1000)
        sock.close()
    except TimeoutError:
        return _failure(
            check_type, ErrorCode.TIMEOUT,
            f"TCP connection timed out after {timeout_ms}ms", _elapsed_ms(t0),
        )
    except socket.gaierror as e:
        return _failure(check_type, ErrorCode.DNS_FAIL, f"DNS lookup failed: {e}", _elapsed_ms(t0))
    except OSError as e:
        code = errno.errorcode.get(e.errno, ErrorCode.TCP_ERROR.value) if e.errno else ErrorCode.TCP_ERROR.value
        return _failure(check_type, code, e.strerror or str(e) or "TCP connection failed", _elapsed_ms(t0))
    except Exception as e:
        return _failure(check_type, ErrorCode.TCP_ERROR, f"{type(e).__name__}: {e}", _elapsed_ms(t0))

    return CheckResult(service_id=0, check_type=check_type, success=True, latency_ms=_elapsed_ms(t0))


def _is_ipv6(host: str) -> bool:
    try:
        ipaddress.IPv6Address(host)
    except ValueError:
        return False
    return True


def run_icmp_check(target: str, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> CheckResult:
    """Reachability via TCP connect; see the module docstring."""
    host = (target or "").strip()
    if ":" not in host:
        target = f"{host}:{ICMP_FALLBACK_PORT}"
    elif _is_ipv6(host):
        target = f"[{host}]:{ICMP_FALLBACK_PORT}"
    elif host.startswith("[") and host.endswith("]"):
        target = f"{host}:{ICMP_FALLBACK_PORT}"
    return run_tcp_check(target, timeout_ms, check_type="icmp")


# ── Dispatcher ───────────────────────────────────────────────────────────────


CHECK_RUNNERS: dict[str, Callable[[Service], CheckResult]] = {
    "http": lambda s: run_http_check(
        s.check_target, s.expected_status or DEFAULT_EXPECTED_STATUS,
        s.expected_body, s.timeout_ms or DEFAULT_TIMEOUT_MS,
    ),
    "tcp": lambda s: run_tcp_check(s.check_target, s.timeout_ms or DEFAULT_TIMEOUT_MS),
    "icmp": lambda s: run_icmp_check(s.check_target, s.timeout_ms or DEFAULT_TIMEOUT_MS),
}


def execute_check(service: Service, clock: Callable[[], datetime] = utcnow) -> CheckResult:
    """Run the probe for a service's check type and tag the result."""
    checked_at = clock()
    runner = CHECK_RUNNERS.get(service.check_type)
    if runner is None:
        result = _failure(
            service.check_type, ErrorCode.UNSUPPORTED_CHECK_TYPE,
            f"Unsupported check type: {service.check_type}",
        )
    else:
        try:
            result = runner(service)
        except Exception as e:
            logger.exception("Probe crashed for %s", service.slug)
            result = _failure(service.check_type, ErrorCode.UNKNOWN, f"{type(e).__name__}: {e}")

    result.service_id = service.id
    result.checked_at = checked_at
    return result


async def execute_check_bounded(
    service: Service,
    executor: Executor | None = None,
    clock: Callable[[], datetime] = utcnow,
    grace_ms: int | None = None,
) -> CheckResult:
    """Run execute_check in a worker thread under a hard outer deadline.

    Socket timeouts do not cover name resolution, so the deadline is what
    bounds a probe end to end.
    """
    timeout_ms = service.timeout_ms or DEFAULT_TIMEOUT_MS
    budget_ms = timeout_ms + (settings.probe_grace_ms if grace_ms is None else grace_ms)
    checked_at = clock()
    loop = asyncio.get_running_loop()

    t0 = time.perf_counter()
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(executor, execute_check, service, lambda: checked_at),
            timeout=budget_ms / 1000,
        )
    except asyncio.TimeoutError:
        logger.warning("Probe for %s exceeded its %dms budget", service.slug, budget_ms)
        return CheckResult(
            service_id=service.id, check_type=service.check_type, success=False,
            latency_ms=_elapsed_ms(t0), error_code=ErrorCode.TIMEOUT.value,
            error_message=f"Probe exceeded {budget_ms}ms budget",
            checked_at=checked_at,
        )
