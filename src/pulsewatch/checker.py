"""
Protocol checkers: one probe per monitor type, each normalized into a CheckResult.

A checker never raises. Every failure mode (timeouts, refused connections,
unexpected status codes, bad certificates) comes back as ``status="down"``
with a descriptive error. A call is exactly one probe; retries belong to
the caller.
"""
import asyncio
import logging
import math
import re
import socket
import ssl
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlsplit

import httpx
from cryptography import x509

from pulsewatch.config import get_settings
from pulsewatch.database import as_utc
from pulsewatch.models.monitor import Monitor

logger = logging.getLogger("pulsewatch.checker")
settings = get_settings()

MAX_REDIRECTS = 5
DEFAULT_SSL_PORT = 443
_PING_RTT = re.compile(r"time[=<]\s*(\d+(?:\.\d+)?)\s*ms")


@dataclass
class CheckResult:
    status: str  # up, down
    response_time_ms: Optional[int] = None
    status_code: Optional[int] = None
    error: Optional[str] = None
    region: str = "us-east"
    ssl_expiry_days: Optional[int] = None

    @property
    def is_up(self) -> bool:
        return self.status == "up"


def parse_expected_status(expected: Optional[str]) -> list[tuple[int, int]]:
    """Parse ``"200"``, ``"200,201"`` or ``"200-299, 301"`` into inclusive ranges."""
    ranges: list[tuple[int, int]] = []
    for token in (expected or "").split(","):
        token = token.strip()
        if not token:
            continue
        if "-" in token:
            low, high = token.split("-", 1)
            ranges.append((int(low), int(high)))
        else:
            code = int(token)
            ranges.append((code, code))
    return ranges or [(200, 200)]


def status_matches(status_code: int, expected: Optional[str]) -> bool:
    return any(low <= status_code <= high for low, high in parse_expected_status(expected))


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _hostname(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    if "://" not in value:
        value = f"//{value}"
    return urlsplit(value).hostname


async def check_http(monitor: Monitor) -> CheckResult:
    """HTTP(S) request; keyword monitors use the same path with a body assertion."""
    start = time.monotonic()
    try:
        async with httpx.AsyncClient(
            follow_redirects=monitor.follow_redirects,
            max_redirects=MAX_REDIRECTS,
            timeout=httpx.Timeout(monitor.timeout),
            verify=monitor.verify_ssl,
        ) as client:
            response = await client.request(
                monitor.http_method or "GET",
                monitor.url,
                headers=monitor.headers or None,
                content=monitor.body or None,
            )
        response_time = _elapsed_ms(start)
    except httpx.TimeoutException:
        return CheckResult(
            status="down",
            response_time_ms=_elapsed_ms(start),
            error=f"Request timed out after {monitor.timeout}s",
        )
    except httpx.ConnectError as e:
        return CheckResult(
            status="down",
            response_time_ms=_elapsed_ms(start),
            error=f"Connection failed: {str(e)[:200]}",
        )
    except httpx.TooManyRedirects:
        return CheckResult(
            status="down",
            response_time_ms=_elapsed_ms(start),
            error=f"Exceeded {MAX_REDIRECTS} redirects",
        )
    except httpx.RequestError as e:
        return CheckResult(
            status="down",
            response_time_ms=_elapsed_ms(start),
            error=f"Request error: {str(e)[:200]}",
        )

    status_code = response.status_code
    if not status_matches(status_code, monitor.expected_status):
        return CheckResult(
            status="down",
            status_code=status_code,
            response_time_ms=response_time,
            error=f"Expected status {monitor.expected_status}, got {status_code}",
        )

    if monitor.keyword:
        found = monitor.keyword in response.text
        if monitor.keyword_type == "not-exists" and found:
            return CheckResult(
                status="down",
                status_code=status_code,
                response_time_ms=response_time,
                error=f'Keyword "{monitor.keyword}" found (should not exist)',
            )
        if monitor.keyword_type != "not-exists" and not found:
            return CheckResult(
                status="down",
                status_code=status_code,
                response_time_ms=response_time,
                error=f'Keyword "{monitor.keyword}" not found',
            )

    return CheckResult(status="up", status_code=status_code, response_time_ms=response_time)


async def check_ping(monitor: Monitor) -> CheckResult:
    """Single ICMP echo through the system ping binary."""
    host = monitor.ip or _hostname(monitor.url)
    start = time.monotonic()
    proc = None
    try:
        proc = await asyncio.create_subprocess_exec(
            "ping", "-c", "1", "-W", str(monitor.timeout), host,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=monitor.timeout + 2)
    except asyncio.TimeoutError:
        if proc is not None and proc.returncode is None:
            proc.kill()
        return CheckResult(
            status="down",
            response_time_ms=_elapsed_ms(start),
            error=f"Ping timed out after {monitor.timeout}s",
        )
    except OSError as e:
        return CheckResult(
            status="down",
            response_time_ms=_elapsed_ms(start),
            error=f"Ping failed: {e}",
        )

    if proc.returncode != 0:
        return CheckResult(
            status="down",
            response_time_ms=_elapsed_ms(start),
            error="Host is not reachable",
        )

    match = _PING_RTT.search(stdout.decode(errors="replace"))
    rtt = round(float(match.group(1))) if match else _elapsed_ms(start)
    return CheckResult(status="up", response_time_ms=rtt)


async def check_port(monitor: Monitor) -> CheckResult:
    """Raw TCP connect."""
    host = monitor.ip or _hostname(monitor.url)
    start = time.monotonic()
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, monitor.port), timeout=monitor.timeout
        )
    except asyncio.TimeoutError:
        return CheckResult(
            status="down",
            response_time_ms=_elapsed_ms(start),
            error="Connection timeout",
        )
    except OSError as e:
        return CheckResult(
            status="down",
            response_time_ms=_elapsed_ms(start),
            error=f"Connection failed: {e}",
        )

    response_time = _elapsed_ms(start)
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass  # peer already went away; the connect itself succeeded
    return CheckResult(status="up", response_time_ms=response_time)


def _fetch_certificate_expiry(host: str, port: int, timeout: int, verify: bool) -> datetime:
    """Blocking TLS handshake returning the peer certificate's notAfter."""
    context = ssl.create_default_context()
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    with socket.create_connection((host, port), timeout=timeout) as sock:
        with context.wrap_socket(sock, server_hostname=host) as ssock:
            # binary form is populated even with CERT_NONE
            cert_der = ssock.getpeercert(binary_form=True)

    if not cert_der:
        raise ssl.SSLError("Server did not present a certificate")
    cert = x509.load_der_x509_certificate(cert_der)
    return cert.not_valid_after_utc


def _ssl_target(monitor: Monitor) -> tuple[Optional[str], int]:
    if monitor.url:
        value = monitor.url if "://" in monitor.url else f"//{monitor.url}"
        parts = urlsplit(value)
        return parts.hostname, parts.port or monitor.port or DEFAULT_SSL_PORT
    return monitor.ip, monitor.port or DEFAULT_SSL_PORT


async def check_ssl(monitor: Monitor, now: Optional[datetime] = None) -> CheckResult:
    """TLS handshake and certificate expiry inspection."""
    host, port = _ssl_target(monitor)
    start = time.monotonic()
    try:
        loop = asyncio.get_running_loop()
        not_after = await asyncio.wait_for(
            loop.run_in_executor(
                None, _fetch_certificate_expiry, host, port, monitor.timeout, monitor.verify_ssl
            ),
            timeout=monitor.timeout,
        )
    except asyncio.TimeoutError:
        return CheckResult(
            status="down",
            response_time_ms=_elapsed_ms(start),
            error="SSL connection timeout",
        )
    except ssl.SSLCertVerificationError as e:
        return CheckResult(
            status="down",
            response_time_ms=_elapsed_ms(start),
            error=f"SSL certificate verification failed: {e.verify_message or e}",
        )
    except (OSError, ValueError) as e:
        # ssl.SSLError is an OSError
        return CheckResult(
            status="down",
            response_time_ms=_elapsed_ms(start),
            error=f"SSL handshake failed: {str(e)[:200]}",
        )

    response_time = _elapsed_ms(start)
    now = now or datetime.now(timezone.utc)
    remaining = (as_utc(not_after) - now).total_seconds()
    days = math.ceil(remaining / 86400)

    if remaining <= 0:
        return CheckResult(
            status="down",
            response_time_ms=response_time,
            error="SSL certificate has expired",
            ssl_expiry_days=days,
        )
    if days < settings.ssl_warning_days:
        return CheckResult(
            status="up",
            response_time_ms=response_time,
            error=f"SSL certificate expires in {days} days",
            ssl_expiry_days=days,
        )
    return CheckResult(status="up", response_time_ms=response_time, ssl_expiry_days=days)


async def check_domain(monitor: Monitor) -> CheckResult:
    """Name resolution only. Registration expiry (WHOIS) is not looked up."""
    domain = _hostname(monitor.url) or monitor.ip
    start = time.monotonic()
    try:
        loop = asyncio.get_running_loop()
        await asyncio.wait_for(loop.getaddrinfo(domain, None), timeout=monitor.timeout)
    except asyncio.TimeoutError:
        return CheckResult(
            status="down",
            response_time_ms=_elapsed_ms(start),
            error=f"Domain resolution timed out for {domain}",
        )
    except (socket.gaierror, UnicodeError) as e:
        return CheckResult(
            status="down",
            response_time_ms=_elapsed_ms(start),
            error=f"Domain resolution failed for {domain}: {e}",
        )
    return CheckResult(status="up", response_time_ms=_elapsed_ms(start))


def check_heartbeat(
    monitor: Monitor,
    last_heartbeat_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> CheckResult:
    """Passive check: up iff a push arrived within the monitor interval."""
    now = now or datetime.now(timezone.utc)
    if last_heartbeat_at is None:
        return CheckResult(status="down", response_time_ms=0, error="No heartbeat received yet")

    elapsed = (now - as_utc(last_heartbeat_at)).total_seconds()
    if elapsed > monitor.interval:
        return CheckResult(
            status="down",
            response_time_ms=0,
            error=f"No heartbeat received for {round(elapsed)} seconds",
        )
    return CheckResult(status="up", response_time_ms=0)


async def check_monitor(
    monitor: Monitor,
    *,
    region: Optional[str] = None,
    last_heartbeat_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> CheckResult:
    """Run one probe for ``monitor`` according to its type."""
    try:
        if monitor.type in ("http", "https", "keyword"):
            result = await check_http(monitor)
        elif monitor.type == "ping":
            result = await check_ping(monitor)
        elif monitor.type == "port":
            result = await check_port(monitor)
        elif monitor.type == "ssl":
            result = await check_ssl(monitor, now=now)
        elif monitor.type == "domain":
            result = await check_domain(monitor)
        elif monitor.type == "heartbeat":
            result = check_heartbeat(monitor, last_heartbeat_at, now=now)
        else:
            result = CheckResult(
                status="down",
                response_time_ms=0,
                error=f"Unsupported monitor type: {monitor.type}",
            )
    except Exception as e:
        logger.exception(f"Checker crashed for monitor {monitor.id}")
        result = CheckResult(
            status="down",
            response_time_ms=0,
            error=f"Unexpected error: {str(e)[:200]}",
        )

    result.region = region or settings.check_region
    return result
