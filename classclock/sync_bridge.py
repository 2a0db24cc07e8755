"""NTP capability handed to the sampler.

The sandboxed clock cannot open UDP sockets itself; the desktop host does it
and exposes a single call, ``timeSync.ntp({host, port?, timeoutMs?})``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

from ntp_client import NTPClient

from classclock.sync_config import DEFAULT_NTP_PORT, DEFAULT_TIMEOUT_MS, as_finite
from classclock.sync_errors import UnsupportedProviderError
from classclock.sync_models import SampleResult


class NtpTransport(Protocol):
    def ntp(
        self, host: str, port: Optional[int] = None, timeout_ms: Optional[int] = None
    ) -> SampleResult:
        ...


class UnavailableNtpTransport:
    """Stand-in for runtimes without a desktop host."""

    def ntp(
        self, host: str, port: Optional[int] = None, timeout_ms: Optional[int] = None
    ) -> SampleResult:
        raise UnsupportedProviderError("NTP sync is only available in the desktop app")


class UdpNtpTransport:
    """Real UDP exchange through :class:`ntp_client.NTPClient`."""

    def __init__(self, client=None) -> None:
        self.client = client if client is not None else NTPClient()

    def ntp(
        self, host: str, port: Optional[int] = None, timeout_ms: Optional[int] = None
    ) -> SampleResult:
        return self.client.query(
            host,
            port if port is not None else DEFAULT_NTP_PORT,
            timeout_ms if timeout_ms is not None else DEFAULT_TIMEOUT_MS,
        )


def _number_option(options: Dict[str, Any], key: str) -> Optional[float]:
    value = options.get(key)
    # JSON numbers only; numeric strings are rejected.
    return None if isinstance(value, str) else as_finite(value)


def handle_ntp_request(
    options: Dict[str, Any], transport: Optional[NtpTransport] = None
) -> Dict[str, int]:
    """
    Host-side handler for ``timeSync.ntp``.

    Missing or non-numeric ``port`` / ``timeoutMs`` fall back to 123 / 8000.
    """
    options = options if isinstance(options, dict) else {}
    host = options.get("host") if isinstance(options.get("host"), str) else ""
    port = _number_option(options, "port")
    timeout_ms = _number_option(options, "timeoutMs")

    transport = transport if transport is not None else UdpNtpTransport()
    result = transport.ntp(
        host,
        int(port) if port is not None else DEFAULT_NTP_PORT,
        int(timeout_ms) if timeout_ms is not None else DEFAULT_TIMEOUT_MS,
    )
    return result.to_dict()
