"""
Single offset measurement against one time provider.

Every provider shares the same timing envelope: take ``t0`` before the request,
``t1`` once the server time is in hand, and assume the server stamped its
answer half-way through the round trip:

    offset = server_epoch_ms - (t0 + t1) / 2

Nothing here retries; a failure is reported to the caller as-is.
"""

from __future__ import annotations

import json
import logging
import math
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Optional

import requests

from classclock.effective_clock import wall_clock_now_ms
from classclock.sync_bridge import NtpTransport
from classclock.sync_config import as_finite, round_half_up
from classclock.sync_errors import (
    ConfigError,
    NetworkError,
    ParseError,
    ProtocolError,
    UnsupportedProviderError,
)
from classclock.sync_models import Provider, SampleResult

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store",
    "Pragma": "no-cache",
}

PREVIEW_CHARS = 200


def parse_http_date(raw: Optional[str]) -> int:
    """Convert an RFC 7231 ``Date`` header to epoch milliseconds."""
    text = (raw or "").strip()
    try:
        parsed = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError) as exc:
        raise ProtocolError(f"Cannot parse Date header: {text or '(empty)'}") from exc
    if parsed is None:
        raise ProtocolError(f"Cannot parse Date header: {text or '(empty)'}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return round(parsed.timestamp() * 1000)


def _parse_iso_datetime(raw: str) -> Optional[int]:
    text = raw.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return round(parsed.timestamp() * 1000)


def parse_time_api_body(body: Any) -> int:
    """
    Extract server epoch milliseconds from a time API JSON object.

    Fields are tried in order: ``epochMs``, ``epochSeconds``, ``unixtime``,
    then ``datetime`` / ``utc_datetime`` as ISO-8601. The first hit wins.
    """
    if not isinstance(body, dict):
        raise ParseError("Time API response is not a JSON object")

    epoch_ms = as_finite(body.get("epochMs"))
    if epoch_ms is not None:
        return math.trunc(epoch_ms)

    for key in ("epochSeconds", "unixtime"):
        seconds = as_finite(body.get(key))
        if seconds is not None:
            return math.trunc(seconds * 1000)

    # Only the first non-empty string is parsed; utc_datetime is not a fallback
    # for an unparsable datetime.
    for key in ("datetime", "utc_datetime"):
        raw = body.get(key)
        if isinstance(raw, str) and raw.strip():
            parsed = _parse_iso_datetime(raw)
            if parsed is not None:
                return parsed
            break

    raise ParseError(
        "Time API response has no recognised time field "
        "(epochMs/epochSeconds/unixtime/datetime)"
    )


def _preview(text: str) -> str:
    return re.sub(r"\s+", " ", text or "")[:PREVIEW_CHARS]


class ProviderSampler:
    """Performs exactly one raw measurement per call."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        ntp_transport: Optional[NtpTransport] = None,
        now_ms: Callable[[], int] = wall_clock_now_ms,
    ) -> None:
        self.session = session if session is not None else requests.Session()
        self.ntp_transport = ntp_transport
        self.now_ms = now_ms

    def measure_once(
        self,
        provider: Provider,
        endpoint: str,
        timeout_ms: int,
        port: Optional[int] = None,
    ) -> SampleResult:
        try:
            provider = Provider(provider)
        except ValueError as exc:
            raise UnsupportedProviderError(f"Unknown time provider: {provider!r}") from exc

        if provider is Provider.HTTP_DATE:
            return self._measure_http_date(endpoint, timeout_ms)
        if provider is Provider.TIME_API:
            return self._measure_time_api(endpoint, timeout_ms)
        if provider is Provider.NTP:
            return self._measure_ntp(endpoint, port, timeout_ms)
        raise UnsupportedProviderError(f"Unknown time provider: {provider!r}")

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    def _get(self, url: str, timeout_ms: int, stream: bool) -> requests.Response:
        try:
            return self.session.get(
                url,
                headers=NO_CACHE_HEADERS,
                timeout=timeout_ms / 1000,
                stream=stream,
                allow_redirects=True,
            )
        except requests.Timeout as exc:
            raise NetworkError(f"Request timed out after {timeout_ms}ms: {url}") from exc
        except requests.RequestException as exc:
            raise NetworkError(f"Request failed: {exc}") from exc

    def _measure_http_date(self, url: str, timeout_ms: int) -> SampleResult:
        t0 = self.now_ms()
        resp = self._get(url, timeout_ms, stream=True)
        try:
            date_header = resp.headers.get("Date")
            t1 = self.now_ms()
        finally:
            resp.close()

        if not resp.ok:
            raise NetworkError(f"HTTP {resp.status_code} {resp.reason or ''}".rstrip())
        if not date_header:
            raise ProtocolError(
                "Response has no Date header "
                "(cross-origin servers must expose it via Access-Control-Expose-Headers)"
            )
        return self._sample(parse_http_date(date_header), t0, t1)

    def _measure_time_api(self, url: str, timeout_ms: int) -> SampleResult:
        t0 = self.now_ms()
        resp = self._get(url, timeout_ms, stream=False)
        try:
            text = resp.text
        except requests.RequestException as exc:
            raise NetworkError(f"Failed reading time API body: {exc}") from exc
        t1 = self.now_ms()

        preview = _preview(text)
        if not resp.ok:
            status = f"HTTP {resp.status_code} {resp.reason or ''}".rstrip()
            raise NetworkError(f"{status} | {preview}" if preview else status)
        if not text:
            raise ParseError("Time API response is empty")
        try:
            body = json.loads(text)
        except ValueError as exc:
            raise ParseError(f"Time API response is not JSON | {preview}") from exc

        return self._sample(parse_time_api_body(body), t0, t1)

    def _measure_ntp(
        self, host: str, port: Optional[int], timeout_ms: int
    ) -> SampleResult:
        if self.ntp_transport is None:
            raise UnsupportedProviderError("NTP sync is only available in the desktop app")
        host = (host or "").strip()
        if not host:
            raise ConfigError("Configure an NTP host first")
        return self.ntp_transport.ntp(host, port, timeout_ms)

    @staticmethod
    def _sample(server_epoch_ms: int, t0: int, t1: int) -> SampleResult:
        sample = SampleResult(
            offset_ms=round_half_up(server_epoch_ms - (t0 + t1) / 2),
            rtt_ms=max(0, t1 - t0),
            server_epoch_ms=server_epoch_ms,
            measured_at=t1,
        )
        logger.debug(
            "Sample: offset=%sms rtt=%sms server=%s",
            sample.offset_ms,
            sample.rtt_ms,
            sample.server_epoch_ms,
        )
        return sample


__all__ = [
    "ProviderSampler",
    "parse_http_date",
    "parse_time_api_body",
]
