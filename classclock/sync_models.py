"""Data types exchanged by the sampler, the runner and the manager."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from classclock.sync_config import DEFAULT_NTP_PORT, as_finite


class Provider(str, Enum):
    """Where a measurement gets its trusted time from."""

    HTTP_DATE = "httpDate"
    TIME_API = "timeApi"
    NTP = "ntp"

    @classmethod
    def parse(cls, value: Any, default: Optional["Provider"] = None) -> "Provider":
        try:
            return cls(value)
        except ValueError:
            return default or cls.HTTP_DATE


@dataclass(frozen=True)
class SampleResult:
    offset_ms: int
    rtt_ms: int
    server_epoch_ms: int
    measured_at: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "offsetMs": self.offset_ms,
            "rttMs": self.rtt_ms,
            "serverEpochMs": self.server_epoch_ms,
            "measuredAt": self.measured_at,
        }


@dataclass(frozen=True)
class RunResult:
    offset_ms: int
    rtt_ms: int
    server_epoch_ms: int
    measured_at: int
    samples: Tuple[SampleResult, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "offsetMs": self.offset_ms,
            "rttMs": self.rtt_ms,
            "serverEpochMs": self.server_epoch_ms,
            "measuredAt": self.measured_at,
            "samples": [s.to_dict() for s in self.samples],
        }


@dataclass
class SyncSettings:
    """Time-sync section of the persisted settings document."""

    provider: Provider = Provider.HTTP_DATE
    enabled: bool = False
    http_date_url: str = ""
    time_api_url: str = ""
    ntp_host: str = "pool.ntp.org"
    ntp_port: int = DEFAULT_NTP_PORT
    auto_sync_enabled: bool = False
    auto_sync_interval_sec: int = 3600
    manual_offset_ms: int = 0
    offset_ms: int = 0
    last_sync_at: Optional[int] = None
    last_rtt_ms: Optional[int] = None
    last_error: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SyncSettings":
        """Merge persisted values over the defaults, dropping anything malformed."""
        settings = cls()
        if not isinstance(data, dict):
            return settings

        settings.provider = Provider.parse(data.get("provider"))

        for name in ("enabled", "auto_sync_enabled"):
            value = data.get(name)
            if isinstance(value, bool):
                setattr(settings, name, value)

        for name in ("http_date_url", "time_api_url", "ntp_host", "last_error"):
            value = data.get(name)
            if isinstance(value, str):
                setattr(settings, name, value)

        for name in (
            "ntp_port",
            "auto_sync_interval_sec",
            "manual_offset_ms",
            "offset_ms",
        ):
            number = as_finite(data.get(name))
            if number is not None:
                setattr(settings, name, int(number))

        for name in ("last_sync_at", "last_rtt_ms"):
            number = as_finite(data.get(name))
            setattr(settings, name, int(number) if number is not None else None)

        return settings

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["provider"] = self.provider.value
        return data

    def endpoint(self) -> str:
        """URL or host that matters for the active provider."""
        if self.provider is Provider.HTTP_DATE:
            return self.http_date_url.strip()
        if self.provider is Provider.TIME_API:
            return self.time_api_url.strip()
        if self.provider is Provider.NTP:
            return self.ntp_host.strip()
        raise AssertionError(f"unhandled provider {self.provider!r}")


SETTINGS_FIELDS = frozenset(f.name for f in fields(SyncSettings))
