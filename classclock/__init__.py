"""Time synchronization engine for ClassClock.

The package is split the same way the data flows:
`sync_sampler` (one measurement) -> `sync_runner` (N samples, RTT filter,
median) -> `sync_manager` (scheduling, persistence, events), with
`effective_clock` reading the persisted offset for every display.
"""

from .sync_errors import (
    ConfigError,
    NetworkError,
    ParseError,
    ProtocolError,
    TimeSyncError,
    UnsupportedProviderError,
)
from .sync_models import Provider, RunResult, SampleResult, SyncSettings

__version__ = "1.0.0"

__all__ = [
    "ConfigError",
    "NetworkError",
    "ParseError",
    "ProtocolError",
    "Provider",
    "RunResult",
    "SampleResult",
    "SyncSettings",
    "TimeSyncError",
    "UnsupportedProviderError",
]
