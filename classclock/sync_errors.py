"""Failures raised by the time synchronization engine."""

from __future__ import annotations


class TimeSyncError(Exception):
    """Base class for every time-sync failure."""


class NetworkError(TimeSyncError):
    """Transport failure: timeout, refused connection, HTTP error status."""


class ProtocolError(TimeSyncError):
    """The server answered but a required header or field is malformed or missing."""


class ParseError(TimeSyncError):
    """The response body carries no recognised time field."""


class UnsupportedProviderError(TimeSyncError):
    """The provider needs a capability this runtime does not have."""


class ConfigError(TimeSyncError):
    """No usable endpoint or an invalid option was configured."""
