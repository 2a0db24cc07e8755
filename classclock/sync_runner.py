"""Multi-sample sync run with RTT filtering."""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from classclock.sync_config import (
    DEFAULT_SAMPLES,
    DEFAULT_TIMEOUT_MS,
    PICK_COUNT,
    SAMPLES_MAX,
    SAMPLES_MIN,
    TIMEOUT_MS_MAX,
    TIMEOUT_MS_MIN,
    clamp_int,
    median,
)
from classclock.sync_errors import ConfigError
from classclock.sync_models import Provider, RunResult, SampleResult, SyncSettings
from classclock.sync_sampler import ProviderSampler

logger = logging.getLogger(__name__)


class SyncRunner:
    """
    Takes N sequential samples from one provider and reduces them.

    The lowest-RTT samples carry the least asymmetric-latency error, so only
    the best ``PICK_COUNT`` are kept and their median offset is used. A single
    failed sample aborts the whole run.
    """

    def __init__(self, sampler: Optional[ProviderSampler] = None) -> None:
        self.sampler = sampler if sampler is not None else ProviderSampler()

    def sync_time(
        self,
        provider: Provider,
        endpoint: str,
        port: Optional[int] = None,
        samples: Any = None,
        timeout_ms: Any = None,
    ) -> RunResult:
        count = clamp_int(
            DEFAULT_SAMPLES if samples is None else samples, SAMPLES_MIN, SAMPLES_MAX
        )
        timeout = clamp_int(
            DEFAULT_TIMEOUT_MS if timeout_ms is None else timeout_ms,
            TIMEOUT_MS_MIN,
            TIMEOUT_MS_MAX,
        )
        if provider != Provider.NTP:
            port = None

        results = []
        for _ in range(count):
            results.append(
                self.sampler.measure_once(provider, endpoint, timeout, port=port)
            )

        return reduce_samples(results)

    def sync_with_settings(
        self,
        settings: SyncSettings,
        samples: Any = None,
        timeout_ms: Any = None,
    ) -> RunResult:
        """Run against whatever endpoint ``settings`` configures for its provider."""
        endpoint = settings.endpoint()
        if not endpoint:
            raise ConfigError(f"No endpoint configured for provider {settings.provider.value}")
        return self.sync_time(
            settings.provider,
            endpoint,
            port=settings.ntp_port,
            samples=samples,
            timeout_ms=timeout_ms,
        )


def reduce_samples(results: List[SampleResult]) -> RunResult:
    if not results:
        raise ValueError("reduce_samples() needs at least one sample")

    by_rtt = sorted(results, key=lambda s: s.rtt_ms)
    picked = by_rtt[:PICK_COUNT]
    best = picked[0]
    offset = median(s.offset_ms for s in picked)

    logger.debug(
        "Reduced %d samples: picked offsets=%s -> offset=%sms rtt=%sms",
        len(results),
        [s.offset_ms for s in picked],
        offset,
        best.rtt_ms,
    )
    return RunResult(
        offset_ms=offset,
        rtt_ms=best.rtt_ms,
        server_epoch_ms=best.server_epoch_ms,
        measured_at=best.measured_at,
        samples=tuple(results),
    )
