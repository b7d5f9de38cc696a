"""
In-memory request metrics exposed by ``GET /metrics``.

The collector counts requests per ``METHOD /path STATUS`` and keeps a
bounded sliding window of latency observations per ``METHOD /path``.  Two
timestamps accompany every snapshot: ``service_started_at`` (collector
creation, i.e. application startup) and ``collected_at`` (snapshot time),
both ISO 8601 UTC.  Terminal transform outcomes are counted separately so
operators can see how often the booth fell back to the original photo.

Counts are per process.  A booth deployment running several instances
aggregates them in its monitoring system, not here.
"""

import collections
import datetime
import threading

DEFAULT_MAXIMUM_OBSERVATIONS_PER_ENDPOINT = 10_000


class MetricsCollector:
    """
    Thread-safe collector for HTTP request metrics.

    A ``threading.Lock`` guards the counters because the collector is
    written from the ASGI middleware and read from the metrics route, which
    may run on different threads under some servers.

    Args:
        maximum_observations_per_endpoint: Size of each latency window.
            When full, the oldest observation is evicted.
    """

    def __init__(
        self,
        maximum_observations_per_endpoint: int = DEFAULT_MAXIMUM_OBSERVATIONS_PER_ENDPOINT,
    ) -> None:
        self._lock = threading.Lock()
        self._request_counts: dict[str, int] = {}
        self._maximum_observations_per_endpoint = maximum_observations_per_endpoint
        self._request_latencies: dict[str, collections.deque[float]] = {}
        self._transform_outcomes: collections.Counter[str] = collections.Counter()
        self._service_started_at: str = _format_current_utc_timestamp()

    def record_request(
        self,
        method: str,
        path: str,
        status: int,
        duration_milliseconds: float,
    ) -> None:
        """Record one completed request (called by ``CorrelationIdMiddleware``)."""
        with self._lock:
            count_key = f"{method} {path} {status}"
            self._request_counts[count_key] = self._request_counts.get(count_key, 0) + 1

            latency_key = f"{method} {path}"
            if latency_key not in self._request_latencies:
                self._request_latencies[latency_key] = collections.deque(
                    maxlen=self._maximum_observations_per_endpoint,
                )
            self._request_latencies[latency_key].append(duration_milliseconds)

    def record_transform_outcome(self, outcome: str) -> None:
        """
        Count one terminal transform outcome.

        Args:
            outcome: ``transformed``, ``fell_back`` or ``queue_full``.
        """
        with self._lock:
            self._transform_outcomes[outcome] += 1

    def snapshot(self) -> dict:
        """
        Return a point-in-time snapshot suitable for JSON serialisation.

        Latency statistics per endpoint: count, minimum, maximum, average
        and nearest-rank 95th percentile, in milliseconds rounded to one
        decimal.
        """
        with self._lock:
            result: dict = {
                "collected_at": _format_current_utc_timestamp(),
                "service_started_at": self._service_started_at,
                "request_counts": dict(self._request_counts),
                "request_latencies": {},
                "transform_outcomes": dict(self._transform_outcomes),
            }

            for endpoint_key, latency_observations in self._request_latencies.items():
                observation_count = len(latency_observations)
                sorted_observations = sorted(latency_observations)
                percentile_95_index = min(int(observation_count * 0.95), observation_count - 1)

                result["request_latencies"][endpoint_key] = {
                    "count": observation_count,
                    "minimum_milliseconds": round(sorted_observations[0], 1),
                    "maximum_milliseconds": round(sorted_observations[-1], 1),
                    "average_milliseconds": round(sum(sorted_observations) / observation_count, 1),
                    "ninety_fifth_percentile_milliseconds": round(sorted_observations[percentile_95_index], 1),
                }

            return result


def _format_current_utc_timestamp() -> str:
    return datetime.datetime.now(datetime.UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
