"""
Tests for the in-memory request metrics collector (license_booth/metrics.py).

Validates that the MetricsCollector correctly:

- Returns ISO 8601 UTC timestamps for ``collected_at`` and
  ``service_started_at``.
- Records request counts grouped by method, path, and status code.
- Computes latency statistics from accumulated observations.
- Evicts the oldest latency observations once a window is full.
- Counts terminal transform outcomes.
"""

import datetime
import re

import license_booth.metrics

# Example match: "2026-02-23T14:32:10.123456Z"
_ISO_8601_UTC_TIMESTAMP_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{6}Z$")


class TestMetricsCollectorTimestamps:
    def test_timestamps_are_iso_8601_utc_strings(self):
        snapshot = license_booth.metrics.MetricsCollector().snapshot()

        assert _ISO_8601_UTC_TIMESTAMP_PATTERN.match(snapshot["collected_at"])
        assert _ISO_8601_UTC_TIMESTAMP_PATTERN.match(snapshot["service_started_at"])

    def test_collected_at_is_not_before_service_started_at(self):
        collector = license_booth.metrics.MetricsCollector()
        snapshot = collector.snapshot()

        collected_at = datetime.datetime.strptime(snapshot["collected_at"], "%Y-%m-%dT%H:%M:%S.%fZ")
        service_started_at = datetime.datetime.strptime(snapshot["service_started_at"], "%Y-%m-%dT%H:%M:%S.%fZ")
        assert collected_at >= service_started_at


class TestRequestCounts:
    def test_counts_are_grouped_by_method_path_and_status(self):
        collector = license_booth.metrics.MetricsCollector()
        collector.record_request("POST", "/api/transform", 200, 12.0)
        collector.record_request("POST", "/api/transform", 200, 14.0)
        collector.record_request("POST", "/api/transform", 429, 1.0)

        request_counts = collector.snapshot()["request_counts"]

        assert request_counts == {
            "POST /api/transform 200": 2,
            "POST /api/transform 429": 1,
        }

    def test_empty_collector_reports_nothing(self):
        snapshot = license_booth.metrics.MetricsCollector().snapshot()

        assert snapshot["request_counts"] == {}
        assert snapshot["request_latencies"] == {}
        assert snapshot["transform_outcomes"] == {}


class TestRequestLatencies:
    def test_statistics_per_endpoint(self):
        collector = license_booth.metrics.MetricsCollector()
        for duration in (10.0, 20.0, 30.0, 40.0):
            collector.record_request("GET", "/api/queue/status", 200, duration)

        latency = collector.snapshot()["request_latencies"]["GET /api/queue/status"]

        assert latency == {
            "count": 4,
            "minimum_milliseconds": 10.0,
            "maximum_milliseconds": 40.0,
            "average_milliseconds": 25.0,
            "ninety_fifth_percentile_milliseconds": 40.0,
        }

    def test_oldest_observations_are_evicted(self):
        collector = license_booth.metrics.MetricsCollector(maximum_observations_per_endpoint=3)
        for duration in (1000.0, 1.0, 2.0, 3.0):
            collector.record_request("GET", "/health", 200, duration)

        latency = collector.snapshot()["request_latencies"]["GET /health"]

        assert latency["count"] == 3
        assert latency["maximum_milliseconds"] == 3.0
        assert collector.snapshot()["request_counts"]["GET /health 200"] == 4


class TestTransformOutcomes:
    def test_outcomes_are_counted(self):
        collector = license_booth.metrics.MetricsCollector()
        collector.record_transform_outcome("transformed")
        collector.record_transform_outcome("transformed")
        collector.record_transform_outcome("fell_back")
        collector.record_transform_outcome("queue_full")

        assert collector.snapshot()["transform_outcomes"] == {
            "transformed": 2,
            "fell_back": 1,
            "queue_full": 1,
        }
