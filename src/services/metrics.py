"""CloudWatch custom metrics with background batching.

Two families of data points share one buffer:

* ``ExternalAPI/*``: request count, error count and latency per call to a
  dependency (``anthropic``, ``dynamodb``);
* pipeline counters: ``Booking/Outcome`` per booking engine result and
  ``Conversation/Escalation`` per hand-off to a human.

A daemon thread flushes the buffer every ``FLUSH_INTERVAL_SECONDS``.  With
``METRICS_ENABLED`` unset (local runs, tests) points are only logged at
DEBUG and dropped on flush.

Usage
-----
>>> from src.services.metrics import metrics
>>> metrics.record_success("anthropic", "llm_invoke", latency_ms=812.0)
>>> metrics.record_booking_outcome("create", "SLOT_OCCUPIED")
>>> metrics.record_escalation("governor_limit_exceeded")
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "BookingConcierge"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call

Dimensions = list[dict[str, str]]


def _dims(**pairs: str) -> Dimensions:
    return [{"Name": name, "Value": value} for name, value in pairs.items()]


def _datum(
    name: str, dimensions: Dimensions, value: float, unit: str, timestamp: datetime | None = None,
) -> dict[str, Any]:
    return {
        "MetricName": name,
        "Dimensions": dimensions,
        "Timestamp": timestamp or datetime.now(UTC),
        "Value": value,
        "Unit": unit,
    }


class MetricsClient:
    """Buffers data points and ships them to CloudWatch in batches."""

    def __init__(self) -> None:
        self._enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None

        if self._enabled:
            self._start_flush_thread()

    def _get_cw_client(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── External calls ────────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        """One successful call: a request count and its latency."""
        now = datetime.now(UTC)
        self._append(
            _datum("ExternalAPI/RequestCount", _dims(Service=service, Status="success"), 1, "Count", now),
            _datum("ExternalAPI/Latency", _dims(Service=service, Operation=operation), latency_ms, "Milliseconds", now),
        )
        logger.debug("Metric: %s %s ok in %.1fms", service, operation, latency_ms)

    def record_failure(
        self, service: str, operation: str, error_type: str, latency_ms: float = 0,
    ) -> None:
        """One failed call; latency is only recorded when known."""
        now = datetime.now(UTC)
        points = [
            _datum("ExternalAPI/RequestCount", _dims(Service=service, Status="failure"), 1, "Count", now),
            _datum("ExternalAPI/ErrorCount", _dims(Service=service, ErrorType=error_type), 1, "Count", now),
        ]
        if latency_ms > 0:
            points.append(
                _datum("ExternalAPI/Latency", _dims(Service=service, Operation=operation), latency_ms, "Milliseconds", now),
            )
        self._append(*points)
        logger.debug("Metric: %s %s failed (%s) in %.1fms", service, operation, error_type, latency_ms)

    # ── Pipeline counters ─────────────────────────────────────────────

    def record_booking_outcome(self, operation: str, outcome: str) -> None:
        """Count a booking engine result (``SUCCESS`` or an error code)."""
        self._append(_datum("Booking/Outcome", _dims(Operation=operation, Outcome=outcome), 1, "Count"))
        logger.debug("Metric: booking %s -> %s", operation, outcome)

    def record_escalation(self, reason: str) -> None:
        """Count a hand-off to a human."""
        self._append(_datum("Conversation/Escalation", _dims(Reason=reason), 1, "Count"))
        logger.debug("Metric: escalation (%s)", reason)

    # ── Shipping ──────────────────────────────────────────────────────

    def flush(self) -> int:
        """Drain the buffer to CloudWatch and return how many points were sent."""
        with self._lock:
            batch, self._buffer = self._buffer, []
        if not batch:
            return 0
        if not self._enabled:
            logger.debug("Metrics disabled, dropping %d point(s)", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for start in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[start:start + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        return sent

    def _append(self, *points: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.extend(points)

    def _start_flush_thread(self) -> None:
        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        threading.Thread(target=_loop, daemon=True, name="metrics-flush").start()
        atexit.register(self.flush)
        logger.info("Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS)


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()
