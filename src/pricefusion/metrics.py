"""
Metrics Collection Module
=========================

In-process counters for the fusion service:
- aggregations by method (fused / median / single)
- outliers filtered by source
- predictions by bias
- predictor state resets and skipped batches

Thread-safe for use across request handlers.
"""

import logging
import threading
from collections import defaultdict

from pricefusion.types import AggregatedPrice, BiasPrediction
from pricefusion.utils_time import now_ms

logger = logging.getLogger(__name__)


class Metrics:
    """
    Central metrics collection.

    Usage:
        metrics = Metrics()
        metrics.observe_aggregation(agg)
        metrics.observe_prediction(pred)
        snapshot = metrics.snapshot()
    """

    def __init__(self):
        self._lock = threading.Lock()

        self._aggregations_total: dict[str, int] = defaultdict(int)
        self._outliers_by_source: dict[str, int] = defaultdict(int)
        self._predictions_total: dict[str, int] = defaultdict(int)
        self._resets_total = 0
        self._skipped_total = 0
        self._empty_total = 0

        self._start_time_ms = now_ms()

    def observe_aggregation(self, aggregated: AggregatedPrice) -> None:
        with self._lock:
            self._aggregations_total[aggregated.method] += 1
            if not aggregated.sources_used:
                self._empty_total += 1
            for source in aggregated.outliers_filtered:
                self._outliers_by_source[source] += 1

    def observe_prediction(self, prediction: BiasPrediction) -> None:
        with self._lock:
            self._predictions_total[prediction.bias] += 1

    def inc_reset(self) -> None:
        with self._lock:
            self._resets_total += 1

    def inc_skipped(self) -> None:
        """A batch produced no fused price, so no prediction was made."""
        with self._lock:
            self._skipped_total += 1

    def snapshot(self) -> dict:
        """
        Get current metrics snapshot.

        Returns:
            Dictionary with counters, server time and uptime.
        """
        ts = now_ms()
        with self._lock:
            return {
                "aggregations_total": dict(self._aggregations_total),
                "empty_aggregations_total": self._empty_total,
                "outliers_by_source": dict(self._outliers_by_source),
                "predictions_total": dict(self._predictions_total),
                "resets_total": self._resets_total,
                "skipped_batches_total": self._skipped_total,
                "server_time_ms": ts,
                "uptime_ms": ts - self._start_time_ms,
            }
