"""Per-series aggregation buffer and the nozzle's own health counters."""

import logging
import time
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List

from .events import EventKind
from .models import SamplePoint, Series, SeriesIdentity


logger = logging.getLogger(__name__)


@dataclass
class SelfMetrics:
    """Counters that live for the whole process and only grow."""
    messages_received: int = 0
    metrics_sent: int = 0
    slow_consumer_alert: bool = False
    firehose_disconnects: int = 0


class AggregationBuffer:
    """
    Accumulates sample points per series between flushes.

    Not thread-safe. The pipeline controller is the only caller, and every
    method is synchronous, so calls never interleave on the event loop.

    Every flush is record_self_metrics() followed by drain(). drain() always
    empties the buffer; mark_sent() is called only once the batch is posted.
    """

    def __init__(
        self,
        metric_prefix: str,
        deployment: str,
        ip: str,
        self_metrics: SelfMetrics,
        clock: Callable[[], float] = time.time,
    ):
        self.metric_prefix = metric_prefix
        self.deployment = deployment
        self.ip = ip
        self.self_metrics = self_metrics
        self._clock = clock
        self._series: Dict[SeriesIdentity, List[SamplePoint]] = {}

    def __len__(self) -> int:
        return len(self._series)

    @property
    def point_count(self) -> int:
        return sum(len(points) for points in self._series.values())

    def add_sample(self, identity: SeriesIdentity, point: SamplePoint) -> None:
        points = self._series.get(identity)
        if points is None:
            points = self._series[identity] = []
        points.append(point)

    def alert_slow_consumer(self) -> bool:
        """Raise the slow-consumer flag. Returns False if it was already raised."""
        if self.self_metrics.slow_consumer_alert:
            return False
        self.self_metrics.slow_consumer_alert = True
        return True

    def record_disconnect(self) -> None:
        self.self_metrics.firehose_disconnects += 1

    def record_self_metrics(self) -> None:
        """
        Append the internal counters as single-point series stamped now.

        The disconnect counter is only reported once a disconnect happened.
        """
        counters = self.self_metrics
        self._add_internal("totalMessagesReceived", counters.messages_received)
        self._add_internal("totalMetricsSent", counters.metrics_sent)
        self._add_internal("slowConsumerAlert", 1 if counters.slow_consumer_alert else 0)
        if counters.firehose_disconnects:
            self._add_internal("firehoseDisconnects", counters.firehose_disconnects)

    def drain(self) -> List[Series]:
        """Return every series with its points and reset the buffer to empty."""
        series, self._series = self._series, {}
        return [
            Series(metric=identity.metric, tags=identity.tags, points=points)
            for identity, points in series.items()
        ]

    def mark_sent(self, count: int) -> None:
        """Account for a successfully posted batch of `count` points."""
        self.self_metrics.metrics_sent += count
        self.self_metrics.slow_consumer_alert = False

    def _add_internal(self, name: str, value: float) -> None:
        identity = SeriesIdentity(
            kind=EventKind.INTERNAL,
            metric=f"{self.metric_prefix}{name}",
            deployment=self.deployment,
            ip=self.ip,
        )
        self.add_sample(identity, SamplePoint(timestamp=int(self._clock()), value=float(value)))

    def get_stats(self) -> Dict[str, Any]:
        stats = asdict(self.self_metrics)
        stats.update({
            "buffered_series": len(self._series),
            "buffered_points": self.point_count,
        })
        return stats
