"""Maps firehose envelopes onto series samples."""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .aggregator import SelfMetrics
from .events import Envelope, EventKind
from .models import SamplePoint, SeriesIdentity


# Counter doppler emits when its buffer for this subscription overflows
DROPPED_MESSAGES_METRIC = "TruncatingBuffer.DroppedMessages"
DOPPLER_ORIGIN = "doppler"

NANOSECONDS_PER_SECOND = 1_000_000_000


class Action(Enum):
    IGNORE = "ignore"
    SAMPLE = "sample"
    OVERLOAD = "overload"


@dataclass(frozen=True)
class Classification:
    """
    Outcome of classifying one envelope.

    An OVERLOAD result still carries the counter's sample, since the drop
    counter is forwarded to OpenTSDB like any other counter.
    """
    action: Action
    identity: Optional[SeriesIdentity] = None
    point: Optional[SamplePoint] = None

    @property
    def has_sample(self) -> bool:
        return self.identity is not None and self.point is not None


IGNORED = Classification(Action.IGNORE)


class EventClassifier:
    """Turns envelopes into (identity, point) pairs and spots overload signals."""

    def __init__(self, metric_prefix: str, self_metrics: SelfMetrics):
        self.metric_prefix = metric_prefix
        self.self_metrics = self_metrics

    def classify(self, envelope: Envelope) -> Classification:
        self.self_metrics.messages_received += 1

        if envelope.kind not in (EventKind.VALUE_METRIC, EventKind.COUNTER_EVENT):
            return IGNORED

        value = self._value(envelope)
        # OpenTSDB rejects a whole batch over one NaN or Inf
        if not math.isfinite(value):
            return IGNORED

        identity = SeriesIdentity(
            kind=envelope.kind,
            metric=f"{self.metric_prefix}{envelope.origin}.{envelope.name}",
            deployment=envelope.deployment,
            job=envelope.job,
            index=envelope.index,
            ip=envelope.ip,
        )
        point = SamplePoint(
            timestamp=envelope.timestamp // NANOSECONDS_PER_SECOND,
            value=value,
        )

        action = Action.OVERLOAD if is_overload_signal(envelope) else Action.SAMPLE
        return Classification(action, identity, point)

    @staticmethod
    def _value(envelope: Envelope) -> float:
        # Counters report their running total, not the delta
        if envelope.kind is EventKind.COUNTER_EVENT:
            return float(envelope.total)
        return float(envelope.value)


def is_overload_signal(envelope: Envelope) -> bool:
    return (
        envelope.kind is EventKind.COUNTER_EVENT
        and envelope.name == DROPPED_MESSAGES_METRIC
        and envelope.origin == DOPPLER_ORIGIN
    )
