"""Series and sample types shared by the aggregation buffer and the encoders."""

from dataclasses import dataclass, field, asdict
from typing import Dict, List

from .events import EventKind


@dataclass(frozen=True)
class Tags:
    """OpenTSDB tag set attached to every data point."""
    deployment: str = ""
    job: str = ""
    index: str = ""
    ip: str = ""

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


@dataclass(frozen=True)
class SeriesIdentity:
    """Aggregation key: two samples with equal identities belong to one series."""
    kind: EventKind
    metric: str
    deployment: str = ""
    job: str = ""
    index: str = ""
    ip: str = ""

    @property
    def tags(self) -> Tags:
        return Tags(
            deployment=self.deployment,
            job=self.job,
            index=self.index,
            ip=self.ip,
        )


@dataclass(frozen=True)
class SamplePoint:
    """One observation: epoch seconds and value."""
    timestamp: int
    value: float


@dataclass
class Series:
    """A drained series, ready to be encoded."""
    metric: str
    tags: Tags
    points: List[SamplePoint] = field(default_factory=list)


@dataclass(frozen=True)
class Metric:
    """A single OpenTSDB data point as it goes on the wire."""
    metric: str
    value: float
    timestamp: int
    tags: Tags

    def to_dict(self) -> Dict[str, object]:
        return {
            "metric": self.metric,
            "value": self.value,
            "timestamp": self.timestamp,
            "tags": self.tags.to_dict(),
        }


def flatten(batch: List[Series]) -> List[Metric]:
    """Expand a batch into one Metric per sample point, preserving order."""
    return [
        Metric(metric=series.metric, value=point.value, timestamp=point.timestamp, tags=series.tags)
        for series in batch
        for point in series.points
    ]
