"""OpenTSDB wire encoders: HTTP /api/put JSON and telnet `put` lines."""

import json
from typing import List

from .models import Metric, Series, flatten


def encode_json(batch: List[Series]) -> bytes:
    """Encode a batch as a JSON array of {metric, value, timestamp, tags}."""
    return json.dumps(
        [metric.to_dict() for metric in flatten(batch)],
        separators=(",", ":"),
        allow_nan=False,
    ).encode("utf-8")


def format_telnet_line(metric: Metric) -> str:
    """
    Format one data point as a telnet `put` command.

    deployment, ip and job are left out when empty; index is always sent
    and falls back to 0.
    """
    tags = metric.tags
    line = f"put {metric.metric} {metric.timestamp} {metric.value:f}"
    if tags.deployment:
        line += f" deployment={tags.deployment}"
    line += f" index={tags.index or 0}"
    if tags.ip:
        line += f" ip={tags.ip}"
    if tags.job:
        line += f" job={tags.job}"
    return line + "\n"


def encode_telnet(batch: List[Series]) -> bytes:
    return "".join(format_telnet_line(metric) for metric in flatten(batch)).encode("utf-8")
