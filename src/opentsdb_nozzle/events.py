"""Firehose envelope model and protobuf decoding."""

from dataclasses import dataclass
from enum import Enum

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError

from .errors import EnvelopeDecodeError


class EventKind(Enum):
    """Event kinds the nozzle distinguishes."""
    VALUE_METRIC = "ValueMetric"
    COUNTER_EVENT = "CounterEvent"
    OTHER = "Other"
    # Synthetic series describing the nozzle itself
    INTERNAL = "Internal"


@dataclass(frozen=True)
class Envelope:
    """A decoded firehose event."""
    kind: EventKind
    origin: str
    name: str = ""
    value: float = 0.0
    delta: int = 0
    total: int = 0
    timestamp: int = 0  # epoch nanoseconds
    deployment: str = ""
    job: str = ""
    index: str = ""
    ip: str = ""


# events.Envelope.EventType from the loggregator dropsonde protocol
EVENT_TYPES = {
    "HttpStartStop": 4,
    "LogMessage": 5,
    "ValueMetric": 6,
    "CounterEvent": 7,
    "Error": 8,
    "ContainerMetric": 9,
}


def _build_envelope_file() -> descriptor_pb2.FileDescriptorProto:
    """Describe the subset of the dropsonde schema the nozzle reads."""
    field = descriptor_pb2.FieldDescriptorProto
    optional = field.LABEL_OPTIONAL

    file_proto = descriptor_pb2.FileDescriptorProto(
        name="opentsdb_nozzle/envelope.proto",
        package="events",
        syntax="proto2",
    )

    value_metric = file_proto.message_type.add(name="ValueMetric")
    value_metric.field.add(name="name", number=1, type=field.TYPE_STRING, label=optional)
    value_metric.field.add(name="value", number=2, type=field.TYPE_DOUBLE, label=optional)
    value_metric.field.add(name="unit", number=3, type=field.TYPE_STRING, label=optional)

    counter_event = file_proto.message_type.add(name="CounterEvent")
    counter_event.field.add(name="name", number=1, type=field.TYPE_STRING, label=optional)
    counter_event.field.add(name="delta", number=2, type=field.TYPE_UINT64, label=optional)
    counter_event.field.add(name="total", number=3, type=field.TYPE_UINT64, label=optional)

    envelope = file_proto.message_type.add(name="Envelope")
    event_type = envelope.enum_type.add(name="EventType")
    for name, number in EVENT_TYPES.items():
        event_type.value.add(name=name, number=number)

    envelope.field.add(name="origin", number=1, type=field.TYPE_STRING, label=optional)
    envelope.field.add(
        name="eventType", number=2, type=field.TYPE_ENUM, label=optional,
        type_name=".events.Envelope.EventType",
    )
    envelope.field.add(name="timestamp", number=6, type=field.TYPE_INT64, label=optional)
    envelope.field.add(
        name="valueMetric", number=9, type=field.TYPE_MESSAGE, label=optional,
        type_name=".events.ValueMetric",
    )
    envelope.field.add(
        name="counterEvent", number=10, type=field.TYPE_MESSAGE, label=optional,
        type_name=".events.CounterEvent",
    )
    envelope.field.add(name="deployment", number=13, type=field.TYPE_STRING, label=optional)
    envelope.field.add(name="job", number=14, type=field.TYPE_STRING, label=optional)
    envelope.field.add(name="index", number=15, type=field.TYPE_STRING, label=optional)
    envelope.field.add(name="ip", number=16, type=field.TYPE_STRING, label=optional)

    return file_proto


_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(_build_envelope_file().SerializeToString())

# Generated message classes, also used by tests to build firehose frames
EnvelopeMessage = message_factory.GetMessageClass(_pool.FindMessageTypeByName("events.Envelope"))
ValueMetricMessage = message_factory.GetMessageClass(_pool.FindMessageTypeByName("events.ValueMetric"))
CounterEventMessage = message_factory.GetMessageClass(_pool.FindMessageTypeByName("events.CounterEvent"))


def decode_envelope(frame: bytes) -> Envelope:
    """
    Decode one binary firehose frame.

    Events other than value metrics and counter events keep only their
    common header fields and come back as EventKind.OTHER.

    Raises:
        EnvelopeDecodeError: If the frame is not a valid envelope
    """
    message = EnvelopeMessage()
    try:
        message.ParseFromString(frame)
    except DecodeError as e:
        raise EnvelopeDecodeError(f"Malformed firehose envelope: {e}") from e

    header = {
        "origin": message.origin,
        "timestamp": message.timestamp,
        "deployment": message.deployment,
        "job": message.job,
        "index": message.index,
        "ip": message.ip,
    }

    if message.eventType == EVENT_TYPES["ValueMetric"] and message.HasField("valueMetric"):
        return Envelope(
            kind=EventKind.VALUE_METRIC,
            name=message.valueMetric.name,
            value=message.valueMetric.value,
            **header,
        )

    if message.eventType == EVENT_TYPES["CounterEvent"] and message.HasField("counterEvent"):
        return Envelope(
            kind=EventKind.COUNTER_EVENT,
            name=message.counterEvent.name,
            delta=message.counterEvent.delta,
            total=message.counterEvent.total,
            **header,
        )

    return Envelope(kind=EventKind.OTHER, **header)
