# fhir_server/values.py
"""
Internal value types for a flattened Observation.

The external `value[x]` choice (and the same choice on each component) is
carried as a closed tagged union. Every variant exposes a `kind` tag and the
mapper dispatches on that tag through per-kind tables, never on class.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import ClassVar, Optional, Union


def utcnow() -> datetime:
    """Naive UTC timestamp, the form we store in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ObservationStatus(str, enum.Enum):
    REGISTERED = "registered"
    PRELIMINARY = "preliminary"
    FINAL = "final"
    AMENDED = "amended"
    CANCELLED = "cancelled"
    ENTERED_IN_ERROR = "entered-in-error"
    UNKNOWN = "unknown"


class ValueKind(enum.Enum):
    QUANTITY = "Quantity"
    CODEABLE_CONCEPT = "CodeableConcept"
    STRING = "String"
    SAMPLED_DATA = "SampledData"
    PERIOD = "Period"
    ABSENT = "Absent"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class QuantityValue:
    value: Optional[float] = None
    unit: Optional[str] = None
    system: Optional[str] = None
    code: Optional[str] = None

    kind: ClassVar[ValueKind] = ValueKind.QUANTITY


@dataclass(frozen=True)
class ConceptValue:
    code: Optional[str] = None
    display: Optional[str] = None
    system: Optional[str] = None
    text: Optional[str] = None

    kind: ClassVar[ValueKind] = ValueKind.CODEABLE_CONCEPT


@dataclass(frozen=True)
class StringValue:
    value: Optional[str] = None

    kind: ClassVar[ValueKind] = ValueKind.STRING


@dataclass(frozen=True)
class SampledDataValue:
    origin_value: Optional[float] = None
    origin_unit: Optional[str] = None
    origin_system: Optional[str] = None
    origin_code: Optional[str] = None
    period: Optional[float] = None
    dimensions: Optional[int] = None
    data: Optional[str] = None

    kind: ClassVar[ValueKind] = ValueKind.SAMPLED_DATA


@dataclass(frozen=True)
class PeriodValue:
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    kind: ClassVar[ValueKind] = ValueKind.PERIOD


@dataclass(frozen=True)
class AbsentValue:
    kind: ClassVar[ValueKind] = ValueKind.ABSENT


@dataclass(frozen=True)
class UnknownValue:
    # e.g. "valueBoolean"; kept only so the drop can be logged
    field_name: str

    kind: ClassVar[ValueKind] = ValueKind.UNKNOWN


ABSENT = AbsentValue()

ObservationValue = Union[
    QuantityValue,
    ConceptValue,
    StringValue,
    SampledDataValue,
    PeriodValue,
    AbsentValue,
    UnknownValue,
]


@dataclass(frozen=True)
class RecordMetadata:
    """What the mapper is allowed to know about a history record."""

    version_id: int
    last_modified: datetime
