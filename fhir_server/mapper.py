# fhir_server/mapper.py
"""
Two-way mapping between the external FHIR Observation (fhir_types) and the
flattened Observation row (models).

Both directions are pure: no session, no I/O. The mapping is deliberately
lossy in two places and callers must not expect a perfect round trip:

* category/code codings are filtered field by field, so the code, display and
  system lists can end up with different lengths;
* value[x] is rebuilt by probing the value lists in a fixed priority order
  (Quantity > CodeableConcept > String > SampledData > Period), so only one
  kind survives, and unsupported kinds (valueBoolean, valueRange, ...) are
  dropped on the way in.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from . import fhir_types as fhir
from .errors import MalformedDateTime, NullInput, TypeMismatch
from .models import Observation
from .values import (
    ABSENT,
    ConceptValue,
    ObservationStatus,
    ObservationValue,
    PeriodValue,
    QuantityValue,
    RecordMetadata,
    SampledDataValue,
    StringValue,
    UnknownValue,
    ValueKind,
    utcnow,
)

log = logging.getLogger(__name__)

# FHIR date / dateTime / instant. Seconds are required once a time is given;
# the fraction may have any number of digits.
_FHIR_DATETIME = re.compile(
    r"^(?P<year>\d{4})"
    r"(?:-(?P<month>\d{2})"
    r"(?:-(?P<day>\d{2})"
    r"(?:T(?P<hour>\d{2}):(?P<minute>\d{2}):(?P<second>\d{2})(?:\.(?P<fraction>\d+))?"
    r"(?P<tz>Z|[+-]\d{2}:\d{2})?"
    r")?)?)?$"
)


def _offset(tz: Optional[str]) -> Optional[timezone]:
    if tz is None:
        return None
    if tz == "Z":
        return timezone.utc
    sign = -1 if tz[0] == "-" else 1
    hours, minutes = int(tz[1:3]), int(tz[4:6])
    return timezone(sign * timedelta(hours=hours, minutes=minutes))


def parse_fhir_datetime(value: Optional[str]) -> datetime:
    """
    Parse a FHIR date, dateTime or instant into a naive UTC datetime.

    Partial dates ('2015', '2015-02', '2015-02-07') resolve to the first
    instant they cover. Fractions are cut to microseconds. Offsets are
    converted to UTC; values without an offset are taken as UTC already.
    """
    if value is None:
        raise MalformedDateTime(value)
    m = _FHIR_DATETIME.match(str(value).strip())
    if m is None:
        raise MalformedDateTime(value)

    fraction = (m.group("fraction") or "").ljust(6, "0")[:6]
    try:
        dt = datetime(
            int(m.group("year")),
            int(m.group("month") or 1),
            int(m.group("day") or 1),
            int(m.group("hour") or 0),
            int(m.group("minute") or 0),
            int(m.group("second") or 0),
            int(fraction),
            tzinfo=_offset(m.group("tz")),
        )
    except ValueError as e:
        raise MalformedDateTime(value) from e

    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def format_fhir_datetime(dt: datetime) -> str:
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.isoformat() + "Z"


def _parse_optional(value: Optional[str]) -> Optional[datetime]:
    return parse_fhir_datetime(value) if value is not None else None


def _format_optional(dt: Optional[datetime]) -> Optional[str]:
    return format_fhir_datetime(dt) if dt is not None else None


def _at(seq: Sequence[Any], index: int) -> Any:
    return seq[index] if index < len(seq) else None


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

_STATUS_FROM_FHIR: Dict[str, ObservationStatus] = {
    "registered": ObservationStatus.REGISTERED,
    "preliminary": ObservationStatus.PRELIMINARY,
    "final": ObservationStatus.FINAL,
    "amended": ObservationStatus.AMENDED,
    "cancelled": ObservationStatus.CANCELLED,
    "entered-in-error": ObservationStatus.ENTERED_IN_ERROR,
    "unknown": ObservationStatus.UNKNOWN,
}
_STATUS_TO_FHIR: Dict[ObservationStatus, str] = {v: k for k, v in _STATUS_FROM_FHIR.items()}


def _status_from_fhir(status: Optional[str]) -> ObservationStatus:
    return _STATUS_FROM_FHIR.get((status or "").strip(), ObservationStatus.ENTERED_IN_ERROR)


def _status_to_fhir(status: Any) -> str:
    try:
        return _STATUS_TO_FHIR[ObservationStatus(status)]
    except ValueError:
        return "entered-in-error"


# ---------------------------------------------------------------------------
# value[x] layout
# ---------------------------------------------------------------------------

# kind -> (variant class, ((column, attribute), ...)). The first column of each
# kind is the one probed to decide whether that kind is present.
_VALUE_LAYOUT: Dict[ValueKind, Tuple[type, Tuple[Tuple[str, str], ...]]] = {
    ValueKind.QUANTITY: (
        QuantityValue,
        (
            ("value_quantity_value", "value"),
            ("value_quantity_unit", "unit"),
            ("value_quantity_system", "system"),
            ("value_quantity_code", "code"),
        ),
    ),
    ValueKind.CODEABLE_CONCEPT: (
        ConceptValue,
        (
            ("value_code", "code"),
            ("value_display", "display"),
            ("value_system", "system"),
            ("value_text", "text"),
        ),
    ),
    ValueKind.STRING: (
        StringValue,
        (("value_string", "value"),),
    ),
    ValueKind.SAMPLED_DATA: (
        SampledDataValue,
        (
            ("value_sampled_data_origin_value", "origin_value"),
            ("value_sampled_data_origin_unit", "origin_unit"),
            ("value_sampled_data_origin_system", "origin_system"),
            ("value_sampled_data_origin_code", "origin_code"),
            ("value_sampled_data_period", "period"),
            ("value_sampled_data_dimensions", "dimensions"),
            ("value_sampled_data_data", "data"),
        ),
    ),
    ValueKind.PERIOD: (
        PeriodValue,
        (
            ("value_period_start", "start"),
            ("value_period_end", "end"),
        ),
    ),
}

# Order in which stored values are probed on the way out. Not commutative.
VALUE_PRIORITY: Tuple[ValueKind, ...] = (
    ValueKind.QUANTITY,
    ValueKind.CODEABLE_CONCEPT,
    ValueKind.STRING,
    ValueKind.SAMPLED_DATA,
    ValueKind.PERIOD,
)


# ---------------------------------------------------------------------------
# External -> internal
# ---------------------------------------------------------------------------

def _first_coding(concept: fhir.CodeableConcept) -> fhir.Coding:
    return concept.coding[0] if concept.coding else fhir.Coding()


def _quantity_in(q: fhir.Quantity) -> QuantityValue:
    return QuantityValue(value=q.value, unit=q.unit, system=q.system, code=q.code)


def _concept_in(c: fhir.CodeableConcept) -> ConceptValue:
    first = _first_coding(c)
    return ConceptValue(code=first.code, display=first.display, system=first.system, text=c.text)


def _sampled_data_in(sd: fhir.SampledData) -> SampledDataValue:
    origin = sd.origin or fhir.Quantity()
    return SampledDataValue(
        origin_value=origin.value,
        origin_unit=origin.unit,
        origin_system=origin.system,
        origin_code=origin.code,
        period=sd.period,
        dimensions=sd.dimensions,
        data=sd.data,
    )


def _period_in(p: fhir.Period) -> PeriodValue:
    return PeriodValue(start=_parse_optional(p.start), end=_parse_optional(p.end))


def classify_value(holder: fhir.ValueChoice) -> ObservationValue:
    """Turn whichever value[x] field is set on an Observation or component into a tagged value."""
    if holder.valueQuantity is not None:
        return _quantity_in(holder.valueQuantity)
    if holder.valueCodeableConcept is not None:
        return _concept_in(holder.valueCodeableConcept)
    if holder.valueString is not None:
        return StringValue(value=holder.valueString)
    if holder.valueSampledData is not None:
        return _sampled_data_in(holder.valueSampledData)
    if holder.valuePeriod is not None:
        return _period_in(holder.valuePeriod)
    for name in fhir.UNSUPPORTED_VALUE_FIELDS:
        if getattr(holder, name) is not None:
            return UnknownValue(field_name=name)
    return ABSENT


def _append_value(observation: Observation, kind: ValueKind, value: Optional[ObservationValue]) -> None:
    """Append one slot to every list of `kind`; None fills the slot for a component without one."""
    _, columns = _VALUE_LAYOUT[kind]
    for column, attr in columns:
        getattr(observation, column).append(getattr(value, attr) if value is not None else None)


def _flatten_codings(
    concept: fhir.CodeableConcept,
    codes: List[str],
    displays: List[str],
    systems: List[str],
) -> None:
    # Each field is filtered on its own; the three lists need not line up.
    for coding in concept.coding:
        if coding.code:
            codes.append(coding.code)
        if coding.display:
            displays.append(coding.display)
        if coding.system:
            systems.append(coding.system)


def parse_logical_id(raw: Optional[str]) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return 0


def _map_single_value(observation: Observation, source: fhir.Observation) -> None:
    value = classify_value(source)
    if value.kind in _VALUE_LAYOUT:
        _append_value(observation, value.kind, value)
    elif value.kind is ValueKind.UNKNOWN:
        log.warning(
            "Observation %s: dropping unsupported %s",
            observation.observation_id or "(new)",
            value.field_name,
        )


def _map_components(observation: Observation, source: fhir.Observation) -> None:
    values: List[ObservationValue] = []
    for component in source.component:
        concept = component.code or fhir.CodeableConcept()
        first = _first_coding(concept)
        observation.component_code_code.append(first.code)
        observation.component_code_display.append(first.display)
        observation.component_code_system.append(first.system)
        observation.component_code_text.append(concept.text)
        values.append(classify_value(component))

    # Pad every value family that is used at all, so index i is component i.
    for kind in VALUE_PRIORITY:
        if not any(v.kind is kind for v in values):
            continue
        for v in values:
            _append_value(observation, kind, v if v.kind is kind else None)

    dropped = [v.field_name for v in values if v.kind is ValueKind.UNKNOWN]
    if dropped:
        log.warning(
            "Observation %s: dropping unsupported component values %s",
            observation.observation_id or "(new)",
            ", ".join(dropped),
        )
    kinds = [k for k in VALUE_PRIORITY if any(v.kind is k for v in values)]
    if len(kinds) > 1:
        log.warning(
            "Observation %s: components mix value kinds %s; only %s will be returned",
            observation.observation_id or "(new)",
            ", ".join(k.value for k in kinds),
            kinds[0].value,
        )


def map_resource(resource: fhir.Resource) -> Observation:
    """
    Map an external Observation onto a new, unsaved Observation row.

    Absent fields stay at their defaults; only a wrong resource type or an
    unparsable date-time is an error.
    """
    if not isinstance(resource, fhir.Observation):
        raise TypeMismatch(
            f"Resource is of type {getattr(resource, 'resourceType', type(resource).__name__)}, "
            "expecting Observation"
        )
    source = resource

    observation = Observation()
    observation.observation_id = parse_logical_id(source.id)
    observation.status = _status_from_fhir(source.status)

    if source.category is not None:
        _flatten_codings(
            source.category,
            observation.category_code,
            observation.category_display,
            observation.category_system,
        )
        observation.category_text = source.category.text

    if source.code is not None:
        _flatten_codings(
            source.code,
            observation.code_code,
            observation.code_display,
            observation.code_system,
        )
        observation.code_text = source.code.text

    # References to other resources
    if source.subject is not None:
        observation.patient_reference = source.subject.reference
    if source.device is not None:
        observation.device_reference = source.device.reference
    for reference in source.performer:
        if reference.reference:
            observation.performer_references.append(reference.reference)

    # Effective time
    if source.effectiveDateTime is not None:
        observation.effective_date_time = parse_fhir_datetime(source.effectiveDateTime)
    elif source.effectivePeriod is not None:
        if source.effectivePeriod.start is not None:
            observation.effective_period_start = parse_fhir_datetime(source.effectivePeriod.start)
        if source.effectivePeriod.end is not None:
            observation.effective_period_end = parse_fhir_datetime(source.effectivePeriod.end)

    if source.issued is not None:
        observation.issued = parse_fhir_datetime(source.issued)

    if source.interpretation is not None:
        first = _first_coding(source.interpretation)
        observation.interpretation_code = first.code
        observation.interpretation_display = first.display
        observation.interpretation_system = first.system
        observation.interpretation_text = source.interpretation.text

    if source.comments:
        observation.comments = source.comments

    if source.bodySite is not None:
        first = _first_coding(source.bodySite)
        observation.body_site_code = first.code
        observation.body_site_display = first.display
        observation.body_site_system = first.system
        observation.body_site_text = source.bodySite.text

    if source.component:
        _map_components(observation, source)
    else:
        _map_single_value(observation, source)

    return observation


# ---------------------------------------------------------------------------
# Internal -> external
# ---------------------------------------------------------------------------

def _quantity_out(v: QuantityValue) -> Tuple[str, Any]:
    return "valueQuantity", fhir.Quantity(value=v.value, unit=v.unit, system=v.system, code=v.code)


def _concept_out(v: ConceptValue) -> Tuple[str, Any]:
    coding = []
    if v.code is not None or v.display is not None or v.system is not None:
        coding.append(fhir.Coding(code=v.code, display=v.display, system=v.system))
    return "valueCodeableConcept", fhir.CodeableConcept(coding=coding, text=v.text)


def _string_out(v: StringValue) -> Tuple[str, Any]:
    return "valueString", v.value


def _sampled_data_out(v: SampledDataValue) -> Tuple[str, Any]:
    origin = fhir.Quantity(
        value=v.origin_value,
        unit=v.origin_unit,
        system=v.origin_system,
        code=v.origin_code,
    )
    return "valueSampledData", fhir.SampledData(
        origin=origin, period=v.period, dimensions=v.dimensions, data=v.data
    )


def _period_out(v: PeriodValue) -> Tuple[str, Any]:
    return "valuePeriod", fhir.Period(start=_format_optional(v.start), end=_format_optional(v.end))


_VALUE_TO_FHIR: Dict[ValueKind, Callable[[Any], Tuple[str, Any]]] = {
    ValueKind.QUANTITY: _quantity_out,
    ValueKind.CODEABLE_CONCEPT: _concept_out,
    ValueKind.STRING: _string_out,
    ValueKind.SAMPLED_DATA: _sampled_data_out,
    ValueKind.PERIOD: _period_out,
}


def selected_value_kind(observation: Observation) -> Optional[ValueKind]:
    """First value family, in priority order, that holds anything at all."""
    for kind in VALUE_PRIORITY:
        probe_column = _VALUE_LAYOUT[kind][1][0][0]
        if getattr(observation, probe_column):
            return kind
    return None


def _value_at(observation: Observation, kind: ValueKind, index: int) -> Optional[ObservationValue]:
    cls, columns = _VALUE_LAYOUT[kind]
    if index >= len(getattr(observation, columns[0][0])):
        return None
    attrs = {attr: _at(getattr(observation, column), index) for column, attr in columns}
    if all(v is None for v in attrs.values()):
        return None
    return cls(**attrs)


def _set_value(holder: fhir.ValueChoice, value: Optional[ObservationValue]) -> None:
    if value is None:
        return
    field_name, element = _VALUE_TO_FHIR[value.kind](value)
    setattr(holder, field_name, element)


def _build_concept(
    codes: Sequence[Optional[str]],
    displays: Sequence[Optional[str]],
    systems: Sequence[Optional[str]],
    text: Optional[str],
) -> Optional[fhir.CodeableConcept]:
    if not (codes or displays or systems or text):
        return None
    count = max(len(codes), len(displays), len(systems))
    coding = [
        fhir.Coding(code=_at(codes, i), display=_at(displays, i), system=_at(systems, i))
        for i in range(count)
    ]
    return fhir.CodeableConcept(coding=coding, text=text)


def _build_single_concept(
    code: Optional[str],
    display: Optional[str],
    system: Optional[str],
    text: Optional[str],
) -> Optional[fhir.CodeableConcept]:
    if not (code or display or system or text):
        return None
    coding = []
    if code or display or system:
        coding.append(fhir.Coding(code=code, display=display, system=system))
    return fhir.CodeableConcept(coding=coding, text=text)


def stamp_metadata(resource: fhir.Resource, meta: RecordMetadata) -> fhir.Resource:
    resource.meta = fhir.Meta(
        versionId=str(meta.version_id),
        lastUpdated=format_fhir_datetime(meta.last_modified),
    )
    return resource


def map_model(observation: Optional[Observation], meta: Optional[RecordMetadata] = None) -> fhir.Observation:
    """
    Rebuild the external Observation from a stored row.
    `meta` (version + last modified of the latest history record) is stamped
    onto resource.meta when given.
    """
    if observation is None:
        raise NullInput("observation")

    resource = fhir.Observation(
        id=str(observation.observation_id),
        status=_status_to_fhir(observation.status),
    )

    resource.category = _build_concept(
        observation.category_code,
        observation.category_display,
        observation.category_system,
        observation.category_text,
    )
    resource.code = _build_concept(
        observation.code_code,
        observation.code_display,
        observation.code_system,
        observation.code_text,
    )

    # References to other resources
    if observation.patient_reference:
        resource.subject = fhir.Reference(reference=observation.patient_reference)
    if observation.device_reference:
        resource.device = fhir.Reference(reference=observation.device_reference)
    resource.performer = [
        fhir.Reference(reference=ref) for ref in observation.performer_references if ref
    ]

    # Effective time: the instant when we have one, else the interval
    if observation.effective_date_time is not None:
        resource.effectiveDateTime = format_fhir_datetime(observation.effective_date_time)
    else:
        now = utcnow()
        resource.effectivePeriod = fhir.Period(
            start=format_fhir_datetime(observation.effective_period_start or now),
            end=format_fhir_datetime(observation.effective_period_end or now),
        )

    resource.issued = _format_optional(observation.issued)
    resource.comments = observation.comments

    resource.bodySite = _build_single_concept(
        observation.body_site_code,
        observation.body_site_display,
        observation.body_site_system,
        observation.body_site_text,
    )
    resource.interpretation = _build_single_concept(
        observation.interpretation_code,
        observation.interpretation_display,
        observation.interpretation_system,
        observation.interpretation_text,
    )

    kind = selected_value_kind(observation)
    if observation.component_code_code:
        for i in range(len(observation.component_code_code)):
            code = fhir.CodeableConcept(
                coding=[
                    fhir.Coding(
                        code=observation.component_code_code[i],
                        display=_at(observation.component_code_display, i),
                        system=_at(observation.component_code_system, i),
                    )
                ],
                text=_at(observation.component_code_text, i),
            )
            component = fhir.ObservationComponent(code=code)
            if kind is not None:
                _set_value(component, _value_at(observation, kind, i))
            resource.component.append(component)
    elif kind is not None:
        _set_value(resource, _value_at(observation, kind, 0))

    if meta is not None:
        stamp_metadata(resource, meta)
    return resource
