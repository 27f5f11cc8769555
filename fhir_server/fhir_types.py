# fhir_server/fhir_types.py
"""
Pydantic models for the slice of the FHIR (DSTU2) Observation we exchange.

This is the external shape of the resource: camelCase field names as they
appear on the wire, choice types spelled out as `valueQuantity`,
`valueString`, ... Serialisation helpers drop nulls and empty arrays, which
FHIR JSON does not allow.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class Element(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Coding(Element):
    system: Optional[str] = None
    version: Optional[str] = None
    code: Optional[str] = None
    display: Optional[str] = None


class CodeableConcept(Element):
    coding: List[Coding] = Field(default_factory=list)
    text: Optional[str] = None


class Quantity(Element):
    value: Optional[float] = None
    comparator: Optional[str] = None
    unit: Optional[str] = None
    system: Optional[str] = None
    code: Optional[str] = None


class SampledData(Element):
    origin: Optional[Quantity] = None
    period: Optional[float] = None
    factor: Optional[float] = None
    lowerLimit: Optional[float] = None
    upperLimit: Optional[float] = None
    dimensions: Optional[int] = None
    data: Optional[str] = None


class Period(Element):
    start: Optional[str] = None
    end: Optional[str] = None


class Reference(Element):
    reference: Optional[str] = None
    display: Optional[str] = None


class Meta(Element):
    versionId: Optional[str] = None
    lastUpdated: Optional[str] = None


class ValueChoice(Element):
    """value[x]. The first five are the kinds we store; the rest are accepted and dropped."""

    valueQuantity: Optional[Quantity] = None
    valueCodeableConcept: Optional[CodeableConcept] = None
    valueString: Optional[str] = None
    valueSampledData: Optional[SampledData] = None
    valuePeriod: Optional[Period] = None

    valueBoolean: Optional[bool] = None
    valueInteger: Optional[int] = None
    valueTime: Optional[str] = None
    valueDateTime: Optional[str] = None
    valueRange: Optional[Dict[str, Any]] = None
    valueRatio: Optional[Dict[str, Any]] = None
    valueAttachment: Optional[Dict[str, Any]] = None


# Choice fields we accept but do not store
UNSUPPORTED_VALUE_FIELDS = (
    "valueBoolean",
    "valueInteger",
    "valueTime",
    "valueDateTime",
    "valueRange",
    "valueRatio",
    "valueAttachment",
)


class ObservationComponent(ValueChoice):
    code: Optional[CodeableConcept] = None


class Resource(Element):
    resourceType: str
    id: Optional[str] = None
    meta: Optional[Meta] = None


class Observation(Resource, ValueChoice):
    resourceType: Literal["Observation"] = "Observation"
    status: Optional[str] = None
    category: Optional[CodeableConcept] = None
    code: Optional[CodeableConcept] = None
    subject: Optional[Reference] = None
    device: Optional[Reference] = None
    performer: List[Reference] = Field(default_factory=list)
    effectiveDateTime: Optional[str] = None
    effectivePeriod: Optional[Period] = None
    issued: Optional[str] = None
    interpretation: Optional[CodeableConcept] = None
    comments: Optional[str] = None
    bodySite: Optional[CodeableConcept] = None
    component: List[ObservationComponent] = Field(default_factory=list)


def parse_resource(payload: Dict[str, Any]) -> Resource:
    """
    Build the external model for a decoded JSON body.
    Observations get the full model; any other resourceType comes back as a
    bare Resource so the caller can reject it by type.
    Raises pydantic.ValidationError on a structurally invalid body.
    """
    if payload.get("resourceType") == "Observation":
        return Observation.model_validate(payload)
    return Resource.model_validate(payload)


def _prune(node: Any) -> Any:
    if isinstance(node, dict):
        out = {}
        for k, v in node.items():
            v = _prune(v)
            if v is None or v == [] or v == {}:
                continue
            out[k] = v
        return out
    if isinstance(node, list):
        return [v for v in (_prune(x) for x in node) if v is not None and v != {}]
    return node


# Elements kept when a client asks for `_summary=true`; value[x] is matched by prefix
SUMMARY_ELEMENTS = frozenset(
    {
        "resourceType",
        "id",
        "meta",
        "status",
        "category",
        "code",
        "subject",
        "effectiveDateTime",
        "effectivePeriod",
        "issued",
    }
)


def _is_summary_element(name: str) -> bool:
    return name in SUMMARY_ELEMENTS or name.startswith("value")


def to_fhir_dict(resource: Resource, summary: bool = False) -> Dict[str, Any]:
    data = _prune(resource.model_dump(exclude_none=True))
    if summary:
        data = {k: v for k, v in data.items() if _is_summary_element(k)}
    # resourceType leads, as in every FHIR JSON example
    return {"resourceType": data.pop("resourceType"), **data}


def to_fhir_json(resource: Resource, summary: bool = False) -> str:
    return json.dumps(to_fhir_dict(resource, summary=summary))
