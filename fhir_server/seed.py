# fhir_server/seed.py
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .db import SessionLocal, init_db
from .fhir_types import parse_resource
from .mapper import map_resource
from .repository import ObservationRepository

LOINC = "http://loinc.org"
UCUM = "http://unitsofmeasure.org"
OBS_CATEGORY = "http://hl7.org/fhir/observation-category"

# Sample Observations covering each stored value kind
SAMPLE_OBSERVATIONS: List[Dict[str, Any]] = [
    # Glucose, single Quantity value with interpretation
    {
        "resourceType": "Observation",
        "status": "final",
        "category": {
            "coding": [{"system": OBS_CATEGORY, "code": "laboratory", "display": "Laboratory"}]
        },
        "code": {
            "coding": [{"system": LOINC, "code": "2345-7", "display": "Glucose [Mass/volume] in Serum or Plasma"}],
            "text": "Glucose",
        },
        "subject": {"reference": "Patient/99001"},
        "effectiveDateTime": "2024-12-27T12:00:00Z",
        "issued": "2024-12-27T12:30:00Z",
        "valueQuantity": {"value": 105, "unit": "mg/dL", "system": UCUM, "code": "mg/dL"},
        "interpretation": {
            "coding": [
                {
                    "system": "http://hl7.org/fhir/v2/0078",
                    "code": "H",
                    "display": "High",
                }
            ]
        },
    },
    # Blood pressure, two Quantity components
    {
        "resourceType": "Observation",
        "status": "final",
        "category": {
            "coding": [{"system": OBS_CATEGORY, "code": "vital-signs", "display": "Vital Signs"}]
        },
        "code": {
            "coding": [{"system": LOINC, "code": "55284-4", "display": "Blood pressure systolic and diastolic"}],
        },
        "subject": {"reference": "Patient/88002"},
        "performer": [{"reference": "Practitioner/12"}],
        "effectivePeriod": {"start": "2024-12-26T14:30:00Z", "end": "2024-12-26T14:35:00Z"},
        "bodySite": {
            "coding": [{"system": "http://snomed.info/sct", "code": "368209003", "display": "Right arm"}]
        },
        "component": [
            {
                "code": {"coding": [{"system": LOINC, "code": "8480-6", "display": "Systolic blood pressure"}]},
                "valueQuantity": {"value": 138, "unit": "mmHg", "system": UCUM, "code": "mm[Hg]"},
            },
            {
                "code": {"coding": [{"system": LOINC, "code": "8462-4", "display": "Diastolic blood pressure"}]},
                "valueQuantity": {"value": 88, "unit": "mmHg", "system": UCUM, "code": "mm[Hg]"},
            },
        ],
    },
    # Blood type, CodeableConcept value
    {
        "resourceType": "Observation",
        "status": "final",
        "code": {"coding": [{"system": LOINC, "code": "882-1", "display": "ABO and Rh group"}]},
        "subject": {"reference": "Patient/77003"},
        "effectiveDateTime": "2024-12-25T10:15:00Z",
        "valueCodeableConcept": {
            "coding": [{"system": "http://snomed.info/sct", "code": "278149003", "display": "Blood group A Rh(D) positive"}],
            "text": "A+",
        },
    },
    # Free-text note, String value
    {
        "resourceType": "Observation",
        "status": "preliminary",
        "code": {"text": "Clinical note"},
        "subject": {"reference": "Patient/66004"},
        "effectiveDateTime": "2024-12-24",
        "valueString": "Lipid profile significantly elevated. Lifestyle modification advised.",
        "comments": "Awaiting cardiology review.",
    },
    # ECG lead, SampledData value
    {
        "resourceType": "Observation",
        "status": "final",
        "code": {"coding": [{"system": LOINC, "code": "131328", "display": "MDC_ECG_ELEC_POTL"}]},
        "subject": {"reference": "Patient/22008"},
        "device": {"reference": "Device/ecg-1"},
        "effectiveDateTime": "2024-12-20T16:30:00Z",
        "valueSampledData": {
            "origin": {"value": 2048},
            "period": 10,
            "dimensions": 1,
            "data": "2041 2043 2047 2053 2050 2044",
        },
    },
]


def seed_database(session: Optional[Session] = None, verbose: bool = True) -> int:
    """
    Create each sample Observation with its CREATE record. Returns how many were stored.
    """
    if verbose:
        print("Seeding database with sample observations...")

    own_session = session is None
    if own_session:
        init_db()
        session = SessionLocal()

    repo = ObservationRepository(session)
    success_count = 0
    try:
        for i, payload in enumerate(SAMPLE_OBSERVATIONS, 1):
            observation = repo.add_resource(map_resource(parse_resource(payload)))
            repo.add_create_record(observation)
            repo.save()
            if verbose:
                print(f"  [OK] Seeded observation {i}/{len(SAMPLE_OBSERVATIONS)} as id {observation.observation_id}")
            success_count += 1
    finally:
        if own_session:
            session.close()

    return success_count


if __name__ == "__main__":
    seed_database()
