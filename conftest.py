# conftest.py

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from fhir_server.api import app
from fhir_server.db import get_session, init_db, make_engine


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'fhir_test.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def client(session_factory):
    def _session_override():
        s = session_factory()
        try:
            yield s
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

    app.dependency_overrides[get_session] = _session_override
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def glucose_payload():
    return {
        "resourceType": "Observation",
        "status": "final",
        "category": {
            "coding": [
                {
                    "system": "http://hl7.org/fhir/observation-category",
                    "code": "laboratory",
                    "display": "Laboratory",
                }
            ]
        },
        "code": {
            "coding": [{"system": "http://loinc.org", "code": "2345-7", "display": "Glucose"}],
            "text": "Glucose",
        },
        "subject": {"reference": "Patient/99001"},
        "effectiveDateTime": "2024-12-27T12:00:00Z",
        "valueQuantity": {
            "value": 105,
            "unit": "mg/dL",
            "system": "http://unitsofmeasure.org",
            "code": "mg/dL",
        },
    }
