# test_repository.py

import pytest
from sqlalchemy import select

from fhir_server import fhir_types as fhir
from fhir_server.errors import ConcurrencyConflict
from fhir_server.mapper import map_model, map_resource
from fhir_server.models import Observation, ObservationRecord, RecordAction
from fhir_server.repository import ObservationRepository
from fhir_server.seed import SAMPLE_OBSERVATIONS, seed_database
from fhir_server.values import ObservationStatus


def _create(repo, payload):
    observation = repo.add_resource(map_resource(fhir.parse_resource(payload)))
    record = repo.add_create_record(observation)
    repo.save()
    return observation, record


def _update(repo, observation_id, payload):
    amended = dict(payload, id=str(observation_id))
    previous = repo.get_latest_record(observation_id)
    current = repo.update_resource(map_resource(fhir.parse_resource(amended)))
    record = repo.add_update_record(current, previous)
    repo.save()
    return current, record


def _history(session, observation_id):
    stmt = (
        select(ObservationRecord)
        .where(ObservationRecord.observation_id == observation_id)
        .order_by(ObservationRecord.version_id)
    )
    return [(r.version_id, r.action) for r in session.scalars(stmt)]


def test_add_resource_assigns_id_and_first_version(session, glucose_payload):
    repo = ObservationRepository(session)
    observation, record = _create(repo, glucose_payload)

    assert observation.observation_id > 0
    assert observation.version_id == 1
    assert observation.is_deleted is False
    assert record.version_id == 1
    assert record.action == RecordAction.CREATE
    assert repo.resource_exists(observation.observation_id)
    assert not repo.resource_exists(observation.observation_id + 1000)


def test_add_resource_keeps_explicit_id(session, glucose_payload):
    repo = ObservationRepository(session)
    observation, _ = _create(repo, dict(glucose_payload, id="555"))
    assert observation.observation_id == 555
    assert repo.get_resource_by_id(555) is observation


def test_full_lifecycle_history(session, glucose_payload):
    repo = ObservationRepository(session)
    observation, _ = _create(repo, glucose_payload)
    oid = observation.observation_id
    assert repo.get_latest_record(oid).version_id == 1

    _update(repo, oid, dict(glucose_payload, status="amended"))
    assert repo.get_latest_record(oid).version_id == 2

    amended = dict(glucose_payload, status="amended", comments="re-run")
    current, _ = _update(repo, oid, amended)
    assert current.observation_id == oid
    assert current.comments == "re-run"
    assert repo.get_latest_record(oid).version_id == 3

    previous = repo.get_latest_record(oid)
    repo.delete_resource(current)
    repo.add_delete_record(current, previous)
    repo.save()

    latest = repo.get_latest_record(oid)
    assert (latest.version_id, latest.action) == (4, RecordAction.DELETE)
    assert _history(session, oid) == [
        (1, RecordAction.CREATE),
        (2, RecordAction.UPDATE),
        (3, RecordAction.UPDATE),
        (4, RecordAction.DELETE),
    ]

    # soft delete: the row is still there, flagged
    stored = repo.get_resource_by_id(oid)
    assert stored is not None
    assert stored.is_deleted is True
    assert stored.version_id == 4
    assert stored.status == ObservationStatus.AMENDED


def test_update_overwrites_content_but_not_identity(session, glucose_payload):
    repo = ObservationRepository(session)
    observation, _ = _create(repo, glucose_payload)
    oid = observation.observation_id

    changed = dict(glucose_payload)
    changed["valueQuantity"] = {"value": 140, "unit": "mg/dL"}
    changed["subject"] = {"reference": "Patient/2"}
    current, record = _update(repo, oid, changed)

    session.expire_all()
    stored = repo.get_resource_by_id(oid)
    assert stored.value_quantity_value == [140.0]
    assert stored.patient_reference == "Patient/2"
    assert stored.version_id == 2
    assert record.action == RecordAction.UPDATE

    count = len(session.scalars(select(Observation)).all())
    assert count == 1


def test_update_of_missing_row_is_an_error(session, glucose_payload):
    repo = ObservationRepository(session)
    with pytest.raises(LookupError):
        repo.update_resource(map_resource(fhir.parse_resource(dict(glucose_payload, id="404"))))


def test_update_of_deleted_row_keeps_it_deleted(session, glucose_payload):
    repo = ObservationRepository(session)
    observation, record = _create(repo, glucose_payload)
    repo.delete_resource(observation)
    repo.add_delete_record(observation, record)
    repo.save()

    current, _ = _update(repo, observation.observation_id, dict(glucose_payload, status="cancelled"))
    assert current.is_deleted is True
    assert current.status == ObservationStatus.CANCELLED


def test_add_metadata_uses_record_version(session, glucose_payload):
    repo = ObservationRepository(session)
    observation, record = _create(repo, glucose_payload)

    resource = repo.add_metadata(observation, map_model(observation), record)
    assert resource.meta.versionId == "1"
    assert resource.meta.lastUpdated.endswith("Z")


def test_concurrent_update_is_rejected(session_factory, glucose_payload):
    with session_factory() as setup:
        observation, _ = _create(ObservationRepository(setup), glucose_payload)
        oid = observation.observation_id

    first = session_factory()
    second = session_factory()
    try:
        repo_a = ObservationRepository(first)
        repo_b = ObservationRepository(second)

        # both writers read version 1
        assert repo_a.get_resource_by_id(oid).version_id == 1
        assert repo_b.get_resource_by_id(oid).version_id == 1
        previous_b = repo_b.get_latest_record(oid)

        _update(repo_a, oid, dict(glucose_payload, status="amended"))

        stale = repo_b.update_resource(
            map_resource(fhir.parse_resource(dict(glucose_payload, id=str(oid), status="cancelled")))
        )
        with pytest.raises(ConcurrencyConflict):
            repo_b.add_update_record(stale, previous_b)
            repo_b.save()
    finally:
        first.close()
        second.close()

    with session_factory() as check:
        repo = ObservationRepository(check)
        stored = repo.get_resource_by_id(oid)
        assert stored.version_id == 2
        assert stored.status == ObservationStatus.AMENDED
        assert _history(check, oid) == [(1, RecordAction.CREATE), (2, RecordAction.UPDATE)]


def test_duplicate_explicit_id_is_a_conflict(session, glucose_payload):
    repo = ObservationRepository(session)
    _create(repo, dict(glucose_payload, id="77"))

    other = ObservationRepository(session)
    with pytest.raises(ConcurrencyConflict):
        # fresh transient row with the same primary key
        session.expunge_all()
        other.add_resource(map_resource(fhir.parse_resource(dict(glucose_payload, id="77"))))


def test_seed_database_creates_every_sample(session):
    assert seed_database(session, verbose=False) == len(SAMPLE_OBSERVATIONS)

    stored = session.scalars(select(Observation)).all()
    assert len(stored) == len(SAMPLE_OBSERVATIONS)
    repo = ObservationRepository(session)
    for observation in stored:
        record = repo.get_latest_record(observation.observation_id)
        assert (record.version_id, record.action) == (1, RecordAction.CREATE)
