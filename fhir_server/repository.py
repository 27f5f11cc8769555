# fhir_server/repository.py

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from . import fhir_types as fhir
from .errors import ConcurrencyConflict
from .mapper import stamp_metadata
from .models import CONTENT_COLUMNS, Observation, ObservationRecord, RecordAction
from .values import RecordMetadata, utcnow

log = logging.getLogger(__name__)


def record_metadata(record: ObservationRecord) -> RecordMetadata:
    return RecordMetadata(version_id=record.version_id, last_modified=record.last_modified)


class ObservationRepository:
    """
    Current-state rows plus their append-only history, over one Session.

    The session is the unit of work: nothing reaches the database until save().
    Within it the current row is always written before its history record.
    """

    def __init__(self, session: Session):
        self.session = session

    # ---------- current state ----------

    def get_resource_by_id(self, observation_id: int) -> Optional[Observation]:
        """Soft-deleted rows are returned too; callers check is_deleted."""
        return self.session.get(Observation, observation_id)

    def resource_exists(self, observation_id: int) -> bool:
        stmt = select(func.count()).select_from(Observation).where(
            Observation.observation_id == observation_id
        )
        return self.session.scalar(stmt) > 0

    def add_resource(self, resource: Observation) -> Observation:
        if not resource.observation_id:
            resource.observation_id = None  # let the database assign it
        resource.version_id = 1
        resource.is_deleted = False
        self.session.add(resource)
        self._flush()  # get observation_id without full commit yet
        log.info("Observation %s added", resource.observation_id)
        return resource

    def update_resource(self, resource: Observation) -> Observation:
        """
        Overwrite the stored row's content with `resource` and bump its version.
        The logical id and the deletion flag are never changed here.
        Returns the persistent row.
        """
        current = self.get_resource_by_id(resource.observation_id)
        if current is None:
            raise LookupError(f"Observation {resource.observation_id} does not exist")

        if current is not resource:
            for name in CONTENT_COLUMNS:
                value = getattr(resource, name)
                setattr(current, name, list(value) if isinstance(value, list) else value)
        current.version_id = current.version_id + 1

        if current.is_deleted:
            log.warning(
                "Observation %s is deleted; content updated but it stays deleted",
                current.observation_id,
            )
        return current

    def delete_resource(self, resource: Observation) -> Observation:
        """Soft delete: flips is_deleted, keeps the row."""
        resource.is_deleted = True
        resource.version_id = resource.version_id + 1
        return resource

    # ---------- history ----------

    def get_latest_record(self, observation_id: int) -> Optional[ObservationRecord]:
        stmt = (
            select(ObservationRecord)
            .where(ObservationRecord.observation_id == observation_id)
            .order_by(ObservationRecord.version_id.desc())
            .limit(1)
        )
        return self.session.scalars(stmt).first()

    def add_create_record(self, resource: Observation) -> ObservationRecord:
        return self._append_record(resource, 1, RecordAction.CREATE)

    def add_update_record(
        self, resource: Observation, record: Optional[ObservationRecord]
    ) -> ObservationRecord:
        return self._append_record(resource, self._next_version(resource, record), RecordAction.UPDATE)

    def add_delete_record(
        self, resource: Observation, record: Optional[ObservationRecord]
    ) -> ObservationRecord:
        return self._append_record(resource, self._next_version(resource, record), RecordAction.DELETE)

    def _next_version(self, resource: Observation, record: Optional[ObservationRecord]) -> int:
        if record is not None:
            return record.version_id + 1
        # row written outside the repository; history starts at its current version
        log.warning("Observation %s has no history record", resource.observation_id)
        return resource.version_id

    def _append_record(
        self, resource: Observation, version_id: int, action: RecordAction
    ) -> ObservationRecord:
        record = ObservationRecord(
            observation_id=resource.observation_id,
            version_id=version_id,
            last_modified=utcnow(),
            action=action,
        )
        self.session.add(record)
        self._flush()
        log.info("Observation %s: %s record v%d", resource.observation_id, action.value, version_id)
        return record

    # ---------- metadata ----------

    def add_metadata(
        self, resource: Observation, fhir_resource: fhir.Resource, record: ObservationRecord
    ) -> fhir.Resource:
        """Stamp version and last-modified of `record` onto the outbound resource. Nothing is persisted."""
        return stamp_metadata(fhir_resource, record_metadata(record))

    # ---------- unit of work ----------

    def save(self) -> None:
        try:
            self.session.commit()
        except (StaleDataError, IntegrityError) as e:
            self.session.rollback()
            log.warning("Commit rejected, concurrent modification: %s", e)
            raise ConcurrencyConflict(str(e)) from e

    def _flush(self) -> None:
        try:
            self.session.flush()
        except (StaleDataError, IntegrityError) as e:
            self.session.rollback()
            log.warning("Flush rejected, concurrent modification: %s", e)
            raise ConcurrencyConflict(str(e)) from e
