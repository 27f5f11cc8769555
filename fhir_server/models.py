# fhir_server/models.py

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.ext.mutable import MutableList
from sqlalchemy.orm import relationship

from .db import Base
from .values import ObservationStatus, utcnow


class JsonList(TypeDecorator):
    """Ordered list of scalars stored as a JSON array; NULL reads back as []."""

    impl = JSON
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        return list(value) if value is not None else []

    def process_result_value(self, value: Any, dialect: Any) -> List[Any]:
        return value if value is not None else []


class DateTimeList(TypeDecorator):
    """List of naive-UTC datetimes stored as a JSON array of ISO strings."""

    impl = JSON
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return []
        return [v.isoformat() if v is not None else None for v in value]

    def process_result_value(self, value: Any, dialect: Any) -> List[Optional[datetime]]:
        if value is None:
            return []
        return [datetime.fromisoformat(v) if v is not None else None for v in value]


def _list_column(kind: Any = JsonList) -> Column:
    return Column(MutableList.as_mutable(kind), nullable=False, default=list)


class RecordAction(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    UNASSIGNED = "UNASSIGNED"


class Observation(Base):
    """
    Current state of one FHIR Observation, flattened.

    Repeatable coded elements are parallel lists (code/display/system kept
    separately). Values are parallel lists too: one entry in single-value mode,
    one entry per component when component_code_* is populated.
    """

    __tablename__ = "observations"

    observation_id = Column(Integer, primary_key=True, autoincrement=True)
    version_id = Column(Integer, nullable=False)
    is_deleted = Column(Boolean, nullable=False, default=False)

    status = Column(
        Enum(
            ObservationStatus,
            native_enum=False,
            length=20,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=ObservationStatus.ENTERED_IN_ERROR,
    )

    # Category
    category_code = _list_column()
    category_display = _list_column()
    category_system = _list_column()
    category_text = Column(Text)

    # Code
    code_code = _list_column()
    code_display = _list_column()
    code_system = _list_column()
    code_text = Column(Text)

    # References to other resources
    patient_reference = Column(String(255))
    device_reference = Column(String(255))
    performer_references = _list_column()

    # Effective time: either the instant or the interval
    effective_date_time = Column(DateTime, nullable=True)
    effective_period_start = Column(DateTime)
    effective_period_end = Column(DateTime)
    issued = Column(DateTime)

    # Interpretation
    interpretation_code = Column(String(255))
    interpretation_display = Column(Text)
    interpretation_system = Column(String(255))
    interpretation_text = Column(Text)

    comments = Column(Text)

    # Body site
    body_site_code = Column(String(255))
    body_site_display = Column(Text)
    body_site_system = Column(String(255))
    body_site_text = Column(Text)

    # Components (index-aligned with the value lists below)
    component_code_code = _list_column()
    component_code_display = _list_column()
    component_code_system = _list_column()
    component_code_text = _list_column()

    # value[x] = Quantity
    value_quantity_value = _list_column()
    value_quantity_unit = _list_column()
    value_quantity_system = _list_column()
    value_quantity_code = _list_column()

    # value[x] = CodeableConcept
    value_code = _list_column()
    value_display = _list_column()
    value_system = _list_column()
    value_text = _list_column()

    # value[x] = string
    value_string = _list_column()

    # value[x] = SampledData
    value_sampled_data_origin_value = _list_column()
    value_sampled_data_origin_unit = _list_column()
    value_sampled_data_origin_system = _list_column()
    value_sampled_data_origin_code = _list_column()
    value_sampled_data_period = _list_column()
    value_sampled_data_dimensions = _list_column()
    value_sampled_data_data = _list_column()

    # value[x] = Period
    value_period_start = _list_column(DateTimeList)
    value_period_end = _list_column(DateTimeList)

    records = relationship(
        "ObservationRecord",
        back_populates="observation",
        order_by="ObservationRecord.version_id",
    )

    # UPDATE ... WHERE version_id = <value read>; the repository sets the new value
    __mapper_args__ = {"version_id_col": version_id, "version_id_generator": False}

    def __init__(self, **kwargs: Any) -> None:
        for name in LIST_COLUMNS:
            kwargs.setdefault(name, [])
        now = utcnow()
        kwargs.setdefault("observation_id", 0)
        kwargs.setdefault("version_id", 0)
        kwargs.setdefault("is_deleted", False)
        kwargs.setdefault("status", ObservationStatus.ENTERED_IN_ERROR)
        kwargs.setdefault("effective_period_start", now)
        kwargs.setdefault("effective_period_end", now)
        kwargs.setdefault("issued", now)
        super().__init__(**kwargs)

    def __repr__(self) -> str:
        return f"<Observation(id={self.observation_id}, v={self.version_id}, deleted={self.is_deleted})>"


class ObservationRecord(Base):
    """
    One immutable history entry per create/update/delete of an Observation.
    Never updated, never deleted.
    """

    __tablename__ = "observation_records"
    __table_args__ = (
        UniqueConstraint("observation_id", "version_id", name="uq_observation_version"),
    )

    record_id = Column(Integer, primary_key=True, autoincrement=True)
    observation_id = Column(
        Integer, ForeignKey("observations.observation_id"), nullable=False, index=True
    )
    version_id = Column(Integer, nullable=False)
    last_modified = Column(DateTime, nullable=False, default=utcnow)
    action = Column(
        Enum(RecordAction, native_enum=False, length=12),
        nullable=False,
        default=RecordAction.UNASSIGNED,
    )

    observation = relationship("Observation", back_populates="records")

    def __repr__(self) -> str:
        return (
            f"<ObservationRecord(observation_id={self.observation_id}, "
            f"v={self.version_id}, action={self.action})>"
        )


# Everything stored as a list column, in declaration order
LIST_COLUMNS = tuple(
    c.name for c in Observation.__table__.columns if isinstance(c.type, TypeDecorator)
)

# Columns copied when an update overwrites the current row in place
CONTENT_COLUMNS = tuple(
    c.name
    for c in Observation.__table__.columns
    if c.name not in ("observation_id", "version_id", "is_deleted")
)
