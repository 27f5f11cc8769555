# fhir_server/api.py

from __future__ import annotations

import logging
from datetime import timezone
from email.utils import format_datetime
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError
from sqlalchemy.orm import Session

from . import fhir_types as fhir
from .config import FHIR_BASE_PATH, FHIR_JSON_MIME, TEST_SENTINEL_ID
from .db import get_session, init_db
from .errors import ConcurrencyConflict, MalformedDateTime, TypeMismatch
from .logging_setup import setup_logging
from .mapper import map_model, map_resource, parse_logical_id
from .models import Observation, ObservationRecord
from .repository import ObservationRepository

log = logging.getLogger(__name__)

OBSERVATION_PATH = f"{FHIR_BASE_PATH}/Observation"

# `_format` values we can serve; everything maps onto FHIR JSON
JSON_FORMATS = {
    "json",
    "application/json",
    "application/json+fhir",
    "application/fhir+json",
}

app = FastAPI(title="FHIR Observation Server")


@app.on_event("startup")
async def startup_event():
    setup_logging()
    init_db()


# ---------- Error mapping ----------

@app.exception_handler(ConcurrencyConflict)
async def concurrency_conflict_handler(request: Request, exc: ConcurrencyConflict):
    return JSONResponse(
        status_code=409,
        content={"detail": "Observation was modified concurrently, re-read and retry."},
    )


@app.exception_handler(MalformedDateTime)
async def malformed_datetime_handler(request: Request, exc: MalformedDateTime):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(TypeMismatch)
async def type_mismatch_handler(request: Request, exc: TypeMismatch):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    # FHIR clients expect 400 for a malformed request, not 422
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


# ---------- Helpers ----------

def get_repository(session: Session = Depends(get_session)) -> ObservationRepository:
    return ObservationRepository(session)


def fix_mime_string(fmt: Optional[str]) -> str:
    """
    Normalise the `_format` parameter. Only JSON is served; anything else is 415.
    """
    if fmt is None or not fmt.strip():
        return FHIR_JSON_MIME
    s = fmt.strip().lower().split(";", 1)[0].strip()
    if s in JSON_FORMATS:
        return FHIR_JSON_MIME
    raise HTTPException(status_code=415, detail=f"Unsupported _format {fmt!r}, only FHIR JSON is served")


def _parse_observation(payload: Dict[str, Any]) -> fhir.Observation:
    try:
        resource = fhir.parse_resource(payload)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid FHIR resource: {e.error_count()} error(s)")
    if not isinstance(resource, fhir.Observation):
        raise HTTPException(status_code=400, detail="Resource is of the wrong type, expecting Observation!")
    return resource


def _version_headers(record: Optional[ObservationRecord]) -> Dict[str, str]:
    if record is None:
        return {}
    last_modified = record.last_modified.replace(tzinfo=timezone.utc)
    return {
        "Last-Modified": format_datetime(last_modified, usegmt=True),
        "ETag": f'W/"{record.version_id}"',
    }


def _fhir_response(
    resource: fhir.Resource,
    status_code: int,
    media_type: str,
    record: Optional[ObservationRecord],
    headers: Optional[Dict[str, str]] = None,
    summary: bool = False,
) -> Response:
    all_headers = _version_headers(record)
    all_headers.update(headers or {})
    return Response(
        content=fhir.to_fhir_json(resource, summary=summary),
        status_code=status_code,
        media_type=media_type,
        headers=all_headers,
    )


def _create(
    repo: ObservationRepository,
    observation: Observation,
    request: Request,
    media_type: str,
) -> Response:
    current = repo.add_resource(observation)
    record = repo.add_create_record(current)
    repo.save()

    resource = repo.add_metadata(current, map_model(current), record)
    location = str(request.url_for("read_observation", observation_id=current.observation_id))
    return _fhir_response(resource, 201, media_type, record, headers={"Location": location})


# ---------- Routes ----------

@app.get("/health")
def health_check() -> Dict[str, str]:
    return {"status": "ok"}


@app.get(OBSERVATION_PATH + "/{observation_id}")
def read_observation(
    observation_id: int,
    format_: Optional[str] = Query(None, alias="_format"),
    summary: bool = Query(False, alias="_summary"),
    repo: ObservationRepository = Depends(get_repository),
) -> Response:
    """
    Current version of one Observation. 404 if it never existed, 410 if deleted.
    `_summary=true` trims the body to the summary elements.
    """
    media_type = fix_mime_string(format_)

    observation = repo.get_resource_by_id(observation_id)
    if observation is None:
        raise HTTPException(status_code=404, detail=f"Observation with id {observation_id} not found!")
    if observation.is_deleted:
        raise HTTPException(status_code=410, detail=f"Observation with id {observation_id} has been deleted!")

    record = repo.get_latest_record(observation_id)
    resource = map_model(observation)
    if record is not None:
        resource = repo.add_metadata(observation, resource, record)
    return _fhir_response(resource, 200, media_type, record, summary=summary)


@app.put(OBSERVATION_PATH + "/{observation_id}")
def update_observation(
    observation_id: int,
    request: Request,
    payload: Dict[str, Any] = Body(...),
    format_: Optional[str] = Query(None, alias="_format"),
    repo: ObservationRepository = Depends(get_repository),
) -> Response:
    """
    Update by id. An id that does not exist yet is created (201) rather than rejected.
    """
    media_type = fix_mime_string(format_)
    fhir_observation = _parse_observation(payload)

    if fhir_observation.id is None:
        raise HTTPException(status_code=400, detail="Observation to be updated should have a logical ID!")
    if observation_id <= 0:
        raise HTTPException(status_code=400, detail=f"Invalid observation ID {observation_id} in URL!")
    payload_id = parse_logical_id(fhir_observation.id)
    if payload_id <= 0:
        raise HTTPException(
            status_code=400,
            detail=f"Logical ID {fhir_observation.id!r} is not a positive integer!",
        )
    if payload_id != observation_id:
        raise HTTPException(
            status_code=400,
            detail=(
                f"Mismatch of observation ID! Provided {observation_id} in URL "
                f"but found {fhir_observation.id} in payload!"
            ),
        )

    observation = map_resource(fhir_observation)

    if not repo.resource_exists(observation_id):
        return _create(repo, observation, request, media_type)

    previous = repo.get_latest_record(observation_id)
    current = repo.update_resource(observation)
    record = repo.add_update_record(current, previous)
    repo.save()

    resource = repo.add_metadata(current, map_model(current), record)
    return _fhir_response(resource, 200, media_type, record)


@app.post(OBSERVATION_PATH)
def create_observation(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    format_: Optional[str] = Query(None, alias="_format"),
    test: bool = False,
    repo: ObservationRepository = Depends(get_repository),
) -> Response:
    """
    Create with a server-assigned id. `test=true` pins the id to the fixture sentinel.
    """
    media_type = fix_mime_string(format_)
    fhir_observation = _parse_observation(payload)

    if fhir_observation.id is not None:
        raise HTTPException(
            status_code=400, detail="Observation to be added should NOT already have a logical ID!"
        )

    observation = map_resource(fhir_observation)
    if test and observation.observation_id == 0:
        observation.observation_id = TEST_SENTINEL_ID

    return _create(repo, observation, request, media_type)


@app.delete(OBSERVATION_PATH + "/{observation_id}", status_code=204)
def delete_observation(
    observation_id: int,
    repo: ObservationRepository = Depends(get_repository),
) -> Response:
    """
    Soft delete. Deleting something absent or already deleted is still a success.
    """
    observation = repo.get_resource_by_id(observation_id)
    if observation is None:
        return Response(status_code=204)
    if observation.is_deleted:
        return Response(status_code=204, headers={"X-Resource-Status": "already-deleted"})

    previous = repo.get_latest_record(observation_id)
    repo.delete_resource(observation)
    repo.add_delete_record(observation, previous)
    repo.save()
    log.info("Observation %s deleted", observation_id)
    return Response(status_code=204)
