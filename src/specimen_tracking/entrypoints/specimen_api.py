"""
Specimen Tracking API - status reads and transition commands.
Following Cosmic Python pattern: thin API layer dispatches commands through
the message bus and delegates reads to views.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import create_engine
import logging

import config
from specimen_tracking import views
from specimen_tracking.adapters import orm
from specimen_tracking.adapters.legacy_rows import parse_program
from specimen_tracking.domain.commands import PackageSpecimens, RecordTransition, RegisterSpecimen
from specimen_tracking.domain.model import Stage
from specimen_tracking.domain.transitions import TransitionError
from specimen_tracking.service_layer import messagebus
from specimen_tracking.service_layer.handlers import (
    SpecimenAlreadyExists,
    SpecimenNotFound,
    TransitionRejected,
    UnknownProgram,
)
from specimen_tracking.service_layer.unit_of_work import SqlAlchemyUnitOfWork

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Specimen Tracking API",
    description="Specimen lifecycle status and transitions for viral load and EID programs",
    version="1.0.0"
)

ERROR_STATUS_CODES = {
    TransitionError.ILLEGAL_ACTION: 409,
    TransitionError.OUT_OF_ORDER_TIMESTAMP: 422,
    TransitionError.MISSING_REQUIRED_FIELD: 422,
    TransitionError.UNAUTHORIZED: 403,
    TransitionError.CONFLICT: 409,
}


@app.on_event("startup")
async def startup_event():
    engine = create_engine(config.get_postgres_uri())
    orm.metadata.create_all(engine)
    orm.start_mappers()
    logger.info("ORM mappers initialized")


def get_uow():
    return SqlAlchemyUnitOfWork()


# ---------- Request/Response models ----------

class RegisterSpecimenRequest(BaseModel):
    program: str
    sample_id: str
    requested_at: datetime
    notes: Optional[str] = None


class TransitionRequest(BaseModel):
    action: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    expected_version: Optional[int] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "action": "collect",
                "payload": {
                    "when": "2024-10-24T09:30:00+00:00",
                    "collector": "nurse-17",
                    "sample_type": "P",
                },
                "expected_version": 1,
            }
        }
    }


class TransitionResponse(BaseModel):
    program: str
    sample_id: str
    action: str
    stage_before: str
    stage: str
    version_number: int


class PackageSpecimensRequest(BaseModel):
    package_id: str
    sample_ids: List[str] = Field(min_length=1)
    when: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None


def _transition_http_error(e: TransitionRejected) -> HTTPException:
    return HTTPException(
        status_code=ERROR_STATUS_CODES[e.error],
        detail={
            "error": e.error.value,
            "message": e.error.user_message,
            "detail": e.detail,
        },
    )


def _resolve_program(program: str):
    parsed = parse_program(program)
    if parsed is None:
        raise HTTPException(status_code=404, detail=f"Unknown testing program: {program}")
    return parsed


# ---------- Endpoints ----------

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "specimen-tracking-api",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.post("/api/v1/specimens", status_code=201)
def register_specimen(request: RegisterSpecimenRequest, uow=Depends(get_uow)):
    """
    Register a specimen request with only requested_at set.

    Intake forms and patient validation live upstream; this only creates the
    lifecycle record.
    """
    cmd = RegisterSpecimen(
        program=request.program,
        sample_id=request.sample_id,
        requested_at=request.requested_at,
        notes=request.notes,
    )
    try:
        results = messagebus.handle(cmd, uow)
    except UnknownProgram as e:
        raise HTTPException(status_code=422, detail=str(e))
    except SpecimenAlreadyExists as e:
        raise HTTPException(status_code=409, detail=str(e))

    return {"program": request.program, "sample_id": results[0]}


@app.get("/api/v1/specimens/{program}/{sample_id}/status")
def get_specimen_status(program: str, sample_id: str, uow=Depends(get_uow)):
    """Get current stage, badge label, and permitted actions for a specimen."""
    status = views.specimen_status(_resolve_program(program), sample_id, uow)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Specimen {program}/{sample_id} not found")
    return status


@app.post("/api/v1/specimens/{program}/{sample_id}/transitions", response_model=TransitionResponse)
def record_transition(
    program: str,
    sample_id: str,
    request: TransitionRequest,
    uow=Depends(get_uow),
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
):
    """
    Apply a user action to a specimen.

    Caller identity and role come from the auth gateway headers; roles in
    PRIVILEGED_ROLES may run privileged actions.
    """
    cmd = RecordTransition(
        program=_resolve_program(program).value,
        sample_id=sample_id,
        action=request.action,
        payload=request.payload,
        actor=x_user_id,
        privileged=(x_user_role or "").strip().lower() in config.get_privileged_roles(),
        expected_version=request.expected_version,
    )

    try:
        results = messagebus.handle(cmd, uow)
    except SpecimenNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except TransitionRejected as e:
        raise _transition_http_error(e)

    return TransitionResponse(**results[0])


@app.get("/api/v1/specimens")
def list_specimens(
    program: Optional[str] = None,
    stage: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    uow=Depends(get_uow),
):
    """List specimens in a stage (e.g. pending_collection for the collection worklist)."""
    parsed_stage = None
    if stage:
        try:
            parsed_stage = Stage(stage.strip().lower())
        except ValueError:
            raise HTTPException(status_code=422, detail=f"Unknown stage: {stage}")
    parsed_program = _resolve_program(program) if program else None
    return views.specimens_by_stage(uow, parsed_program, parsed_stage, limit=limit, offset=offset)


@app.post("/api/v1/packages")
def package_specimens(
    request: PackageSpecimensRequest,
    uow=Depends(get_uow),
    x_user_id: Optional[str] = Header(default=None),
):
    """
    Package collected viral load specimens under one package id.

    Specimens that cannot be packaged are listed under "refused"; the rest
    are packaged.
    """
    cmd = PackageSpecimens(
        package_id=request.package_id,
        sample_ids=request.sample_ids,
        when=request.when,
        dispatched_at=request.dispatched_at,
        actor=x_user_id,
    )
    try:
        results = messagebus.handle(cmd, uow)
    except TransitionRejected as e:
        raise _transition_http_error(e)

    return results[0]


@app.get("/api/v1/metrics/stage-counts")
def get_stage_counts(program: Optional[str] = None, uow=Depends(get_uow)):
    """Get specimen counts per stage, optionally for one program."""
    parsed = _resolve_program(program) if program else None
    return views.stage_counts(uow, parsed)
