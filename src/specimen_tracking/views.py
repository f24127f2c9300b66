"""
Views for read operations - separate from command/write path.

Status is always derived through the resolver; no view inspects raw
milestone fields to decide a specimen's stage.
"""
import logging
from typing import Any, Dict, Optional
from datetime import datetime, timezone

from specimen_tracking.domain.counters import count_by_stage
from specimen_tracking.domain.model import Program, Specimen, Stage, as_utc
from specimen_tracking.domain.status import (
    STAGE_LABELS,
    next_action,
    permitted_actions,
    resolve_status,
)
from specimen_tracking.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value else None


def specimen_status(
    program: Program,
    sample_id: str,
    uow: AbstractUnitOfWork
) -> Optional[Dict[str, Any]]:
    """
    Get the badge data and action controls for one specimen.

    Returns None when the specimen does not exist.
    """
    with uow:
        specimen = uow.specimens.get(program, sample_id)
        if specimen is None:
            return None

        # Serialize INSIDE session context to avoid DetachedInstanceError
        return _serialize(specimen, resolve_status(specimen))


def _serialize(specimen: Specimen, stage: Stage) -> Dict[str, Any]:
    label, description = STAGE_LABELS[stage]
    program = specimen.program
    return {
        "program": program.value,
        "sample_id": specimen.sample_id,
        "stage": stage.value,
        "label": label,
        "description": description,
        "permitted_actions": sorted(action.value for action in permitted_actions(stage, program)),
        "next_action": next_action(stage, program),
        "version_number": specimen.version_number,
        "requested_at": _isoformat(specimen.requested_at),
        "collected_at": _isoformat(specimen.collected_at),
        "packaged_at": _isoformat(specimen.packaged_at),
        "package_id": specimen.package_id,
        "received_at": _isoformat(specimen.received_at),
        "result_finalized_at": _isoformat(specimen.result_finalized_at),
        "amended_at": _isoformat(specimen.amended_at),
        "result": specimen.result.value if specimen.result else None,
    }


def stage_counts(
    uow: AbstractUnitOfWork,
    program: Optional[Program] = None
) -> Dict[str, Any]:
    """
    Get specimen counts per stage for the dashboard cards.

    Args:
        uow: Unit of work
        program: Restrict to one testing program (default: both)

    Returns:
        Counts keyed by stage value, every stage present
    """
    with uow:
        specimens = uow.specimens.list(program)
        counts = count_by_stage(specimens)

    return {
        "program": program.value if program else None,
        "total": sum(counts.values()),
        "counts": {stage.value: count for stage, count in counts.items()},
        "queried_at": datetime.now(timezone.utc).isoformat(),
    }


def specimens_by_stage(
    uow: AbstractUnitOfWork,
    program: Optional[Program] = None,
    stage: Optional[Stage] = None,
    limit: Optional[int] = None,
    offset: int = 0
) -> Dict[str, Any]:
    """
    List specimens currently in a stage, newest request first.

    Backs the pending-collection, package and results list views. Filtering
    happens on the resolved stage, so lists and counts always agree.

    Returns:
        The requested page of specimens and the total before paging
    """
    with uow:
        specimens = uow.specimens.list(program)
        matches = []
        for specimen in specimens:
            resolved = resolve_status(specimen)
            if stage is None or resolved == stage:
                matches.append((specimen, resolved))

        matches.sort(key=lambda match: (as_utc(match[0].requested_at), match[0].sample_id), reverse=True)
        end = None if limit is None else offset + limit
        page = [_serialize(specimen, resolved) for specimen, resolved in matches[offset:end]]

    return {
        "program": program.value if program else None,
        "stage": stage.value if stage else None,
        "total": len(matches),
        "specimens": page,
    }
