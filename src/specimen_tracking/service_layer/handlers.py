import logging
from datetime import datetime, timezone
from typing import Any, Dict

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt

import config
from specimen_tracking.adapters.legacy_rows import parse_program
from specimen_tracking.domain.commands import PackageSpecimens, RecordTransition, RegisterSpecimen
from specimen_tracking.domain.events import SpecimenRegistered, SpecimenTransitioned
from specimen_tracking.domain.model import Action, Program, Specimen
from specimen_tracking.domain.status import resolve_status
from specimen_tracking.domain.transitions import TransitionError, apply_transition, stage_after
from specimen_tracking.service_layer.unit_of_work import AbstractUnitOfWork, ConcurrencyConflict

logger = logging.getLogger(__name__)

TRANSITIONS_CHANNEL = "specimens:transitions"
REGISTRATIONS_CHANNEL = "specimens:registrations"


class UnknownProgram(ValueError):
    pass


class SpecimenNotFound(Exception):
    pass


class SpecimenAlreadyExists(Exception):
    pass


class TransitionRejected(Exception):
    """A transition refused by the validator or lost to a concurrent writer."""

    def __init__(self, error: TransitionError, detail: str = ""):
        super().__init__(detail or error.user_message)
        self.error = error
        self.detail = detail or error.user_message


def _program(value) -> Program:
    program = parse_program(value)
    if program is None:
        raise UnknownProgram(f"Unknown testing program: {value}")
    return program


def register_specimen(
    command: RegisterSpecimen,
    uow: AbstractUnitOfWork
) -> str:
    """
    Store a new specimen request with only requested_at set.

    Intake validation (patient details, facility) happens upstream; this only
    creates the lifecycle record.
    """
    program = _program(command.program)
    logger.info(f"Processing RegisterSpecimen command for {program.value}/{command.sample_id}")

    with uow:
        if uow.specimens.get(program, command.sample_id) is not None:
            raise SpecimenAlreadyExists(f"Specimen {program.value}/{command.sample_id} already exists")

        specimen = Specimen(
            sample_id=command.sample_id,
            program=program,
            requested_at=command.requested_at,
            notes=command.notes,
        )
        specimen.register()
        sample_id = uow.specimens.add(specimen)
        uow.commit()

    logger.info(f"Registered specimen {program.value}/{sample_id}")
    return sample_id


def record_transition(
    command: RecordTransition,
    uow: AbstractUnitOfWork
) -> Dict[str, Any]:
    """
    Validate an action against the stored specimen and write its patch.

    Flow:
    1. Load the specimen
    2. Validate the action and build the patch
    3. Merge the patch and commit with a version compare-and-swap
    4. On a lost race, re-read and re-validate, up to MAX_CONFLICT_RETRIES times

    Raises:
        SpecimenNotFound: If no specimen matches program/sample_id
        TransitionRejected: If the validator refuses the action, or the
            write kept losing to concurrent writers
    """
    program = _program(command.program)
    logger.info(f"Processing RecordTransition {command.action} for {program.value}/{command.sample_id}")

    return _retry_on_conflict(
        lambda: _record_transition_once(command, program, uow),
        f"{command.action} for {program.value}/{command.sample_id}",
    )


def _retry_on_conflict(write, description: str):
    """Run a read-validate-write cycle again each time it loses a concurrent update."""
    try:
        for attempt in Retrying(
            stop=stop_after_attempt(config.get_max_conflict_retries()),
            retry=retry_if_exception_type(ConcurrencyConflict),
            reraise=True,
        ):
            with attempt:
                outcome = write()
    except ConcurrencyConflict:
        logger.warning(f"Giving up on {description} after repeated conflicts")
        raise TransitionRejected(TransitionError.CONFLICT)

    return outcome


def _record_transition_once(command: RecordTransition, program: Program, uow: AbstractUnitOfWork) -> Dict[str, Any]:
    with uow:
        specimen = uow.specimens.get(program, command.sample_id)
        if specimen is None:
            raise SpecimenNotFound(f"Specimen {program.value}/{command.sample_id} not found")

        if command.expected_version is not None and specimen.version_number != command.expected_version:
            raise TransitionRejected(
                TransitionError.CONFLICT,
                f"Specimen is at version {specimen.version_number}, not {command.expected_version}",
            )

        before = resolve_status(specimen)
        result = apply_transition(specimen, command.action, command.payload, privileged=command.privileged)

        if not result.ok:
            if result.error is TransitionError.UNAUTHORIZED:
                logger.warning(
                    f"AUDIT unauthorized {command.action} on {program.value}/{command.sample_id} by {command.actor}"
                )
            else:
                logger.info(f"Rejected {command.action} on {program.value}/{command.sample_id}: {result.detail}")
            raise TransitionRejected(result.error, result.detail)

        patch = result.patch
        after = before
        if not patch.is_empty():
            after = stage_after(specimen, patch)
            specimen.apply_patch(patch.changes, patch.action, before, after, actor=command.actor)
            uow.commit()

        return {
            "program": program.value,
            "sample_id": specimen.sample_id,
            "action": patch.action.value,
            "stage_before": before.value,
            "stage": after.value,
            "version_number": specimen.version_number,
        }


def package_specimens(
    command: PackageSpecimens,
    uow: AbstractUnitOfWork
) -> Dict[str, Any]:
    """
    Package many collected viral load specimens under one package id.

    Each specimen is validated on its own; refused ones are reported and
    left untouched while the rest are written in a single commit. A lost
    concurrent update re-runs the whole batch against fresh state.
    """
    logger.info(f"Processing PackageSpecimens {command.package_id} for {len(command.sample_ids)} specimens")
    if not command.sample_ids:
        raise TransitionRejected(TransitionError.MISSING_REQUIRED_FIELD, "No specimens selected")

    return _retry_on_conflict(
        lambda: _package_specimens_once(command, uow),
        f"package {command.package_id}",
    )


def _package_specimens_once(command: PackageSpecimens, uow: AbstractUnitOfWork) -> Dict[str, Any]:
    payload = {
        "when": command.when or datetime.now(timezone.utc),
        "package_id": command.package_id,
        "dispatched_at": command.dispatched_at,
    }
    packaged, refused = [], []

    with uow:
        for sample_id in command.sample_ids:
            specimen = uow.specimens.get(Program.VIRAL_LOAD, sample_id)
            if specimen is None:
                refused.append({"sample_id": sample_id, "error": "NOT_FOUND", "detail": "Specimen not found"})
                continue

            before = resolve_status(specimen)
            result = apply_transition(specimen, Action.PACKAGE, payload)
            if not result.ok:
                refused.append({"sample_id": sample_id, "error": result.error.value, "detail": result.detail})
                continue

            after = stage_after(specimen, result.patch)
            specimen.apply_patch(result.patch.changes, result.patch.action, before, after, actor=command.actor)
            packaged.append(sample_id)

        if packaged:
            uow.commit()

    if refused:
        logger.info(f"Package {command.package_id}: refused {len(refused)} of {len(command.sample_ids)} specimens")
    return {
        "package_id": command.package_id,
        "packaged": packaged,
        "refused": refused,
    }


def log_transition(event: SpecimenTransitioned, uow: AbstractUnitOfWork):
    """Write one audit line per applied transition."""
    logger.info(
        f"AUDIT {event.program}/{event.sample_id}: {event.action} by {event.actor} "
        f"({event.stage_before} -> {event.stage_after}) at {event.occurred_at.isoformat()}"
    )


def publish_specimen_event(event, uow: AbstractUnitOfWork):
    """
    Publish specimen events to Redis so dashboards can refresh stage counts.

    External failures are logged and do not break the command flow.
    """
    channel = REGISTRATIONS_CHANNEL if isinstance(event, SpecimenRegistered) else TRANSITIONS_CHANNEL
    logger.info(f"Publishing {type(event).__name__} for {event.program}/{event.sample_id}")
    try:
        # Import here so the service layer does not need Redis at import time
        from specimen_tracking.adapters import redis_publisher

        redis_publisher.publish(channel, event)

    except Exception as e:
        logger.error(f"Failed to publish event for {event.program}/{event.sample_id}: {e}")
