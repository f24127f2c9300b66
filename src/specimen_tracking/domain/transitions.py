"""
Transition validator: confirm a requested action is legal for a specimen and
compute the minimal field patch it implies.

Nothing here persists. Callers merge the patch through the storage layer
with a compare-and-swap on the specimen's version_number.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from specimen_tracking.domain.model import Action, ResultCode, Specimen, Stage, as_utc
from specimen_tracking.domain.status import PRIVILEGED_ACTIONS, permitted_actions, resolve_status


class TransitionError(Enum):
    """Why a transition was refused"""
    ILLEGAL_ACTION = "ILLEGAL_ACTION"
    OUT_OF_ORDER_TIMESTAMP = "OUT_OF_ORDER_TIMESTAMP"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
    UNAUTHORIZED = "UNAUTHORIZED"
    CONFLICT = "CONFLICT"  # raised by the calling layer, never by apply_transition

    @property
    def user_message(self) -> str:
        return USER_MESSAGES[self]


USER_MESSAGES = {
    TransitionError.ILLEGAL_ACTION: "This action is not available for this specimen's current status.",
    TransitionError.OUT_OF_ORDER_TIMESTAMP: "The date given is earlier than a date already recorded for this specimen.",
    TransitionError.MISSING_REQUIRED_FIELD: "Required information is missing.",
    TransitionError.UNAUTHORIZED: "You do not have permission to perform this action.",
    TransitionError.CONFLICT: "This specimen was changed by someone else, please retry.",
}


@dataclass(frozen=True)
class SpecimenPatch:
    """Field changes implied by one action"""
    action: Action
    changes: Dict[str, Any] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.changes


@dataclass(frozen=True)
class TransitionResult:
    """Either a patch or an error, never both"""
    patch: Optional[SpecimenPatch] = None
    error: Optional[TransitionError] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def accept(cls, action: Action, changes: Dict[str, Any]) -> "TransitionResult":
        return cls(patch=SpecimenPatch(action=action, changes=changes))

    @classmethod
    def reject(cls, error: TransitionError, detail: str = "") -> "TransitionResult":
        return cls(error=error, detail=detail or error.user_message)


# Required payload keys per action
REQUIRED_FIELDS = {
    Action.COLLECT: ("when", "collector", "sample_type"),
    Action.PACKAGE: ("when", "package_id"),
    Action.RECEIVE: ("when", "receiver"),
    Action.FINALIZE_RESULT: ("when", "result", "verifier"),
    Action.AMEND_RESULT: ("when", "result", "verifier"),
    Action.CANCEL: ("when", "reason"),
    Action.EDIT: (),
    Action.RECOLLECT: (),
    Action.VIEW_RESULT: (),
}

EDITABLE_FIELDS = ("sample_type", "notes")

# Milestone each action writes; it may only be written once
ACTION_MILESTONE = {
    Action.COLLECT: "collected_at",
    Action.PACKAGE: "packaged_at",
    Action.RECEIVE: "received_at",
    Action.FINALIZE_RESULT: "result_finalized_at",
}

# Everything recollect resets so the specimen reads as PENDING_COLLECTION again
RECOLLECT_RESET = {
    "collected_at": None,
    "collected_by": None,
    "sample_type": None,
    "packaged_at": None,
    "dispatched_at": None,
    "package_id": None,
    "received_at": None,
    "received_by": None,
    "result_finalized_at": None,
    "verified": False,
    "finalized_by": None,
    "amended_at": None,
    "amended_by": None,
    "result": None,
    "result_value": None,
    "rejection_reason": None,
    "cancelled_at": None,
}

_ACTION_ALIASES = {
    "finalizeResult": Action.FINALIZE_RESULT,
    "viewResult": Action.VIEW_RESULT,
    "amendResult": Action.AMEND_RESULT,
}


def parse_action(value) -> Optional[Action]:
    """Accept an Action, its value, or the camelCase names used by older clients."""
    if isinstance(value, Action):
        return value
    if value in _ACTION_ALIASES:
        return _ACTION_ALIASES[value]
    try:
        return Action(value)
    except ValueError:
        return None


def parse_result_code(value) -> Optional[ResultCode]:
    if isinstance(value, ResultCode):
        return value
    if not isinstance(value, str):
        return None
    try:
        return ResultCode[value.strip().upper()]
    except KeyError:
        return None


def parse_timestamp(value) -> Optional[datetime]:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str) and value.strip():
        try:
            return as_utc(datetime.fromisoformat(value.strip()))
        except ValueError:
            return None
    return None


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _missing_fields(action: Action, payload: Mapping[str, Any]) -> Tuple[str, ...]:
    return tuple(name for name in REQUIRED_FIELDS[action] if _is_blank(payload.get(name)))


def _latest_milestone(specimen: Specimen) -> Optional[Tuple[str, datetime]]:
    recorded = specimen.milestones()
    if not recorded:
        return None
    name = max(recorded, key=recorded.get)
    return name, recorded[name]


def apply_transition(
    specimen: Specimen,
    action,
    payload: Optional[Mapping[str, Any]] = None,
    privileged: bool = False,
) -> TransitionResult:
    """
    Validate an action against the specimen's current Stage and build its patch.

    Checks run in this order: legality, privilege, required fields,
    timestamp ordering. The first failing check decides the error.
    """
    payload = payload or {}
    parsed = parse_action(action)
    if parsed is None:
        return TransitionResult.reject(TransitionError.ILLEGAL_ACTION, f"Unknown action: {action}")
    action = parsed

    stage = resolve_status(specimen)
    if action not in permitted_actions(stage, specimen.program):
        return TransitionResult.reject(
            TransitionError.ILLEGAL_ACTION,
            f"Action '{action.value}' is not available for a specimen that is {stage.value}",
        )

    milestone = ACTION_MILESTONE.get(action)
    if milestone and getattr(specimen, milestone) is not None:
        return TransitionResult.reject(
            TransitionError.ILLEGAL_ACTION,
            f"Milestone {milestone} is already recorded for this specimen",
        )
    if action is Action.FINALIZE_RESULT and specimen.received_at is None:
        return TransitionResult.reject(
            TransitionError.ILLEGAL_ACTION,
            "A result cannot be finalized before the laboratory has received the specimen",
        )

    if action in PRIVILEGED_ACTIONS and not privileged:
        return TransitionResult.reject(TransitionError.UNAUTHORIZED)

    missing = _missing_fields(action, payload)
    if action is Action.EDIT and all(_is_blank(payload.get(name)) for name in EDITABLE_FIELDS):
        missing = EDITABLE_FIELDS
    if missing:
        return TransitionResult.reject(
            TransitionError.MISSING_REQUIRED_FIELD,
            f"Missing required field(s): {', '.join(missing)}",
        )

    when = None
    if "when" in REQUIRED_FIELDS[action]:
        when = parse_timestamp(payload["when"])
        if when is None:
            return TransitionResult.reject(
                TransitionError.MISSING_REQUIRED_FIELD,
                "Field 'when' must be an ISO 8601 timestamp",
            )
        latest = _latest_milestone(specimen)
        if latest is not None and when < latest[1]:
            return TransitionResult.reject(
                TransitionError.OUT_OF_ORDER_TIMESTAMP,
                f"'when' ({when.isoformat()}) is earlier than recorded {latest[0]} ({latest[1].isoformat()})",
            )

    return _build_patch(action, payload, when)


def _build_patch(action: Action, payload: Mapping[str, Any], when: Optional[datetime]) -> TransitionResult:
    if action is Action.COLLECT:
        return TransitionResult.accept(action, {
            "collected_at": when,
            "collected_by": payload["collector"],
            "sample_type": payload["sample_type"],
        })

    if action is Action.PACKAGE:
        dispatched = when
        if not _is_blank(payload.get("dispatched_at")):
            dispatched = parse_timestamp(payload["dispatched_at"])
            if dispatched is None:
                return TransitionResult.reject(
                    TransitionError.MISSING_REQUIRED_FIELD,
                    "Field 'dispatched_at' must be an ISO 8601 timestamp",
                )
            if dispatched < when:
                return TransitionResult.reject(
                    TransitionError.OUT_OF_ORDER_TIMESTAMP,
                    "A package cannot be dispatched before it was packaged",
                )
        return TransitionResult.accept(action, {
            "packaged_at": when,
            "dispatched_at": dispatched,
            "package_id": payload["package_id"],
        })

    if action is Action.RECEIVE:
        return TransitionResult.accept(action, {
            "received_at": when,
            "received_by": payload["receiver"],
        })

    if action in (Action.FINALIZE_RESULT, Action.AMEND_RESULT):
        result = parse_result_code(payload["result"])
        if result is None:
            return TransitionResult.reject(
                TransitionError.MISSING_REQUIRED_FIELD,
                f"Field 'result' must be one of: {', '.join(code.name for code in ResultCode)}",
            )
        if action is Action.AMEND_RESULT:
            # the original finalization stays on record
            changes = {"amended_at": when, "amended_by": payload["verifier"], "result": result}
        else:
            changes = {
                "result_finalized_at": when,
                "verified": True,
                "result": result,
                "finalized_by": payload["verifier"],
            }
        for optional in ("result_value", "rejection_reason"):
            if not _is_blank(payload.get(optional)):
                changes[optional] = payload[optional]
        return TransitionResult.accept(action, changes)

    if action is Action.CANCEL:
        return TransitionResult.accept(action, {
            "cancelled_at": when,
            "result": ResultCode.REJECTED,
            "rejection_reason": payload["reason"],
        })

    if action is Action.EDIT:
        return TransitionResult.accept(action, {
            name: payload[name] for name in EDITABLE_FIELDS if not _is_blank(payload.get(name))
        })

    if action is Action.RECOLLECT:
        return TransitionResult.accept(action, dict(RECOLLECT_RESET))

    # view_result is read-only
    return TransitionResult.accept(action, {})


def stage_after(specimen: Specimen, patch: SpecimenPatch) -> Stage:
    """Stage the specimen would resolve to once the patch is merged."""
    preview = Specimen(**{
        name: getattr(specimen, name)
        for name in specimen.__dataclass_fields__
        if name != "events"
    })
    for name, value in patch.changes.items():
        setattr(preview, name, value)
    return resolve_status(preview)
