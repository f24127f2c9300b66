"""
Legacy row adapters - normalize rows from the existing viral load and EID
databases into Specimen entities.

The legacy schemas encode status with small integers (stage 20/25/30),
tinyint flags and "YES"/"NO" enums. All of that is parsed here, once, so the
resolver only ever sees typed values.
"""
import logging
from datetime import date, datetime, timezone
from typing import Any, Mapping, Optional

from specimen_tracking.domain.model import Program, ResultCode, Specimen

logger = logging.getLogger(__name__)

# Viral load stage codes
VL_STAGE_PENDING_COLLECTION = 20
VL_STAGE_PENDING_PACKAGING = 25
VL_STAGE_IN_TRANSIT = 30

_PROGRAM_ALIASES = {
    "viral_load": Program.VIRAL_LOAD,
    "viral-load": Program.VIRAL_LOAD,
    "vl": Program.VIRAL_LOAD,
    "eid": Program.EID,
}

_EID_RESULTS = {
    "POSITIVE": ResultCode.POSITIVE,
    "NEGATIVE": ResultCode.NEGATIVE,
    "INVALID": ResultCode.INVALID,
    "SAMPLE_WAS_REJECTED": ResultCode.REJECTED,
}

_EID_REJECTED_FLAGS = {"YES", "REJECTED_FOR_EID"}


class LegacyRowError(ValueError):
    """Raised when a legacy row cannot be identified at all."""
    pass


def parse_program(value) -> Optional[Program]:
    """Accept a Program or any of its URL/legacy spellings."""
    if isinstance(value, Program):
        return value
    if not isinstance(value, str):
        return None
    return _PROGRAM_ALIASES.get(value.strip().lower())


def parse_flag(value) -> bool:
    """Legacy booleans: 1/0 tinyints and "YES"/"NO" enums."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        return value.strip().upper() in ("YES", "Y", "1", "TRUE")
    return False


def parse_int(value) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_legacy_datetime(value) -> Optional[datetime]:
    """
    Parse legacy date / datetime columns.

    MySQL zero dates and anything unparseable come back as None.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text or text.startswith("0000-00-00"):
        return None
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug(f"Ignoring unparseable legacy timestamp {text!r}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _blank_to_none(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _requested_at(row: Mapping[str, Any], sample_id: str, *keys: str) -> datetime:
    for key in keys:
        parsed = parse_legacy_datetime(row.get(key))
        if parsed is not None:
            return parsed
    raise LegacyRowError(f"Row {sample_id} has no usable request timestamp")


def from_viral_load_row(row: Mapping[str, Any]) -> Specimen:
    """
    Build a viral load Specimen from a legacy vl_samples row.

    stage 25 implies the sample was collected and stage 30 that it was
    packaged and sent; when the matching date column is empty the row's
    updated_at stands in for it. The legacy intake writes verified=1 on
    creation, so verified only counts as a finalized result when
    verified_at is also set.
    """
    sample_id = _blank_to_none(row.get("vl_sample_id") or row.get("sample_id"))
    if sample_id is None:
        raise LegacyRowError("Viral load row has no vl_sample_id")

    requested_at = _requested_at(row, sample_id, "created_at", "data_entered_at", "updated_at")
    updated_at = parse_legacy_datetime(row.get("updated_at")) or requested_at
    stage = parse_int(row.get("stage"))
    package_id = _blank_to_none(row.get("facility_reference"))

    collected_at = parse_legacy_datetime(row.get("date_collected"))
    if collected_at is None and stage is not None and stage >= VL_STAGE_PENDING_PACKAGING:
        collected_at = updated_at

    packaged_at = None
    if (stage is not None and stage >= VL_STAGE_IN_TRANSIT) or package_id is not None:
        packaged_at = updated_at

    verified_at = parse_legacy_datetime(row.get("verified_at"))
    finalized = parse_flag(row.get("verified")) and verified_at is not None

    return Specimen(
        sample_id=sample_id,
        program=Program.VIRAL_LOAD,
        requested_at=requested_at,
        collected_at=collected_at,
        sample_type=_blank_to_none(row.get("sample_type")),
        packaged_at=packaged_at,
        dispatched_at=packaged_at,
        package_id=package_id,
        received_at=parse_legacy_datetime(row.get("date_received")),
        result_finalized_at=verified_at if finalized else None,
        verified=finalized,
        version_number=0,
    )


def from_eid_row(row: Mapping[str, Any]) -> Specimen:
    """
    Build an EID Specimen from a legacy dbs_samples row joined to its batch.

    testing_completed="YES" marks the result as finalized. A specimen is
    rejected when either accepted_result is SAMPLE_WAS_REJECTED or
    sample_rejected flags it.
    """
    sample_id = _blank_to_none(row.get("sample_id") or row.get("id"))
    if sample_id is None:
        raise LegacyRowError("EID row has no id")

    requested_at = _requested_at(row, sample_id, "created_at", "date_data_entered", "updated_at")
    completed = parse_flag(row.get("testing_completed"))

    result = _EID_RESULTS.get(str(row.get("accepted_result") or "").strip().upper())
    sample_rejected = str(row.get("sample_rejected") or "").strip().upper()
    if sample_rejected in _EID_REJECTED_FLAGS:
        result = ResultCode.REJECTED

    finalized_at = None
    if completed:
        finalized_at = (
            parse_legacy_datetime(row.get("date_results_entered"))
            or parse_legacy_datetime(row.get("date_dbs_tested"))
            or parse_legacy_datetime(row.get("updated_at"))
            or requested_at
        )

    return Specimen(
        sample_id=sample_id,
        program=Program.EID,
        requested_at=requested_at,
        collected_at=parse_legacy_datetime(row.get("date_dbs_taken")),
        sample_type=_blank_to_none(row.get("sample_type")),
        dispatched_at=parse_legacy_datetime(row.get("date_dispatched_from_facility")),
        received_at=parse_legacy_datetime(row.get("date_rcvd_by_cphl")),
        result_finalized_at=finalized_at,
        verified=completed,
        result=result,
        rejection_reason=_blank_to_none(row.get("rejection_comments")),
        version_number=0,
    )
