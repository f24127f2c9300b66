"""Commands for specimen tracking service."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class Command:
    """Base class for requests handled by exactly one handler."""


@dataclass
class RegisterSpecimen(Command):
    """Command to store a new specimen request with only requested_at set."""
    program: str
    sample_id: str
    requested_at: datetime
    notes: Optional[str] = None


@dataclass
class RecordTransition(Command):
    """Command to validate and apply a user action to a specimen."""
    program: str
    sample_id: str
    action: str
    payload: Dict[str, Any] = field(default_factory=dict)
    actor: Optional[str] = None
    privileged: bool = False
    expected_version: Optional[int] = None  # version the caller last saw


@dataclass
class PackageSpecimens(Command):
    """Command to package collected viral load specimens under one package id."""
    package_id: str
    sample_ids: List[str]
    when: Optional[datetime] = None  # defaults to now
    dispatched_at: Optional[datetime] = None
    actor: Optional[str] = None
