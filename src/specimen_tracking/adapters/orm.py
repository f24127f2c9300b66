import logging
from sqlalchemy import (
    Table,
    Column,
    Integer,
    String,
    Boolean,
    DateTime,
    Enum,
    event,
)
from sqlalchemy.orm import registry
from specimen_tracking.domain import model

logger = logging.getLogger(__name__)

# SQLAlchemy 2.0 pattern: use registry
mapper_registry = registry()
metadata = mapper_registry.metadata

specimens = Table(
    "specimens",
    metadata,
    Column("program", Enum(model.Program, name="program"), primary_key=True),
    Column("sample_id", String(128), primary_key=True),
    Column("requested_at", DateTime(timezone=True), nullable=False),
    Column("collected_at", DateTime(timezone=True)),
    Column("collected_by", String(255)),
    Column("sample_type", String(20)),
    Column("packaged_at", DateTime(timezone=True)),
    Column("dispatched_at", DateTime(timezone=True)),
    Column("package_id", String(128)),
    Column("received_at", DateTime(timezone=True)),
    Column("received_by", String(255)),
    Column("result_finalized_at", DateTime(timezone=True)),
    Column("verified", Boolean, nullable=False, default=False),
    Column("finalized_by", String(255)),
    Column("amended_at", DateTime(timezone=True)),
    Column("amended_by", String(255)),
    Column("result", Enum(model.ResultCode, name="result_code")),
    Column("result_value", String(64)),
    Column("rejection_reason", String(512)),
    Column("cancelled_at", DateTime(timezone=True)),
    Column("notes", String(1024)),
    Column("version_number", Integer, nullable=False, server_default="0"),
)


def start_mappers():
    logger.info("Starting mappers")
    # version_id_col turns every UPDATE into a compare-and-swap on version_number
    mapper_registry.map_imperatively(
        model.Specimen,
        specimens,
        version_id_col=specimens.c.version_number,
    )


@event.listens_for(model.Specimen, "load")
def receive_load(specimen, _):
    specimen.events = []
