# pylint: disable=attribute-defined-outside-init
from __future__ import annotations
import abc
import logging
from sqlalchemy import create_engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.orm.session import Session


import config
from specimen_tracking.adapters import repository

logger = logging.getLogger(__name__)

# SQLSTATE for "could not serialize access due to concurrent update"
SERIALIZATION_FAILURE = "40001"


class ConcurrencyConflict(Exception):
    """Raised when a write lost the compare-and-swap on version_number."""
    pass


class AbstractUnitOfWork(abc.ABC):
    specimens: repository.AbstractRepository

    def __enter__(self) -> AbstractUnitOfWork:
        return self

    def __exit__(self, *args):
        self.rollback()

    def commit(self):
        self._commit()

    def collect_new_events(self):
        for specimen in self.specimens.seen:
            while specimen.events:
                yield specimen.events.pop(0)

    @abc.abstractmethod
    def _commit(self):
        raise NotImplementedError

    @abc.abstractmethod
    def rollback(self):
        raise NotImplementedError


DEFAULT_SESSION_FACTORY = sessionmaker(
    bind=create_engine(
        config.get_postgres_uri(),
        isolation_level="REPEATABLE READ",
    ),
    expire_on_commit=False,
)

class SqlAlchemyUnitOfWork(AbstractUnitOfWork):
    def __init__(self, session_factory=DEFAULT_SESSION_FACTORY):
        self.session_factory = session_factory

    def __enter__(self):
        self.session = self.session_factory()  # type: Session
        self.specimens = repository.SqlAlchemyRepository(self.session)
        return super().__enter__()

    def __exit__(self, *args):
        super().__exit__(*args)
        self.session.close()

    def _commit(self):
        try:
            self.session.commit()
        except StaleDataError as e:
            self.session.rollback()
            logger.warning(f"Optimistic concurrency check failed: {e}")
            raise ConcurrencyConflict(str(e)) from e
        except DBAPIError as e:
            # Under REPEATABLE READ, Postgres blocks the losing UPDATE and then
            # fails it instead of matching zero rows
            if not is_serialization_failure(e):
                raise
            self.session.rollback()
            logger.warning(f"Concurrent update detected by the database: {e.orig}")
            raise ConcurrencyConflict(str(e.orig)) from e

    def rollback(self):
        self.session.rollback()


def is_serialization_failure(error: DBAPIError) -> bool:
    return getattr(error.orig, "pgcode", None) == SERIALIZATION_FAILURE
