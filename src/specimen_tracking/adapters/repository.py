import abc
from typing import Set, List, Optional
from specimen_tracking.domain import model


class AbstractRepository(abc.ABC):
    def __init__(self):
        self.seen = set()  # type: Set[model.Specimen]

    def add(self, specimen: model.Specimen) -> str:
        self._add(specimen)
        self.seen.add(specimen)
        return specimen.sample_id

    def get(self, program: model.Program, sample_id: str) -> Optional[model.Specimen]:
        specimen = self._get(program, sample_id)
        if specimen:
            self.seen.add(specimen)
        return specimen

    def list(self, program: Optional[model.Program] = None) -> List[model.Specimen]:
        specimens = self._list(program)
        for specimen in specimens:
            self.seen.add(specimen)
        return specimens

    @abc.abstractmethod
    def _add(self, specimen: model.Specimen):
        raise NotImplementedError

    @abc.abstractmethod
    def _get(self, program: model.Program, sample_id: str) -> Optional[model.Specimen]:
        raise NotImplementedError

    @abc.abstractmethod
    def _list(self, program: Optional[model.Program]) -> List[model.Specimen]:
        raise NotImplementedError

class SqlAlchemyRepository(AbstractRepository):
    def __init__(self, session):
        super().__init__()
        self.session = session

    def _add(self, specimen):
        self.session.add(specimen)

    def _get(self, program, sample_id):
        return self.session.query(model.Specimen).filter_by(program=program, sample_id=sample_id).first()

    def _list(self, program) -> List[model.Specimen]:
        query = self.session.query(model.Specimen)
        if program is not None:
            query = query.filter_by(program=program)
        return query.all()
