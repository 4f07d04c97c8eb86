"""
Storage boundary for fingerprints, cases and matches.

The engine never talks to a database directly; it consumes a DNAStore.
InMemoryStore is the reference implementation, used by tests and by
single-process deployments that rebuild their corpus at startup.
"""

import logging
import threading
from typing import Dict, Iterable, List, NamedTuple, Optional, Protocol, Tuple

from .exceptions import DuplicateMatchError
from .models import ACTIVE_CASE, MATCHABLE_STATUSES, CaseInfo, MatchRecord, VisualDNA

logger = logging.getLogger(__name__)


class Candidate(NamedTuple):
    """A corpus fingerprint with the case it belongs to."""
    dna: VisualDNA
    case: CaseInfo


class DNAStore(Protocol):

    def get_dna(self, photo_id: str) -> Optional[VisualDNA]:
        ...

    def save_dna(self, dna: VisualDNA) -> None:
        ...

    def get_case(self, case_id: str) -> Optional[CaseInfo]:
        ...

    def find_candidates(self, case_type: str,
                        categories: Optional[Iterable[str]] = None,
                        entity_types: Optional[Iterable[str]] = None,
                        statuses: Iterable[str] = MATCHABLE_STATUSES) -> List[Candidate]:
        """Active cases of case_type; None filters mean "any"."""
        ...

    def save_match(self, record: MatchRecord) -> MatchRecord:
        """Persist a match. Raises DuplicateMatchError for a known photo pair."""
        ...

    def list_outdated(self, version: str) -> List[VisualDNA]:
        ...


class InMemoryStore:
    """Thread-safe dict-backed DNAStore."""

    def __init__(self):
        self._lock = threading.Lock()
        self._dna: Dict[str, VisualDNA] = {}
        self._cases: Dict[str, CaseInfo] = {}
        self._matches: Dict[Tuple[str, str], MatchRecord] = {}

    def add_case(self, case: CaseInfo) -> None:
        with self._lock:
            self._cases[case.case_id] = case

    def get_case(self, case_id: str) -> Optional[CaseInfo]:
        with self._lock:
            return self._cases.get(case_id)

    def get_dna(self, photo_id: str) -> Optional[VisualDNA]:
        with self._lock:
            return self._dna.get(photo_id)

    def save_dna(self, dna: VisualDNA) -> None:
        if not dna.photo_id:
            raise ValueError("Cannot store a fingerprint without a photo id")
        with self._lock:
            self._dna[dna.photo_id] = dna

    def find_candidates(self, case_type: str,
                        categories: Optional[Iterable[str]] = None,
                        entity_types: Optional[Iterable[str]] = None,
                        statuses: Iterable[str] = MATCHABLE_STATUSES) -> List[Candidate]:
        categories = set(categories) if categories is not None else None
        entity_types = set(entity_types) if entity_types is not None else None
        statuses = set(statuses)

        with self._lock:
            records = list(self._dna.values())
            cases = dict(self._cases)

        candidates = []
        for dna in records:
            case = cases.get(dna.case_id)
            if case is None or case.case_type != case_type or case.status != ACTIVE_CASE:
                continue
            if dna.status not in statuses:
                continue
            if categories is not None and (case.category or "other") not in categories:
                continue
            if entity_types is not None and dna.entity_type not in entity_types:
                continue
            candidates.append(Candidate(dna, case))
        return candidates

    def save_match(self, record: MatchRecord) -> MatchRecord:
        with self._lock:
            if record.pair_key in self._matches:
                raise DuplicateMatchError(*record.pair_key)
            self._matches[record.pair_key] = record
        return record

    def list_matches(self, photo_id: Optional[str] = None) -> List[MatchRecord]:
        with self._lock:
            matches = list(self._matches.values())
        if photo_id is None:
            return matches
        return [m for m in matches if photo_id in m.pair_key]

    def list_outdated(self, version: str) -> List[VisualDNA]:
        with self._lock:
            return [dna for dna in self._dna.values() if dna.algorithm_version != version]
