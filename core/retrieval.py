# core/retrieval.py

import logging
from typing import Iterable, List, Optional, Protocol, Set

from core.catalog import CatalogLoader
from core.database import RecordStore
from core.records import Record
from core.similarity import (
    DEFAULT_DISTANCE_CEILING, DEFAULT_TIGHTENING_RATIO, DEFAULT_TOP_K,
    QueryVector, ScoredMatch, rank, tighten
)
from core.vector_index import LiveVectorIndex

logger = logging.getLogger(__name__)


class Matcher(Protocol):
    """Ranks a query vector against some set of reference vectors"""

    def rank(self, query: QueryVector) -> List[ScoredMatch]:
        ...


class CatalogMatcher:
    """Ranks against the bundled precomputed catalog"""

    def __init__(self, loader: CatalogLoader,
                 distance_ceiling: float = DEFAULT_DISTANCE_CEILING,
                 top_k: int = DEFAULT_TOP_K):
        self.loader = loader
        self.distance_ceiling = distance_ceiling
        self.top_k = top_k

    def rank(self, query: QueryVector) -> List[ScoredMatch]:
        # Blocks until the one-shot catalog load has finished
        return rank(query, self.loader.catalog, self.distance_ceiling, self.top_k)


class LiveIndexMatcher:
    """Ranks against the store's live vector index"""

    def __init__(self, index: LiveVectorIndex,
                 distance_ceiling: float = DEFAULT_DISTANCE_CEILING,
                 top_k: int = DEFAULT_TOP_K):
        self.index = index
        self.distance_ceiling = distance_ceiling
        self.top_k = top_k

    def rank(self, query: QueryVector) -> List[ScoredMatch]:
        return self.index.rank(query, self.distance_ceiling, self.top_k)


class FallbackMatcher:
    """
    Consults several matchers in order

    The first matcher with any admissible candidate decides the ranking;
    rankings from different matchers are never merged.
    """

    def __init__(self, matchers: List[Matcher]):
        self.matchers = list(matchers)

    def rank(self, query: QueryVector) -> List[ScoredMatch]:
        for matcher in self.matchers:
            matches = matcher.rank(query)
            if matches:
                return matches
        return []


class RetrievalCoordinator:
    """
    Turns query-vector variants into records

    Variants are consumed in order and lazily: the first variant with any
    admissible match wins and later variants are never pulled from the
    iterable (so never embedded). The winning list is tightened relative
    to its best distance and hydrated through the record store.
    """

    def __init__(self, matcher: Matcher, store: RecordStore,
                 tightening_ratio: float = DEFAULT_TIGHTENING_RATIO):
        self.matcher = matcher
        self.store = store
        self.tightening_ratio = tightening_ratio

    def identify(self, variants: Iterable[Optional[QueryVector]]) -> List[Record]:
        """
        Identify records for a sequence of query variants

        Args:
            variants: Query vectors in priority order; None entries
                      (no embedding available) are skipped

        Returns:
            Records in ascending distance order, empty when nothing
            was confidently identified
        """
        matches = self.first_matches(variants)
        if not matches:
            return []

        matches = tighten(matches, self.tightening_ratio)
        return self.hydrate(matches)

    def first_matches(self, variants: Iterable[Optional[QueryVector]]) -> List[ScoredMatch]:
        """Ranked matches of the first variant that has any"""
        for variant in variants:
            if variant is None:
                continue

            matches = self.matcher.rank(variant)
            if matches:
                logger.debug(
                    f"{len(matches)} candidates from {variant.source_variant.value} "
                    f"variant (zoom {variant.zoom_factor}), best {matches[0].distance:.4f}"
                )
                return matches

            logger.debug(f"No admissible match at zoom {variant.zoom_factor}")

        return []

    def hydrate(self, matches: List[ScoredMatch]) -> List[Record]:
        """Resolve match ids to records, keeping match order"""
        records = []
        seen: Set[str] = set()
        returned: Set[str] = set()

        for match in matches:
            if match.id in seen:
                continue
            seen.add(match.id)

            record = self._lookup(match.id)
            if record is None:
                logger.debug(f"Identified '{match.id}' has no record in the store, dropping")
                continue
            if record.id in returned:
                continue
            returned.add(record.id)
            records.append(record)

        return records

    def _lookup(self, entry_id: str) -> Optional[Record]:
        try:
            record = self.store.get_by_id(entry_id)
            if record is None:
                record = self.store.query_by_natural_key(entry_id)
            return record
        except Exception as e:
            logger.debug(f"Lookup of '{entry_id}' failed: {e}")
            return None
