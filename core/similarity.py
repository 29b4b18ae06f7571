# core/similarity.py

from dataclasses import dataclass
from enum import Enum
from typing import List

import numpy as np

from core.catalog import EmbeddingCatalog

DEFAULT_DISTANCE_CEILING = 0.25
DEFAULT_TIGHTENING_RATIO = 1.40
DEFAULT_TOP_K = 10


class Variant(Enum):
    """Which view of the source image produced a query vector"""
    PRIMARY = "primary"
    ZOOMED = "zoomed"


@dataclass(frozen=True)
class QueryVector:
    """Embedding of one variant of the query image"""
    values: np.ndarray
    source_variant: Variant = Variant.PRIMARY
    zoom_factor: float = 1.0


@dataclass(frozen=True)
class ScoredMatch:
    """Catalog id with its cosine distance to the query"""
    id: str
    distance: float


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity, defined as 0 when either vector has no magnitude"""
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()
    if a.shape != b.shape:
        return 0.0

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    similarity = float(np.dot(a, b) / (norm_a * norm_b))
    return float(np.clip(similarity, -1.0, 1.0))


def cosine_distance(a: np.ndarray, b: np.ndarray) -> float:
    """1 - cosine similarity; 0 identical, 1 orthogonal (or zero vector), 2 opposite"""
    return 1.0 - cosine_similarity(a, b)


def similarities_to(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of a query against every row of a matrix"""
    if matrix.shape[0] == 0:
        return np.zeros(0, dtype=np.float64)

    query = np.asarray(query, dtype=np.float64).ravel()
    if query.shape[0] != matrix.shape[1]:
        return np.zeros(matrix.shape[0], dtype=np.float64)

    rows = matrix.astype(np.float64)
    row_norms = np.linalg.norm(rows, axis=1)
    query_norm = np.linalg.norm(query)

    dots = rows @ query
    denom = row_norms * query_norm
    with np.errstate(divide='ignore', invalid='ignore'):
        sims = np.where(denom > 0, dots / np.where(denom > 0, denom, 1.0), 0.0)

    return np.clip(sims, -1.0, 1.0)


def select_matches(ids: List[str], distances: np.ndarray,
                   distance_ceiling: float, top_k: int) -> List[ScoredMatch]:
    """Apply the absolute ceiling, sort by (distance, id) and cut to top_k"""
    admissible = [
        ScoredMatch(id=entry_id, distance=float(distance))
        for entry_id, distance in zip(ids, distances)
        if distance <= distance_ceiling
    ]
    admissible.sort(key=lambda m: (m.distance, m.id))
    return admissible[:top_k]


def rank(query: QueryVector, catalog: EmbeddingCatalog,
         distance_ceiling: float = DEFAULT_DISTANCE_CEILING,
         top_k: int = DEFAULT_TOP_K) -> List[ScoredMatch]:
    """
    Rank every catalog entry against a query vector

    Brute-force scan over the catalog matrix. Only entries with
    distance <= distance_ceiling are admissible.

    Args:
        query: Query embedding
        catalog: Catalog to scan (read only)
        distance_ceiling: Hard admissibility cutoff on cosine distance
        top_k: Maximum number of matches returned

    Returns:
        Admissible matches in ascending distance order, ties broken by id
    """
    if len(catalog) == 0:
        return []

    distances = 1.0 - similarities_to(query.values, catalog.matrix)
    return select_matches(catalog.ids, distances, distance_ceiling, top_k)


def tighten(matches: List[ScoredMatch],
            ratio: float = DEFAULT_TIGHTENING_RATIO) -> List[ScoredMatch]:
    """Drop matches farther than ratio x the best distance"""
    if not matches:
        return []

    best = min(m.distance for m in matches)
    limit = best * ratio
    return [m for m in matches if m.distance <= limit]
