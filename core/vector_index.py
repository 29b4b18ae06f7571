# core/vector_index.py

import logging
import threading
from typing import List, Optional, Tuple

import faiss
import numpy as np

from core.database import RecordStore
from core.similarity import QueryVector, ScoredMatch, select_matches

logger = logging.getLogger(__name__)


class LiveVectorIndex:
    """
    FAISS view over a live vector index persisted in the record store

    Vectors are L2-normalized and held in an inner-product index, so the
    inner product is the cosine similarity. The FAISS index is rebuilt
    lazily whenever the store reports that the index's vectors changed;
    readers always see one complete snapshot.
    """

    def __init__(self, store: RecordStore, index_name: str, dimension: int):
        self.store = store
        self.index_name = index_name
        self.dimension = dimension
        self._snapshot: Tuple[Optional[faiss.Index], List[str]] = (None, [])
        self._built_version = -1
        self._lock = threading.Lock()

    def _current(self) -> Tuple[Optional[faiss.Index], List[str]]:
        version = self.store.vector_index_version(self.index_name)
        if version == self._built_version:
            return self._snapshot

        with self._lock:
            if version != self._built_version:
                self._snapshot = self._build()
                self._built_version = version
            return self._snapshot

    def _build(self) -> Tuple[Optional[faiss.Index], List[str]]:
        """Create a flat inner-product index from the stored vectors"""
        if not self.store.has_vector_index(self.index_name):
            return None, []

        doc_ids, matrix = self.store.load_vectors(self.index_name)
        if not doc_ids:
            return None, []
        if matrix.shape[1] != self.dimension:
            logger.error(
                f"Index '{self.index_name}' holds {matrix.shape[1]}-d vectors, "
                f"expected {self.dimension}"
            )
            return None, []

        vectors = np.ascontiguousarray(matrix, dtype=np.float32)
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        vectors = np.where(norms > 0, vectors / np.where(norms > 0, norms, 1.0), 0.0)
        vectors = vectors.astype(np.float32)

        index = faiss.IndexFlatIP(self.dimension)
        index.add(vectors)
        logger.debug(f"Built FAISS view of '{self.index_name}' with {index.ntotal} vectors")
        return index, doc_ids

    def __len__(self) -> int:
        index, _ = self._current()
        return index.ntotal if index is not None else 0

    def search(self, query_embedding: np.ndarray, k: int) -> List[Tuple[str, float]]:
        """
        Search for the k nearest documents

        Returns:
            List of (doc_id, cosine distance) tuples, nearest first
        """
        index, doc_ids = self._current()
        if index is None or index.ntotal == 0:
            return []

        query = np.asarray(query_embedding, dtype=np.float32).reshape(1, -1)
        if query.shape[1] != self.dimension:
            logger.warning(f"Query dimension {query.shape[1]} != index dimension {self.dimension}")
            return []

        norm = np.linalg.norm(query)
        if norm == 0:
            return [(doc_id, 1.0) for doc_id in doc_ids[:k]]
        query = query / norm

        similarities, indices = index.search(query, min(k, index.ntotal))

        results = []
        for similarity, idx in zip(similarities[0], indices[0]):
            if idx != -1:  # Valid index
                distance = 1.0 - float(np.clip(similarity, -1.0, 1.0))
                results.append((doc_ids[idx], distance))

        return results

    def rank(self, query: QueryVector, distance_ceiling: float,
             top_k: int) -> List[ScoredMatch]:
        """Same admissibility and ordering policy as the catalog scan"""
        index, doc_ids = self._current()
        if index is None:
            return []

        # Exhaustive search so that ties at the cut are broken by id
        results = self.search(query.values, index.ntotal)
        if not results:
            return []

        ids = [doc_id for doc_id, _ in results]
        distances = np.array([distance for _, distance in results])
        return select_matches(ids, distances, distance_ceiling, top_k)
