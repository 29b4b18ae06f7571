# components/identification_service.py

import logging
import time
from typing import Dict, List, Optional, Union

import numpy as np

from config import SystemConfig
from core.catalog import CatalogLoader
from core.database import RecordStore
from core.embedder import ImageEmbedder
from core.index_maintainer import LiveIndexMaintainer
from core.records import Record
from core.retrieval import (
    CatalogMatcher, FallbackMatcher, LiveIndexMatcher, RetrievalCoordinator
)
from core.similarity import QueryVector
from core.vector_index import LiveVectorIndex
from utils.image_utils import decode_image
from utils.logging_config import log_operation

logger = logging.getLogger(__name__)


class IdentificationService:
    """
    Public search API of the identification engine

    Collaborators are passed in already constructed: configuration, then
    the record store, then the catalog loader, then the embedder. The
    matcher, coordinator and index maintainer are derived from them.
    Failures of any collaborator are logged and turned into empty results.
    """

    def __init__(self,
                 config: SystemConfig,
                 store: RecordStore,
                 catalog_loader: CatalogLoader,
                 embedder: ImageEmbedder):
        self.config = config
        self.store = store
        self.catalog_loader = catalog_loader
        self.embedder = embedder

        retrieval = config.retrieval
        catalog_matcher = CatalogMatcher(
            catalog_loader, retrieval.distance_ceiling, retrieval.top_k
        )
        if config.demo_mode:
            self.live_index = None
            self.matcher = catalog_matcher
        else:
            # Bundled plants first, then whatever the store has indexed
            self.live_index = LiveVectorIndex(
                store, config.indexing.index_name, config.embedding.dimension
            )
            self.matcher = FallbackMatcher([
                catalog_matcher,
                LiveIndexMatcher(self.live_index, retrieval.distance_ceiling, retrieval.top_k),
            ])

        self.coordinator = RetrievalCoordinator(
            self.matcher, store, retrieval.tightening_ratio
        )
        self.maintainer = LiveIndexMaintainer(
            store,
            embedder.embed_bytes,
            batch_size=config.indexing.batch_size,
            yield_interval=config.indexing.yield_interval
        )
        self._started = False

    def start(self):
        """Begin catalog loading and live index maintenance"""
        if self._started:
            return
        self._started = True

        self.catalog_loader.start()

        if not self.config.demo_mode:
            self.store.create_vector_index(
                self.config.indexing.index_name, self.config.embedding.dimension
            )
        self.maintainer.start([self.config.indexing.index_name])
        logger.info(
            f"Identification service started "
            f"({'catalog' if self.config.demo_mode else 'live index'} mode)"
        )

    def stop(self):
        self.maintainer.stop()
        self._started = False

    def identify_by_image(self, image: Union[np.ndarray, bytes]) -> List[Record]:
        """
        Identify the plant in a photograph

        The full frame is tried first, then progressively zoomed centre
        crops; later crops are only embedded if earlier ones found nothing.

        Args:
            image: BGR array or encoded image bytes

        Returns:
            Matching records, best first; empty when nothing was identified
        """
        start_time = time.time()
        try:
            if isinstance(image, (bytes, bytearray)):
                image = decode_image(bytes(image))
            if image is None:
                logger.warning("Identification requested without a decodable image")
                return []

            variants = self.embedder.variants(image, self.config.retrieval.zoom_factors)
            records = self.coordinator.identify(variants)
        except Exception as e:
            logger.error(f"Image identification failed: {e}", exc_info=True)
            return []

        log_operation(
            logger, 'identify_by_image',
            results=[r.id for r in records],
            duration_seconds=round(time.time() - start_time, 3)
        )
        return records

    def identify_by_vector(self, vector: np.ndarray) -> List[Record]:
        """Identify records for an already computed query embedding"""
        try:
            query = QueryVector(values=np.asarray(vector, dtype=np.float32))
            return self.coordinator.identify([query])
        except Exception as e:
            logger.error(f"Vector identification failed: {e}", exc_info=True)
            return []

    def identify_by_text(self, query: str) -> List[Record]:
        """Full-text search over plant names and categories"""
        try:
            records = self.store.search_text(query)
        except Exception as e:
            logger.error(f"Text search for {query!r} failed: {e}", exc_info=True)
            return []

        log_operation(logger, 'identify_by_text', query=query, results=len(records))
        return records

    def wait_until_indexed(self, timeout: Optional[float] = None) -> bool:
        """Block until the background maintenance has caught up"""
        return self.maintainer.wait_idle(timeout)

    def get_statistics(self) -> Dict:
        """Catalog and store metrics"""
        catalog = self.catalog_loader.catalog
        index_name = self.config.indexing.index_name
        return {
            'mode': 'catalog' if self.config.demo_mode else 'live_index',
            'catalog_entries': len(catalog),
            'catalog_dimension': catalog.dimension,
            'catalog_bytes': catalog.memory_footprint(),
            'documents': self.store.count_documents(),
            'live_index': index_name if self.store.has_vector_index(index_name) else None,
            'indexed_documents': len(self.store.indexed_revisions(index_name)),
        }
