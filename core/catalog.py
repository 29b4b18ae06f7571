# core/catalog.py

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import numpy as np

logger = logging.getLogger(__name__)


class IdentificationError(Exception):
    """Base class for identification engine errors"""


class MalformedArtifactError(IdentificationError):
    """The bundled embedding artifact could not be deserialized"""


@dataclass(frozen=True)
class ReferenceEmbedding:
    """Precomputed embedding for one catalog entry"""
    id: str
    display_name: str
    secondary_name: Optional[str]
    vector: np.ndarray
    content_digest: str


class EmbeddingCatalog:
    """
    Read-only set of precomputed reference embeddings

    Vectors are stacked into a single non-writeable float32 matrix so that
    ranking is one matrix-vector product and concurrent readers never see a
    partially built catalog.
    """

    def __init__(self, entries: List[ReferenceEmbedding], dimension: int):
        self.dimension = dimension
        self._entries: Dict[str, ReferenceEmbedding] = {}
        for entry in entries:
            if entry.id in self._entries:
                logger.warning(f"Duplicate catalog id '{entry.id}', keeping the later entry")
            self._entries[entry.id] = entry

        self.ids: List[str] = list(self._entries.keys())
        if self.ids:
            matrix = np.vstack([self._entries[i].vector for i in self.ids])
        else:
            matrix = np.zeros((0, dimension), dtype=np.float32)
        matrix.setflags(write=False)
        self.matrix = matrix

    @classmethod
    def empty(cls, dimension: int) -> 'EmbeddingCatalog':
        return cls([], dimension)

    @classmethod
    def load(cls, artifact_bytes: bytes, dimension: int) -> 'EmbeddingCatalog':
        """
        Deserialize a catalog artifact

        Args:
            artifact_bytes: JSON array of {plantId, name, scientificName,
                            embedding, imageDigest} records
            dimension: Expected vector length for every entry

        Returns:
            Fully loaded catalog

        Raises:
            MalformedArtifactError: on any decoding or dimension problem;
                                    no partial catalog is produced
        """
        try:
            raw = json.loads(artifact_bytes)
        except (ValueError, UnicodeDecodeError) as e:
            raise MalformedArtifactError(f"Artifact is not valid JSON: {e}")

        if not isinstance(raw, list):
            raise MalformedArtifactError("Artifact must be a JSON array")

        entries = []
        for position, item in enumerate(raw):
            entries.append(cls._parse_entry(item, position, dimension))

        return cls(entries, dimension)

    @classmethod
    def from_file(cls, path: str, dimension: int) -> 'EmbeddingCatalog':
        """Load a catalog artifact from disk"""
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            raise MalformedArtifactError(f"Cannot read artifact {path}: {e}")
        return cls.load(data, dimension)

    @staticmethod
    def _parse_entry(item, position: int, dimension: int) -> ReferenceEmbedding:
        if not isinstance(item, dict):
            raise MalformedArtifactError(f"Entry {position} is not an object")

        for key in ('plantId', 'name', 'embedding', 'imageDigest'):
            if key not in item:
                raise MalformedArtifactError(f"Entry {position} is missing '{key}'")

        try:
            vector = np.asarray(item['embedding'], dtype=np.float32)
        except (TypeError, ValueError, OverflowError):
            raise MalformedArtifactError(f"Entry {position} has a non-numeric embedding")

        if vector.ndim != 1 or vector.shape[0] != dimension:
            raise MalformedArtifactError(
                f"Entry {position} ('{item['plantId']}') has dimension "
                f"{vector.shape[-1] if vector.ndim else 0}, expected {dimension}"
            )
        if not np.all(np.isfinite(vector)):
            raise MalformedArtifactError(f"Entry {position} contains non-finite values")

        vector.setflags(write=False)
        secondary = item.get('scientificName')

        return ReferenceEmbedding(
            id=str(item['plantId']),
            display_name=str(item['name']),
            secondary_name=str(secondary) if secondary else None,
            vector=vector,
            content_digest=str(item['imageDigest'])
        )

    def get(self, entry_id: str) -> Optional[ReferenceEmbedding]:
        return self._entries.get(entry_id)

    def find_by_name(self, display_name: str) -> Optional[ReferenceEmbedding]:
        """Lookup by display name (linear, catalog is small)"""
        for entry in self._entries.values():
            if entry.display_name == display_name:
                return entry
        return None

    def all(self) -> Iterator[ReferenceEmbedding]:
        return iter(list(self._entries.values()))

    def memory_footprint(self) -> int:
        """Bytes held by the embedding vectors"""
        return int(self.matrix.nbytes)

    def __len__(self) -> int:
        return len(self.ids)

    def __contains__(self, entry_id: str) -> bool:
        return entry_id in self._entries


class CatalogLoader:
    """
    One-shot catalog initialization guarded by a readiness flag

    Search waits on the flag; unrelated startup work does not. A missing or
    malformed artifact degrades to an empty catalog.
    """

    def __init__(self, catalog_path: str, dimension: int):
        self.catalog_path = catalog_path
        self.dimension = dimension
        self._catalog: Optional[EmbeddingCatalog] = None
        self._ready = threading.Event()
        self._started = False
        self._lock = threading.Lock()

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    def start(self):
        """Load the catalog on a background thread"""
        with self._lock:
            if self._started:
                return
            self._started = True

        thread = threading.Thread(target=self._load, name="catalog-loader", daemon=True)
        thread.start()

    def load_now(self) -> EmbeddingCatalog:
        """Load synchronously (no-op when already loaded or loading)"""
        with self._lock:
            started = self._started
            self._started = True

        if not started:
            self._load()
        return self.catalog

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        return self._ready.wait(timeout)

    @property
    def catalog(self) -> EmbeddingCatalog:
        """Loaded catalog, blocking until initialization has finished"""
        if not self._started:
            self.load_now()
        self._ready.wait()
        return self._catalog

    def _load(self):
        catalog = EmbeddingCatalog.empty(self.dimension)
        try:
            catalog = EmbeddingCatalog.from_file(self.catalog_path, self.dimension)
            logger.info(
                f"Loaded {len(catalog)} precomputed embeddings "
                f"({catalog.memory_footprint() / 1024:.1f} KB)"
            )
        except MalformedArtifactError as e:
            logger.error(f"Catalog unavailable, continuing with no precomputed matches: {e}")
        except Exception:
            logger.exception("Catalog load failed, continuing with no precomputed matches")
        finally:
            # Waiters must never block on a load that died
            self._catalog = catalog
            self._ready.set()
