# core/embedder.py

import logging
import numpy as np
from typing import Iterator, List, Optional, Protocol

from core.similarity import QueryVector, Variant
from utils.image_utils import decode_image, fit, zoom

logger = logging.getLogger(__name__)


class FeatureExtractor(Protocol):
    """Anything that turns a BGR image into a feature vector"""

    def extract(self, image: np.ndarray) -> np.ndarray:
        ...


class ImageEmbedder:
    """
    Inference boundary of the identification engine

    Wraps a feature extractor so that every failure (undecodable bytes,
    model errors, wrong output size) becomes None instead of an exception.
    """

    def __init__(self, extractor: FeatureExtractor, dimension: int, image_size: int = 256):
        self.extractor = extractor
        self.dimension = dimension
        self.image_size = image_size

    def embed(self, image: Optional[np.ndarray]) -> Optional[np.ndarray]:
        """Embed one image, or None when inference is unavailable"""
        if image is None or image.size == 0:
            logger.warning("No image data to embed")
            return None

        try:
            prepared = fit(image, (self.image_size, self.image_size))
            vector = np.asarray(self.extractor.extract(prepared), dtype=np.float32).ravel()
        except Exception as e:
            logger.warning(f"Embedding failed: {e}")
            return None

        if vector.shape[0] != self.dimension:
            logger.warning(
                f"Unexpected embedding dimension {vector.shape[0]}, expected {self.dimension}"
            )
            return None
        if not np.all(np.isfinite(vector)):
            logger.warning("Embedding contains non-finite values")
            return None

        return vector

    def embed_bytes(self, data: bytes) -> Optional[np.ndarray]:
        """Decode encoded image bytes and embed them"""
        image = decode_image(data)
        if image is None:
            logger.warning("Could not decode image content")
            return None
        return self.embed(image)

    def variants(self, image: np.ndarray, zoom_factors: List[float]) -> Iterator[QueryVector]:
        """
        Lazily embed the image at each zoom factor, in order

        Nothing is embedded until the consumer asks for the next variant,
        so a caller that stops early never pays for later crops. Variants
        whose embedding fails are skipped.
        """
        for factor in zoom_factors:
            vector = self.embed(zoom(image, factor))
            if vector is None:
                logger.info(f"Skipping variant at zoom {factor}: no embedding")
                continue

            yield QueryVector(
                values=vector,
                source_variant=Variant.PRIMARY if factor <= 1 else Variant.ZOOMED,
                zoom_factor=factor
            )
