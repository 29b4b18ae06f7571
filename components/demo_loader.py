# components/demo_loader.py

import io
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from PIL import Image, UnidentifiedImageError
from tqdm import tqdm

from core.database import RecordStore
from core.records import PLANT_TYPE

logger = logging.getLogger(__name__)

ASSET_EXTENSIONS = ('', '.png', '.jpg', '.jpeg', '.webp')


@dataclass
class DemoLoadReport:
    """Summary of a demo data load"""
    loaded: int = 0
    skipped: int = 0
    precomputed: int = 0
    missing_images: List[str] = field(default_factory=list)


class DemoDataLoader:
    """
    Seed the record store from a JSON array of documents

    Plants are served from the precomputed catalog, so their image is
    dropped and they are flagged as using a precomputed embedding. Other
    documents keep their image, resolved by name in the assets directory
    and stored as PNG.
    """

    def __init__(self,
                 store: RecordStore,
                 assets_dir: str = "data/assets",
                 batch_size: int = 10,
                 batch_pause: float = 0.1,
                 sleep: Callable[[float], None] = time.sleep):
        self.store = store
        self.assets_dir = Path(assets_dir)
        self.batch_size = batch_size
        self.batch_pause = batch_pause
        self._sleep = sleep

    def load_file(self, path: str) -> DemoLoadReport:
        """Load demo documents from a JSON file"""
        with open(path, 'r', encoding='utf-8') as f:
            items = json.load(f)

        if not isinstance(items, list):
            raise ValueError(f"Demo data in {path} must be a JSON array")

        return self.load(items)

    def load(self, items: List[Dict[str, Any]]) -> DemoLoadReport:
        report = DemoLoadReport()
        total_batches = (len(items) + self.batch_size - 1) // self.batch_size
        logger.info(f"Loading {len(items)} demo items in {total_batches} batches")

        for batch_index in tqdm(range(total_batches), desc="Loading demo data"):
            start = batch_index * self.batch_size
            batch = items[start:start + self.batch_size]

            documents = []
            for item in batch:
                document = self._prepare(item, report)
                if document is None:
                    report.skipped += 1
                else:
                    documents.append(document)

            if documents:
                self.store.save_documents(documents)
                report.loaded += len(documents)

            # Pause between batches so readers and the indexer get a turn
            if batch_index < total_batches - 1:
                self._sleep(self.batch_pause)

        logger.info(
            f"Demo data loaded: {report.loaded} documents "
            f"({report.precomputed} plants using precomputed embeddings), "
            f"{report.skipped} skipped"
        )
        return report

    def _prepare(self, item: Any, report: DemoLoadReport) -> Optional[Dict[str, Any]]:
        if not isinstance(item, dict) or not item.get('id') or not item.get('name'):
            logger.warning(f"Skipping demo item without id or name: {item!r:.80}")
            return None

        document = dict(item)

        if document.get('type') == PLANT_TYPE:
            document.pop('image', None)
            document['usesPrecomputedEmbedding'] = True
            report.precomputed += 1
            return document

        image_name = document.get('image')
        if isinstance(image_name, str):
            png = self._load_asset(image_name)
            if png is None:
                logger.warning(f"Could not load image '{image_name}'")
                report.missing_images.append(image_name)
            document['image'] = png
        elif image_name is not None and not isinstance(image_name, (bytes, bytearray)):
            document['image'] = None

        return document

    def _load_asset(self, name: str) -> Optional[bytes]:
        """Find an asset by name (extension optional) and encode it as PNG"""
        for extension in ASSET_EXTENSIONS:
            candidate = self.assets_dir / f"{name}{extension}"
            if not candidate.is_file():
                continue

            try:
                with Image.open(candidate) as img:
                    buffer = io.BytesIO()
                    img.convert('RGB').save(buffer, format='PNG')
                    return buffer.getvalue()
            except (OSError, UnidentifiedImageError) as e:
                logger.warning(f"Unreadable asset {candidate}: {e}")
                return None

        return None
