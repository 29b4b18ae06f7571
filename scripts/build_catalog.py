# scripts/build_catalog.py

import argparse
import hashlib
import json
import logging
import re
from collections import OrderedDict
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np
from tqdm import tqdm

from core.embedder import ImageEmbedder
from core.records import slugify
from utils.file_utils import file_digest, format_file_size, get_image_files
from utils.image_utils import load_image

logger = logging.getLogger(__name__)

TRAILING_NUMBER = re.compile(r"\s+\d+$")


def parse_filename(stem: str) -> Tuple[str, Optional[str]]:
    """
    Split a dataset file name into plant name and scientific name

    "Aloe Vera (Aloe barbadensis) 139" -> ("Aloe Vera", "Aloe barbadensis")
    "Snake Plant 12"                   -> ("Snake Plant", None)
    """
    base_name = stem
    scientific_name = None

    open_paren = stem.find("(")
    close_paren = stem.find(")", open_paren + 1)
    if open_paren != -1 and close_paren != -1:
        base_name = stem[:open_paren].strip()
        scientific_name = stem[open_paren + 1:close_paren].strip() or None

    return TRAILING_NUMBER.sub("", base_name.strip()), scientific_name


def build_catalog(dataset_dir: str, embedder: ImageEmbedder) -> List[Dict]:
    """
    Embed every dataset image and merge them into one entry per plant

    The entry vector is the mean of the plant's image embeddings,
    re-normalized to unit length. The digest covers the contents of every
    source image, so it changes whenever the dataset for a plant changes.
    """
    image_files = get_image_files(dataset_dir)
    print(f"Found {len(image_files)} plant images in {dataset_dir}")

    plants: "OrderedDict[str, Dict]" = OrderedDict()
    failed = 0

    for image_path in tqdm(image_files, desc="Generating embeddings"):
        name, scientific_name = parse_filename(Path(image_path).stem)
        if not name:
            logger.warning(f"Cannot derive a plant name from {image_path}")
            failed += 1
            continue

        vector = embedder.embed(load_image(image_path))
        if vector is None:
            logger.warning(f"Could not embed {image_path}")
            failed += 1
            continue

        plant_id = slugify(name)
        plant = plants.setdefault(plant_id, {
            'name': name,
            'scientificName': scientific_name,
            'vectors': [],
            'digests': []
        })
        if plant['scientificName'] is None:
            plant['scientificName'] = scientific_name
        plant['vectors'].append(vector)
        plant['digests'].append(file_digest(image_path))

    entries = []
    for plant_id, plant in plants.items():
        mean = np.mean(np.vstack(plant['vectors']), axis=0)
        norm = np.linalg.norm(mean)
        if norm > 0:
            mean = mean / norm

        digest = hashlib.sha256("".join(sorted(plant['digests'])).encode()).hexdigest()
        entries.append({
            'plantId': plant_id,
            'name': plant['name'],
            'scientificName': plant['scientificName'],
            'embedding': [float(x) for x in mean],
            'imageDigest': digest,
            'imageCount': len(plant['vectors'])
        })

    print(f"Built {len(entries)} catalog entries ({failed} images skipped)")
    return entries


def save_catalog(entries: List[Dict], output_path: str, model_name: str = "") -> Path:
    """
    Write the catalog artifact and a metadata sidecar without vectors

    Returns:
        Path of the metadata sidecar
    """
    output = Path(output_path)
    output.parent.mkdir(parents=True, exist_ok=True)

    artifact = [
        {key: entry[key] for key in ('plantId', 'name', 'scientificName', 'embedding', 'imageDigest')}
        for entry in entries
    ]
    with open(output, 'w') as f:
        json.dump(artifact, f)

    metadata = {
        'created': datetime.now().isoformat(),
        'model': model_name,
        'dimension': len(entries[0]['embedding']) if entries else 0,
        'entries': len(entries),
        'plants': [
            {key: value for key, value in entry.items() if key != 'embedding'}
            for entry in entries
        ]
    }
    sidecar = output.with_name(f"{output.stem}_metadata.json")
    with open(sidecar, 'w') as f:
        json.dump(metadata, f, indent=2)

    print(f"Saved catalog to {output} ({format_file_size(output.stat().st_size)})")
    return sidecar


if __name__ == "__main__":
    from config import SystemConfig
    from core.feature_extractors import CLIPFeatureExtractor

    parser = argparse.ArgumentParser(description="Build the precomputed plant embedding catalog")
    parser.add_argument('dataset', help='Directory of plant images')
    parser.add_argument('-o', '--output', help='Catalog artifact path')
    parser.add_argument('--config', default='config.yaml', help='Configuration file')

    args = parser.parse_args()
    config = SystemConfig.load(args.config)

    extractor = CLIPFeatureExtractor(
        config.embedding.model_name,
        device='cuda' if config.embedding.use_gpu else 'cpu'
    )
    embedder = ImageEmbedder(extractor, config.embedding.dimension, config.embedding.image_size)

    catalog_entries = build_catalog(args.dataset, embedder)
    save_catalog(catalog_entries, args.output or config.catalog_path, config.embedding.model_name)
