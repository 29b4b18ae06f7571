# tests/test_demo_loader.py

import json

import numpy as np
import pytest
from PIL import Image

from components.demo_loader import DemoDataLoader
from core.database import RecordStore
from utils.image_utils import decode_image

INDEX = "ImageVectorIndex"


@pytest.fixture
def store(tmp_path):
    store = RecordStore(str(tmp_path / "records.db"))
    yield store
    store.close()


@pytest.fixture
def assets_dir(tmp_path):
    assets = tmp_path / "assets"
    assets.mkdir()
    Image.fromarray(np.full((16, 16, 3), 200, dtype=np.uint8)).save(assets / "pot.jpg")
    return assets


def demo_items(count):
    items = [
        {'id': f"plant-{i:02d}", 'type': 'plant', 'name': f"Plant {i}", 'image': f"plant{i}"}
        for i in range(count)
    ]
    items.append({'id': 'pot-1', 'type': 'generic', 'name': 'Clay Pot', 'image': 'pot'})
    items.append({'id': 'tray-1', 'type': 'generic', 'name': 'Tray', 'image': 'tray'})
    return items


def test_loads_in_batches_with_pauses(store, assets_dir):
    pauses = []
    loader = DemoDataLoader(store, str(assets_dir), batch_size=10, sleep=pauses.append)

    report = loader.load(demo_items(23))

    assert report.loaded == 25
    assert report.precomputed == 23
    assert store.count_documents() == 25
    assert pauses == [0.1, 0.1]


def test_plants_drop_image_and_use_catalog(store, assets_dir):
    DemoDataLoader(store, str(assets_dir), sleep=lambda _: None).load(demo_items(2))

    unindexed = [d.ref.doc_id for d in store.list_unindexed(INDEX, 50)]
    assert 'plant-00' not in unindexed
    assert store.get_by_id('plant-00').kind == 'plant'


def test_other_documents_load_asset_images(store, assets_dir):
    report = DemoDataLoader(store, str(assets_dir), sleep=lambda _: None).load(demo_items(1))

    [pot] = [d for d in store.list_unindexed(INDEX, 50) if d.ref.doc_id == 'pot-1']
    image = decode_image(pot.content)
    assert image.shape == (16, 16, 3)

    assert report.missing_images == ['tray']
    assert store.get_by_id('tray-1') is not None


def test_invalid_items_are_skipped(store, assets_dir):
    items = [{'name': 'No id'}, {'id': 'x'}, 'junk', {'id': 'ok', 'name': 'Fine'}]
    report = DemoDataLoader(store, str(assets_dir), sleep=lambda _: None).load(items)

    assert report.loaded == 1
    assert report.skipped == 3


def test_load_file(store, assets_dir, tmp_path):
    path = tmp_path / "demo-data.json"
    path.write_text(json.dumps(demo_items(3)))

    report = DemoDataLoader(store, str(assets_dir), sleep=lambda _: None).load_file(str(path))

    assert report.loaded == 5


def test_load_file_rejects_non_array(store, assets_dir, tmp_path):
    path = tmp_path / "demo-data.json"
    path.write_text(json.dumps({'id': 'x'}))

    with pytest.raises(ValueError):
        DemoDataLoader(store, str(assets_dir)).load_file(str(path))
