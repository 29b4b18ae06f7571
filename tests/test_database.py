# tests/test_database.py

import numpy as np
import pytest

from core.database import DocumentRef, RecordStore
from core.records import GenericRecord, InvalidDocumentError, PlantRecord

INDEX = "ImageVectorIndex"


@pytest.fixture
def store(tmp_path):
    store = RecordStore(str(tmp_path / "records.db"))
    yield store
    store.close()


@pytest.fixture
def seeded_store(store):
    store.save_documents([
        {
            'id': 'snake_plant',
            'type': 'plant',
            'name': 'Snake Plant',
            'scientificName': 'Dracaena trifasciata',
            'category': 'Succulent',
            'price': 24.99,
            'location': 'Aisle 3',
            'wateringSchedule': {'frequency': 'Every 2-3 weeks', 'amount': 'Light'},
            'careInstructions': {'light': 'Low to bright indirect'},
            'characteristics': {'toxicToPets': True, 'airPurifying': True},
        },
        {'id': 'spider_plant', 'type': 'plant', 'name': 'Spider Plant', 'category': 'Foliage'},
        {'id': 'pot-1', 'type': 'generic', 'name': 'Terracotta Pot', 'category': 'Pots',
         'price': 9.5, 'image': b'png-bytes-1'},
        {'id': 'soil-1', 'type': 'generic', 'name': 'Potting Soil', 'category': 'Soil',
         'image': b'png-bytes-2'},
    ])
    return store


def test_get_by_id_returns_typed_records(seeded_store):
    plant = seeded_store.get_by_id('snake_plant')

    assert isinstance(plant, PlantRecord)
    assert plant.kind == 'plant'
    assert plant.scientific_name == 'Dracaena trifasciata'
    assert plant.watering_schedule.frequency == 'Every 2-3 weeks'
    assert plant.care_instructions.light == 'Low to bright indirect'
    assert plant.characteristics.toxic_to_pets is True
    assert plant.characteristics.flowering is False
    assert plant.details == '$24.99 - Aisle 3'

    pot = seeded_store.get_by_id('pot-1')
    assert isinstance(pot, GenericRecord)
    assert pot.subtitle == 'Pots'
    assert seeded_store.get_by_id('missing') is None


def test_query_by_natural_key(seeded_store):
    assert seeded_store.query_by_natural_key('snake_plant').id == 'snake_plant'
    assert seeded_store.query_by_natural_key('Spider Plant').id == 'spider_plant'
    assert seeded_store.query_by_natural_key('cactus') is None


def test_search_text_prefix_and_plants_only(seeded_store):
    results = seeded_store.search_text("Pla")
    assert sorted(r.id for r in results) == ['snake_plant', 'spider_plant']

    assert [r.id for r in seeded_store.search_text("Suc")] == ['snake_plant']
    assert seeded_store.search_text("Terracotta") == []
    assert [r.id for r in seeded_store.search_text("Terracotta", plants_only=False)] == ['pot-1']


def test_search_text_invalid_expression_returns_empty(seeded_store):
    assert seeded_store.search_text("(blue OR") == []
    assert seeded_store.search_text('"unbalanced') == []
    assert seeded_store.search_text("   ") == []


def test_save_bumps_revision_and_notifies(store):
    events = []
    unsubscribe = store.add_change_listener(events.append)

    store.save_document({'id': 'a', 'name': 'A', 'image': b'1'})
    store.save_document({'id': 'a', 'name': 'A', 'image': b'2'})
    unsubscribe()
    store.save_document({'id': 'b', 'name': 'B'})

    assert events == [['a'], ['a']]
    [doc] = store.list_unindexed(INDEX, 10)
    assert doc.ref == DocumentRef('a', 2)
    assert doc.content == b'2'


def test_listener_failure_does_not_break_save(store):
    def broken(_ids):
        raise RuntimeError("listener down")

    store.add_change_listener(broken)
    assert store.save_document({'id': 'a', 'name': 'A'}) == 'a'
    assert store.count_documents() == 1


def test_invalid_documents_rejected(store):
    with pytest.raises(InvalidDocumentError):
        store.save_document({'id': 'x'})
    with pytest.raises(InvalidDocumentError):
        store.save_document({'id': 'x', 'name': 'X', 'image': 'not-bytes'})
    assert store.count_documents() == 0


def test_list_unindexed_and_commit(seeded_store):
    seeded_store.create_vector_index(INDEX, 3)
    pending = seeded_store.list_unindexed(INDEX, 10)

    assert [d.ref.doc_id for d in pending] == ['pot-1', 'soil-1']
    assert seeded_store.list_unindexed(INDEX, 1)[0].ref.doc_id == 'pot-1'
    assert [d.ref.doc_id for d in seeded_store.list_unindexed(INDEX, 10, exclude={'pot-1'})] == ['soil-1']

    pairs = [(d.ref, np.array([1.0, 0.0, 0.0])) for d in pending]
    assert seeded_store.commit_vectors(INDEX, pairs)
    assert seeded_store.list_unindexed(INDEX, 10) == []

    ids, matrix = seeded_store.load_vectors(INDEX)
    assert ids == ['pot-1', 'soil-1']
    assert matrix.shape == (2, 3)


def test_commit_is_idempotent(seeded_store):
    seeded_store.create_vector_index(INDEX, 3)
    pairs = [(d.ref, np.array([0.0, 1.0, 0.0])) for d in seeded_store.list_unindexed(INDEX, 10)]

    assert seeded_store.commit_vectors(INDEX, pairs)
    first_ids, first_matrix = seeded_store.load_vectors(INDEX)
    assert seeded_store.commit_vectors(INDEX, pairs)
    second_ids, second_matrix = seeded_store.load_vectors(INDEX)

    assert first_ids == second_ids
    np.testing.assert_array_equal(first_matrix, second_matrix)
    assert seeded_store.indexed_revisions(INDEX) == {'pot-1': 1, 'soil-1': 1}


def test_updated_document_becomes_unindexed(seeded_store):
    seeded_store.create_vector_index(INDEX, 3)
    pairs = [(d.ref, np.ones(3)) for d in seeded_store.list_unindexed(INDEX, 10)]
    seeded_store.commit_vectors(INDEX, pairs)

    seeded_store.save_document({'id': 'pot-1', 'type': 'generic', 'name': 'Terracotta Pot',
                                'image': b'new-photo'})

    [doc] = seeded_store.list_unindexed(INDEX, 10)
    assert doc.ref == DocumentRef('pot-1', 2)


def test_commit_ignores_deleted_documents(seeded_store):
    seeded_store.create_vector_index(INDEX, 3)
    pending = seeded_store.list_unindexed(INDEX, 10)
    version = seeded_store.vector_index_version(INDEX)

    assert seeded_store.delete_document('pot-1')
    assert seeded_store.vector_index_version(INDEX) > version
    assert seeded_store.commit_vectors(INDEX, [(d.ref, np.ones(3)) for d in pending])

    ids, _ = seeded_store.load_vectors(INDEX)
    assert ids == ['soil-1']
    assert seeded_store.get_by_id('pot-1') is None
    assert seeded_store.search_text("Terracotta", plants_only=False) == []


def test_commit_rejects_wrong_dimension(seeded_store):
    seeded_store.create_vector_index(INDEX, 3)
    pot, soil = seeded_store.list_unindexed(INDEX, 10)
    version = seeded_store.vector_index_version(INDEX)

    assert not seeded_store.commit_vectors(INDEX, [(pot.ref, np.ones(3)), (soil.ref, np.ones(4))])

    # Nothing from the batch was written and the index still loads
    assert seeded_store.vector_index_version(INDEX) == version
    ids, matrix = seeded_store.load_vectors(INDEX)
    assert ids == []
    assert matrix.shape == (0, 3)

    assert seeded_store.commit_vectors(INDEX, [(pot.ref, np.ones(3))])
    ids, matrix = seeded_store.load_vectors(INDEX)
    assert ids == ['pot-1']
    assert matrix.shape == (1, 3)


def test_commit_to_missing_index_rejected(seeded_store):
    [pot, _] = seeded_store.list_unindexed(INDEX, 10)

    assert not seeded_store.commit_vectors("NoSuchIndex", [(pot.ref, np.ones(3))])
    assert seeded_store.indexed_revisions("NoSuchIndex") == {}


def test_load_vectors_skips_corrupt_rows(seeded_store):
    seeded_store.create_vector_index(INDEX, 3)
    pot, _ = seeded_store.list_unindexed(INDEX, 10)
    assert seeded_store.commit_vectors(INDEX, [(pot.ref, np.array([1.0, 0.0, 0.0]))])

    seeded_store.conn.execute(
        "INSERT INTO index_vectors (index_name, doc_id, revision, vector, indexed_at) "
        "VALUES (?, ?, ?, ?, ?)",
        (INDEX, 'soil-1', 1, np.ones(5, dtype=np.float32).tobytes(), '2024-01-01T00:00:00')
    )
    seeded_store.conn.commit()

    ids, matrix = seeded_store.load_vectors(INDEX)
    assert ids == ['pot-1']
    assert matrix.shape == (1, 3)


def test_vector_index_lifecycle(store):
    assert not store.has_vector_index(INDEX)
    store.create_vector_index(INDEX, 512)
    store.create_vector_index(INDEX, 512)

    assert store.has_vector_index(INDEX)
    assert store.index_dimension(INDEX) == 512

    store.drop_vector_index(INDEX)
    assert not store.has_vector_index(INDEX)
    assert store.index_dimension(INDEX) is None
