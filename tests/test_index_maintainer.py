# tests/test_index_maintainer.py

import threading

import numpy as np
import pytest

from core.database import RecordStore
from core.index_maintainer import IndexState, IndexWorker, LiveIndexMaintainer

INDEX = "ImageVectorIndex"
DIMENSION = 4


def embed_stub(content: bytes):
    """Deterministic vector from the content length; b'bad' fails"""
    if content == b'bad':
        return None
    if content == b'boom':
        raise RuntimeError("model crashed")
    v = np.zeros(DIMENSION, dtype=np.float32)
    v[len(content) % DIMENSION] = 1.0
    return v


@pytest.fixture
def store(tmp_path):
    store = RecordStore(str(tmp_path / "records.db"))
    store.create_vector_index(INDEX, DIMENSION)
    yield store
    store.close()


def add_documents(store, count, prefix="doc", image=b'image'):
    store.save_documents([
        {'id': f"{prefix}-{i:02d}", 'type': 'generic', 'name': f"Item {i}", 'image': image}
        for i in range(count)
    ])


def make_maintainer(store, embed_fn=embed_stub, sleeps=None, batch_size=5):
    recorded = sleeps if sleeps is not None else []
    return LiveIndexMaintainer(
        store, embed_fn,
        batch_size=batch_size,
        yield_interval=0.2,
        sleep=recorded.append
    )


def test_pass_indexes_in_batches(store):
    add_documents(store, 12)
    sleeps = []
    report = make_maintainer(store, sleeps=sleeps).run_pass(INDEX)

    assert report.batches == 3
    assert report.indexed == 12
    assert report.failed == 0
    assert sleeps == [0.2, 0.2, 0.2]
    assert store.list_unindexed(INDEX, 100) == []


def test_pass_is_idempotent(store):
    add_documents(store, 3)
    maintainer = make_maintainer(store)

    maintainer.run_pass(INDEX)
    before = store.load_vectors(INDEX)
    report = maintainer.run_pass(INDEX)
    after = store.load_vectors(INDEX)

    assert report.batches == 0
    assert before[0] == after[0]
    np.testing.assert_array_equal(before[1], after[1])


def test_partial_batch_failure_commits_successes(store):
    add_documents(store, 3)
    store.save_document({'id': 'doc-bad', 'type': 'generic', 'name': 'Bad', 'image': b'bad'})
    store.save_document({'id': 'doc-boom', 'type': 'generic', 'name': 'Boom', 'image': b'boom'})

    report = make_maintainer(store).run_pass(INDEX)

    assert report.indexed == 3
    assert report.failed == 2
    assert sorted(store.indexed_revisions(INDEX)) == ['doc-00', 'doc-01', 'doc-02']
    assert sorted(d.ref.doc_id for d in store.list_unindexed(INDEX, 10)) == ['doc-bad', 'doc-boom']


def test_failures_are_retried_on_next_pass(store):
    store.save_document({'id': 'flaky', 'type': 'generic', 'name': 'Flaky', 'image': b'photo'})
    attempts = []

    def flaky_embed(content):
        attempts.append(content)
        return None if len(attempts) == 1 else embed_stub(content)

    maintainer = make_maintainer(store, embed_fn=flaky_embed)

    first = maintainer.run_pass(INDEX)
    second = maintainer.run_pass(INDEX)

    assert (first.indexed, first.failed) == (0, 1)
    assert (second.indexed, second.failed) == (1, 0)
    assert list(store.indexed_revisions(INDEX)) == ['flaky']


def test_permanent_failure_does_not_spin(store):
    store.save_documents([
        {'id': f"bad-{i}", 'type': 'generic', 'name': 'Bad', 'image': b'bad'}
        for i in range(7)
    ])
    report = make_maintainer(store).run_pass(INDEX)

    assert report.batches == 2
    assert report.failed == 7
    assert report.indexed == 0


def test_wrong_length_embedding_fails_only_that_document(store):
    add_documents(store, 2)
    store.save_document({'id': 'doc-wide', 'type': 'generic', 'name': 'Wide', 'image': b'wide'})

    def embed(content):
        if content == b'wide':
            return np.ones(DIMENSION + 1, dtype=np.float32)
        return embed_stub(content)

    report = make_maintainer(store, embed_fn=embed).run_pass(INDEX)

    assert report.indexed == 2
    assert report.failed == 1
    ids, matrix = store.load_vectors(INDEX)
    assert ids == ['doc-00', 'doc-01']
    assert matrix.shape == (2, DIMENSION)


def test_missing_index_is_noop(store):
    add_documents(store, 2)
    calls = []
    maintainer = make_maintainer(store, embed_fn=lambda c: calls.append(c))

    report = maintainer.run_pass("NoSuchIndex")

    assert report.skipped_missing
    assert report.batches == 0
    assert calls == []


def test_documents_without_images_are_ignored(store):
    store.save_document({'id': 'plant', 'type': 'plant', 'name': 'Fern',
                         'usesPrecomputedEmbedding': True})
    report = make_maintainer(store).run_pass(INDEX)

    assert report.batches == 0
    assert report.indexed == 0


def test_state_returns_to_idle(store):
    add_documents(store, 2)
    seen_states = []
    maintainer = None

    def observing_embed(content):
        seen_states.append(maintainer.state(INDEX))
        return embed_stub(content)

    maintainer = make_maintainer(store, embed_fn=observing_embed)
    maintainer.run_pass(INDEX)

    assert seen_states == [IndexState.BATCH_EMBED, IndexState.BATCH_EMBED]
    assert maintainer.state(INDEX) == IndexState.IDLE


def test_background_worker_follows_changes(store):
    maintainer = make_maintainer(store)
    maintainer.start([INDEX])
    try:
        assert maintainer.wait_idle(timeout=5)
        add_documents(store, 6)
        assert maintainer.wait_idle(timeout=5)
    finally:
        maintainer.stop()

    assert len(store.indexed_revisions(INDEX)) == 6


def test_worker_coalesces_requests():
    started = threading.Event()
    release = threading.Event()
    passes = []

    def slow_pass(index_name):
        passes.append(index_name)
        started.set()
        release.wait(timeout=5)

    worker = IndexWorker(INDEX, slow_pass)
    worker.start()
    try:
        worker.request()
        assert started.wait(timeout=5)

        # Arrive while the first pass is running
        for _ in range(10):
            worker.request()

        release.set()
        assert worker.wait_idle(timeout=5)
    finally:
        worker.stop(timeout=5)

    assert passes == [INDEX, INDEX]
    assert worker.passes == 2


def test_worker_survives_failing_pass():
    calls = []

    def failing_pass(index_name):
        calls.append(index_name)
        raise RuntimeError("disk full")

    worker = IndexWorker(INDEX, failing_pass)
    worker.start()
    try:
        worker.request()
        assert worker.wait_idle(timeout=5)
        worker.request()
        assert worker.wait_idle(timeout=5)
    finally:
        worker.stop(timeout=5)

    assert len(calls) == 2
