# core/index_maintainer.py

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

import numpy as np

from core.database import DocumentRef, RecordStore
from utils.logging_config import log_operation

logger = logging.getLogger(__name__)

EmbedFunction = Callable[[bytes], Optional[np.ndarray]]


class IndexState(Enum):
    IDLE = "idle"
    BATCH_FETCH = "batch_fetch"
    BATCH_EMBED = "batch_embed"
    BATCH_COMMIT = "batch_commit"


@dataclass
class IndexingReport:
    """Outcome of one maintenance pass over a single index"""
    index_name: str
    batches: int = 0
    indexed: int = 0
    failed: int = 0
    skipped_missing: bool = False
    duration_seconds: float = 0.0


class LiveIndexMaintainer:
    """
    Keeps persisted vector indexes in sync with the document store

    A pass walks the unindexed documents of one index in bounded batches:
    fetch, embed each item, commit the batch in one transaction, then yield
    for `yield_interval` seconds so foreground work can run. Items whose
    embedding fails are left out for the rest of the pass and picked up
    again by the next one.
    """

    def __init__(self,
                 store: RecordStore,
                 embed_fn: EmbedFunction,
                 batch_size: int = 5,
                 yield_interval: float = 0.2,
                 sleep: Callable[[float], None] = time.sleep):
        self.store = store
        self.embed_fn = embed_fn
        self.batch_size = batch_size
        self.yield_interval = yield_interval
        self._sleep = sleep

        self._states: Dict[str, IndexState] = {}
        self._pass_locks: Dict[str, threading.Lock] = {}
        self._workers: Dict[str, 'IndexWorker'] = {}
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._stopping = threading.Event()
        self._lock = threading.Lock()

    def state(self, index_name: str) -> IndexState:
        with self._lock:
            return self._states.get(index_name, IndexState.IDLE)

    def _set_state(self, index_name: str, state: IndexState):
        with self._lock:
            self._states[index_name] = state

    def _pass_lock(self, index_name: str) -> threading.Lock:
        with self._lock:
            return self._pass_locks.setdefault(index_name, threading.Lock())

    def run_pass(self, index_name: str) -> IndexingReport:
        """
        Bring one index up to date with the store

        Passes over the same index never overlap; a concurrent caller waits
        for the running pass and then runs its own.

        Returns:
            IndexingReport; a missing index gives an empty report with
            skipped_missing set
        """
        report = IndexingReport(index_name=index_name)

        with self._pass_lock(index_name):
            if not self.store.has_vector_index(index_name):
                logger.info(f"Vector index '{index_name}' does not exist, nothing to maintain")
                report.skipped_missing = True
                return report

            start_time = time.time()
            dimension = self.store.index_dimension(index_name)
            failed: Set[str] = set()

            try:
                while not self._stopping.is_set():
                    self._set_state(index_name, IndexState.BATCH_FETCH)
                    batch = self.store.list_unindexed(index_name, self.batch_size, exclude=failed)
                    if not batch:
                        break

                    self._set_state(index_name, IndexState.BATCH_EMBED)
                    pairs: List[Tuple[DocumentRef, np.ndarray]] = []
                    for document in batch:
                        vector = self._embed(document.ref, document.content, dimension)
                        if vector is None:
                            failed.add(document.ref.doc_id)
                        else:
                            pairs.append((document.ref, vector))

                    self._set_state(index_name, IndexState.BATCH_COMMIT)
                    if pairs:
                        if self.store.commit_vectors(index_name, pairs):
                            report.indexed += len(pairs)
                        else:
                            failed.update(ref.doc_id for ref, _ in pairs)
                    report.batches += 1

                    self._sleep(self.yield_interval)
            finally:
                self._set_state(index_name, IndexState.IDLE)

            report.failed = len(failed)
            report.duration_seconds = time.time() - start_time

        if report.batches:
            log_operation(
                logger, 'index_pass',
                index=index_name,
                batches=report.batches,
                indexed=report.indexed,
                failed=report.failed,
                duration_seconds=round(report.duration_seconds, 3)
            )
        return report

    def _embed(self, ref: DocumentRef, content: bytes,
               dimension: Optional[int]) -> Optional[np.ndarray]:
        try:
            vector = self.embed_fn(content)
        except Exception as e:
            logger.warning(f"Failed to generate embedding for document '{ref.doc_id}': {e}")
            return None

        if vector is None:
            logger.warning(f"Failed to generate embedding for document '{ref.doc_id}'")
            return None

        vector = np.asarray(vector, dtype=np.float32).ravel()
        if dimension is not None and vector.shape[0] != dimension:
            logger.warning(
                f"Embedding for document '{ref.doc_id}' has {vector.shape[0]} values, "
                f"index expects {dimension}"
            )
            return None
        return vector

    # Background operation

    def start(self, index_names: Iterable[str]):
        """
        Start one worker per index, run an initial pass on each and
        follow store change notifications
        """
        self._stopping.clear()
        with self._lock:
            for index_name in index_names:
                if index_name in self._workers:
                    continue
                worker = IndexWorker(index_name, self.run_pass)
                self._workers[index_name] = worker
                worker.start()

        if self._unsubscribe is None:
            self._unsubscribe = self.store.add_change_listener(self._on_change)

        self.notify()

    def _on_change(self, doc_ids: List[str]):
        logger.debug(f"{len(doc_ids)} document(s) changed, scheduling index maintenance")
        self.notify()

    def notify(self):
        """Request a pass on every index (coalesced while one is running)"""
        with self._lock:
            workers = list(self._workers.values())
        for worker in workers:
            worker.request()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until no pass is running or pending on any index"""
        deadline = None if timeout is None else time.time() + timeout
        with self._lock:
            workers = list(self._workers.values())

        for worker in workers:
            remaining = None if deadline is None else max(0.0, deadline - time.time())
            if not worker.wait_idle(remaining):
                return False
        return True

    def stop(self, timeout: Optional[float] = 5.0):
        """Stop all workers; a batch already started still commits"""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        self._stopping.set()
        with self._lock:
            workers = list(self._workers.values())
            self._workers.clear()
        for worker in workers:
            worker.stop(timeout)


class IndexWorker:
    """
    Dedicated thread running maintenance passes for one index

    Requests that arrive while a pass is running collapse into a single
    follow-up pass.
    """

    def __init__(self, index_name: str, run_pass: Callable[[str], IndexingReport]):
        self.index_name = index_name
        self._run_pass = run_pass
        self._condition = threading.Condition()
        self._pending = False
        self._running = False
        self._stopped = False
        self.passes = 0
        self._thread = threading.Thread(
            target=self._loop, name=f"index-{index_name}", daemon=True
        )

    def start(self):
        self._thread.start()

    def request(self):
        with self._condition:
            self._pending = True
            self._condition.notify_all()

    def _loop(self):
        while True:
            with self._condition:
                while not self._pending and not self._stopped:
                    self._condition.wait()
                if self._stopped:
                    return
                self._pending = False
                self._running = True

            try:
                self._run_pass(self.index_name)
            except Exception:
                logger.exception(f"Maintenance pass on '{self.index_name}' failed")
            finally:
                with self._condition:
                    self._running = False
                    self.passes += 1
                    self._condition.notify_all()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._condition:
            return self._condition.wait_for(
                lambda: self._stopped or (not self._pending and not self._running),
                timeout
            )

    def stop(self, timeout: Optional[float] = None):
        with self._condition:
            self._stopped = True
            self._condition.notify_all()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout)
