# core/database.py

import sqlite3
import threading
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, List, Dict, Callable, Iterable, Tuple, Set, Any
import json
from datetime import datetime

import numpy as np

from core.records import Record, record_from_document, slugify, InvalidDocumentError, PLANT_TYPE

logger = logging.getLogger(__name__)

ChangeListener = Callable[[List[str]], None]


@dataclass(frozen=True)
class DocumentRef:
    """A document at a specific revision, as handed out for indexing"""
    doc_id: str
    revision: int


@dataclass(frozen=True)
class RawDocument:
    """Document content needed to (re)compute its vector"""
    ref: DocumentRef
    content: bytes


class RecordStore:
    """
    SQLite document store with full-text search and live vector indexes
    """

    def __init__(self, db_path: str = "data/records.db"):
        self.db_path = db_path
        self.conn = None
        self._lock = threading.RLock()
        self._listeners: List[ChangeListener] = []
        self._vector_versions: Dict[str, int] = {}
        self._initialize_database()

    def _initialize_database(self):
        """Create database schema"""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)

        cursor = self.conn.cursor()

        # Main documents table
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                name TEXT NOT NULL,
                name_key TEXT NOT NULL,
                scientific_name TEXT,
                category TEXT,
                price FLOAT,
                location TEXT,
                attributes TEXT,
                image BLOB,
                uses_precomputed_embedding BOOLEAN DEFAULT 0,
                revision INTEGER NOT NULL DEFAULT 1,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # Full-text index on name and category
        cursor.execute("""
            CREATE VIRTUAL TABLE IF NOT EXISTS documents_fts
            USING fts5(id UNINDEXED, name, category)
        """)

        # Live vector indexes and their entries
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS vector_indexes (
                name TEXT PRIMARY KEY,
                dimension INTEGER NOT NULL,
                metric TEXT NOT NULL DEFAULT 'cosine'
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS index_vectors (
                index_name TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                revision INTEGER NOT NULL,
                vector BLOB NOT NULL,
                indexed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (index_name, doc_id),
                FOREIGN KEY (index_name) REFERENCES vector_indexes(name)
            )
        """)

        # Indexing for faster queries
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_name_key ON documents(name_key)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_documents_name ON documents(name)
        """)

        self.conn.commit()

    # Change notifications

    def add_change_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """
        Subscribe to document changes

        Args:
            listener: Called with the ids of changed documents after commit

        Returns:
            Function that removes the listener
        """
        with self._lock:
            self._listeners.append(listener)

        def remove():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def _notify(self, doc_ids: List[str]):
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(doc_ids)
            except Exception:
                logger.exception("Change listener failed")

    # Documents

    def _write_document(self, cursor, document: Dict[str, Any]) -> str:
        doc_id = document.get('id')
        name = document.get('name')
        if not doc_id or not name:
            raise InvalidDocumentError(f"Document {doc_id!r} requires an id and a name")

        attributes = {
            key: document[key]
            for key in ('wateringSchedule', 'careInstructions', 'characteristics')
            if document.get(key) is not None
        }
        image = document.get('image')
        if image is not None and not isinstance(image, (bytes, bytearray)):
            raise InvalidDocumentError(f"Document {doc_id!r} image must be bytes")

        cursor.execute("""
            INSERT INTO documents
            (id, type, name, name_key, scientific_name, category, price, location,
             attributes, image, uses_precomputed_embedding, revision, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
            ON CONFLICT(id) DO UPDATE SET
                type = excluded.type,
                name = excluded.name,
                name_key = excluded.name_key,
                scientific_name = excluded.scientific_name,
                category = excluded.category,
                price = excluded.price,
                location = excluded.location,
                attributes = excluded.attributes,
                image = excluded.image,
                uses_precomputed_embedding = excluded.uses_precomputed_embedding,
                revision = documents.revision + 1,
                updated_at = excluded.updated_at
        """, (
            doc_id,
            document.get('type', 'generic'),
            name,
            slugify(name),
            document.get('scientificName'),
            document.get('category'),
            document.get('price'),
            document.get('location'),
            json.dumps(attributes),
            bytes(image) if image is not None else None,
            bool(document.get('usesPrecomputedEmbedding', False)),
            datetime.now().isoformat()
        ))

        cursor.execute("DELETE FROM documents_fts WHERE id = ?", (doc_id,))
        cursor.execute("""
            INSERT INTO documents_fts (id, name, category) VALUES (?, ?, ?)
        """, (doc_id, name, document.get('category') or ""))

        return doc_id

    def save_document(self, document: Dict[str, Any]) -> str:
        """Insert or update a document, bumping its revision"""
        return self.save_documents([document])[0]

    def save_documents(self, documents: Iterable[Dict[str, Any]]) -> List[str]:
        """Insert or update documents in one transaction (one change event)"""
        with self._lock:
            cursor = self.conn.cursor()
            try:
                doc_ids = [self._write_document(cursor, doc) for doc in documents]
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

        if doc_ids:
            self._notify(doc_ids)
        return doc_ids

    def delete_document(self, doc_id: str) -> bool:
        """Delete a document and its vector index entries"""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM documents WHERE id = ?", (doc_id,))
            deleted = cursor.rowcount > 0
            cursor.execute("DELETE FROM documents_fts WHERE id = ?", (doc_id,))
            cursor.execute("DELETE FROM index_vectors WHERE doc_id = ?", (doc_id,))
            self.conn.commit()
            self._bump_all_vector_versions()

        if deleted:
            self._notify([doc_id])
        return deleted

    def _fetch_rows(self, sql: str, params: Tuple) -> List[Dict]:
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(sql, params)
            results = cursor.fetchall()
            columns = [desc[0] for desc in cursor.description]

        return [dict(zip(columns, row)) for row in results]

    def _to_record(self, row: Dict) -> Optional[Record]:
        try:
            return record_from_document(row)
        except InvalidDocumentError as e:
            logger.warning(f"Skipping invalid document {row.get('id')!r}: {e}")
            return None

    _RECORD_COLUMNS = """
        id, type, name, scientific_name, category, price, location, attributes
    """

    def get_by_id(self, doc_id: str) -> Optional[Record]:
        """Get a record by document id"""
        rows = self._fetch_rows(
            f"SELECT {self._RECORD_COLUMNS} FROM documents WHERE id = ?", (doc_id,)
        )
        return self._to_record(rows[0]) if rows else None

    def query_by_natural_key(self, key: str) -> Optional[Record]:
        """Get a record by the slug of its name (catalog join key)"""
        rows = self._fetch_rows(
            f"SELECT {self._RECORD_COLUMNS} FROM documents WHERE name_key = ? "
            f"ORDER BY type = ? DESC, id LIMIT 1",
            (slugify(key), PLANT_TYPE)
        )
        return self._to_record(rows[0]) if rows else None

    def search_text(self, query: str, plants_only: bool = True) -> List[Record]:
        """
        Full-text search over name and category

        A trailing '*' is added for prefix matching. Incomplete or invalid
        FTS expressions (e.g. while the user is typing "(blue OR") yield
        no results rather than an error.
        """
        search = query.strip()
        if not search:
            return []
        if not search.endswith("*"):
            search += "*"

        type_filter = "AND d.type = ?" if plants_only else ""
        params = (search, PLANT_TYPE) if plants_only else (search,)
        sql = f"""
            SELECT d.id, d.type, d.name, d.scientific_name, d.category,
                   d.price, d.location, d.attributes
            FROM documents_fts
            JOIN documents d ON d.id = documents_fts.id
            WHERE documents_fts MATCH ? {type_filter}
            ORDER BY documents_fts.rank, d.name
        """

        try:
            rows = self._fetch_rows(sql, params)
        except sqlite3.OperationalError as e:
            logger.debug(f"Full-text query {query!r} rejected: {e}")
            return []

        return [r for r in (self._to_record(row) for row in rows) if r is not None]

    def count_documents(self) -> int:
        rows = self._fetch_rows("SELECT COUNT(*) AS n FROM documents", ())
        return rows[0]['n']

    def get_all_documents(self) -> List[Record]:
        rows = self._fetch_rows(
            f"SELECT {self._RECORD_COLUMNS} FROM documents ORDER BY name", ()
        )
        return [r for r in (self._to_record(row) for row in rows) if r is not None]

    # Live vector indexes

    def create_vector_index(self, index_name: str, dimension: int):
        """Create a cosine vector index over document images (idempotent)"""
        with self._lock:
            self.conn.execute("""
                INSERT OR IGNORE INTO vector_indexes (name, dimension, metric)
                VALUES (?, ?, 'cosine')
            """, (index_name, dimension))
            self.conn.commit()

    def has_vector_index(self, index_name: str) -> bool:
        rows = self._fetch_rows(
            "SELECT name FROM vector_indexes WHERE name = ?", (index_name,)
        )
        return bool(rows)

    def index_dimension(self, index_name: str) -> Optional[int]:
        rows = self._fetch_rows(
            "SELECT dimension FROM vector_indexes WHERE name = ?", (index_name,)
        )
        return rows[0]['dimension'] if rows else None

    def vector_index_version(self, index_name: str) -> int:
        """Counter bumped whenever an index's stored vectors change"""
        with self._lock:
            return self._vector_versions.get(index_name, 0)

    def _bump_vector_version(self, index_name: str):
        self._vector_versions[index_name] = self._vector_versions.get(index_name, 0) + 1

    def _bump_all_vector_versions(self):
        for (index_name,) in self.conn.execute("SELECT name FROM vector_indexes").fetchall():
            self._bump_vector_version(index_name)

    def drop_vector_index(self, index_name: str):
        with self._lock:
            self.conn.execute("DELETE FROM index_vectors WHERE index_name = ?", (index_name,))
            self.conn.execute("DELETE FROM vector_indexes WHERE name = ?", (index_name,))
            self.conn.commit()
            self._bump_vector_version(index_name)

    def list_unindexed(self, index_name: str, limit: int,
                       exclude: Optional[Set[str]] = None) -> List[RawDocument]:
        """
        Documents with image content whose current revision is not indexed

        Args:
            index_name: Vector index name
            limit: Maximum number of documents returned
            exclude: Document ids to leave out (e.g. failed earlier this pass)
        """
        exclude = exclude or set()
        placeholders = ",".join("?" * len(exclude))
        exclude_clause = f"AND d.id NOT IN ({placeholders})" if exclude else ""

        rows = self._fetch_rows(f"""
            SELECT d.id, d.revision, d.image
            FROM documents d
            LEFT JOIN index_vectors v
                ON v.doc_id = d.id AND v.index_name = ?
            WHERE d.image IS NOT NULL
              AND (v.doc_id IS NULL OR v.revision != d.revision)
              {exclude_clause}
            ORDER BY d.id
            LIMIT ?
        """, (index_name, *sorted(exclude), limit))

        return [
            RawDocument(ref=DocumentRef(row['id'], row['revision']), content=row['image'])
            for row in rows
        ]

    def commit_vectors(self, index_name: str,
                       pairs: List[Tuple[DocumentRef, np.ndarray]]) -> bool:
        """
        Write vectors for a batch in a single transaction

        Upserts keyed by (index, document), so committing the same batch
        twice leaves the index unchanged. Documents deleted since the batch
        was fetched are ignored.

        Returns:
            True on success, False if nothing was written (missing index,
            wrong vector length or a rolled back transaction)
        """
        dimension = self.index_dimension(index_name)
        if dimension is None:
            logger.error(f"Vector index '{index_name}' does not exist, commit rejected")
            return False

        for ref, vector in pairs:
            size = np.asarray(vector).size
            if size != dimension:
                logger.error(
                    f"Vector for '{ref.doc_id}' has {size} values, index '{index_name}' "
                    f"expects {dimension}; commit rejected"
                )
                return False

        with self._lock:
            try:
                cursor = self.conn.cursor()
                for ref, vector in pairs:
                    blob = np.asarray(vector, dtype=np.float32).tobytes()
                    cursor.execute("""
                        INSERT INTO index_vectors (index_name, doc_id, revision, vector, indexed_at)
                        SELECT ?, id, ?, ?, ? FROM documents WHERE id = ?
                        ON CONFLICT(index_name, doc_id) DO UPDATE SET
                            revision = excluded.revision,
                            vector = excluded.vector,
                            indexed_at = excluded.indexed_at
                    """, (index_name, ref.revision, blob, datetime.now().isoformat(), ref.doc_id))
                self.conn.commit()
                self._bump_vector_version(index_name)
                return True
            except sqlite3.Error as e:
                self.conn.rollback()
                logger.error(f"Vector commit to '{index_name}' failed: {e}")
                return False

    def load_vectors(self, index_name: str) -> Tuple[List[str], np.ndarray]:
        """All vectors of an index as (doc ids, N x D float32 matrix)"""
        dimension = self.index_dimension(index_name) or 0
        rows = self._fetch_rows("""
            SELECT doc_id, vector FROM index_vectors
            WHERE index_name = ? ORDER BY doc_id
        """, (index_name,))

        ids = []
        vectors = []
        for row in rows:
            vector = np.frombuffer(row['vector'], dtype=np.float32)
            if vector.shape[0] != dimension:
                logger.warning(
                    f"Ignoring stored vector for '{row['doc_id']}' in '{index_name}': "
                    f"{vector.shape[0]} values, expected {dimension}"
                )
                continue
            ids.append(row['doc_id'])
            vectors.append(vector)

        if not vectors:
            return ids, np.zeros((0, dimension), dtype=np.float32)
        return ids, np.vstack(vectors)

    def indexed_revisions(self, index_name: str) -> Dict[str, int]:
        rows = self._fetch_rows(
            "SELECT doc_id, revision FROM index_vectors WHERE index_name = ?", (index_name,)
        )
        return {row['doc_id']: row['revision'] for row in rows}

    def close(self):
        """Close database connection"""
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None
