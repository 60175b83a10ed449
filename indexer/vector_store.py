"""SQLite vector store for a docslurp server.

Chunks and sources live in plain tables; nearest-neighbor lookup goes
through a sqlite-vec ``vec0`` table that mirrors ``chunks.embedding_blob``.
The vec0 table does not support efficient row deletion, so it is treated as
a derived structure: deleting chunks leaves stale entries behind until
``rebuild_similarity_index()`` regenerates it from the chunk table.
"""

import sqlite3
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Dict, Any, Optional, Sequence, Iterable, Union, TYPE_CHECKING

import numpy as np
import sqlite_vec

from .models import CrawlState, PageRef, SearchResult, Source
from .url_normalizer import normalize_url

if TYPE_CHECKING:
    from pipelines.chunker import DocumentChunk

logger = logging.getLogger(__name__)

DEFAULT_DIMENSIONS = 1536
MAX_KNN = 4096

CHUNKS_DDL = """
CREATE TABLE chunks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    content TEXT NOT NULL,
    url TEXT NOT NULL,
    title TEXT NOT NULL,
    chunk_index INTEGER NOT NULL,
    source_id INTEGER DEFAULT 0,
    embedding_blob BLOB
)
"""

SOURCES_DDL = """
CREATE TABLE sources (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL,
    added_at TEXT NOT NULL,
    page_count INTEGER DEFAULT 0,
    chunk_count INTEGER DEFAULT 0,
    crawl_state TEXT
)
"""

# Columns added after the first release, with the DDL used to add them.
ADDED_COLUMNS = {
    "chunks": {
        "source_id": "INTEGER DEFAULT 0",
        "embedding_blob": "BLOB",
    },
    "sources": {
        "page_count": "INTEGER DEFAULT 0",
        "chunk_count": "INTEGER DEFAULT 0",
        "crawl_state": "TEXT",
    },
}


class VectorStore:
    """Persistent chunk table, source registry and similarity index."""

    def __init__(self, db_path: Union[str, Path], dimensions: int = DEFAULT_DIMENSIONS):
        self.db_path = str(db_path)
        self.dimensions = dimensions
        self.conn: Optional[sqlite3.Connection] = None
        self._tx_depth = 0

    def __enter__(self) -> "VectorStore":
        if self.conn is None:
            self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def open(self, legacy_sources: Optional[Sequence[Dict[str, Any]]] = None) -> "VectorStore":
        """Connect, load sqlite-vec and bring the schema up to date."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self.conn = sqlite3.connect(self.db_path, isolation_level=None)
            self.conn.row_factory = sqlite3.Row
            self.conn.enable_load_extension(True)
            sqlite_vec.load(self.conn)
            self.conn.enable_load_extension(False)
        except Exception as e:
            logger.error(f"Failed to open vector store {self.db_path}: {e}")
            if self.conn is not None:
                self.conn.close()
                self.conn = None
            raise

        self.migrate(legacy_sources)
        logger.debug(f"Vector store opened: {self.db_path}")
        return self

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.debug(f"Vector store closed: {self.db_path}")

    @contextmanager
    def transaction(self):
        """Group writes; nested calls join the outermost transaction."""
        if self._tx_depth == 0:
            self.conn.execute("BEGIN")
        self._tx_depth += 1
        try:
            yield self
        except BaseException:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self.conn.execute("ROLLBACK")
            raise
        else:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self.conn.execute("COMMIT")

    # Schema

    def _table_exists(self, name: str) -> bool:
        row = self.conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (name,)
        ).fetchone()
        return row is not None

    def _columns(self, table: str) -> List[str]:
        return [row["name"] for row in self.conn.execute(f"PRAGMA table_info({table})")]

    def migrate(self, legacy_sources: Optional[Sequence[Dict[str, Any]]] = None):
        """Create missing tables and columns without touching existing rows.

        Safe to run on every open. When the ``sources`` table has to be
        created on a file that predates it, it is seeded from
        ``legacy_sources`` (dicts with ``url`` and optional ``added_at``).
        """
        with self.transaction():
            if not self._table_exists("chunks"):
                self.conn.execute(CHUNKS_DDL)
                logger.info("Created chunks table")

            chunk_columns = self._columns("chunks")
            blob_added = "embedding_blob" not in chunk_columns
            for column, ddl in ADDED_COLUMNS["chunks"].items():
                if column not in chunk_columns:
                    self.conn.execute(f"ALTER TABLE chunks ADD COLUMN {column} {ddl}")
                    logger.info(f"Added chunks.{column} column")

            if not self._table_exists("sources"):
                self.conn.execute(SOURCES_DDL)
                logger.info("Created sources table")
                self._seed_sources(legacy_sources or [])
            else:
                source_columns = self._columns("sources")
                for column, ddl in ADDED_COLUMNS["sources"].items():
                    if column not in source_columns:
                        self.conn.execute(f"ALTER TABLE sources ADD COLUMN {column} {ddl}")
                        logger.info(f"Added sources.{column} column")

            self.conn.execute("CREATE INDEX IF NOT EXISTS idx_chunks_source_id ON chunks(source_id)")

            if self._table_exists("vec_chunks"):
                if blob_added:
                    # Older files kept vectors only in the index; copy them back.
                    cursor = self.conn.execute(
                        """
                        UPDATE chunks SET embedding_blob = (
                            SELECT embedding FROM vec_chunks WHERE vec_chunks.rowid = chunks.id
                        )
                        """
                    )
                    logger.info(f"Backfilled embedding_blob for {cursor.rowcount} chunks")
            else:
                self._create_index_table()
                self._fill_index()

    def _seed_sources(self, legacy_sources: Sequence[Dict[str, Any]]):
        seeded = []
        for entry in legacy_sources:
            url = entry.get("url")
            if not url:
                continue
            added_at = entry.get("added_at") or entry.get("addedAt") or _now()
            cursor = self.conn.execute(
                "INSERT INTO sources (url, added_at) VALUES (?, ?)", (url, added_at)
            )
            seeded.append(cursor.lastrowid)

        if len(seeded) == 1:
            # A single legacy source owns every chunk written before sources existed.
            self.conn.execute("UPDATE chunks SET source_id = ? WHERE source_id = 0", (seeded[0],))
        if seeded:
            logger.info(f"Migrated {len(seeded)} legacy sources")

    def _create_index_table(self):
        self.conn.execute(
            f"CREATE VIRTUAL TABLE vec_chunks USING vec0(embedding float[{self.dimensions}])"
        )

    def _fill_index(self) -> int:
        rows = self.conn.execute(
            "SELECT id, embedding_blob FROM chunks WHERE embedding_blob IS NOT NULL ORDER BY id"
        ).fetchall()
        count = 0
        for row in rows:
            self.conn.execute(
                "INSERT INTO vec_chunks (rowid, embedding) VALUES (?, ?)",
                (row["id"], row["embedding_blob"])
            )
            count += 1
        return count

    # Embeddings

    def serialize_embedding(self, embedding: Iterable[float]) -> bytes:
        """Pack a vector as little-endian float32 bytes."""
        vector = np.asarray(embedding, dtype="<f4")
        if vector.ndim != 1 or vector.shape[0] != self.dimensions:
            raise ValueError(
                f"Expected a {self.dimensions}-dimensional vector, got shape {vector.shape}"
            )
        return vector.tobytes()

    def deserialize_embedding(self, data: bytes) -> np.ndarray:
        return np.frombuffer(data, dtype="<f4")

    # Chunks

    def insert_chunk(self, chunk: "DocumentChunk", source_id: int) -> int:
        """Insert a chunk and, when it has an embedding, its index entry.

        Returns the id assigned by the chunk table, which is also the key of
        the index entry.
        """
        blob = self.serialize_embedding(chunk.embedding) if chunk.embedding is not None else None

        with self.transaction():
            cursor = self.conn.execute(
                """
                INSERT INTO chunks (content, url, title, chunk_index, source_id, embedding_blob)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (chunk.content, chunk.url, chunk.title, chunk.chunk_index, source_id, blob)
            )
            chunk_id = cursor.lastrowid
            if blob is not None:
                self.conn.execute(
                    "INSERT INTO vec_chunks (rowid, embedding) VALUES (?, ?)", (chunk_id, blob)
                )
        return chunk_id

    def insert_chunks(self, chunks: Iterable["DocumentChunk"], source_id: int) -> List[int]:
        """Insert several chunks in one transaction."""
        with self.transaction():
            return [self.insert_chunk(chunk, source_id) for chunk in chunks]

    def delete_chunks_for_source(self, source_id: int) -> int:
        """Delete a source's chunks. The similarity index is left stale."""
        with self.transaction():
            cursor = self.conn.execute("DELETE FROM chunks WHERE source_id = ?", (source_id,))
        logger.debug(f"Deleted {cursor.rowcount} chunks for source {source_id}")
        return cursor.rowcount

    def rebuild_similarity_index(self) -> int:
        """Drop and regenerate the similarity index from stored embeddings."""
        with self.transaction():
            self.conn.execute("DROP TABLE IF EXISTS vec_chunks")
            self._create_index_table()
            count = self._fill_index()
        logger.info(f"Rebuilt similarity index with {count} vectors")
        return count

    def find_similar(self, embedding: Sequence[float], k: int) -> List[SearchResult]:
        """Return the ``k`` chunks nearest to ``embedding``, closest first.

        Index entries whose chunk has been deleted but not yet rebuilt away
        are dropped by the join, so fewer than ``k`` results can come back
        until the next rebuild.
        """
        if k <= 0:
            return []
        query = self.serialize_embedding(embedding)
        rows = self.conn.execute(
            """
            WITH knn AS (
                SELECT rowid, distance
                FROM vec_chunks
                WHERE embedding MATCH ? AND k = ?
            )
            SELECT c.id, c.content, c.url, c.title, knn.distance
            FROM knn
            JOIN chunks c ON c.id = knn.rowid
            ORDER BY knn.distance
            """,
            (query, min(k, MAX_KNN))
        ).fetchall()

        return [
            SearchResult(
                chunk_id=row["id"],
                content=row["content"],
                url=row["url"],
                title=row["title"],
                distance=float(row["distance"]),
            )
            for row in rows
        ]

    def list_pages(self) -> List[PageRef]:
        """Distinct indexed pages, for the query server's source listing."""
        rows = self.conn.execute("SELECT DISTINCT url, title FROM chunks ORDER BY title, url")
        return [PageRef(url=row["url"], title=row["title"]) for row in rows]

    def page_urls_for_source(self, source_id: int) -> List[str]:
        rows = self.conn.execute(
            "SELECT DISTINCT url FROM chunks WHERE source_id = ? ORDER BY url", (source_id,)
        )
        return [row["url"] for row in rows]

    # Sources

    def get_sources(self) -> List[Source]:
        rows = self.conn.execute("SELECT * FROM sources ORDER BY id")
        return [Source.from_row(row) for row in rows]

    def get_source(self, source_id: int) -> Optional[Source]:
        row = self.conn.execute("SELECT * FROM sources WHERE id = ?", (source_id,)).fetchone()
        return Source.from_row(row) if row else None

    def find_sources_by_url(self, url: str) -> List[Source]:
        """Every source whose normalized URL equals the normalized ``url``, oldest first."""
        target = normalize_url(url)
        return [source for source in self.get_sources() if normalize_url(source.url) == target]

    def find_source_by_url(self, url: str) -> Optional[Source]:
        matches = self.find_sources_by_url(url)
        return matches[0] if matches else None

    def create_source(self, url: str, added_at: Optional[str] = None) -> Source:
        with self.transaction():
            cursor = self.conn.execute(
                "INSERT INTO sources (url, added_at) VALUES (?, ?)", (url, added_at or _now())
            )
        logger.info(f"Registered source {cursor.lastrowid}: {url}")
        return self.get_source(cursor.lastrowid)

    def update_source_metadata(self, source_id: int, page_count: int, chunk_count: int):
        with self.transaction():
            self.conn.execute(
                "UPDATE sources SET page_count = ?, chunk_count = ? WHERE id = ?",
                (page_count, chunk_count, source_id)
            )

    def refresh_source_counts(self, source_id: int) -> Source:
        """Recompute a source's page and chunk counters from its chunks."""
        row = self.conn.execute(
            "SELECT COUNT(DISTINCT url) AS pages, COUNT(*) AS chunks FROM chunks WHERE source_id = ?",
            (source_id,)
        ).fetchone()
        self.update_source_metadata(source_id, row["pages"], row["chunks"])
        return self.get_source(source_id)

    def save_crawl_state(self, source_id: int, state: CrawlState):
        with self.transaction():
            self.conn.execute(
                "UPDATE sources SET crawl_state = ? WHERE id = ?", (state.to_json(), source_id)
            )

    def get_crawl_state(self, source_id: int) -> Optional[CrawlState]:
        row = self.conn.execute(
            "SELECT crawl_state FROM sources WHERE id = ?", (source_id,)
        ).fetchone()
        return CrawlState.from_json(row["crawl_state"]) if row else None

    def clear_crawl_state(self, source_id: int):
        with self.transaction():
            self.conn.execute("UPDATE sources SET crawl_state = NULL WHERE id = ?", (source_id,))

    def stats(self) -> Dict[str, int]:
        """Row counts for reporting."""
        def count(sql: str) -> int:
            return self.conn.execute(sql).fetchone()[0]

        return {
            "source_count": count("SELECT COUNT(*) FROM sources"),
            "page_count": count("SELECT COUNT(DISTINCT url) FROM chunks"),
            "chunk_count": count("SELECT COUNT(*) FROM chunks"),
            "embedded_chunk_count": count("SELECT COUNT(*) FROM chunks WHERE embedding_blob IS NOT NULL"),
            "index_count": count("SELECT COUNT(*) FROM vec_chunks"),
        }


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
