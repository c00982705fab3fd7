"""Vector store for document embeddings.

``VectorStore`` is the interface the indexers write through; ``LanceVectorStore``
keeps one LanceDB table with a row per document, keyed by vault-relative path.

Writes made outside a transaction are applied immediately. Inside a
transaction they are buffered in memory and applied at ``end_transaction``;
``cancel_transaction`` discards them.
"""

import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import lancedb
import pyarrow as pa
from loguru import logger

from .exceptions import DatabaseError, SearchError
from .models import VectorMatch

# Maximum number of ids per SQL IN clause
DELETE_BATCH_LIMIT = 500

METADATA_FIELDS = ("title", "path", "tags", "excerpt", "last_indexed")


def _create_documents_schema(vector_dim: int) -> pa.Schema:
    """Create documents schema with dynamic vector dimension."""
    return pa.schema(
        [
            pa.field("id", pa.string()),
            pa.field("vector", pa.list_(pa.float32(), vector_dim)),
            pa.field("title", pa.string()),
            pa.field("path", pa.string()),
            pa.field("tags", pa.string()),  # comma-joined
            pa.field("excerpt", pa.string()),
            pa.field("last_indexed", pa.int64()),  # epoch milliseconds
        ]
    )


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class VectorStore(ABC):
    """Interface of the vector index used by the indexers."""

    @abstractmethod
    async def is_index_created(self) -> bool: ...

    @abstractmethod
    async def create_index(self) -> None: ...

    @abstractmethod
    async def delete_index(self) -> None: ...

    @property
    @abstractmethod
    def in_transaction(self) -> bool: ...

    @abstractmethod
    async def begin_transaction(self) -> None:
        """Start buffering writes.

        Raises:
            DatabaseError: If a transaction is already open
        """

    @abstractmethod
    async def end_transaction(self) -> None:
        """Apply buffered writes durably and close the transaction."""

    @abstractmethod
    def cancel_transaction(self) -> None:
        """Discard buffered writes and close the transaction."""

    @abstractmethod
    async def insert(
        self, id: str, vector: list[float], metadata: dict[str, Any]
    ) -> None: ...

    @abstractmethod
    async def delete(self, id: str) -> None: ...

    @abstractmethod
    async def contains(self, id: str) -> bool: ...

    @abstractmethod
    async def list_all_ids(self) -> list[str]: ...

    @abstractmethod
    async def count(self) -> int: ...

    @abstractmethod
    async def query_nearest(
        self, vector: list[float], top_k: int
    ) -> list[VectorMatch]: ...

    async def close(self) -> None:
        """Release resources. Default is a no-op."""

    async def __aenter__(self) -> "VectorStore":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.in_transaction:
            self.cancel_transaction()
        await self.close()


class LanceVectorStore(VectorStore):
    """LanceDB-backed vector store.

    The database directory is the index: it exists once ``create_index`` ran.
    The table itself is created lazily on the first write, when the vector
    dimension is known; after that every vector must have that dimension.

    Example:
        store = LanceVectorStore(index_dir / "lance")
        await store.create_index()
        await store.begin_transaction()
        await store.insert("notes/a.md", vector, {"title": "A", ...})
        await store.end_transaction()
    """

    TABLE_NAME = "documents"

    def __init__(
        self, db_path: Path, vector_dim: int | None = None, table_name: str = TABLE_NAME
    ) -> None:
        """Initialize store.

        Args:
            db_path: Directory for the LanceDB database
            vector_dim: Expected vector dimension (detected from data if None)
            table_name: Name of the documents table
        """
        self.db_path = Path(db_path)
        self.table_name = table_name
        self.vector_dim = vector_dim
        self._configured_dim = vector_dim
        self._db = None
        self._table = None
        self._in_transaction = False
        self._pending_upserts: dict[str, dict[str, Any]] = {}
        self._pending_deletes: set[str] = set()

    # ── connection ──────────────────────────────────────────────────────

    def _connect(self) -> None:
        if self._db is not None:
            return
        if not self.db_path.exists():
            raise DatabaseError(
                f"Vector index not created at {self.db_path}",
                context={"db_path": str(self.db_path)},
            )
        try:
            self._db = lancedb.connect(str(self.db_path))
            tables_response = self._db.list_tables()
            table_names = (
                tables_response.tables
                if hasattr(tables_response, "tables")
                else tables_response
            )
            if self.table_name in table_names:
                self._table = self._db.open_table(self.table_name)
                dim = self._table.schema.field("vector").type.list_size
                if self.vector_dim is None:
                    self.vector_dim = dim
                elif self.vector_dim != dim:
                    raise DatabaseError(
                        f"Vector dimension mismatch: index has {dim}, "
                        f"expected {self.vector_dim}"
                    )
                logger.debug(f"Opened table '{self.table_name}' ({dim}d) at {self.db_path}")
            else:
                logger.debug("Documents table will be created on first write")
        except DatabaseError:
            self._db = None
            self._table = None
            raise
        except Exception as e:
            self._db = None
            self._table = None
            logger.error(f"Failed to open vector index: {e}")
            raise DatabaseError(f"Failed to open vector index: {e}") from e

    async def is_index_created(self) -> bool:
        return self.db_path.is_dir()

    async def create_index(self) -> None:
        try:
            self.db_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DatabaseError(f"Failed to create vector index: {e}") from e
        self._connect()
        logger.info(f"Vector index ready at {self.db_path}")

    async def delete_index(self) -> None:
        self.cancel_transaction()
        self._table = None
        self._db = None
        self.vector_dim = self._configured_dim
        if self.db_path.exists():
            try:
                shutil.rmtree(self.db_path)
            except OSError as e:
                raise DatabaseError(f"Failed to delete vector index: {e}") from e
            logger.info(f"Deleted vector index at {self.db_path}")

    async def close(self) -> None:
        self._table = None
        self._db = None

    # ── transactions ────────────────────────────────────────────────────

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    async def begin_transaction(self) -> None:
        if self._in_transaction:
            raise DatabaseError("A transaction is already in progress")
        self._connect()
        self._pending_upserts.clear()
        self._pending_deletes.clear()
        self._in_transaction = True

    async def end_transaction(self) -> None:
        if not self._in_transaction:
            raise DatabaseError("No transaction in progress")
        upserts = list(self._pending_upserts.values())
        deletes = self._pending_deletes | set(self._pending_upserts)
        try:
            self._apply(deletes, upserts)
        finally:
            self._pending_upserts.clear()
            self._pending_deletes.clear()
            self._in_transaction = False
        logger.debug(
            f"Committed transaction: {len(upserts)} upserts, "
            f"{len(deletes) - len(upserts)} deletes"
        )

    def cancel_transaction(self) -> None:
        if self._in_transaction:
            logger.debug(
                f"Discarding {len(self._pending_upserts)} buffered writes "
                f"and {len(self._pending_deletes)} deletes"
            )
        self._pending_upserts.clear()
        self._pending_deletes.clear()
        self._in_transaction = False

    # ── writes ──────────────────────────────────────────────────────────

    def _make_row(
        self, id: str, vector: list[float], metadata: dict[str, Any]
    ) -> dict[str, Any]:
        if self.vector_dim is None:
            self.vector_dim = len(vector)
        elif len(vector) != self.vector_dim:
            raise DatabaseError(
                f"Vector dimension mismatch for {id}: "
                f"expected {self.vector_dim}, got {len(vector)}",
                context={"id": id},
            )
        return {
            "id": id,
            "vector": [float(v) for v in vector],
            "title": str(metadata.get("title", "")),
            "path": str(metadata.get("path", id)),
            "tags": str(metadata.get("tags", "")),
            "excerpt": str(metadata.get("excerpt", "")),
            "last_indexed": int(metadata.get("last_indexed", 0)),
        }

    def _delete_ids(self, ids: list[str]) -> None:
        if self._table is None or not ids:
            return
        for i in range(0, len(ids), DELETE_BATCH_LIMIT):
            batch = ids[i : i + DELETE_BATCH_LIMIT]
            id_list = ", ".join(_quote(doc_id) for doc_id in batch)
            self._table.delete(f"id IN ({id_list})")

    def _apply(self, deletes: set[str], rows: list[dict[str, Any]]) -> None:
        try:
            self._delete_ids(sorted(deletes))
            if rows:
                if self._table is None:
                    self._table = self._db.create_table(
                        self.table_name,
                        schema=_create_documents_schema(self.vector_dim),
                    )
                    logger.debug(
                        f"Created table '{self.table_name}' ({self.vector_dim}d)"
                    )
                self._table.add(rows)
        except Exception as e:
            logger.error(f"Failed to write to vector index: {e}")
            raise DatabaseError(f"Failed to write to vector index: {e}") from e

    async def insert(
        self, id: str, vector: list[float], metadata: dict[str, Any]
    ) -> None:
        self._connect()
        row = self._make_row(id, vector, metadata)
        if self._in_transaction:
            self._pending_deletes.discard(id)
            self._pending_upserts[id] = row
            return
        self._apply({id}, [row])

    async def delete(self, id: str) -> None:
        self._connect()
        if self._in_transaction:
            self._pending_upserts.pop(id, None)
            self._pending_deletes.add(id)
            return
        self._apply({id}, [])

    # ── reads ───────────────────────────────────────────────────────────

    async def contains(self, id: str) -> bool:
        if self._in_transaction:
            if id in self._pending_upserts:
                return True
            if id in self._pending_deletes:
                return False
        self._connect()
        if self._table is None:
            return False
        try:
            return self._table.count_rows(f"id = {_quote(id)}") > 0
        except Exception as e:
            raise DatabaseError(f"Failed to look up {id}: {e}") from e

    async def list_all_ids(self) -> list[str]:
        self._connect()
        if self._table is None:
            return []
        try:
            return (
                self._table.to_lance()
                .scanner(columns=["id"])
                .to_table()
                .column("id")
                .to_pylist()
            )
        except Exception as e:
            raise DatabaseError(f"Failed to list document ids: {e}") from e

    async def count(self) -> int:
        self._connect()
        if self._table is None:
            return 0
        try:
            return self._table.count_rows()
        except Exception as e:
            raise DatabaseError(f"Failed to count documents: {e}") from e

    async def query_nearest(self, vector: list[float], top_k: int) -> list[VectorMatch]:
        """Return up to ``top_k`` nearest documents by cosine similarity.

        Raises:
            SearchError: If the query dimension is wrong or the query fails
        """
        self._connect()
        if self._table is None:
            return []
        if self.vector_dim is not None and len(vector) != self.vector_dim:
            raise SearchError(
                f"Invalid query vector dimension: "
                f"expected {self.vector_dim}, got {len(vector)}"
            )

        try:
            results = (
                self._table.search(vector).metric("cosine").limit(top_k).to_list()
            )
        except Exception as e:
            logger.error(f"Vector search failed: {e}")
            raise SearchError(f"Vector search failed: {e}") from e

        matches = []
        for result in results:
            # Cosine distance is 1 - cosine similarity
            distance = result.get("_distance", 0.0)
            matches.append(
                VectorMatch(
                    id=result["id"],
                    score=1.0 - distance,
                    metadata={key: result.get(key) for key in METADATA_FIELDS},
                )
            )
        return matches
