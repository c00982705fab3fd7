"""Shared fixtures: a deterministic embedding provider and an in-memory vector store."""

import asyncio
import hashlib
import math
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from vault_vector_search.core.batch_indexer import BatchIndexer
from vault_vector_search.core.change_tracker import ChangeTracker
from vault_vector_search.core.documents import VaultDocumentSource
from vault_vector_search.core.embeddings import EmbeddingGateway, EmbeddingProvider
from vault_vector_search.core.exceptions import DatabaseError
from vault_vector_search.core.index_metadata import IndexMetadataStore
from vault_vector_search.core.indexer import VaultIndexer
from vault_vector_search.core.models import VectorMatch
from vault_vector_search.core.vector_store import VectorStore


class SimulatedCrash(BaseException):
    """Stands in for a process crash or interrupt in the middle of a run."""


def fake_vector(text: str, dim: int = 8) -> list[float]:
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    raw = [digest[i] / 255.0 + 0.01 for i in range(dim)]
    norm = math.sqrt(sum(v * v for v in raw))
    return [v / norm for v in raw]


class FakeEmbeddingProvider(EmbeddingProvider):
    """Deterministic provider; texts containing a ``fail_on`` marker raise.

    ``delays`` maps a marker to the seconds an embed of a matching text takes.
    """

    name = "fake"

    def __init__(
        self,
        model_name: str = "fake-model",
        dim: int = 8,
        fail_on: set[str] | None = None,
        delay: float = 0.0,
        delays: dict[str, float] | None = None,
    ) -> None:
        super().__init__(model_name)
        self.dim = dim
        self.fail_on = fail_on or set()
        self.delay = delay
        self.delays = delays or {}
        self.in_flight = 0
        self.peak_in_flight = 0
        self.load_count = 0
        self.unload_count = 0
        self.embedded: list[str] = []
        self._loaded = False

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    async def load(self) -> None:
        await asyncio.sleep(0.01)
        self.load_count += 1
        self._loaded = True

    async def embed(self, text: str) -> list[float]:
        delay = next(
            (secs for marker, secs in self.delays.items() if marker in text), self.delay
        )
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if delay:
                await asyncio.sleep(delay)
        finally:
            self.in_flight -= 1
        if any(marker in text for marker in self.fail_on):
            raise RuntimeError("provider exploded")
        self.embedded.append(text)
        return fake_vector(text, self.dim)

    def unload(self) -> None:
        self.unload_count += 1
        self._loaded = False


class InMemoryVectorStore(VectorStore):
    """Dict-backed store with the same transaction semantics as LanceDB's."""

    def __init__(self) -> None:
        self.created = False
        self.rows: dict[str, tuple[list[float], dict[str, Any]]] = {}
        self.insert_calls = 0
        self.inserted: list[str] = []
        self.crash_on_insert: int | None = None
        self.fail_ids: set[str] = set()
        self.commits = 0
        self._in_transaction = False
        self._upserts: dict[str, tuple[list[float], dict[str, Any]]] = {}
        self._deletes: set[str] = set()

    async def is_index_created(self) -> bool:
        return self.created

    async def create_index(self) -> None:
        self.created = True

    async def delete_index(self) -> None:
        self.cancel_transaction()
        self.rows.clear()
        self.created = False

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    async def begin_transaction(self) -> None:
        if self._in_transaction:
            raise DatabaseError("A transaction is already in progress")
        self._in_transaction = True

    async def end_transaction(self) -> None:
        for doc_id in self._deletes:
            self.rows.pop(doc_id, None)
        self.rows.update(self._upserts)
        self._upserts.clear()
        self._deletes.clear()
        self._in_transaction = False
        self.commits += 1

    def cancel_transaction(self) -> None:
        self._upserts.clear()
        self._deletes.clear()
        self._in_transaction = False

    async def insert(self, id: str, vector: list[float], metadata: dict[str, Any]) -> None:
        self.insert_calls += 1
        if self.crash_on_insert is not None and self.insert_calls == self.crash_on_insert:
            raise SimulatedCrash(f"crash while inserting {id}")
        if id in self.fail_ids:
            raise DatabaseError(f"write rejected for {id}")
        self.inserted.append(id)
        if self._in_transaction:
            self._deletes.discard(id)
            self._upserts[id] = (list(vector), dict(metadata))
        else:
            self.rows[id] = (list(vector), dict(metadata))

    async def delete(self, id: str) -> None:
        if self._in_transaction:
            self._upserts.pop(id, None)
            self._deletes.add(id)
        else:
            self.rows.pop(id, None)

    async def contains(self, id: str) -> bool:
        if self._in_transaction and id in self._upserts:
            return True
        return id in self.rows

    async def list_all_ids(self) -> list[str]:
        return list(self.rows)

    async def count(self) -> int:
        return len(self.rows)

    async def query_nearest(self, vector: list[float], top_k: int) -> list[VectorMatch]:
        def cosine(other: list[float]) -> float:
            dot = sum(a * b for a, b in zip(vector, other, strict=True))
            norm = math.sqrt(sum(a * a for a in vector)) * math.sqrt(
                sum(b * b for b in other)
            )
            return dot / norm if norm else 0.0

        scored = [
            VectorMatch(id=doc_id, score=cosine(vec), metadata=meta)
            for doc_id, (vec, meta) in self.rows.items()
        ]
        scored.sort(key=lambda m: m.score, reverse=True)
        return scored[:top_k]


def write_note(
    vault: Path, rel_path: str, body: str = "Some text.", frontmatter: str | None = None
) -> Path:
    path = vault / rel_path
    path.parent.mkdir(parents=True, exist_ok=True)
    text = body if frontmatter is None else f"---\n{frontmatter}\n---\n{body}"
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture
def vault(tmp_path: Path) -> Path:
    root = tmp_path / "vault"
    root.mkdir()
    return root


@pytest.fixture
def index_dir(vault: Path) -> Path:
    return vault / ".vault-vector-search"


@pytest.fixture
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def metadata_file(index_dir: Path) -> Path:
    return index_dir / "index-metadata.json"


@pytest.fixture
def make_tracker(metadata_file: Path) -> Callable[[], ChangeTracker]:
    """Build a tracker that reads whatever is currently on disk."""

    def _make() -> ChangeTracker:
        return ChangeTracker(IndexMetadataStore(metadata_file))

    return _make


@pytest.fixture
def make_indexer(
    vault: Path,
    index_dir: Path,
    store: InMemoryVectorStore,
    provider: FakeEmbeddingProvider,
    make_tracker: Callable[[], ChangeTracker],
) -> Callable[..., VaultIndexer]:
    """Build a VaultIndexer over the fake provider and in-memory store."""

    def _make(
        provider_override: EmbeddingProvider | None = None,
        tracker: ChangeTracker | None = None,
        timeout: float = 5.0,
        **batch_kwargs: Any,
    ) -> VaultIndexer:
        source = VaultDocumentSource(vault, index_path=index_dir)
        gateway = EmbeddingGateway(provider_override or provider, timeout=timeout)
        tracker = tracker or make_tracker()
        batch_kwargs.setdefault("batch_pause", 0.0)
        batch_kwargs.setdefault("lifecycle_pause", 0.0)
        batch_indexer = BatchIndexer(source, store, gateway, tracker, **batch_kwargs)
        return VaultIndexer(
            source, store, gateway, tracker, batch_indexer=batch_indexer
        )

    return _make
