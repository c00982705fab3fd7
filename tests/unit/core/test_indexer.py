"""Unit tests for VaultIndexer: reindex decisions, single-document updates, search."""

import asyncio
from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from conftest import FakeEmbeddingProvider, InMemoryVectorStore, fake_vector, write_note

from vault_vector_search.core.batch_indexer import BatchIndexer
from vault_vector_search.core.change_tracker import ChangeTracker
from vault_vector_search.core.documents import VaultDocumentSource
from vault_vector_search.core.embeddings import EmbeddingGateway
from vault_vector_search.core.exceptions import DatabaseNotInitializedError
from vault_vector_search.core.indexer import VaultIndexer
from vault_vector_search.core.models import KeywordResult, SearchResult
from vault_vector_search.core.vector_store import LanceVectorStore


class TestShouldReindex:
    """Ordered reindex rules."""

    @pytest.mark.asyncio
    async def test_first_time_setup(self, make_indexer: Callable[..., VaultIndexer]) -> None:
        decision = await make_indexer().should_reindex()
        assert decision.reindex is True
        assert decision.reason == "first-time setup"

    @pytest.mark.asyncio
    async def test_legacy_index_without_model(
        self, store: InMemoryVectorStore, make_indexer: Callable[..., VaultIndexer]
    ) -> None:
        await store.create_index()
        decision = await make_indexer().should_reindex()
        assert decision.reindex is True
        assert decision.reason == "legacy index, upgrading"

    @pytest.mark.asyncio
    async def test_model_changed_names_both_models(
        self, vault: Path, make_indexer: Callable[..., VaultIndexer],
        make_tracker: Callable[[], ChangeTracker],
    ) -> None:
        write_note(vault, "a.md")
        await make_indexer(FakeEmbeddingProvider(model_name="old-model")).index_all()

        indexer = make_indexer(
            FakeEmbeddingProvider(model_name="new-model"), tracker=make_tracker()
        )
        decision = await indexer.should_reindex()

        assert decision.reindex is True
        assert "old-model" in decision.reason
        assert "new-model" in decision.reason

    @pytest.mark.asyncio
    async def test_empty_index(
        self, store: InMemoryVectorStore, make_indexer: Callable[..., VaultIndexer]
    ) -> None:
        indexer = make_indexer()
        await indexer.index_all()  # empty vault: meta written, no rows

        decision = await indexer.should_reindex()

        assert decision.reindex is True
        assert decision.reason == "index exists but is empty"

    @pytest.mark.asyncio
    async def test_up_to_date(
        self, vault: Path, make_indexer: Callable[..., VaultIndexer]
    ) -> None:
        write_note(vault, "a.md")
        indexer = make_indexer()
        await indexer.index_all()

        decision = await indexer.should_reindex()

        assert decision.reindex is False
        assert decision.reason == "index valid and up-to-date"

    @pytest.mark.asyncio
    async def test_error_while_checking_means_reindex(
        self, vault: Path, store: InMemoryVectorStore,
        make_indexer: Callable[..., VaultIndexer],
    ) -> None:
        write_note(vault, "a.md")
        indexer = make_indexer()
        await indexer.index_all()
        store.count = AsyncMock(side_effect=RuntimeError("disk on fire"))

        decision = await indexer.should_reindex()

        assert decision.reindex is True
        assert "disk on fire" in decision.reason


class TestStartupDecision:
    """index_on_startup overrides."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode", ["always", True, "true", "ALWAYS"])
    async def test_always(self, mode, vault: Path, make_indexer: Callable[..., VaultIndexer]) -> None:
        write_note(vault, "a.md")
        indexer = make_indexer()
        await indexer.index_all()
        indexer.index_on_startup = mode

        assert (await indexer.startup_decision()).reindex is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode", ["never", False, "false"])
    async def test_never(self, mode, make_indexer: Callable[..., VaultIndexer]) -> None:
        indexer = make_indexer()
        indexer.index_on_startup = mode

        decision = await indexer.startup_decision()

        assert decision.reindex is False

    @pytest.mark.asyncio
    async def test_run_startup_index_forces_full_run(
        self, vault: Path, make_indexer: Callable[..., VaultIndexer]
    ) -> None:
        write_note(vault, "a.md")
        write_note(vault, "b.md")
        indexer = make_indexer()

        stats = await indexer.run_startup_index()
        assert stats is not None and stats.indexed == 2

        assert await indexer.run_startup_index() is None

        indexer.index_on_startup = "always"
        stats = await indexer.run_startup_index()
        assert stats.indexed == 2 and stats.skipped == 0


class TestIndexAll:
    @pytest.mark.asyncio
    async def test_model_change_drops_old_vectors(
        self, vault: Path, store: InMemoryVectorStore,
        make_indexer: Callable[..., VaultIndexer],
        make_tracker: Callable[[], ChangeTracker],
    ) -> None:
        write_note(vault, "a.md")
        write_note(vault, "b.md")
        await make_indexer(FakeEmbeddingProvider(model_name="old", dim=8)).index_all()

        indexer = make_indexer(
            FakeEmbeddingProvider(model_name="new", dim=4), tracker=make_tracker()
        )
        stats = await indexer.index_all()

        assert stats.indexed == 2
        assert stats.skipped == 0
        assert all(len(vec) == 4 for vec, _ in store.rows.values())
        assert make_tracker().meta.model == "new"

    @pytest.mark.asyncio
    async def test_forced_run_without_metadata_drops_existing_index(
        self, vault: Path, store: InMemoryVectorStore,
        make_indexer: Callable[..., VaultIndexer],
    ) -> None:
        write_note(vault, "a.md")
        await store.create_index()
        store.rows["a.md"] = (fake_vector("old", dim=8), {"path": "a.md"})
        store.delete_index = AsyncMock(wraps=store.delete_index)
        indexer = make_indexer(FakeEmbeddingProvider(dim=4))

        stats = await indexer.index_all(force_reindex=True)

        store.delete_index.assert_awaited_once()
        assert stats.indexed == 1
        assert [len(vec) for vec, _ in store.rows.values()] == [4]

    @pytest.mark.asyncio
    async def test_incremental_run_without_metadata_keeps_index(
        self, vault: Path, store: InMemoryVectorStore,
        make_indexer: Callable[..., VaultIndexer],
    ) -> None:
        write_note(vault, "a.md")
        await store.create_index()
        store.delete_index = AsyncMock(wraps=store.delete_index)

        await make_indexer().index_all()

        store.delete_index.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unreadable_metadata_rebuilds_lance_index_with_new_dimension(
        self, vault: Path, index_dir: Path, metadata_file: Path,
        make_tracker: Callable[[], ChangeTracker],
    ) -> None:
        """Rows of an unknown model are dropped instead of clashing on dimension."""
        for name in ("a", "b", "c"):
            write_note(vault, f"{name}.md", f"note {name}")
        lance = LanceVectorStore(index_dir / "lance")
        source = VaultDocumentSource(vault, index_path=index_dir)

        def build(provider: FakeEmbeddingProvider) -> VaultIndexer:
            gateway = EmbeddingGateway(provider, timeout=5.0)
            tracker = make_tracker()
            batch_indexer = BatchIndexer(
                source, lance, gateway, tracker, batch_pause=0.0, lifecycle_pause=0.0
            )
            return VaultIndexer(
                source, lance, gateway, tracker, batch_indexer=batch_indexer
            )

        await build(FakeEmbeddingProvider(model_name="old-model", dim=8)).index_all()
        assert lance.vector_dim == 8
        metadata_file.write_text("{corrupt")

        indexer = build(FakeEmbeddingProvider(model_name="new-model", dim=4))
        stats = await indexer.run_startup_index()

        assert stats is not None
        assert (stats.indexed, stats.failed) == (3, 0)
        assert lance.vector_dim == 4
        assert await lance.count() == 3
        decision = await indexer.should_reindex()
        assert decision.reindex is False
        assert decision.reason == "index valid and up-to-date"

    @pytest.mark.asyncio
    async def test_deleted_notes_are_pruned(
        self, vault: Path, store: InMemoryVectorStore,
        make_indexer: Callable[..., VaultIndexer],
    ) -> None:
        write_note(vault, "keep.md")
        gone = write_note(vault, "gone.md")
        indexer = make_indexer()
        await indexer.index_all()

        gone.unlink()
        stats = await indexer.index_all()

        assert stats.removed == 1
        assert list(store.rows) == ["keep.md"]
        assert "gone.md" not in indexer.tracker


class TestSingleDocument:
    """index_one / remove_one."""

    @pytest.mark.asyncio
    async def test_index_one_is_idempotent(
        self, vault: Path, store: InMemoryVectorStore,
        make_indexer: Callable[..., VaultIndexer],
    ) -> None:
        write_note(vault, "n.md", "Hello", frontmatter="title: N")
        indexer = make_indexer()

        assert await indexer.index_one("n.md") is True
        first = store.rows["n.md"]
        assert await indexer.index_one("n.md") is True

        assert list(store.rows) == ["n.md"]
        assert store.rows["n.md"][0] == first[0]
        assert store.rows["n.md"][1]["title"] == first[1]["title"]

    @pytest.mark.asyncio
    async def test_index_one_accepts_absolute_paths(
        self, vault: Path, store: InMemoryVectorStore,
        make_indexer: Callable[..., VaultIndexer],
    ) -> None:
        path = write_note(vault, "sub/n.md")
        assert await make_indexer().index_one(path) is True
        assert "sub/n.md" in store.rows

    @pytest.mark.asyncio
    async def test_index_one_persists_fingerprint_immediately(
        self, vault: Path, make_indexer: Callable[..., VaultIndexer],
        make_tracker: Callable[[], ChangeTracker],
    ) -> None:
        write_note(vault, "n.md")
        await make_indexer().index_one("n.md")
        assert "n.md" in make_tracker()

    @pytest.mark.asyncio
    async def test_index_one_rejects_non_markdown_and_missing(
        self, vault: Path, store: InMemoryVectorStore,
        make_indexer: Callable[..., VaultIndexer],
    ) -> None:
        (vault / "image.png").write_bytes(b"png")
        indexer = make_indexer()

        assert await indexer.index_one("image.png") is False
        assert await indexer.index_one("missing.md") is False
        assert store.rows == {}

    @pytest.mark.asyncio
    async def test_index_one_failure_returns_false(
        self, vault: Path, make_indexer: Callable[..., VaultIndexer]
    ) -> None:
        write_note(vault, "bad.md", "POISON")
        indexer = make_indexer(FakeEmbeddingProvider(fail_on={"POISON"}))
        assert await indexer.index_one("bad.md") is False

    @pytest.mark.asyncio
    async def test_remove_one(
        self, vault: Path, store: InMemoryVectorStore,
        make_indexer: Callable[..., VaultIndexer],
        make_tracker: Callable[[], ChangeTracker],
    ) -> None:
        write_note(vault, "n.md")
        indexer = make_indexer()
        await indexer.index_one("n.md")

        assert await indexer.remove_one("n.md") is True
        assert store.rows == {}
        assert "n.md" not in make_tracker()
        assert await indexer.remove_one("n.md") is False

    @pytest.mark.asyncio
    async def test_live_update_waits_for_full_run(
        self, vault: Path, store: InMemoryVectorStore,
        make_indexer: Callable[..., VaultIndexer],
    ) -> None:
        """index_one never writes into an open full-reindex transaction."""
        for i in range(6):
            write_note(vault, f"n{i}.md", f"note {i}")
        indexer = make_indexer(FakeEmbeddingProvider(delay=0.01), batch_size=2)
        seen_in_transaction = []
        original_insert = store.insert

        async def spying_insert(id, vector, metadata):
            if id == "n0.md":
                seen_in_transaction.append(store.in_transaction)
            await original_insert(id, vector, metadata)

        store.insert = spying_insert

        full = asyncio.create_task(indexer.index_all())
        await asyncio.sleep(0)
        single = asyncio.create_task(indexer.index_one("n0.md"))
        await asyncio.gather(full, single)

        assert single.result() is True
        # the full run writes n0 inside its transaction, the live update after commit
        assert seen_in_transaction == [True, False]
        assert len(store.rows) == 6
        assert not store.in_transaction


class TestQueries:
    """search / hybrid_search / stats / clear."""

    @pytest.mark.asyncio
    async def test_search_without_index_raises(
        self, make_indexer: Callable[..., VaultIndexer]
    ) -> None:
        with pytest.raises(DatabaseNotInitializedError):
            await make_indexer().search([0.1] * 8)

    @pytest.mark.asyncio
    async def test_search_filters_and_limits(
        self, store: InMemoryVectorStore, make_indexer: Callable[..., VaultIndexer]
    ) -> None:
        await store.create_index()
        query = fake_vector("query")
        store.rows["exact.md"] = (
            query,
            {"title": "Exact", "path": "exact.md", "tags": "a,b", "excerpt": "E" * 300, "last_indexed": 5},
        )
        for i in range(5):
            store.rows[f"other{i}.md"] = (
                fake_vector(f"other {i}"),
                {"title": f"O{i}", "path": f"other{i}.md", "tags": "", "excerpt": "o", "last_indexed": 1},
            )
        indexer = make_indexer()

        top = await indexer.search(query, limit=2)
        strict = await indexer.search(query, limit=10, min_score=0.9999)

        assert len(top) == 2
        assert top[0].path == "exact.md"
        assert top[0].score == pytest.approx(1.0)
        assert top[0].excerpt == "E" * 200 + "..."
        assert top[0].metadata["tags"] == ["a", "b"]
        assert [r.path for r in strict] == ["exact.md"]

    @pytest.mark.asyncio
    async def test_search_text_embeds_query(
        self, vault: Path, make_indexer: Callable[..., VaultIndexer]
    ) -> None:
        write_note(vault, "n.md", "alpha")
        indexer = make_indexer()
        await indexer.index_all()

        results = await indexer.search_text("alpha", limit=5)

        assert [r.path for r in results] == ["n.md"]

    @pytest.mark.asyncio
    async def test_hybrid_search_merges_scores(
        self, make_indexer: Callable[..., VaultIndexer]
    ) -> None:
        indexer = make_indexer()

        indexer.search_text = AsyncMock(
            return_value=[
                SearchResult(id="a.md", path="a.md", title="A", score=1.0, excerpt="sem a"),
                SearchResult(id="b.md", path="b.md", title="B", score=0.5, excerpt="sem b"),
            ]
        )
        keyword = [
            KeywordResult(path="b.md", score=1.0, excerpt="kw b"),
            KeywordResult(path="a.md", score=0.5, excerpt="kw a"),
            KeywordResult(path="notes/c.md", score=0.5, excerpt="kw c"),
        ]

        results = await indexer.hybrid_search("q", keyword, limit=2)

        assert [r.path for r in results] == ["a.md", "b.md"]
        assert results[0].score == pytest.approx(0.6 + 0.2)
        assert results[0].excerpt == "sem a"
        assert results[1].score == pytest.approx(0.3 + 0.4)
        assert results[1].excerpt == "kw b"

    @pytest.mark.asyncio
    async def test_hybrid_search_keyword_only_hit(
        self, make_indexer: Callable[..., VaultIndexer]
    ) -> None:
        indexer = make_indexer()
        indexer.search_text = AsyncMock(return_value=[])

        results = await indexer.hybrid_search(
            "q", [KeywordResult(path="dir/Note.md", score=0.5, excerpt="kw")]
        )

        assert results[0].title == "Note"
        assert results[0].score == pytest.approx(0.2)

    @pytest.mark.asyncio
    async def test_get_stats(
        self, vault: Path, store: InMemoryVectorStore,
        make_indexer: Callable[..., VaultIndexer],
    ) -> None:
        indexer = make_indexer()
        empty = await indexer.get_stats()
        assert (empty.total_documents, empty.last_indexed) == (0, None)

        write_note(vault, "a.md")
        write_note(vault, "b.md")
        await indexer.index_all()
        store.list_all_ids = AsyncMock(side_effect=AssertionError("ids listed"))
        stats = await indexer.get_stats()

        assert stats.total_documents == 2
        assert stats.last_indexed == indexer.tracker.last_indexed_at()

    @pytest.mark.asyncio
    async def test_clear(
        self, vault: Path, store: InMemoryVectorStore, metadata_file: Path,
        make_indexer: Callable[..., VaultIndexer],
    ) -> None:
        write_note(vault, "a.md")
        indexer = make_indexer()
        await indexer.index_all()
        assert metadata_file.exists()

        await indexer.clear()

        assert not metadata_file.exists()
        assert not await store.is_index_created()
        assert (await indexer.should_reindex()).reason == "first-time setup"
