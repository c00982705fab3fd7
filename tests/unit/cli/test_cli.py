"""CLI tests with the fake embedding provider and a real LanceDB index."""

import os
from pathlib import Path

import pytest
from conftest import FakeEmbeddingProvider, write_note
from loguru import logger
from typer.testing import CliRunner

from vault_vector_search import __version__
from vault_vector_search.cli.main import app
from vault_vector_search.config.settings import ENV_PREFIX
from vault_vector_search.core.embeddings import EmbeddingGateway
from vault_vector_search.core.factory import ComponentFactory
from vault_vector_search.core.singleton import PidFileGuard

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(vault: Path, monkeypatch: pytest.MonkeyPatch):
    for key in list(os.environ):
        if key.startswith(ENV_PREFIX):
            monkeypatch.delenv(key)
    monkeypatch.setenv(f"{ENV_PREFIX}VAULT_PATH", str(vault))
    monkeypatch.setenv(f"{ENV_PREFIX}BATCH_PAUSE", "0")
    monkeypatch.setenv(f"{ENV_PREFIX}LIFECYCLE_PAUSE", "0")
    monkeypatch.setattr(
        ComponentFactory,
        "create_gateway",
        staticmethod(
            lambda config, provider=None: EmbeddingGateway(
                FakeEmbeddingProvider(), timeout=5.0
            )
        ),
    )
    monkeypatch.setattr(PidFileGuard, "install_signal_handlers", lambda self: None)
    yield
    # sinks point at the runner's captured streams
    logger.remove()


@pytest.fixture
def pid_file(index_dir: Path) -> Path:
    return index_dir / "indexing-worker.pid"


def test_version() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_missing_vault_exits_1(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(f"{ENV_PREFIX}VAULT_PATH", str(tmp_path / "nowhere"))

    result = runner.invoke(app, ["status"])

    assert result.exit_code == 1
    assert "does not exist" in result.output


def test_index_then_search(vault: Path, pid_file: Path) -> None:
    write_note(vault, "alpha.md", "alpha")
    write_note(vault, "beta.md", "beta")

    result = runner.invoke(app, ["index"])
    assert result.exit_code == 0, result.output
    assert "Indexing Summary" in result.output
    assert not pid_file.exists()

    result = runner.invoke(app, ["search", "alpha", "--json", "--limit", "1"])
    assert result.exit_code == 0, result.output
    assert '"path": "alpha.md"' in result.output
    assert '"title": "alpha"' in result.output
    assert "beta.md" not in result.output


def test_second_index_skips_unchanged(vault: Path) -> None:
    write_note(vault, "a.md")
    runner.invoke(app, ["index"])

    result = runner.invoke(app, ["index"])

    assert result.exit_code == 0, result.output
    assert "Skipped" in result.output


def test_index_exits_0_when_worker_running(vault: Path, pid_file: Path) -> None:
    write_note(vault, "a.md")
    pid_file.parent.mkdir(parents=True)
    pid_file.write_text(str(os.getppid()))

    result = runner.invoke(app, ["index"])

    assert result.exit_code == 0
    assert "already running" in result.output
    assert pid_file.read_text() == str(os.getppid())
    assert not (pid_file.parent / "lance").exists()


def test_search_without_index_exits_1() -> None:
    result = runner.invoke(app, ["search", "anything"])
    assert result.exit_code == 1
    assert "Search failed" in result.output


def test_status(vault: Path) -> None:
    write_note(vault, "a.md")
    runner.invoke(app, ["index"])

    result = runner.invoke(app, ["status"])

    assert result.exit_code == 0, result.output
    assert "fake-model" in result.output


def test_clear(vault: Path, index_dir: Path) -> None:
    write_note(vault, "a.md")
    runner.invoke(app, ["index"])
    assert (index_dir / "index-metadata.json").exists()

    result = runner.invoke(app, ["clear", "--yes"])

    assert result.exit_code == 0, result.output
    assert not (index_dir / "index-metadata.json").exists()
    assert not (index_dir / "lance").exists()


def test_clear_refuses_while_worker_running(pid_file: Path) -> None:
    pid_file.parent.mkdir(parents=True)
    pid_file.write_text(str(os.getppid()))

    result = runner.invoke(app, ["clear", "--yes"])

    assert result.exit_code == 1
    assert "stop it first" in result.output


def test_clear_cancelled_without_confirmation(vault: Path, index_dir: Path) -> None:
    write_note(vault, "a.md")
    runner.invoke(app, ["index"])

    result = runner.invoke(app, ["clear"], input="n\n")

    assert result.exit_code == 0
    assert (index_dir / "index-metadata.json").exists()
