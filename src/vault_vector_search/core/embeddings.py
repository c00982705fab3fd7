"""Embedding generation for vault-vector-search."""

import asyncio
import contextlib
import gc
import logging
import os
import sys
import warnings
from abc import ABC, abstractmethod
from typing import Any

from loguru import logger

from ..config.defaults import EMBEDDING_CONTENT_PREVIEW, get_model_dimensions
from .documents import strip_frontmatter
from .exceptions import (
    ConfigurationError,
    EmbeddingError,
    EmbeddingFailureError,
    EmbeddingTimeoutError,
)
from .models import Document, EmbeddingResult

# Only our own INFO logs should show; model libraries get ERROR only
logging.getLogger("transformers").setLevel(logging.ERROR)
logging.getLogger("sentence_transformers").setLevel(logging.ERROR)
logging.getLogger("torch").setLevel(logging.ERROR)
logging.getLogger("huggingface_hub").setLevel(logging.ERROR)

# Suppress tqdm progress bars (used by transformers for model loading)
os.environ["TQDM_DISABLE"] = "1"

warnings.filterwarnings("ignore", message=".*position_ids.*")
warnings.filterwarnings("ignore", category=FutureWarning, module="transformers")


@contextlib.contextmanager
def suppress_stdout_stderr():
    """Context manager to suppress stdout and stderr at OS level.

    Model loading prints reports straight to the file descriptors from native
    code, which bypasses ``sys.stdout`` redirection.
    """
    try:
        stdout_fd = sys.stdout.fileno()
        stderr_fd = sys.stderr.fileno()
    except (AttributeError, OSError, ValueError):
        # Captured streams (pytest, IDEs) have no real descriptor
        yield
        return

    stdout_dup = os.dup(stdout_fd)
    stderr_dup = os.dup(stderr_fd)
    devnull = os.open(os.devnull, os.O_RDWR)

    try:
        os.dup2(devnull, stdout_fd)
        os.dup2(devnull, stderr_fd)
        yield
    finally:
        os.dup2(stdout_dup, stdout_fd)
        os.dup2(stderr_dup, stderr_fd)
        os.close(stdout_dup)
        os.close(stderr_dup)
        os.close(devnull)


def _detect_device() -> str | None:
    """Return the device override, or None to let sentence-transformers pick.

    Environment Variables:
        VAULT_VECTOR_SEARCH_DEVICE: Override device selection ("cpu", "cuda", or "mps")
    """
    env_device = os.environ.get("VAULT_VECTOR_SEARCH_DEVICE", "").lower()
    if env_device in ("cpu", "cuda", "mps"):
        logger.info(f"Using device from environment override: {env_device}")
        return env_device
    return None


def prepare_text_for_embedding(document: Document) -> str:
    """Build the text that represents a document in vector space.

    Parts are separated by blank lines: ``Title:``, ``Description:`` and
    ``Tags:`` lines when present, then the first 2000 characters of the body.
    """
    parts: list[str] = []

    title = document.frontmatter.get("title")
    if title:
        parts.append(f"Title: {title}")

    if document.description:
        parts.append(f"Description: {document.description}")

    tags = document.tags
    if tags:
        parts.append(f"Tags: {', '.join(tags)}")

    body = strip_frontmatter(document.content)
    parts.append(body[:EMBEDDING_CONTENT_PREVIEW].strip())

    return "\n\n".join(parts)


class EmbeddingProvider(ABC):
    """A model that turns text into a fixed-dimension vector."""

    name: str = "unknown"

    def __init__(self, model_name: str) -> None:
        self.model_name = model_name

    @property
    @abstractmethod
    def is_loaded(self) -> bool:
        """Whether the model is resident in memory."""

    @abstractmethod
    async def load(self) -> None:
        """Load the model. Called at most once per lifecycle."""

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Embed a single text."""

    @abstractmethod
    def unload(self) -> None:
        """Release the model."""


class SentenceTransformerProvider(EmbeddingProvider):
    """Embedding provider backed by a local sentence-transformers model."""

    name = "sentence-transformers"

    def __init__(self, model_name: str, device: str | None = None) -> None:
        super().__init__(model_name)
        self._device = device
        self._model: Any = None

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def _load_model(self) -> Any:
        from sentence_transformers import SentenceTransformer

        device = self._device or _detect_device()
        with suppress_stdout_stderr():
            model = SentenceTransformer(self.model_name, device=device)

        actual_dims = model.get_sentence_embedding_dimension()
        try:
            expected_dims = get_model_dimensions(self.model_name)
        except ValueError:
            expected_dims = None
        if expected_dims is not None and actual_dims != expected_dims:
            logger.warning(
                f"Model dimension mismatch: expected {expected_dims}, got {actual_dims}"
            )
        logger.info(
            f"Loaded embedding model: {self.model_name} on {str(model.device).upper()} "
            f"with {actual_dims} dimensions"
        )
        self._device = str(model.device)
        return model

    async def load(self) -> None:
        if self._model is not None:
            return
        try:
            self._model = await asyncio.to_thread(self._load_model)
        except Exception as e:
            logger.error(f"Failed to load embedding model {self.model_name}: {e}")
            raise EmbeddingError(f"Failed to load embedding model: {e}") from e

    def _encode(self, text: str) -> list[float]:
        vector = self._model.encode(
            text, normalize_embeddings=True, show_progress_bar=False
        )
        return vector.tolist()

    async def embed(self, text: str) -> list[float]:
        if self._model is None:
            raise EmbeddingError("Embedding model is not loaded")
        return await asyncio.to_thread(self._encode, text)

    def unload(self) -> None:
        self._model = None


def create_embedding_provider(
    provider: str, model_name: str, device: str | None = None
) -> EmbeddingProvider:
    """Create the embedding provider named in configuration.

    Raises:
        ConfigurationError: For unknown or unavailable providers
    """
    key = provider.strip().lower()
    if key in ("sentence-transformers", "transformers"):
        return SentenceTransformerProvider(model_name, device=device)
    if key == "anthropic":
        raise ConfigurationError(
            "Anthropic embeddings are not yet available. "
            "Use the sentence-transformers provider for now."
        )
    raise ConfigurationError(f"Unknown embedding provider: {provider}")


class EmbeddingGateway:
    """Timeout, failure isolation and lifecycle management around a provider.

    The model is loaded lazily on the first embedding call; concurrent first
    calls share one load. There are no retries. A timeout stops waiting for the
    provider but cannot cancel the inference already running in its worker
    thread.
    """

    def __init__(self, provider: EmbeddingProvider, timeout: float = 30.0) -> None:
        self._provider = provider
        self._timeout = timeout
        self._load_lock = asyncio.Lock()
        self._embed_count = 0

    @property
    def model_name(self) -> str:
        return self._provider.model_name

    @property
    def provider_name(self) -> str:
        return self._provider.name

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def is_loaded(self) -> bool:
        return self._provider.is_loaded

    @property
    def embed_count(self) -> int:
        """Embeddings generated since the last lifecycle reset."""
        return self._embed_count

    async def _ensure_loaded(self) -> None:
        if self._provider.is_loaded:
            return
        async with self._load_lock:
            if self._provider.is_loaded:
                return
            logger.debug(f"Loading embedding model {self.model_name}")
            try:
                await self._provider.load()
            except Exception as e:
                raise EmbeddingFailureError(
                    f"Failed to load embedding model {self.model_name}: {e}",
                    context={"model": self.model_name},
                ) from e

    async def embed(self, text: str) -> list[float]:
        """Embed text or raise.

        Raises:
            EmbeddingTimeoutError: If the provider takes longer than ``timeout``
            EmbeddingFailureError: If the provider fails
        """
        await self._ensure_loaded()
        try:
            vector = await asyncio.wait_for(
                self._provider.embed(text), timeout=self._timeout
            )
        except TimeoutError as e:
            raise EmbeddingTimeoutError(
                self._timeout, context={"model": self.model_name}
            ) from e
        except Exception as e:
            raise EmbeddingFailureError(
                f"Failed to generate embedding: {e}",
                context={"model": self.model_name},
            ) from e

        self._embed_count += 1
        return list(vector)

    async def try_embed(self, text: str) -> EmbeddingResult:
        """Embed text, returning failures as a value instead of raising."""
        try:
            return EmbeddingResult.success(await self.embed(text))
        except EmbeddingError as e:
            return EmbeddingResult.failure(str(e))

    def reset_lifecycle(self) -> None:
        """Unload the model and collect garbage; the next call reloads it."""
        logger.info(
            f"Resetting embedding model lifecycle after {self._embed_count} embeddings"
        )
        self._provider.unload()
        self._embed_count = 0
        gc.collect()
