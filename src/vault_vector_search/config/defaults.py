"""Default configurations for vault-vector-search."""

from pathlib import Path

# Directory (inside the vault) holding the vector index, fingerprints and PID file
DEFAULT_INDEX_DIRNAME = ".vault-vector-search"

# File names inside the index directory
INDEX_METADATA_FILENAME = "index-metadata.json"
WORKER_PID_FILENAME = "indexing-worker.pid"
LANCE_DIRNAME = "lance"

# Markdown is the only indexable document type
MARKDOWN_EXTENSIONS = {".md"}

DEFAULT_INCLUDE_PATTERNS = ["**/*.md"]

DEFAULT_EXCLUDE_PATTERNS = [
    "_archive/**",
    ".obsidian/**",
    ".trash/**",
    "node_modules/**",
    "**/node_modules/**",
]

# Path components the file watcher never reports (dot directories are
# filtered separately)
WATCHER_IGNORED_COMPONENTS = {
    "node_modules",
    ".obsidian",
    "_data",
    DEFAULT_INDEX_DIRNAME,
}

# Embedding providers and models
DEFAULT_EMBEDDING_PROVIDER = "sentence-transformers"
DEFAULT_EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"

# Known model dimensions (used for logging only; the store auto-detects)
MODEL_DIMENSIONS: dict[str, int] = {
    "sentence-transformers/all-MiniLM-L6-v2": 384,
    "sentence-transformers/all-MiniLM-L12-v2": 384,
    "sentence-transformers/all-mpnet-base-v2": 768,
    "BAAI/bge-small-en-v1.5": 384,
}

# Indexing pipeline tuning
DEFAULT_BATCH_SIZE = 10
DEFAULT_CHECKPOINT_INTERVAL = 50
DEFAULT_LIFECYCLE_RESET_INTERVAL = 500
DEFAULT_EMBEDDING_TIMEOUT = 30.0
DEFAULT_BATCH_PAUSE = 0.05
DEFAULT_LIFECYCLE_PAUSE = 1.0

# Live update debounce window (seconds)
DEFAULT_DEBOUNCE_DELAY = 2.0

# Text preparation limits (characters)
EMBEDDING_CONTENT_PREVIEW = 2000
STORED_EXCERPT_LENGTH = 1000
SEARCH_EXCERPT_LENGTH = 200

# Search
DEFAULT_SEARCH_LIMIT = 10
SEARCH_OVERFETCH = 10
HYBRID_SEMANTIC_WEIGHT = 0.6
HYBRID_KEYWORD_WEIGHT = 0.4

# Persisted metadata schema version
INDEX_SCHEMA_VERSION = 1


def get_model_dimensions(model_name: str) -> int:
    """Get embedding dimensions for a known model.

    Raises:
        ValueError: If the model is not in MODEL_DIMENSIONS
    """
    if model_name in MODEL_DIMENSIONS:
        return MODEL_DIMENSIONS[model_name]
    # Allow short names such as "all-MiniLM-L6-v2"
    for name, dims in MODEL_DIMENSIONS.items():
        if name.split("/")[-1] == model_name:
            return dims
    raise ValueError(f"Unknown embedding model: {model_name}")


def get_default_index_path(vault_root: Path) -> Path:
    """Get default index directory for a vault."""
    return vault_root / DEFAULT_INDEX_DIRNAME


