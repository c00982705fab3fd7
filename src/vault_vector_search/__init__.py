"""vault-vector-search - incremental semantic indexing for markdown vaults."""

__version__ = "0.3.0"

from .core.exceptions import VaultSearchError

__all__ = ["VaultSearchError", "__version__"]
