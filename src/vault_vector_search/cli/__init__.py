"""Command line interface for vault-vector-search."""
