"""Configuration for vault-vector-search."""
