"""
denormdb Test Suite.

This package contains:
- unit/: Unit tests (schema, storage backends, references, lazy loading)
- integration/: Integration tests (database orchestration, propagation on
  the in-memory and SQLite stores)
"""
