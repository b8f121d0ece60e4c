"""
linedb Test Suite.

This package contains:
- unit/: Unit tests (in-memory backing store, no filesystem)
- integration/: Integration tests (real collection files, Database, linedb-check)
"""
