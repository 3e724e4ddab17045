"""
HERA Test Suite.

This package contains:
- unit/: Unit tests (temporary SQLite stores, no server)
- integration/: Dispatcher, HTTP app and SDK tests (in-process ASGI app)
"""
