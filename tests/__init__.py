"""Ingestion-Foundry Test Suite.

Test organization:
- unit/test_markers.py, test_models.py: marker types and the shared data model
- unit/test_registry.py: registry decoding and rejection of malformed entries
- unit/test_watermark_store.py: compare-and-advance on every store backend
- unit/test_runner.py: the Delta Runner state machine
- unit/test_dispatch.py: bounded concurrency, isolation, timeouts, cancellation
- unit/test_sink.py, test_storage.py: batch persistence
- unit/test_extractors.py: reference database and HTTP extractors
- unit/test_cli.py: the ingest-cycle command line

In-memory ports live in fakes.py.
"""
