"""Metadata-driven incremental ingestion.

Extracts only what changed in each registered table since its last
successful run, persists the delta, and advances a per-table watermark
exactly once the delta is stored.

Usage:
    ingest-cycle run ./ingest.yaml
    python -m ingestion run ./ingest.yaml
"""

from ingestion.lib.dispatch import Orchestrator, run_cycle
from ingestion.lib.models import BatchReport, RunStatus, TableDescriptor
from ingestion.lib.registry import TableRegistry

__version__ = "1.0.0"

__all__ = [
    "Orchestrator",
    "run_cycle",
    "BatchReport",
    "RunStatus",
    "TableDescriptor",
    "TableRegistry",
]
