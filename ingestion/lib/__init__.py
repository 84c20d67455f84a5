"""Ingestion library modules.

This package contains the orchestrator core (registry, runner, dispatch,
watermark store) and the reference adapters for its ports.
"""

from ingestion.lib.config_loader import OrchestratorSettings, load_settings
from ingestion.lib.dispatch import Orchestrator, run_cycle
from ingestion.lib.errors import (
    ConfigurationError,
    CycleCancelled,
    ExtractionError,
    IngestionError,
    SinkError,
    TableTimeout,
    WatermarkConflictError,
    WatermarkStoreError,
)
from ingestion.lib.markers import EPOCH, MarkerType
from ingestion.lib.models import (
    BatchReport,
    ExtractionResult,
    FailureReason,
    RunOutcome,
    RunStatus,
    TableDescriptor,
    Watermark,
)
from ingestion.lib.ports import Extractor, Sink, SinkResult, marker_range_key
from ingestion.lib.registry import RejectedEntry, TableRegistry
from ingestion.lib.resilience import RetryConfig, retry_operation
from ingestion.lib.runner import DeltaRunner, RunnerState, TableRunContext
from ingestion.lib.state import (
    AdvanceResult,
    InMemoryWatermarkStore,
    LocalWatermarkStore,
    S3WatermarkStore,
    WatermarkStore,
    build_watermark_store,
)

__all__ = [
    # Orchestration
    "Orchestrator",
    "run_cycle",
    "DeltaRunner",
    "RunnerState",
    "TableRunContext",
    # Configuration
    "OrchestratorSettings",
    "load_settings",
    "RetryConfig",
    "retry_operation",
    # Model
    "BatchReport",
    "ExtractionResult",
    "FailureReason",
    "RunOutcome",
    "RunStatus",
    "TableDescriptor",
    "Watermark",
    "MarkerType",
    "EPOCH",
    # Registry
    "TableRegistry",
    "RejectedEntry",
    # Ports
    "Extractor",
    "Sink",
    "SinkResult",
    "marker_range_key",
    # Watermarks
    "AdvanceResult",
    "WatermarkStore",
    "InMemoryWatermarkStore",
    "LocalWatermarkStore",
    "S3WatermarkStore",
    "build_watermark_store",
    # Errors
    "IngestionError",
    "ConfigurationError",
    "ExtractionError",
    "SinkError",
    "WatermarkConflictError",
    "WatermarkStoreError",
    "CycleCancelled",
    "TableTimeout",
]
