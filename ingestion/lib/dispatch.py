"""Dispatch loop: fan a registry out over a bounded pool of Delta Runners.

``run_cycle`` turns one registry into one ``BatchReport`` with exactly one
outcome per entry, in registry order. It never raises: rejected entries,
failed runs, timeouts and cancellation all become outcomes.

At most ``concurrency_limit`` runners are live at once. A runner that
overruns its time budget (or is still running when the cycle is cancelled)
is abandoned: its outcome is recorded immediately, it is barred from
advancing its watermark, and its slot is given to the next table. This is
what guarantees the cycle terminates even when a port call hangs.

An abandoned runner's thread is not killed. It stays inside its port call
until that call returns, so while it lingers the extractor or sink can see
more than ``concurrency_limit`` concurrent callers. Ports with hard
connection limits should size them with that in mind.

A ``KeyboardInterrupt`` raised in the dispatching thread is treated as a
cancellation: the cycle stops starting tables, abandons the ones it can
and still returns a complete report.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional, Sequence, Tuple, Union

from ingestion.lib.config_loader import OrchestratorSettings
from ingestion.lib.errors import ConfigurationError, CycleCancelled, TableTimeout
from ingestion.lib.models import BatchReport, FailureReason, RunOutcome, TableDescriptor
from ingestion.lib.ports import Extractor, Sink
from ingestion.lib.registry import RejectedEntry, TableRegistry
from ingestion.lib.resilience import RetryConfig
from ingestion.lib.runner import DEFAULT_MAX_PAGES, DeltaRunner, TableRunContext
from ingestion.lib.state import WatermarkStore, build_watermark_store

logger = logging.getLogger(__name__)

__all__ = ["run_cycle", "Orchestrator", "new_cycle_id"]

POLL_INTERVAL_SECONDS = 0.05


def new_cycle_id() -> str:
    """Return a sortable, unique cycle identifier."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return f"{stamp}-{uuid.uuid4().hex[:8]}"


def _entries(
    registry: Union[TableRegistry, Sequence[TableDescriptor]],
) -> Tuple[Union[TableDescriptor, RejectedEntry], ...]:
    if isinstance(registry, TableRegistry):
        return registry.entries()
    return tuple(registry)


def run_cycle(
    registry: Union[TableRegistry, Sequence[TableDescriptor]],
    extractor: Extractor,
    sink: Sink,
    store: WatermarkStore,
    *,
    concurrency_limit: int = 4,
    max_pages: int = DEFAULT_MAX_PAGES,
    table_timeout: Optional[float] = None,
    cycle_timeout: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    retry: Optional[RetryConfig] = None,
    cycle_id: Optional[str] = None,
) -> BatchReport:
    """Run one orchestration cycle over every registry entry.

    Args:
        registry: Table registry (or plain sequence of descriptors)
        extractor: Extraction port shared by all runners
        sink: Sink port shared by all runners
        store: Watermark store shared by all runners
        concurrency_limit: Maximum number of live runners
        max_pages: Default page cap per table per cycle
        table_timeout: Default wall-clock budget per table, in seconds
        cycle_timeout: Wall-clock budget for the whole cycle, in seconds
        cancel_event: Set by the caller to cancel the cycle cooperatively
        retry: In-run retry for extraction pages and writes
        cycle_id: Identifier stamped on logs and the report

    Returns:
        BatchReport with one outcome per entry, in registry order

    Note:
        Abandoned runners keep calling the ports until their current call
        returns, so the source may briefly see more than
        ``concurrency_limit`` callers.

    Example:
        report = run_cycle(TableRegistry.from_file("tables.yaml"),
                           extractor, sink, store, concurrency_limit=8)
        print(report)
    """
    cycle_id = cycle_id or new_cycle_id()
    cancel_event = cancel_event or threading.Event()
    report = BatchReport(cycle_id=cycle_id, started_at=datetime.now(timezone.utc))
    entries = _entries(registry)
    slots: List[Optional[RunOutcome]] = [None] * len(entries)

    if concurrency_limit < 1:
        logger.warning("concurrency_limit %d is invalid, using 1", concurrency_limit)
        concurrency_limit = 1
    if max_pages < 1:
        logger.warning("max_pages %d is invalid, using %d", max_pages, DEFAULT_MAX_PAGES)
        max_pages = DEFAULT_MAX_PAGES

    pending: Deque[Tuple[int, TableDescriptor]] = deque()
    for slot, entry in enumerate(entries):
        if isinstance(entry, RejectedEntry):
            slots[slot] = RunOutcome.failure(
                entry.entry_key, FailureReason.CONFIGURATION_ERROR, entry.error.message
            )
        else:
            pending.append((slot, entry))

    logger.info(
        "Cycle %s starting: %d tables, %d rejected, concurrency %d",
        cycle_id,
        len(pending),
        len(entries) - len(pending),
        concurrency_limit,
    )

    runner = DeltaRunner(extractor, sink, store, max_pages=max_pages, retry=retry, cycle_id=cycle_id)
    cycle_deadline = time.monotonic() + cycle_timeout if cycle_timeout else None
    running: Dict[Future, Tuple[int, TableRunContext]] = {}

    # Pool sized to the table count; live runners are bounded by the submit
    # loop so an abandoned runner never holds a slot.
    executor = ThreadPoolExecutor(
        max_workers=max(1, len(pending)), thread_name_prefix=f"runner-{cycle_id[-8:]}"
    )
    # Slots are recorded before their bookkeeping entry is dropped
    try:
        while pending or running:
            try:
                if cycle_deadline is not None and time.monotonic() >= cycle_deadline:
                    if not cancel_event.is_set():
                        logger.warning(
                            "Cycle %s exceeded %.1fs, cancelling", cycle_id, cycle_timeout
                        )
                        cancel_event.set()

                if cancel_event.is_set():
                    while pending:
                        slot, descriptor = pending[0]
                        slots[slot] = _not_started(descriptor.table_id)
                        pending.popleft()

                while pending and len(running) < concurrency_limit:
                    slot, descriptor = pending[0]
                    context = TableRunContext(
                        descriptor.table_id,
                        descriptor.timeout_seconds or table_timeout,
                        cancel_event,
                    )
                    future = executor.submit(runner.run, descriptor, context)
                    running[future] = (slot, context)
                    pending.popleft()

                if not running:
                    continue

                done, _ = wait(
                    list(running), timeout=POLL_INTERVAL_SECONDS, return_when=FIRST_COMPLETED
                )
                for future in done:
                    slot, context = running[future]
                    slots[slot] = _collect(future, context)
                    del running[future]

                for future, (slot, context) in list(running.items()):
                    if future.done() or not (context.cancelled or context.expired):
                        continue
                    if not context.abandon():
                        # Already advancing; the store call finishes on its own
                        continue
                    slots[slot] = _abandoned(context)
                    del running[future]
            except KeyboardInterrupt:
                already_cancelled = cancel_event.is_set()
                cancel_event.set()
                if not already_cancelled:
                    logger.warning("Cycle %s interrupted, cancelling in-flight tables", cycle_id)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    for slot, entry in enumerate(entries):
        if slots[slot] is None:
            slots[slot] = _not_started(entry.table_id)

    report.outcomes = [outcome for outcome in slots if outcome is not None]
    report.finished_at = datetime.now(timezone.utc)
    logger.info(
        "Cycle %s complete: %d succeeded, %d skipped, %d failed, %d rows in %.2fs",
        cycle_id,
        report.success_count,
        report.skipped_count,
        report.failure_count,
        report.total_rows,
        report.duration_seconds,
    )
    return report


def _not_started(table_id: str) -> RunOutcome:
    return RunOutcome.failure(
        table_id,
        FailureReason.CANCELLED,
        CycleCancelled("Cycle cancelled before the table started", table_id=table_id),
    )


def _abandoned(context: TableRunContext) -> RunOutcome:
    if context.cancelled:
        reason = FailureReason.CANCELLED
        error: Exception = CycleCancelled("Cycle cancelled", table_id=context.table_id)
    else:
        reason = FailureReason.TIMEOUT
        error = TableTimeout(
            "Table exceeded its time budget and was abandoned",
            table_id=context.table_id,
            timeout_seconds=context.timeout_seconds,
        )
    logger.warning("[%s] Abandoned runner: %s", context.table_id, reason.value)
    return RunOutcome.failure(
        context.table_id, reason, error, duration_seconds=context.elapsed()
    )


def _collect(future: Future, context: TableRunContext) -> RunOutcome:
    try:
        return future.result()
    except Exception as e:
        logger.error("[%s] Runner raised unexpectedly: %s", context.table_id, e, exc_info=True)
        return RunOutcome.failure(context.table_id, FailureReason.UNEXPECTED_ERROR, e)


class Orchestrator:
    """Bundles the ports, the store and settings for repeated cycles.

    Example:
        orchestrator = Orchestrator.from_settings(load_settings("ingest.yaml"))
        report = orchestrator.run_cycle()
    """

    def __init__(
        self,
        registry: TableRegistry,
        extractor: Extractor,
        sink: Sink,
        store: WatermarkStore,
        settings: Optional[OrchestratorSettings] = None,
    ) -> None:
        self.registry = registry
        self.extractor = extractor
        self.sink = sink
        self.store = store
        self.settings = settings or OrchestratorSettings()
        self._cancel_event = threading.Event()

    @classmethod
    def from_settings(
        cls,
        settings: OrchestratorSettings,
        *,
        registry: Optional[TableRegistry] = None,
        extractor: Optional[Extractor] = None,
        sink: Optional[Sink] = None,
        store: Optional[WatermarkStore] = None,
    ) -> "Orchestrator":
        """Build an orchestrator, creating any collaborator not supplied.

        Raises:
            ConfigurationError: If a collaborator cannot be built from settings
        """
        from ingestion.lib.extractors import build_extractor
        from ingestion.lib.sink import build_sink

        if registry is None:
            if not settings.registry_path:
                raise ConfigurationError(
                    "No table registry configured",
                    field="registry",
                    suggestion="Set orchestrator.registry or pass --tables.",
                )
            registry = TableRegistry.from_file(settings.registry_path)

        if store is None:
            store = build_watermark_store(
                settings.state.backend,
                path=settings.state.path,
                bucket=settings.state.bucket,
                prefix=settings.state.prefix,
                **settings.state.client_options,
            )

        return cls(
            registry=registry,
            extractor=extractor or build_extractor(settings.source),
            sink=sink or build_sink(settings.sink),
            store=store,
            settings=settings,
        )

    def cancel(self) -> None:
        """Cancel the cycle in progress; in-flight tables end as cancelled."""
        self._cancel_event.set()

    def run_cycle(self, cycle_id: Optional[str] = None) -> BatchReport:
        """Run one cycle with the configured settings."""
        self._cancel_event = threading.Event()
        return run_cycle(
            self.registry,
            self.extractor,
            self.sink,
            self.store,
            concurrency_limit=self.settings.concurrency_limit,
            max_pages=self.settings.max_pages,
            table_timeout=self.settings.table_timeout_seconds,
            cycle_timeout=self.settings.cycle_timeout_seconds,
            cancel_event=self._cancel_event,
            retry=self.settings.retry,
            cycle_id=cycle_id,
        )
