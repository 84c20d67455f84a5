"""Delta Runner: the single generic execution path for one table.

Each run walks a fixed state machine:

    RESOLVING_WATERMARK -> EXTRACTING -> WRITING -> ADVANCING -> DONE
                 \\______________\\____________\\___________\\-> FAILED

The watermark is only ever advanced after the sink reported the batch as
durably written, and only through ``compare_and_advance``. Any failure
before that point leaves the watermark untouched, so the next cycle
re-extracts the same delta and the deterministic sink key overwrites any
partial output.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

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
from ingestion.lib.models import (
    ExtractionResult,
    FailureReason,
    RunOutcome,
    RunStatus,
    TableDescriptor,
    Watermark,
)
from ingestion.lib.observability import RunMetrics, TableLogger, get_table_logger
from ingestion.lib.ports import Extractor, Sink, SinkResult, marker_range_key
from ingestion.lib.resilience import RetryConfig, retry_operation
from ingestion.lib.state import AdvanceResult, WatermarkStore

logger = logging.getLogger(__name__)

__all__ = ["DEFAULT_MAX_PAGES", "RunnerState", "TableRunContext", "DeltaRunner"]

DEFAULT_MAX_PAGES = 100


class RunnerState(str, Enum):
    """States of a single table run."""

    RESOLVING_WATERMARK = "resolving_watermark"
    EXTRACTING = "extracting"
    WRITING = "writing"
    ADVANCING = "advancing"
    DONE = "done"
    FAILED = "failed"


class TableRunContext:
    """Cancellation signal and wall-clock budget for one table run.

    Shared between the runner (which checks it between steps) and the
    dispatch loop (which may abandon a runner that overran its budget).
    Once ``begin_advance`` succeeds the run can no longer be abandoned, and
    once ``abandon`` succeeds the run can no longer advance.
    """

    _RUNNING = "running"
    _ADVANCING = "advancing"
    _ABANDONED = "abandoned"

    def __init__(
        self,
        table_id: str,
        timeout_seconds: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.table_id = table_id
        self.timeout_seconds = timeout_seconds
        self.cancel_event = cancel_event or threading.Event()
        self._clock = clock
        self._started = clock()
        self._phase = self._RUNNING
        self._lock = threading.Lock()

    @property
    def deadline(self) -> Optional[float]:
        if self.timeout_seconds is None:
            return None
        return self._started + self.timeout_seconds

    def elapsed(self) -> float:
        return self._clock() - self._started

    def remaining(self) -> Optional[float]:
        """Seconds left in the budget, or None when unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self._clock())

    @property
    def expired(self) -> bool:
        return self.deadline is not None and self._clock() >= self.deadline

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def abandoned(self) -> bool:
        with self._lock:
            return self._phase == self._ABANDONED

    def should_stop(self) -> bool:
        return self.cancelled or self.expired or self.abandoned

    def check(self) -> None:
        """Raise if the run must stop.

        Raises:
            CycleCancelled: If the cycle was cancelled
            TableTimeout: If the budget is spent or the run was abandoned
        """
        if self.cancelled:
            raise CycleCancelled("Cycle cancelled", table_id=self.table_id)
        if self.expired or self.abandoned:
            raise TableTimeout(
                "Table exceeded its time budget",
                table_id=self.table_id,
                timeout_seconds=self.timeout_seconds,
            )

    def begin_advance(self) -> None:
        """Commit to advancing the watermark; the run is no longer abandonable."""
        with self._lock:
            if self._phase == self._RUNNING and not self.cancelled and not self.expired:
                self._phase = self._ADVANCING
                return
        self.check()
        raise TableTimeout(
            "Table exceeded its time budget",
            table_id=self.table_id,
            timeout_seconds=self.timeout_seconds,
        )

    def abandon(self) -> bool:
        """Bar the run from advancing.

        Returns:
            False if the run is already advancing and must be waited for
        """
        with self._lock:
            if self._phase == self._ADVANCING:
                return False
            self._phase = self._ABANDONED
            return True


class DeltaRunner:
    """Runs one table through resolve, extract, write and advance.

    Example:
        runner = DeltaRunner(extractor, sink, store)
        outcome = runner.run(descriptor)
        if outcome.failed:
            print(outcome.reason, outcome.error)
    """

    def __init__(
        self,
        extractor: Extractor,
        sink: Sink,
        store: WatermarkStore,
        *,
        max_pages: int = DEFAULT_MAX_PAGES,
        retry: Optional[RetryConfig] = None,
        cycle_id: Optional[str] = None,
    ) -> None:
        if max_pages <= 0:
            raise ConfigurationError(
                "max_pages must be a positive integer", field="max_pages", value=max_pages
            )
        self.extractor = extractor
        self.sink = sink
        self.store = store
        self.max_pages = max_pages
        self.retry = retry or RetryConfig.none()
        self.cycle_id = cycle_id

    def run(
        self,
        descriptor: TableDescriptor,
        context: Optional[TableRunContext] = None,
    ) -> RunOutcome:
        """Execute one run for ``descriptor``. Never raises.

        Args:
            descriptor: Table to process
            context: Cancellation and budget shared with the dispatch loop

        Returns:
            RunOutcome describing the terminal state
        """
        table_id = descriptor.table_id
        if context is None:
            context = TableRunContext(table_id, descriptor.timeout_seconds)
        metrics = RunMetrics(table_id, self.cycle_id)
        log = get_table_logger(__name__, table_id=table_id, cycle_id=self.cycle_id)

        state = RunnerState.RESOLVING_WATERMARK
        progress: Dict[str, Any] = {"pages": 0, "rows_processed": 0}

        def finish(outcome: RunOutcome) -> RunOutcome:
            metrics.finish()
            outcome.duration_seconds = metrics.total_duration
            outcome.phases = metrics.phase_durations()
            metrics.record("rows", outcome.rows_processed)
            metrics.record("pages", outcome.pages)
            log.metrics(metrics)
            return outcome

        def fail(reason: FailureReason, error: BaseException) -> RunOutcome:
            log.error("Failed in state %s (%s): %s", state.value, reason.value, error)
            return finish(RunOutcome.failure(table_id, reason, error, **progress))

        try:
            context.check()
            watermark = self._resolve(descriptor, metrics)
            progress["previous_marker"] = watermark.marker
            log.debug("Resolved watermark %s (version %d)", watermark.marker, watermark.version)

            state = RunnerState.EXTRACTING
            rows, max_marker, pages = self._extract(descriptor, watermark, context, metrics, log)
            progress["pages"] = pages

            if not rows:
                log.info("No changes since %s", watermark.marker)
                return finish(
                    RunOutcome(
                        table_id=table_id,
                        status=RunStatus.SKIPPED_NO_CHANGE,
                        previous_marker=watermark.marker,
                        new_marker=watermark.marker,
                        pages=pages,
                    )
                )

            state = RunnerState.WRITING
            context.check()
            key = marker_range_key(descriptor.marker_type, watermark.marker, max_marker)
            progress["marker_range_key"] = key
            with metrics.time_phase("write"):
                sink_result = self._write(descriptor, key, rows, context)
            log.info(
                "Wrote %d rows under %s%s",
                sink_result.row_count,
                key,
                f" to {sink_result.location}" if sink_result.location else "",
            )

            state = RunnerState.ADVANCING
            context.begin_advance()
            with metrics.time_phase("advance"):
                result = self._advance(descriptor, watermark, max_marker)

            if result is AdvanceResult.CONFLICT_STALE:
                return fail(
                    FailureReason.CONCURRENT_WATERMARK_CONFLICT,
                    WatermarkConflictError(
                        "Watermark changed since it was read",
                        table_id=table_id,
                        expected=watermark.marker,
                    ),
                )
            if result is AdvanceResult.NOT_FOUND:
                return fail(
                    FailureReason.WATERMARK_NOT_FOUND,
                    WatermarkStoreError(
                        "Watermark record disappeared before it could be advanced",
                        table_id=table_id,
                        details={"expected_version": watermark.version},
                    ),
                )

            state = RunnerState.DONE
            log.info(
                "Processed %d rows in %d pages, watermark %s -> %s",
                len(rows),
                pages,
                watermark.marker,
                max_marker,
            )
            return finish(
                RunOutcome(
                    table_id=table_id,
                    status=RunStatus.SUCCEEDED,
                    rows_processed=len(rows),
                    previous_marker=watermark.marker,
                    new_marker=max_marker,
                    pages=pages,
                    marker_range_key=key,
                )
            )

        except CycleCancelled as e:
            return fail(FailureReason.CANCELLED, e)
        except TableTimeout as e:
            return fail(FailureReason.TIMEOUT, e)
        except ConfigurationError as e:
            return fail(FailureReason.CONFIGURATION_ERROR, e)
        except ExtractionError as e:
            return fail(FailureReason.EXTRACTION_ERROR, e)
        except SinkError as e:
            return fail(FailureReason.SINK_ERROR, e)
        except WatermarkStoreError as e:
            return fail(FailureReason.WATERMARK_STORE_ERROR, e)
        except IngestionError as e:
            return fail(FailureReason.UNEXPECTED_ERROR, e)
        except Exception as e:
            log.exception("Unexpected error in state %s", state.value)
            return fail(FailureReason.UNEXPECTED_ERROR, e)

    def _resolve(self, descriptor: TableDescriptor, metrics: RunMetrics) -> Watermark:
        try:
            default = descriptor.default_marker()
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                "Invalid initial marker",
                field="initial_marker",
                value=descriptor.initial_marker,
                table_id=descriptor.table_id,
            ) from e

        with metrics.time_phase("resolve"):
            try:
                return self.store.get(
                    descriptor.table_id,
                    default=default,
                    marker_type=descriptor.marker_type,
                )
            except IngestionError:
                raise
            except Exception as e:
                raise WatermarkStoreError(
                    "Could not read watermark", table_id=descriptor.table_id, cause=e
                ) from e

    def _extract(
        self,
        descriptor: TableDescriptor,
        watermark: Watermark,
        context: TableRunContext,
        metrics: RunMetrics,
        log: TableLogger,
    ) -> tuple:
        """Page through the delta after ``watermark``.

        Returns:
            (rows, max_marker, pages); rows is empty when nothing changed
        """
        page_cap = descriptor.max_pages or self.max_pages
        after = watermark.marker
        rows: List[Dict[str, Any]] = []
        max_marker: Any = None
        pages = 0

        while True:
            context.check()
            with metrics.time_phase("extract"):
                page = self._fetch(descriptor, after, context)
            pages += 1

            if not page.rows:
                break

            page_max = self._page_max_marker(descriptor, page)
            if not page_max > after:
                if pages == 1:
                    raise ExtractionError(
                        "Extractor returned rows that are not newer than the watermark",
                        table_id=descriptor.table_id,
                        details={"after_marker": str(after), "max_marker": str(page_max)},
                    )
                log.warning(
                    "Page %d did not advance past %s; dropping it and stopping",
                    pages,
                    after,
                )
                break

            rows.extend(page.rows)
            max_marker = page_max
            log.debug("Page %d: %d rows, max marker %s", pages, page.row_count, page_max)

            if not page.has_more:
                break
            if pages >= page_cap:
                log.info(
                    "Page cap of %d reached; remaining rows are picked up next cycle",
                    page_cap,
                )
                break
            after = max_marker

        return rows, max_marker, pages

    def _fetch(
        self,
        descriptor: TableDescriptor,
        after_marker: Any,
        context: TableRunContext,
    ) -> ExtractionResult:
        table_id = descriptor.table_id

        def attempt() -> ExtractionResult:
            try:
                result = self.extractor.fetch(
                    table_id,
                    descriptor.change_column,
                    after_marker,
                    descriptor.batch_size,
                    descriptor.params,
                )
            except IngestionError:
                raise
            except Exception as e:
                raise ExtractionError(
                    f"Extraction failed: {e}",
                    table_id=table_id,
                    details={"after_marker": str(after_marker)},
                    cause=e,
                ) from e
            if not isinstance(result, ExtractionResult):
                raise ExtractionError(
                    f"Extractor returned {type(result).__name__}, expected ExtractionResult",
                    table_id=table_id,
                )
            return result

        try:
            return retry_operation(
                attempt,
                self.retry,
                f"[{table_id}] fetch after {after_marker}",
                retry_exceptions=(ExtractionError,),
                abort=context.should_stop,
            )
        except ExtractionError:
            # A stopped run reports why it stopped, not the last port error
            context.check()
            raise

    def _page_max_marker(self, descriptor: TableDescriptor, page: ExtractionResult) -> Any:
        marker_type = descriptor.marker_type
        try:
            if page.max_marker is not None:
                return marker_type.parse(page.max_marker)
            # Fall back to the change column when the port omits the maximum
            values = [
                marker_type.parse(row[descriptor.change_column])
                for row in page.rows
                if row.get(descriptor.change_column) is not None
            ]
        except (TypeError, ValueError) as e:
            raise ExtractionError(
                f"Invalid {marker_type.value} marker in extracted page",
                table_id=descriptor.table_id,
                cause=e,
            ) from e
        if not values:
            raise ExtractionError(
                "Extracted page has rows but no change marker",
                table_id=descriptor.table_id,
                details={"change_column": descriptor.change_column},
            )
        return max(values)

    def _write(
        self,
        descriptor: TableDescriptor,
        key: str,
        rows: List[Dict[str, Any]],
        context: TableRunContext,
    ) -> SinkResult:
        table_id = descriptor.table_id

        def attempt() -> SinkResult:
            try:
                return self.sink.write_batch(table_id, key, rows)
            except IngestionError:
                raise
            except Exception as e:
                raise SinkError(
                    f"Write failed: {e}",
                    table_id=table_id,
                    marker_range_key=key,
                    cause=e,
                ) from e

        try:
            result = retry_operation(
                attempt,
                self.retry,
                f"[{table_id}] write {key}",
                retry_exceptions=(SinkError,),
                abort=context.should_stop,
            )
        except SinkError:
            context.check()
            raise
        if result is None:
            return SinkResult(table_id=table_id, marker_range_key=key, row_count=len(rows))
        return result

    def _advance(
        self,
        descriptor: TableDescriptor,
        expected: Watermark,
        new_marker: Any,
    ) -> AdvanceResult:
        try:
            return self.store.compare_and_advance(
                descriptor.table_id,
                expected,
                new_marker,
                marker_type=descriptor.marker_type,
            )
        except IngestionError:
            raise
        except Exception as e:
            raise WatermarkStoreError(
                "Could not advance watermark", table_id=descriptor.table_id, cause=e
            ) from e
