"""
Streaming Importer - bounded-memory chunked import pipeline.

Pulls content from a source one fixed-size chunk at a time and hands every
item to a caller-supplied handler. At most one chunk of raw items is held at
once, so peak memory stays within the ceiling plus one batch regardless of
how large the source is.

Memory is checked before each fetch and after each chunk. Over the ceiling,
the importer runs a cleanup cycle (garbage collection, a warning and a short
backpressure pause). Only when K consecutive cycles bring no improvement is
the job aborted with ResourceExhaustedError.

Source fetches are bounded by a per-request timeout and retried a bounded
number of times; exhausting the retries fails the job with a reported error
instead of hanging it. Cancellation is cooperative and only observed between
chunks, so a chunk is always processed completely or not at all.
"""

import gc
import time
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Tuple, Union

from ..constants import ImportDefaults
from ..exceptions import (
    ConfigValidationError,
    ImportCancelledError,
    ResourceExhaustedError,
    SourceFetchError,
    TransientSourceError,
    SourceTimeoutError,
)
from ..logging_config import get_logger
from ..sampler import MetricSampler
from ..utils.error_handling import ErrorAggregator, ErrorCategory, handle_error, retry_call
from .sources import Page

logger = get_logger(__name__)


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and an import."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class ItemResult:
    """Explicit per-item outcome returned by a handler"""
    success: bool
    message: Optional[str] = None

    @classmethod
    def ok(cls) -> 'ItemResult':
        return cls(True)

    @classmethod
    def failed(cls, message: str) -> 'ItemResult':
        return cls(False, message)


ItemHandler = Callable[[Any], Union[bool, ItemResult, None]]


@dataclass
class StreamState:
    """Pagination and memory bookkeeping for one import"""
    batch_size: int
    memory_ceiling_mb: float
    cursor: Any = None
    current_memory_mb: float = 0.0
    peak_memory_mb: float = 0.0
    chunks: int = 0
    items_fetched: int = 0
    consecutive_breaches: int = 0
    ceiling_breaches: int = 0
    cleanups: int = 0
    exhausted: bool = False
    cursors: Deque[Any] = field(
        default_factory=lambda: deque(maxlen=ImportDefaults.MAX_CURSOR_HISTORY)
    )

    def observe_memory(self, value_mb: float) -> None:
        self.current_memory_mb = value_mb
        self.peak_memory_mb = max(self.peak_memory_mb, value_mb)

    def to_dict(self) -> Dict:
        return {
            'batch_size': self.batch_size,
            'memory_ceiling_mb': self.memory_ceiling_mb,
            'cursor': self.cursor,
            'current_memory_mb': round(self.current_memory_mb, 2),
            'peak_memory_mb': round(self.peak_memory_mb, 2),
            'chunks': self.chunks,
            'items_fetched': self.items_fetched,
            'ceiling_breaches': self.ceiling_breaches,
            'cleanups': self.cleanups,
            'exhausted': self.exhausted,
        }


@dataclass
class ImportChunk:
    """One fetched batch of raw items"""
    index: int
    cursor: Any
    next_cursor: Any
    items: List[Any]
    memory_mb: float
    is_last: bool = False

    def __len__(self) -> int:
        return len(self.items)

    def to_dict(self) -> Dict:
        return {
            'index': self.index,
            'cursor': self.cursor,
            'next_cursor': self.next_cursor,
            'item_count': len(self.items),
            'memory_mb': round(self.memory_mb, 2),
            'is_last': self.is_last,
        }


@dataclass
class ImportResult:
    """Outcome of an import job"""
    status: str
    processed_count: int = 0
    error_count: int = 0
    chunks: int = 0
    cursor: Any = None
    cursors: List[Any] = field(default_factory=list)
    peak_memory_mb: float = 0.0
    ceiling_breaches: int = 0
    cleanups: int = 0
    duration_seconds: float = 0.0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def total(self) -> int:
        return self.processed_count + self.error_count

    @property
    def cancelled(self) -> bool:
        return self.status == 'cancelled'

    @property
    def succeeded(self) -> bool:
        return self.status == 'completed'

    def to_dict(self) -> Dict:
        return {
            'status': self.status,
            'processed_count': self.processed_count,
            'error_count': self.error_count,
            'total': self.total,
            'chunks': self.chunks,
            'cursor': self.cursor,
            'cursors': list(self.cursors),
            'peak_memory_mb': round(self.peak_memory_mb, 2),
            'ceiling_breaches': self.ceiling_breaches,
            'cleanups': self.cleanups,
            'duration_seconds': round(self.duration_seconds, 3),
            'errors': list(self.errors),
            'error': self.error,
        }


class StreamingImporter:
    """
    Imports content in bounded chunks under a memory ceiling.

    One importer may run several jobs one after another; each job gets its
    own StreamState, so concurrent jobs on separate importers do not interact.
    """

    def __init__(
        self,
        batch_size: int = ImportDefaults.BATCH_SIZE,
        memory_ceiling_mb: float = ImportDefaults.MEMORY_CEILING_MB,
        ceiling_breach_limit: int = ImportDefaults.CEILING_BREACH_LIMIT,
        fetch_timeout_seconds: Optional[float] = ImportDefaults.FETCH_TIMEOUT_SECONDS,
        fetch_retries: int = ImportDefaults.FETCH_RETRIES,
        fetch_retry_delay_seconds: float = ImportDefaults.FETCH_RETRY_DELAY_SECONDS,
        retry_backoff: float = ImportDefaults.FETCH_RETRY_BACKOFF,
        memory_reader: Optional[Callable[[], float]] = None,
        sampler: Optional[MetricSampler] = None,
        collect: Callable[[], Any] = gc.collect,
        sleep: Callable[[float], None] = time.sleep,
        backpressure_pause: float = ImportDefaults.BACKPRESSURE_PAUSE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        max_error_samples: int = ImportDefaults.MAX_ERROR_SAMPLES,
    ):
        """
        Initialize StreamingImporter.

        Args:
            batch_size: Items requested per chunk
            memory_ceiling_mb: Memory budget in megabytes
            ceiling_breach_limit: Consecutive no-improvement cleanups before aborting
            fetch_timeout_seconds: Per-request timeout (None disables the worker thread)
            fetch_retries: Retries after the first failed fetch
            fetch_retry_delay_seconds: Initial delay between retries
            retry_backoff: Delay multiplier per retry
            memory_reader: Returns current memory in MB (default: sampler)
            sampler: MetricSampler used for cheap process-memory reads
            collect: Cleanup action run when over the ceiling
            sleep: Sleep function for backpressure and retry delays
            backpressure_pause: Pause after each cleanup cycle
            clock: Monotonic clock for durations
            max_error_samples: Item failures kept in the result
        """
        self._validate(batch_size, memory_ceiling_mb, ceiling_breach_limit, fetch_retries)
        self.batch_size = batch_size
        self.memory_ceiling_mb = memory_ceiling_mb
        self.ceiling_breach_limit = ceiling_breach_limit
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.fetch_retries = fetch_retries
        self.fetch_retry_delay_seconds = fetch_retry_delay_seconds
        self.retry_backoff = retry_backoff
        self.backpressure_pause = backpressure_pause
        self.max_error_samples = max_error_samples

        if memory_reader is None:
            sampler = sampler or MetricSampler(detect_limit=False)
            memory_reader = sampler.process_memory_mb
        self._read_memory = memory_reader
        self._collect = collect
        self._sleep = sleep
        self._clock = clock
        self._errors = ErrorAggregator(max_errors=200)
        self._abandoned_fetches: Dict[int, Tuple[Any, threading.Thread]] = {}
        self.last_state: Optional[StreamState] = None

    @classmethod
    def from_config(cls, config, **kwargs) -> 'StreamingImporter':
        """Create an importer from a MonitorConfig."""
        kwargs.setdefault('batch_size', config.batch_size)
        kwargs.setdefault('memory_ceiling_mb', config.memory_ceiling_mb)
        kwargs.setdefault('ceiling_breach_limit', config.ceiling_breach_limit)
        kwargs.setdefault('fetch_timeout_seconds', config.fetch_timeout_seconds)
        kwargs.setdefault('fetch_retries', config.fetch_retries)
        kwargs.setdefault('fetch_retry_delay_seconds', config.fetch_retry_delay_seconds)
        return cls(**kwargs)

    @staticmethod
    def _validate(batch_size, memory_ceiling_mb, ceiling_breach_limit, fetch_retries) -> None:
        errors = []
        if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size < 1:
            errors.append(f"batch_size must be a positive integer, got {batch_size!r}")
        if memory_ceiling_mb is None or memory_ceiling_mb <= 0:
            errors.append(f"memory_ceiling_mb must be > 0, got {memory_ceiling_mb!r}")
        if ceiling_breach_limit < 1:
            errors.append(f"ceiling_breach_limit must be >= 1, got {ceiling_breach_limit!r}")
        if fetch_retries < 0:
            errors.append(f"fetch_retries must be >= 0, got {fetch_retries!r}")
        if errors:
            raise ConfigValidationError(errors)

    def set_batch_config(self, batch_size: int, memory_ceiling_mb: float) -> None:
        """Change batch size and ceiling for subsequent jobs."""
        self._validate(batch_size, memory_ceiling_mb, self.ceiling_breach_limit, self.fetch_retries)
        self.batch_size = batch_size
        self.memory_ceiling_mb = memory_ceiling_mb

    def get_batch_config(self) -> Dict[str, Any]:
        return {
            'batch_size': self.batch_size,
            'memory_ceiling_mb': self.memory_ceiling_mb,
            'ceiling_breach_limit': self.ceiling_breach_limit,
            'current_memory_mb': (
                round(self.last_state.current_memory_mb, 2) if self.last_state else None
            ),
        }

    def get_error_summary(self) -> Dict[str, Any]:
        return self._errors.get_error_summary()

    # ------------------------------------------------------------------
    # Memory ceiling
    # ------------------------------------------------------------------

    def _enforce_ceiling(self, state: StreamState) -> None:
        """
        Check memory against the ceiling, cleaning up while over it.

        Raises:
            ResourceExhaustedError: after K consecutive cleanup cycles
                that brought no improvement
        """
        current = self._read_memory()
        state.observe_memory(current)

        while current > self.memory_ceiling_mb:
            logger.warning(
                f"Memory usage {current:.1f} MB exceeds ceiling of "
                f"{self.memory_ceiling_mb:.1f} MB; running cleanup"
            )
            self._collect()
            state.cleanups += 1
            if self.backpressure_pause > 0:
                self._sleep(self.backpressure_pause)

            after = self._read_memory()
            state.observe_memory(after)
            logger.verbose(f"Cleanup finished: {current:.1f} MB -> {after:.1f} MB")

            if after <= self.memory_ceiling_mb or after < current:
                state.consecutive_breaches = 0
                return

            state.consecutive_breaches += 1
            state.ceiling_breaches += 1
            if state.consecutive_breaches >= self.ceiling_breach_limit:
                raise ResourceExhaustedError(
                    self.memory_ceiling_mb, after, state.consecutive_breaches
                )
            current = after

        state.consecutive_breaches = 0

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def _call_with_timeout(self, source, func: Callable[[], Any], description: str) -> Any:
        if self.fetch_timeout_seconds is None or getattr(source, 'manages_timeout', False):
            return func()

        self._wait_for_abandoned_fetch(source, description)
        outcome: Dict[str, Any] = {}

        def target():
            try:
                outcome['value'] = func()
            except BaseException as e:
                outcome['error'] = e

        worker = threading.Thread(target=target, name="membound-fetch", daemon=True)
        worker.start()
        worker.join(self.fetch_timeout_seconds)

        if worker.is_alive():
            self._abandoned_fetches[id(source)] = (source, worker)
            raise SourceTimeoutError(
                f"{description} exceeded timeout of {self.fetch_timeout_seconds}s"
            )
        if 'error' in outcome:
            raise outcome['error']
        return outcome['value']

    def _wait_for_abandoned_fetch(self, source, description: str) -> None:
        """
        Give a timed-out fetch on the same source one more timeout to finish.

        The abandoned worker cannot be stopped, and a second call would share
        the source (and its connection) with it, so a fetch that is still
        running fails the job instead of being retried.
        """
        entry = self._abandoned_fetches.get(id(source))
        if entry is None:
            return
        worker = entry[1]
        worker.join(self.fetch_timeout_seconds)
        if worker.is_alive():
            raise SourceFetchError(
                f"{description} not attempted: a previous fetch from this source "
                f"is still running after {self.fetch_timeout_seconds}s"
            )
        del self._abandoned_fetches[id(source)]

    def _fetch_page(self, source, cursor: Any) -> Page:
        description = f"fetch_page(cursor={cursor!r})"
        attempts = self.fetch_retries + 1

        try:
            page = retry_call(
                lambda: self._call_with_timeout(
                    source, lambda: source.fetch_page(cursor, self.batch_size), description
                ),
                attempts=attempts,
                delay=self.fetch_retry_delay_seconds,
                backoff=self.retry_backoff,
                retry_on=(TransientSourceError, TimeoutError),
                operation=description,
                sleep=self._sleep,
            )
        except (TransientSourceError, TimeoutError) as e:
            raise SourceFetchError(
                f"{description} failed after {attempts} attempts: {e}",
                cursor=cursor,
                attempts=attempts,
            ) from e
        except SourceFetchError as e:
            if e.cursor is None:
                e.cursor = cursor
            raise
        except Exception as e:
            raise SourceFetchError(
                f"{description} raised {type(e).__name__}: {e}", cursor=cursor
            ) from e

        if isinstance(page, Page):
            return page
        if isinstance(page, tuple) and len(page) == 2:
            return Page(items=list(page[0]), next_cursor=page[1])
        raise SourceFetchError(
            f"{description} returned {type(page).__name__}, expected Page", cursor=cursor
        )

    @staticmethod
    def _cursor_advanced(cursor: Any, next_cursor: Any) -> bool:
        if next_cursor == cursor:
            return False
        numeric = (int, float)
        if isinstance(cursor, numeric) and isinstance(next_cursor, numeric):
            return next_cursor > cursor
        return True

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def new_state(self, cursor: Any = None) -> StreamState:
        return StreamState(
            batch_size=self.batch_size,
            memory_ceiling_mb=self.memory_ceiling_mb,
            cursor=cursor,
        )

    def stream(
        self,
        source,
        cursor: Any = None,
        cancel_token: Optional[CancellationToken] = None,
        raise_on_cancel: bool = False,
        state: Optional[StreamState] = None,
    ) -> Iterator[ImportChunk]:
        """
        Lazily yield chunks from a source.

        The sequence is finite and restartable: pass the cursor of the last
        fully processed chunk (ImportChunk.next_cursor) to resume.

        Args:
            source: Object with fetch_page(cursor, limit) and optional initial_cursor
            cursor: Starting cursor (default: source.initial_cursor)
            cancel_token: Checked before each fetch
            raise_on_cancel: Raise ImportCancelledError instead of stopping quietly
            state: StreamState to update (a new one is created if omitted)

        Raises:
            ResourceExhaustedError: memory ceiling could not be restored
            SourceFetchError: a fetch failed after retries, or the source misbehaved
        """
        if cursor is None:
            cursor = getattr(source, 'initial_cursor', None)
        if state is None:
            state = self.new_state(cursor)
        state.cursor = cursor
        self.last_state = state

        index = 0
        while True:
            if cancel_token is not None and cancel_token.cancelled:
                logger.info(f"Import cancelled before chunk {index} (cursor={cursor!r})")
                if raise_on_cancel:
                    raise ImportCancelledError(f"import cancelled at cursor {cursor!r}")
                return

            self._enforce_ceiling(state)
            memory_before = state.current_memory_mb

            page = self._fetch_page(source, cursor)
            state.cursors.append(cursor)
            items = list(page.items)

            if len(items) > self.batch_size:
                raise SourceFetchError(
                    f"source returned {len(items)} items for a batch of {self.batch_size}",
                    cursor=cursor,
                )
            if not items:
                state.exhausted = True
                state.cursor = None
                return

            is_last = page.next_cursor is None or len(items) < self.batch_size
            if not is_last and not self._cursor_advanced(cursor, page.next_cursor):
                raise SourceFetchError(
                    f"source cursor did not advance past {cursor!r}", cursor=cursor
                )

            state.chunks += 1
            state.items_fetched += len(items)
            chunk = ImportChunk(
                index=index,
                cursor=cursor,
                next_cursor=None if is_last else page.next_cursor,
                items=items,
                memory_mb=memory_before,
                is_last=is_last,
            )
            del items, page

            yield chunk

            next_cursor = chunk.next_cursor
            del chunk
            self._enforce_ceiling(state)

            if is_last:
                state.exhausted = True
                state.cursor = None
                return

            cursor = next_cursor
            state.cursor = cursor
            index += 1

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    @staticmethod
    def _handle_item(handler: ItemHandler, item: Any):
        try:
            outcome = handler(item)
        except Exception as e:
            return False, f"{type(e).__name__}: {e}"
        if isinstance(outcome, ItemResult):
            return outcome.success, outcome.message
        if outcome:
            return True, None
        return False, "handler reported failure"

    def run(
        self,
        source,
        handler: ItemHandler,
        cursor: Any = None,
        cancel_token: Optional[CancellationToken] = None,
        on_chunk: Optional[Callable[[ImportChunk, ImportResult], None]] = None,
    ) -> ImportResult:
        """
        Import every item from a source through a handler.

        Item failures are counted, never raised. Fetch failures after retries
        end the job with status 'failed'. ResourceExhaustedError propagates
        with the partial ImportResult attached as `.result`.

        Args:
            source: Content source
            handler: Called per item; returns bool or ItemResult
            cursor: Resume point (default: start of the source)
            cancel_token: Cooperative cancellation between chunks
            on_chunk: Called after each chunk with the chunk and running result

        Returns:
            ImportResult with counts, final cursor and memory statistics
        """
        state = self.new_state(cursor)
        result = ImportResult(status='running')
        started = self._clock()
        item_index = 0

        describe = getattr(source, 'describe', None)
        source_info = describe() if callable(describe) else {'type': type(source).__name__}
        logger.pipeline_start(
            'import',
            source=source_info.get('type'),
            batch_size=self.batch_size,
            memory_ceiling_mb=self.memory_ceiling_mb,
        )

        try:
            for chunk in self.stream(source, cursor, cancel_token, state=state):
                chunk_errors = 0
                for item in chunk.items:
                    success, message = self._handle_item(handler, item)
                    if success:
                        result.processed_count += 1
                    else:
                        chunk_errors += 1
                        result.error_count += 1
                        logger.debug(f"Item {item_index} failed: {message}")
                        if len(result.errors) < self.max_error_samples:
                            result.errors.append({
                                'item_index': item_index,
                                'chunk': chunk.index,
                                'cursor': chunk.cursor,
                                'message': message,
                            })
                    item_index += 1

                result.chunks += 1
                result.cursor = chunk.next_cursor
                if chunk_errors:
                    logger.warning(
                        f"Chunk {chunk.index}: {chunk_errors} of {len(chunk)} items failed"
                    )
                logger.pipeline_step(
                    f"chunk {chunk.index}",
                    items=len(chunk),
                    failed=chunk_errors,
                    memory_mb=round(chunk.memory_mb, 2),
                )

                if on_chunk is not None:
                    try:
                        on_chunk(chunk, result)
                    except Exception as e:
                        logger.error(f"Error in chunk callback: {e}")

                del chunk

            if state.exhausted:
                result.status = 'completed'
                result.cursor = None
            else:
                result.status = 'cancelled'
                result.cursor = state.cursor

        except SourceFetchError as e:
            result.status = 'failed'
            result.error = str(e)
            result.cursor = state.cursor
            handle_error(
                e,
                "streaming_import.fetch",
                ErrorCategory.EXTERNAL,
                additional_context={'cursor': state.cursor, 'attempts': e.attempts},
                aggregator=self._errors,
            )

        except ResourceExhaustedError as e:
            result.status = 'failed'
            result.error = str(e)
            result.cursor = state.cursor
            self._finish(result, state, started)
            handle_error(
                e,
                "streaming_import.memory",
                ErrorCategory.RESOURCE,
                additional_context={'cursor': state.cursor, 'chunks': result.chunks},
                aggregator=self._errors,
            )
            e.result = result
            raise

        self._finish(result, state, started)
        return result

    def _finish(self, result: ImportResult, state: StreamState, started: float) -> None:
        result.cursors = list(state.cursors)
        result.peak_memory_mb = state.peak_memory_mb
        result.ceiling_breaches = state.ceiling_breaches
        result.cleanups = state.cleanups
        result.duration_seconds = self._clock() - started
        logger.pipeline_end(
            'import',
            success=result.status != 'failed',
            status=result.status,
            processed=result.processed_count,
            failed=result.error_count,
            chunks=result.chunks,
            peak_memory_mb=round(result.peak_memory_mb, 2),
        )


__all__ = [
    'CancellationToken',
    'ItemResult',
    'StreamState',
    'ImportChunk',
    'ImportResult',
    'StreamingImporter',
]
