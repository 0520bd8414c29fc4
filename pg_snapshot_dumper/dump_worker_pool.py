import itertools
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from logging import getLogger
from queue import Empty, Queue

from .common import RangeStatus
from .config import DumpSettings
from .errors import (
    DatabaseConnectionError,
    DestinationWriteError,
    DumpCancelledError,
    SequencingError,
    SnapshotExpiredError,
    SnapshotImportError,
    StreamError,
    TransientWriteError,
)
from .snapshot_holder import SnapshotHandle
from .table_structure import Range, TableStructure

logger = getLogger(__name__)


@dataclass
class WorkerResult:
    range: Range
    worker_id: int = None
    rows: int = 0
    elapsed: float = 0.0
    success: bool = False
    status: RangeStatus = RangeStatus.PENDING
    error: str = None
    attempts: int = 0
    exception: Exception = field(default=None, repr=False, compare=False)

    def to_dict(self):
        return {
            'range': self.range.to_dict(),
            'worker_id': self.worker_id,
            'rows': self.rows,
            'elapsed': self.elapsed,
            'success': self.success,
            'status': self.status.value,
            'error': self.error,
            'attempts': self.attempts,
        }


@dataclass
class DumpOutcome:
    results: list = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def success(self):
        return all(result.success for result in self.results)

    @property
    def failed_ranges(self):
        return [result.range for result in self.results if not result.success]

    @property
    def rows(self):
        return sum(result.rows for result in self.results)

    @property
    def fatal_error(self):
        for result in self.results:
            if isinstance(result.exception, SnapshotExpiredError):
                return result.exception
        return None

    def to_dict(self):
        return {
            'success': self.success,
            'rows': self.rows,
            'elapsed': self.elapsed,
            'failed_ranges': [r.index for r in self.failed_ranges],
            'results': [result.to_dict() for result in self.results],
        }


class DumpProgress:
    """Thread-safe status board of every planned range."""

    def __init__(self):
        self._lock = threading.Lock()
        self._planned = False
        self._ranges = []
        self._statuses = {}
        self._results = {}

    def reset(self, ranges):
        with self._lock:
            self._planned = True
            self._ranges = list(ranges)
            self._statuses = {r.index: RangeStatus.PENDING for r in self._ranges}
            self._results = {}

    def mark_running(self, key_range: Range, worker_id):
        with self._lock:
            self._statuses[key_range.index] = RangeStatus.RUNNING

    def finish(self, result: WorkerResult):
        with self._lock:
            self._statuses[result.range.index] = result.status
            self._results[result.range.index] = result

    def result_of(self, key_range: Range):
        with self._lock:
            return self._results.get(key_range.index)

    def pending(self):
        with self._lock:
            return [
                r for r in self._ranges
                if self._statuses[r.index] in (RangeStatus.PENDING, RangeStatus.RUNNING)
            ]

    def all_succeeded(self):
        with self._lock:
            return self._planned and all(
                status == RangeStatus.SUCCEEDED for status in self._statuses.values()
            )

    def to_dict(self):
        with self._lock:
            counts = {status.value: 0 for status in RangeStatus}
            for status in self._statuses.values():
                counts[status.value] += 1
            rows = sum(result.rows for result in self._results.values())
            return {'planned': self._planned, 'ranges': counts, 'rows': rows}


class DumpWorkerPool:
    """Copies planned ranges from source to destination under one exported snapshot.

    Each worker owns one source connection, imported into the snapshot before
    its first read, and one destination connection. Ranges are taken from a
    shared queue, so a range is processed by at most one worker. Per-range
    failures are collected into the outcome and never abort sibling workers.
    """

    STATS_DUMP_INTERVAL = 60

    def __init__(
        self,
        source_connector,
        destination_connector,
        structure: TableStructure,
        settings: DumpSettings,
        progress: DumpProgress = None,
    ):
        self.source_connector = source_connector
        self.destination_connector = destination_connector
        self.structure = structure
        self.settings = settings
        self.progress = progress if progress is not None else DumpProgress()
        self.cancel_event = threading.Event()
        self._active = {}
        self._active_lock = threading.Lock()
        self._running = False

    @property
    def is_cancelled(self):
        return self.cancel_event.is_set()

    def cancel(self):
        if self.cancel_event.is_set():
            return
        logger.warning('cancelling dump, interrupting in-flight workers')
        self.cancel_event.set()
        with self._active_lock:
            apis = [api for worker_apis in self._active.values() for api in worker_apis]
        for api in apis:
            api.cancel()

    def active_connections(self):
        with self._active_lock:
            return sum(len(apis) for apis in self._active.values())

    def run(self, ranges, snapshot: SnapshotHandle) -> DumpOutcome:
        if self._running:
            raise SequencingError('dump worker pool is already running')
        self._running = True
        try:
            return self._run(list(ranges), snapshot)
        finally:
            self._running = False

    def _run(self, ranges, snapshot: SnapshotHandle) -> DumpOutcome:
        self.progress.reset(ranges)
        queue = Queue()
        for key_range in ranges:
            queue.put(key_range)

        worker_count = min(self.settings.workers, len(ranges))
        snapshot.expect_imports(worker_count)
        start_time = time.time()

        logger.info(
            f'starting dump of {self.structure.table_name}: '
            f'{len(ranges)} ranges, {worker_count} workers, snapshot {snapshot.snapshot_id}'
        )

        if worker_count:
            with ThreadPoolExecutor(max_workers=worker_count, thread_name_prefix='dump-worker') as executor:
                futures = [
                    executor.submit(self._run_worker, worker_id, snapshot, queue)
                    for worker_id in range(worker_count)
                ]
                if self.settings.release_snapshot_after_import:
                    self._release_after_imports(snapshot)
                for future in futures:
                    future.result()

        self._finish_undispatched(queue)

        outcome = DumpOutcome(
            results=[self.progress.result_of(key_range) for key_range in ranges],
            elapsed=time.time() - start_time,
        )
        succeeded = len(ranges) - len(outcome.failed_ranges)
        logger.info(
            f'📊 DUMP DONE: table={self.structure.table_name}, succeeded={succeeded}/{len(ranges)}, '
            f'rows={outcome.rows}, elapsed={outcome.elapsed:.1f}s'
        )
        for result in outcome.results:
            if not result.success:
                logger.error(f'  - range {result.range}: {result.status.value}: {result.error}')
        return outcome

    def _release_after_imports(self, snapshot: SnapshotHandle):
        if snapshot.wait_for_imports(timeout=self.settings.import_timeout):
            logger.info(
                f'{snapshot.imported_count} workers imported snapshot {snapshot.snapshot_id}, releasing holder'
            )
            snapshot.release()
        else:
            logger.warning(
                f'not every worker imported snapshot {snapshot.snapshot_id} '
                f'within {self.settings.import_timeout}s, holder stays open until the dump ends'
            )

    def _finish_undispatched(self, queue):
        while True:
            try:
                key_range = queue.get_nowait()
            except Empty:
                break
            if self.is_cancelled:
                status, error = RangeStatus.CANCELLED, 'cancelled before dispatch'
            else:
                status, error = RangeStatus.FAILED, 'not dispatched: no live workers left'
            self.progress.finish(WorkerResult(range=key_range, status=status, error=error))

    def _open(self, connector, worker_id):
        api = connector.connect(autocommit=False)
        with self._active_lock:
            self._active.setdefault(worker_id, []).append(api)
        if self.is_cancelled:
            api.cancel()
        return api

    def _close(self, worker_id, api):
        with self._active_lock:
            apis = self._active.get(worker_id, [])
            if api in apis:
                apis.remove(api)
        api.close()

    def _close_all(self, worker_id):
        with self._active_lock:
            apis = self._active.pop(worker_id, [])
        for api in apis:
            api.close()

    def _run_worker(self, worker_id, snapshot: SnapshotHandle, queue):
        source = None
        destination = None
        imported = False
        logger.info(f'🔨 WORKER START: worker={worker_id}, table={self.structure.table_name}')
        try:
            while not self.is_cancelled:
                try:
                    key_range = queue.get_nowait()
                except Empty:
                    break

                self.progress.mark_running(key_range, worker_id)
                result = WorkerResult(range=key_range, worker_id=worker_id, status=RangeStatus.RUNNING)
                started = time.time()
                terminal = False
                try:
                    if source is None:
                        source = self._open(self.source_connector, worker_id)
                        source.begin_snapshot_transaction(snapshot.snapshot_id)
                        imported = True
                        snapshot.confirm_import()
                        logger.info(f'worker={worker_id} imported snapshot {snapshot.snapshot_id}')
                    if destination is None:
                        destination = self._open(self.destination_connector, worker_id)
                    destination = self._copy_range(worker_id, key_range, source, destination, result)
                    result.success = True
                    result.status = RangeStatus.SUCCEEDED
                except DumpCancelledError as e:
                    self._fail(result, e, RangeStatus.CANCELLED)
                    terminal = True
                except (SnapshotExpiredError, SnapshotImportError, DatabaseConnectionError) as e:
                    # snapshot failures are never retried, the worker stops taking ranges
                    self._fail(result, e)
                    terminal = True
                except StreamError as e:
                    # the snapshot transaction is aborted, it cannot serve another range
                    self._fail(result, e)
                    terminal = True
                except DestinationWriteError as e:
                    self._fail(result, e)
                    destination = None
                    self._close_all_but(worker_id, source)
                except Exception as e:
                    logger.error(f'worker={worker_id} unexpected error on {key_range}', exc_info=True)
                    self._fail(result, e)
                    terminal = True
                finally:
                    result.elapsed = time.time() - started
                    self.progress.finish(result)

                if result.success:
                    logger.info(
                        f'✅ RANGE DONE: worker={worker_id}, range={key_range}, '
                        f'rows={result.rows}, elapsed={result.elapsed:.1f}s'
                    )
                else:
                    logger.error(
                        f'❌ RANGE FAILED: worker={worker_id}, range={key_range}, '
                        f'status={result.status.value}, error={result.error}'
                    )
                if terminal:
                    break
        finally:
            if not imported:
                snapshot.abandon_import()
            self._close_all(worker_id)
            logger.info(f'worker={worker_id} stopped, connections closed')

    def _close_all_but(self, worker_id, keep):
        with self._active_lock:
            apis = self._active.get(worker_id, [])
            to_close = [api for api in apis if api is not keep]
            self._active[worker_id] = [api for api in apis if api is keep]
        for api in to_close:
            api.close()

    def _fail(self, result: WorkerResult, error: Exception, status=RangeStatus.FAILED):
        if self.is_cancelled and isinstance(error, StreamError):
            status = RangeStatus.CANCELLED
        result.success = False
        result.status = status
        result.error = f'{type(error).__name__}: {error}'
        result.exception = error

    def _copy_range(self, worker_id, key_range: Range, source, destination, result: WorkerResult):
        rows = source.stream_copy_out(
            self.structure.table_name,
            self.structure.key_column,
            key_range,
            batch_size=self.settings.batch_size,
            columns=self.structure.columns,
        )
        last_stats_time = time.time()
        try:
            while True:
                if self.is_cancelled:
                    raise DumpCancelledError(f'range {key_range} cancelled after {result.rows} rows')
                batch = list(itertools.islice(rows, self.settings.batch_size))
                if not batch:
                    break
                destination = self._write_batch(worker_id, destination, batch, result)
                result.rows += len(batch)

                curr_time = time.time()
                if curr_time - last_stats_time >= self.STATS_DUMP_INTERVAL:
                    last_stats_time = curr_time
                    logger.info(f'worker={worker_id} range={key_range}: copied {result.rows} rows')
        finally:
            rows.close()
        return destination

    def _write_batch(self, worker_id, destination, batch, result: WorkerResult):
        retries = self.settings.write_retries
        for attempt in range(retries + 1):
            result.attempts += 1
            try:
                destination.copy_in(self.structure.table_name, self.structure.columns, batch)
                return destination
            except TransientWriteError as e:
                logger.error(f'worker={worker_id} transient write error (attempt {attempt + 1}/{retries + 1}): {e}')
                if attempt == retries:
                    raise
                delay = self.settings.retry_backoff * (2 ** attempt)
                if self.cancel_event.wait(delay):
                    raise DumpCancelledError('cancelled while waiting to retry a write') from e
                self._close(worker_id, destination)
                destination = self._open(self.destination_connector, worker_id)
        return destination
