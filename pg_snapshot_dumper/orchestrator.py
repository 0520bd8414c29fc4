import threading
import time
from dataclasses import dataclass, field
from logging import getLogger

from .common import (
    EXIT_CANCELLED,
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_PARTIAL_DUMP,
    EXIT_SNAPSHOT_FAILURE,
    EXIT_VERIFICATION_MISMATCH,
    Status,
)
from .config import Settings
from .consistency_verifier import ConsistencyVerifier
from .dump_worker_pool import DumpOutcome, DumpProgress, DumpWorkerPool
from .errors import (
    DestinationNotEmptyError,
    DumpCancelledError,
    EmptyTableError,
    PartialDumpError,
    SequencingError,
    SnapshotExpiredError,
    SnapshotOpenError,
    VerificationMismatchError,
)
from .pg_api import PostgresConnector
from .range_planner import RangePlanner
from .replication_catchup import ReplicationCatchup
from .snapshot_holder import SnapshotHolder
from .utils import format_floats

logger = getLogger(__name__)


TRANSITIONS = {
    Status.IDLE: {Status.SNAPSHOT_OPEN, Status.FAILED},
    Status.SNAPSHOT_OPEN: {Status.PLANNING, Status.FAILED},
    Status.PLANNING: {Status.DUMPING, Status.ATTACHING, Status.FAILED},
    Status.DUMPING: {Status.ATTACHING, Status.FAILED},
    Status.ATTACHING: {Status.VERIFYING, Status.DONE, Status.FAILED},
    Status.VERIFYING: {Status.DONE, Status.FAILED},
    Status.DONE: set(),
    Status.FAILED: set(),
}


@dataclass
class SessionReport:
    table: str
    status: Status = Status.IDLE
    last_successful_status: Status = Status.IDLE
    error: Exception = None
    snapshot: object = None
    ranges: list = field(default_factory=list)
    dump: DumpOutcome = None
    subscription: object = None
    source_fingerprint: object = None
    destination_fingerprint: object = None
    verification_mismatch: bool = False
    catchup_timed_out: bool = False
    started_at: float = field(default_factory=time.time)
    finished_at: float = None

    @property
    def success(self):
        return self.status == Status.DONE and not (self.verification_mismatch or self.catchup_timed_out)

    @property
    def exit_code(self):
        if self.status == Status.DONE:
            if self.verification_mismatch or self.catchup_timed_out:
                return EXIT_VERIFICATION_MISMATCH
            return EXIT_OK
        if isinstance(self.error, DumpCancelledError):
            return EXIT_CANCELLED
        if isinstance(self.error, (SnapshotOpenError, SnapshotExpiredError)):
            return EXIT_SNAPSHOT_FAILURE
        if isinstance(self.error, PartialDumpError):
            return EXIT_PARTIAL_DUMP
        return EXIT_FAILURE

    def to_dict(self):
        finished = self.finished_at or time.time()
        return format_floats({
            'table': self.table,
            'status': self.status.value,
            'last_successful_status': self.last_successful_status.value,
            'success': self.success,
            'error': f'{type(self.error).__name__}: {self.error}' if self.error else None,
            'snapshot': self.snapshot.to_dict() if self.snapshot else None,
            'ranges': [r.to_dict() for r in self.ranges],
            'dump': self.dump.to_dict() if self.dump else None,
            'subscription': self.subscription.to_dict() if self.subscription else None,
            'source_fingerprint': self.source_fingerprint.to_dict() if self.source_fingerprint else None,
            'destination_fingerprint': (
                self.destination_fingerprint.to_dict() if self.destination_fingerprint else None
            ),
            'verification_mismatch': self.verification_mismatch,
            'catchup_timed_out': self.catchup_timed_out,
            'elapsed': finished - self.started_at,
        })


class Orchestrator:
    """Runs one dump session: snapshot, plan, parallel dump, attach, verify.

    Every step is a state transition; steps cannot run out of order. Any
    unrecoverable error moves the session to FAILED and closes the snapshot
    holder. The whole pipeline is never retried automatically.
    """

    def __init__(self, config: Settings, source_connector=None, destination_connector=None):
        self.config = config
        self.source_connector = source_connector or PostgresConnector(config.source)
        self.destination_connector = destination_connector or PostgresConnector(config.destination)
        self.status = Status.IDLE
        self.report = SessionReport(table=config.table)
        self.progress = DumpProgress()
        self.holder = SnapshotHolder(self.source_connector, config.table, config.replication)
        self.planner = RangePlanner(skew_factor=config.dump.skew_factor)
        self.verifier = ConsistencyVerifier()
        self.catchup = ReplicationCatchup(
            self.source_connector, self.destination_connector, config.replication, self.progress,
        )
        self.pool = None
        self.structure = None
        self._cancel_requested = threading.Event()

    def transition(self, new_status: Status, reason=''):
        if new_status not in TRANSITIONS[self.status]:
            raise SequencingError(f'illegal transition {self.status.value} -> {new_status.value}')
        old_status = self.status
        self.status = new_status
        self.report.status = new_status
        if new_status != Status.FAILED:
            self.report.last_successful_status = new_status
        logger.info(f'🔄 STATUS CHANGE: {old_status.value} → {new_status.value}, reason={reason!r}')

    def cancel(self):
        self._cancel_requested.set()
        if self.pool is not None:
            self.pool.cancel()

    def check_cancelled(self):
        if self._cancel_requested.is_set():
            raise DumpCancelledError(f'session cancelled in state {self.status.value}')

    def run(self) -> SessionReport:
        try:
            self.open_snapshot()
            self.check_cancelled()
            ranges = self.plan()
            self.check_cancelled()
            if ranges:
                self.dump(ranges)
            self.check_cancelled()
            self.attach()
            if self.config.verify.enabled:
                self.verify()
            self.transition(Status.DONE, 'session complete')
        except Exception as e:
            self.fail(e)
        finally:
            self.report.finished_at = time.time()
        return self.report

    def fail(self, error: Exception):
        logger.error(f'session failed in state {self.status.value}: {error}', exc_info=error)
        self.report.error = error
        if self.pool is not None:
            self.pool.cancel()
        self.holder.close()
        if self.status != Status.FAILED:
            self.transition(Status.FAILED, type(error).__name__)
        if self.config.replication.drop_slot_on_failure and self.holder.info is not None:
            self.drop_slot()

    def drop_slot(self):
        api = None
        try:
            api = self.source_connector.connect()
            api.drop_replication_slot(self.holder.info.slot_name)
        except Exception:
            logger.error(f'could not drop slot {self.holder.info.slot_name}', exc_info=True)
        finally:
            if api is not None:
                api.close()

    def open_snapshot(self):
        self.report.snapshot = self.holder.open()
        self.transition(Status.SNAPSHOT_OPEN, f'snapshot {self.report.snapshot.snapshot_id} exported')

    def plan(self):
        self.transition(Status.PLANNING, 'reading table statistics')
        api = self.source_connector.connect()
        try:
            self.structure = api.get_table_structure(self.config.table, self.config.key_column)
            stats = api.get_table_stats(self.structure, self.config.dump.sample_size)
        finally:
            api.close()

        if self.config.dump.require_empty_destination:
            api = self.destination_connector.connect()
            try:
                if not api.is_table_empty(self.config.table):
                    raise DestinationNotEmptyError(
                        f'destination table {self.config.table} already has rows, truncate it first'
                    )
            finally:
                api.close()

        try:
            ranges = self.planner.plan(stats, self.config.dump.workers)
        except EmptyTableError:
            logger.info(f'table {self.config.table} is empty, skipping dump')
            self.progress.reset([])
            self.holder.close()
            return []
        self.report.ranges = ranges
        return ranges

    def dump(self, ranges):
        self.transition(Status.DUMPING, f'{len(ranges)} ranges planned')
        self.pool = DumpWorkerPool(
            self.source_connector,
            self.destination_connector,
            self.structure,
            self.config.dump,
            progress=self.progress,
        )
        if self._cancel_requested.is_set():
            self.pool.cancel()
        try:
            outcome = self.pool.run(ranges, self.holder.handle())
        finally:
            # every worker connection is closed once run() returns
            self.holder.close()
        self.report.dump = outcome

        if self._cancel_requested.is_set():
            raise DumpCancelledError(f'dump cancelled after {outcome.rows} rows')
        if outcome.fatal_error is not None:
            raise outcome.fatal_error
        if not outcome.success:
            raise PartialDumpError(outcome.failed_ranges)

    def attach(self):
        self.transition(Status.ATTACHING, 'dump complete')
        self.report.subscription = self.catchup.attach(self.report.snapshot.slot_name)

    def verify(self):
        self.transition(Status.VERIFYING, 'subscription attached')
        api = self.source_connector.connect()
        try:
            target_lsn = api.get_current_lsn()
        finally:
            api.close()
        caught_up = self.report.subscription.wait_caught_up(
            target_lsn, self.config.verify.catchup_timeout, cancel_event=self._cancel_requested,
        )
        self.check_cancelled()
        if not caught_up:
            logger.error(f'⚠️  CATCH-UP TIMEOUT: subscription did not reach {target_lsn}, skipping fingerprints')
            self.report.catchup_timed_out = True
            return

        source_api = self.source_connector.connect(autocommit=False)
        destination_api = self.destination_connector.connect(autocommit=False)
        try:
            source, destination = None, None
            try:
                source, destination = self.verifier.verify(source_api, destination_api, self.structure)
            except VerificationMismatchError as e:
                # reported, the session itself still completes
                logger.error(f'⚠️  VERIFICATION MISMATCH: {e}')
                source, destination = e.source, e.destination
                self.report.verification_mismatch = True
            self.report.source_fingerprint = source
            self.report.destination_fingerprint = destination
        finally:
            source_api.close()
            destination_api.close()
