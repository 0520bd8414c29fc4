import threading
import time
from dataclasses import dataclass
from logging import getLogger

from .config import ReplicationSettings
from .errors import SequencingError

logger = getLogger(__name__)


@dataclass(frozen=True)
class SnapshotInfo:
    snapshot_id: str
    slot_name: str
    consistent_point: str

    def to_dict(self):
        return {
            'snapshot_id': self.snapshot_id,
            'slot_name': self.slot_name,
            'consistent_point': self.consistent_point,
        }


class SnapshotHandle:
    """Shared, by-reference view of the exported snapshot.

    Every worker gets the same handle. Workers report on the import barrier
    (confirm_import / abandon_import) and the holder may be released only once
    the barrier is complete.
    """

    def __init__(self, holder: 'SnapshotHolder', info: SnapshotInfo):
        self.holder = holder
        self.info = info
        self._condition = threading.Condition()
        self._expected = 0
        self._imported = 0
        self._abandoned = 0

    @property
    def snapshot_id(self):
        return self.info.snapshot_id

    @property
    def slot_name(self):
        return self.info.slot_name

    @property
    def is_released(self):
        return self.holder.is_closed

    @property
    def imported_count(self):
        with self._condition:
            return self._imported

    def expect_imports(self, count):
        with self._condition:
            self._expected = count
            self._imported = 0
            self._abandoned = 0
            self._condition.notify_all()

    def confirm_import(self):
        with self._condition:
            self._imported += 1
            self._condition.notify_all()

    def abandon_import(self):
        with self._condition:
            self._abandoned += 1
            self._condition.notify_all()

    def _barrier_complete(self):
        return self._imported + self._abandoned >= self._expected

    def wait_for_imports(self, timeout=None):
        """Block until every expected worker imported the snapshot or gave up.

        Returns False on timeout.
        """
        with self._condition:
            return self._condition.wait_for(self._barrier_complete, timeout=timeout)

    def release(self):
        with self._condition:
            if not self._barrier_complete():
                raise SequencingError(
                    f'snapshot {self.snapshot_id} released before all workers imported it '
                    f'({self._imported} imported, {self._abandoned} abandoned, {self._expected} expected)'
                )
        self.holder.close()


class SnapshotHolder:
    """Owns the replication connection that exports and pins the snapshot.

    After open() the connection runs no further commands until close().
    """

    def __init__(self, source_connector, table_name, replication: ReplicationSettings):
        self.source_connector = source_connector
        self.table_name = table_name
        self.replication = replication
        self.replication_api = None
        self.info = None
        self.opened_at = None
        self._handle = None
        self._closed = False
        self._lock = threading.Lock()

    @property
    def is_open(self):
        return self.replication_api is not None and not self._closed

    @property
    def is_closed(self):
        return self._closed

    def open(self) -> SnapshotInfo:
        if self.info is not None or self._closed:
            raise SequencingError('snapshot holder can be opened only once')

        # the publication must exist before the slot, otherwise pgoutput cannot
        # decode changes recorded between slot creation and publication creation
        api = self.source_connector.connect()
        try:
            api.ensure_publication(self.replication.publication_name, self.table_name)
        finally:
            api.close()

        replication_api = self.source_connector.connect_replication()
        try:
            slot_name, consistent_point, snapshot_id = replication_api.create_slot(
                self.replication.slot_name, self.replication.output_plugin,
            )
        except Exception:
            replication_api.close()
            raise

        self.replication_api = replication_api
        self.info = SnapshotInfo(
            snapshot_id=snapshot_id,
            slot_name=slot_name,
            consistent_point=consistent_point,
        )
        self.opened_at = time.time()
        self._handle = SnapshotHandle(self, self.info)
        logger.info(
            f'exported snapshot {snapshot_id} with slot {slot_name} at {consistent_point}'
        )
        return self.info

    def handle(self) -> SnapshotHandle:
        if self._handle is None:
            raise SequencingError('snapshot holder is not open')
        return self._handle

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self.replication_api is not None:
                self.replication_api.close()
        if self.info is not None:
            held = time.time() - self.opened_at
            logger.info(f'released snapshot {self.info.snapshot_id} after {held:.1f}s')
