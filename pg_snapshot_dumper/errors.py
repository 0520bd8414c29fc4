class DumperError(Exception):
    """Base class for every error raised by pg_snapshot_dumper."""


class DatabaseConnectionError(DumperError, ConnectionError):
    pass


class SnapshotOpenError(DumperError):
    """Exporting the snapshot or creating the slot failed."""


class ReplicationConnectionError(DatabaseConnectionError, SnapshotOpenError):
    """Replication-mode handshake with the source failed."""


class SlotExistsError(SnapshotOpenError):
    pass


class SnapshotExpiredError(DumperError):
    """The exported snapshot is gone because its holder connection was closed.

    This is a sequencing bug in the caller, never a transient fault, so it is
    never retried.
    """


class SnapshotImportError(DumperError):
    pass


class StreamError(DumperError):
    pass


class DestinationWriteError(DumperError):
    pass


class TransientWriteError(DestinationWriteError):
    """Destination write failed in a way that a reconnect may fix."""


class EmptyTableError(DumperError):
    pass


class MissingOrderingKeyError(DumperError):
    pass


class DestinationNotEmptyError(DumperError):
    pass


class SequencingError(DumperError):
    pass


class PartialDumpError(DumperError):
    def __init__(self, failed_ranges):
        self.failed_ranges = list(failed_ranges)
        names = ', '.join(str(r) for r in self.failed_ranges)
        super().__init__(f'dump failed for {len(self.failed_ranges)} ranges: {names}')


class SubscriptionAttachError(DumperError):
    pass


class VerificationMismatchError(DumperError):
    def __init__(self, source, destination):
        self.source = source
        self.destination = destination
        super().__init__(
            f'fingerprint mismatch for {source.table}: '
            f'source={source.digest} ({source.row_count} rows), '
            f'destination={destination.digest} ({destination.row_count} rows)'
        )


class DumpCancelledError(DumperError):
    pass
