from enum import Enum


class Status(Enum):
    IDLE = 'idle'
    SNAPSHOT_OPEN = 'snapshot_open'
    PLANNING = 'planning'
    DUMPING = 'dumping'
    ATTACHING = 'attaching'
    VERIFYING = 'verifying'
    DONE = 'done'
    FAILED = 'failed'


class RangeStatus(Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_SNAPSHOT_FAILURE = 2
EXIT_PARTIAL_DUMP = 3
EXIT_VERIFICATION_MISMATCH = 4
EXIT_CANCELLED = 5
