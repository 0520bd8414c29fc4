import datetime
import decimal
import hashlib
import json
import uuid
from dataclasses import dataclass
from logging import getLogger

from .errors import VerificationMismatchError
from .table_structure import Range, TableStructure

logger = getLogger(__name__)


@dataclass(frozen=True)
class Fingerprint:
    table: str
    digest: str
    row_count: int

    def to_dict(self):
        return {'table': self.table, 'digest': self.digest, 'row_count': self.row_count}


def encode_value(value):
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {'bytes': bytes(value).hex()}
    if isinstance(value, decimal.Decimal):
        return {'decimal': str(value)}
    if isinstance(value, (datetime.date, datetime.time, datetime.datetime)):
        return {'time': value.isoformat()}
    if isinstance(value, datetime.timedelta):
        return {'interval': value.total_seconds()}
    if isinstance(value, uuid.UUID):
        return {'uuid': str(value)}
    return {'repr': repr(value)}


def encode_row(row):
    return json.dumps(list(row), default=encode_value, separators=(',', ':'), sort_keys=True)


class ConsistencyVerifier:
    """Order-sensitive table fingerprints.

    The caller must make sure nothing writes to the table while it is
    fingerprinted; this is not checked here.
    """

    BATCH_SIZE = 10000

    def __init__(self, batch_size=BATCH_SIZE):
        self.batch_size = batch_size

    def fingerprint(self, api, structure: TableStructure, as_of=None) -> Fingerprint:
        """Hash every row in key order. With as_of the read runs inside that exported snapshot."""
        if as_of is not None:
            api.begin_snapshot_transaction(as_of)

        digest = hashlib.sha256()
        row_count = 0
        rows = api.stream_copy_out(
            structure.table_name,
            structure.key_column,
            Range.full(),
            batch_size=self.batch_size,
            columns=structure.columns,
        )
        try:
            for row in rows:
                digest.update(encode_row(row).encode('utf-8'))
                digest.update(b'\n')
                row_count += 1
        finally:
            rows.close()
        digest.update(f'rows:{row_count}'.encode('utf-8'))

        fingerprint = Fingerprint(table=structure.table_name, digest=digest.hexdigest(), row_count=row_count)
        logger.info(f'fingerprint {structure.table_name}: {fingerprint.digest} ({row_count} rows)')
        return fingerprint

    @staticmethod
    def compare(a: Fingerprint, b: Fingerprint) -> bool:
        return a.digest == b.digest and a.row_count == b.row_count

    def verify(self, source_api, destination_api, structure: TableStructure):
        source = self.fingerprint(source_api, structure)
        destination = self.fingerprint(destination_api, structure)
        if not self.compare(source, destination):
            raise VerificationMismatchError(source, destination)
        logger.info(f'verification passed for {structure.table_name}')
        return source, destination
