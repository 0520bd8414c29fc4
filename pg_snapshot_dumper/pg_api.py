import time
from logging import getLogger

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2 import sql
from psycopg2.extensions import ISOLATION_LEVEL_REPEATABLE_READ

from .config import PostgresSettings
from .errors import (
    DatabaseConnectionError,
    DestinationWriteError,
    MissingOrderingKeyError,
    ReplicationConnectionError,
    SlotExistsError,
    SnapshotExpiredError,
    SnapshotImportError,
    SnapshotOpenError,
    StreamError,
    SubscriptionAttachError,
    TransientWriteError,
)
from .table_structure import Range, TableStats, TableStructure

logger = getLogger(__name__)


COLUMNS_QUERY = '''
SELECT attname FROM pg_attribute
WHERE attrelid = %s::regclass AND attnum > 0 AND NOT attisdropped AND attgenerated = ''
ORDER BY attnum
'''

PRIMARY_KEY_QUERY = '''
SELECT a.attname FROM pg_index i
JOIN pg_attribute a ON a.attrelid = i.indrelid AND a.attnum = ANY(i.indkey)
WHERE i.indrelid = %s::regclass AND i.indisprimary
'''

CREATE_SUBSCRIPTION_QUERY = '''
CREATE SUBSCRIPTION {name} CONNECTION {conninfo} PUBLICATION {publication}
WITH (create_slot = false, slot_name = {slot_name}, copy_data = false, enabled = true)
'''


def table_identifier(table_name):
    return sql.Identifier(*table_name.split('.'))


class PostgresConnector:
    """Opens connections to one PostgreSQL server.

    Connection failures are retried here, at the connection layer, and nowhere else.
    """

    MAX_RETRIES = 3
    RETRY_INTERVAL = 2

    def __init__(self, settings: PostgresSettings):
        self.settings = settings

    def connect(self, autocommit=True) -> 'PostgresApi':
        for attempt in range(PostgresConnector.MAX_RETRIES):
            try:
                return PostgresApi(self.settings, autocommit=autocommit)
            except DatabaseConnectionError as e:
                logger.error(f'error connecting to {self.settings.host}:{self.settings.port}: {e}')
                if attempt == PostgresConnector.MAX_RETRIES - 1:
                    raise
                time.sleep(PostgresConnector.RETRY_INTERVAL)

    def connect_replication(self) -> 'ReplicationApi':
        for attempt in range(PostgresConnector.MAX_RETRIES):
            try:
                return ReplicationApi(self.settings)
            except ReplicationConnectionError as e:
                logger.error(f'error opening replication connection: {e}')
                if attempt == PostgresConnector.MAX_RETRIES - 1:
                    raise
                time.sleep(PostgresConnector.RETRY_INTERVAL)

    def conninfo(self):
        return self.settings.conninfo()


class PostgresApi:
    def __init__(self, settings: PostgresSettings, autocommit=True):
        self.settings = settings
        try:
            self.connection = psycopg2.connect(**settings.get_connection_config())
        except psycopg2.OperationalError as e:
            raise DatabaseConnectionError(str(e).strip()) from e
        self.connection.autocommit = autocommit
        logger.debug(f'connected to {settings.host}:{settings.port}/{settings.dbname}')

    @property
    def closed(self):
        return bool(self.connection.closed)

    def close(self):
        if not self.connection.closed:
            self.connection.close()

    def cancel(self):
        """Cancel the statement currently running on this connection (any thread)."""
        if self.connection.closed:
            return
        try:
            self.connection.cancel()
        except psycopg2.Error as e:
            logger.warning(f'could not cancel running statement: {e}')

    def rollback(self):
        if not self.connection.closed and not self.connection.autocommit:
            self.connection.rollback()

    def execute(self, query, args=None, commit=False):
        with self.connection.cursor() as cursor:
            cursor.execute(query, args)
            rows = cursor.fetchall() if cursor.description is not None else []
        if commit and not self.connection.autocommit:
            self.connection.commit()
        return rows

    def get_current_lsn(self):
        return self.execute('SELECT pg_current_wal_lsn()')[0][0]

    def get_table_structure(self, table_name, key_column=None) -> TableStructure:
        columns = [row[0] for row in self.execute(COLUMNS_QUERY, (table_name,))]
        if key_column is None:
            primary_keys = [row[0] for row in self.execute(PRIMARY_KEY_QUERY, (table_name,))]
            if len(primary_keys) != 1:
                raise MissingOrderingKeyError(
                    f'table {table_name} has {len(primary_keys)} primary key columns, '
                    f'pass key_column explicitly'
                )
            key_column = primary_keys[0]
        if key_column not in columns:
            raise MissingOrderingKeyError(f'key column {key_column} not found in {table_name}')
        return TableStructure(table_name=table_name, columns=columns, key_column=key_column)

    def get_table_stats(self, structure: TableStructure, sample_size=10000) -> TableStats:
        table = table_identifier(structure.table_name)
        key = sql.Identifier(structure.key_column)

        row_estimate = self.execute(
            'SELECT reltuples::bigint FROM pg_class WHERE oid = %s::regclass',
            (structure.table_name,),
        )[0][0]
        min_key, max_key = self.execute(
            sql.SQL('SELECT min({key}), max({key}) FROM {table}').format(key=key, table=table),
        )[0]
        stats = TableStats(
            table_name=structure.table_name,
            key_column=structure.key_column,
            row_estimate=max(row_estimate, 0),
            min_key=min_key,
            max_key=max_key,
        )
        if min_key is None:
            stats.row_estimate = 0
            return stats

        if row_estimate <= 0:
            # never analyzed
            stats.row_estimate = self.execute(
                sql.SQL('SELECT count(*) FROM {table}').format(table=table),
            )[0][0]

        if sample_size > 0 and stats.row_estimate > 0:
            percent = min(100.0, sample_size * 100.0 / stats.row_estimate)
            rows = self.execute(
                sql.SQL(
                    'SELECT {key} FROM {table} TABLESAMPLE BERNOULLI (%s) ORDER BY {key}'
                ).format(key=key, table=table),
                (percent,),
            )
            stats.sample_keys = [row[0] for row in rows]

        logger.info(
            f'table stats {structure.table_name}: rows~{stats.row_estimate}, '
            f'min={min_key}, max={max_key}, sampled={len(stats.sample_keys)}'
        )
        return stats

    def is_table_empty(self, table_name):
        query = sql.SQL('SELECT NOT EXISTS (SELECT 1 FROM {table})').format(
            table=table_identifier(table_name),
        )
        return self.execute(query)[0][0]

    def ensure_publication(self, publication_name, table_name):
        rows = self.execute(
            'SELECT puballtables FROM pg_publication WHERE pubname = %s', (publication_name,),
        )
        if not rows:
            self.execute(
                sql.SQL('CREATE PUBLICATION {name} FOR TABLE {table}').format(
                    name=sql.Identifier(publication_name),
                    table=table_identifier(table_name),
                ),
                commit=True,
            )
            logger.info(f'created publication {publication_name} for {table_name}')
            return
        if rows[0][0]:
            logger.info(f'publication {publication_name} exists (all tables)')
            return
        in_publication = self.execute(
            '''
            SELECT 1 FROM pg_publication_rel pr
            JOIN pg_publication p ON p.oid = pr.prpubid
            WHERE p.pubname = %s AND pr.prrelid = %s::regclass
            ''',
            (publication_name, table_name),
        )
        if not in_publication:
            self.execute(
                sql.SQL('ALTER PUBLICATION {name} ADD TABLE {table}').format(
                    name=sql.Identifier(publication_name),
                    table=table_identifier(table_name),
                ),
                commit=True,
            )
            logger.info(f'added {table_name} to publication {publication_name}')
        else:
            logger.info(f'publication {publication_name} exists')

    def drop_replication_slot(self, slot_name):
        self.execute('SELECT pg_drop_replication_slot(%s)', (slot_name,), commit=True)
        logger.info(f'dropped replication slot {slot_name}')

    def begin_snapshot_transaction(self, snapshot_id):
        """Start a read-only REPEATABLE READ transaction pinned to an exported snapshot.

        Must be called before any read on this connection.
        """
        self.connection.autocommit = False
        self.connection.set_session(isolation_level=ISOLATION_LEVEL_REPEATABLE_READ, readonly=True)
        try:
            with self.connection.cursor() as cursor:
                cursor.execute('SET TRANSACTION SNAPSHOT %s', (snapshot_id,))
        except psycopg2.Error as e:
            self.rollback()
            if isinstance(e, psycopg2.errors.InvalidParameterValue) and 'does not exist' in str(e):
                raise SnapshotExpiredError(
                    f'snapshot {snapshot_id} is no longer exported: {str(e).strip()}'
                ) from e
            raise SnapshotImportError(f'cannot import snapshot {snapshot_id}: {str(e).strip()}') from e

    def stream_copy_out(self, table_name, key_column, key_range: Range, batch_size=5000, columns=None):
        """Lazily yield the rows of key_range ordered by key_column.

        Uses a server-side cursor, so the connection must not be in autocommit mode.
        """
        if key_range.is_empty:
            return

        key = sql.Identifier(key_column)
        conditions = []
        args = []
        if key_range.low is not None:
            conditions.append(sql.SQL('{key} >= %s').format(key=key))
            args.append(key_range.low)
        if key_range.high is not None:
            conditions.append(sql.SQL('{key} < %s').format(key=key))
            args.append(key_range.high)
        where = sql.SQL('')
        if conditions:
            where = sql.SQL(' WHERE ') + sql.SQL(' AND ').join(conditions)
        select = sql.SQL('*')
        if columns:
            select = sql.SQL(', ').join(sql.Identifier(c) for c in columns)

        query = sql.SQL('SELECT {select} FROM {table}{where} ORDER BY {key}').format(
            select=select, table=table_identifier(table_name), where=where, key=key,
        )

        cursor = self.connection.cursor(name=f'copy_out_{key_range.index}')
        cursor.itersize = batch_size
        try:
            cursor.execute(query, args)
            for row in cursor:
                yield row
        except psycopg2.Error as e:
            raise StreamError(f'streaming {table_name} {key_range} failed: {str(e).strip()}') from e
        finally:
            try:
                cursor.close()
            except psycopg2.Error as e:
                logger.debug(f'error closing cursor for {key_range}: {e}')

    def copy_in(self, table_name, columns, rows):
        """Insert rows in the given order and commit them as one batch."""
        if not rows:
            return
        query = sql.SQL('INSERT INTO {table} ({columns}) VALUES %s').format(
            table=table_identifier(table_name),
            columns=sql.SQL(', ').join(sql.Identifier(c) for c in columns),
        )
        try:
            with self.connection.cursor() as cursor:
                psycopg2.extras.execute_values(cursor, query, rows, page_size=len(rows))
            if not self.connection.autocommit:
                self.connection.commit()
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            raise TransientWriteError(f'writing {len(rows)} rows to {table_name}: {str(e).strip()}') from e
        except psycopg2.Error as e:
            self.rollback()
            raise DestinationWriteError(f'writing {len(rows)} rows to {table_name}: {str(e).strip()}') from e

    def create_subscription(self, name, source_conninfo, publication_name, slot_name):
        query = sql.SQL(CREATE_SUBSCRIPTION_QUERY).format(
            name=sql.Identifier(name),
            conninfo=sql.Literal(source_conninfo),
            publication=sql.Identifier(publication_name),
            slot_name=sql.Literal(slot_name),
        )
        if not self.connection.autocommit:
            # CREATE SUBSCRIPTION cannot run inside a transaction block
            self.connection.rollback()
            self.connection.autocommit = True
        try:
            self.execute(query)
        except psycopg2.Error as e:
            raise SubscriptionAttachError(f'cannot create subscription {name}: {str(e).strip()}') from e

    def get_subscription_lsn(self, name):
        rows = self.execute(
            'SELECT latest_end_lsn FROM pg_stat_subscription WHERE subname = %s AND relid IS NULL',
            (name,),
        )
        if not rows:
            return None
        return rows[0][0]


class ReplicationApi:
    """Replication-mode connection used only to create the slot and keep its snapshot exported."""

    def __init__(self, settings: PostgresSettings):
        self.settings = settings
        try:
            self.connection = psycopg2.connect(
                connection_factory=psycopg2.extras.LogicalReplicationConnection,
                **settings.get_connection_config(),
            )
        except psycopg2.OperationalError as e:
            raise ReplicationConnectionError(str(e).strip()) from e
        self.cursor = self.connection.cursor()

    @property
    def closed(self):
        return bool(self.connection.closed)

    def create_slot(self, slot_name, output_plugin='pgoutput'):
        """Returns (slot_name, consistent_point, snapshot_name)."""
        command = sql.SQL('CREATE_REPLICATION_SLOT {slot} LOGICAL {plugin} EXPORT_SNAPSHOT').format(
            slot=sql.Identifier(slot_name),
            plugin=sql.Identifier(output_plugin),
        )
        try:
            self.cursor.execute(command)
            row = self.cursor.fetchone()
        except psycopg2.errors.DuplicateObject as e:
            raise SlotExistsError(f'replication slot {slot_name} already exists') from e
        except psycopg2.OperationalError as e:
            raise ReplicationConnectionError(str(e).strip()) from e
        except psycopg2.Error as e:
            raise SnapshotOpenError(f'cannot create slot {slot_name}: {str(e).strip()}') from e
        created_slot, consistent_point, snapshot_name, _plugin = row
        return created_slot, consistent_point, snapshot_name

    def close(self):
        if not self.connection.closed:
            self.connection.close()
