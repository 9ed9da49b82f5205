# Applies data records from a channel to the destination database

import logging
import threading

from scaling_service.channel import END_OF_STREAM
from scaling_service.metadata import MetaDataUtil, connect
from scaling_service.record import RecordType

logger = logging.getLogger("writer")


def _quote(name):
    return f"`{name}`"


class TableWriter:
    """
    Drains a channel and applies its records in order.

    Inserts are written with REPLACE INTO so that replaying a change that
    was already applied leaves the destination unchanged. An update that
    changes the primary key deletes the row under its old key and writes
    it again under the new one. Records are
    committed in batches of batch_size; on_commit receives the last record
    of every committed batch.
    """

    def __init__(self, rdbms_configuration, batch_size=1000, on_commit=None,
                 metadata=None, connection_factory=connect, flush_interval=1.0):
        self.rdbms_configuration = rdbms_configuration
        self.batch_size = batch_size
        self.on_commit = on_commit
        self.metadata = metadata or MetaDataUtil(rdbms_configuration, connection_factory)
        self.flush_interval = flush_interval
        self._connection_factory = connection_factory
        self._stopped = threading.Event()
        self.applied_count = 0

    def run(self, channel):
        conn = None
        batch = []
        try:
            conn = self._connection_factory(self.rdbms_configuration)
            while True:
                record = channel.pull(timeout=self.flush_interval)
                if record is None:
                    if batch:
                        self._flush(conn, batch)
                        batch = []
                    if self._stopped.is_set():
                        logger.info("Writer stopped with an empty channel")
                        break
                    continue
                if record is END_OF_STREAM:
                    break
                batch.append(record)
                if len(batch) >= self.batch_size:
                    self._flush(conn, batch)
                    batch = []
            if batch:
                self._flush(conn, batch)
            logger.info(f"Writer finished after applying {self.applied_count} records")
        except Exception:
            channel.abort()
            raise
        finally:
            if conn is not None:
                conn.close()

    def stop(self):
        self._stopped.set()

    def _flush(self, conn, batch):
        try:
            with conn.cursor() as cursor:
                for sql, args_list in self.build_statements(batch):
                    if len(args_list) == 1:
                        cursor.execute(sql, args_list[0])
                    else:
                        cursor.executemany(sql, args_list)
            conn.commit()
        except Exception as e:
            logger.error(f"Error applying batch of {len(batch)} records: {str(e)}")
            conn.rollback()
            raise
        self.applied_count += len(batch)
        logger.debug(f"Committed {len(batch)} records")
        if self.on_commit:
            self.on_commit(batch[-1])

    def build_statements(self, batch):
        """
        Translate records into (sql, [args, ...]) pairs, in record order.

        Consecutive inserts into the same table share one statement.
        """
        statements = []
        for record in batch:
            for sql, args in self._statements_for(record):
                if statements and record.type == RecordType.INSERT and statements[-1][0] == sql:
                    statements[-1][1].append(args)
                else:
                    statements.append((sql, [args]))
        return statements

    def _column_names(self, record):
        names = [column.name for column in self.metadata.get_column_definitions(record.table_name)]
        if len(names) != len(record.columns):
            raise RuntimeError(
                f"Record for {record.full_table_name} has {len(record.columns)} columns, "
                f"destination table has {len(names)}"
            )
        return names

    def _statements_for(self, record):
        table = _quote(record.table_name)
        names = self._column_names(record)
        if record.type == RecordType.INSERT:
            return [self._replace(table, names, record)]

        primary_keys = self.metadata.get_primary_keys(record.table_name)
        by_name = dict(zip(names, record.columns))
        where = " AND ".join(f"{_quote(key)} = %s" for key in primary_keys)
        key_values = tuple(by_name[key].value for key in primary_keys)

        if record.type == RecordType.DELETE:
            return [(f"DELETE FROM {table} WHERE {where}", key_values)]

        changed = [(name, column.value) for name, column in by_name.items() if column.changed]
        if not changed:
            return []
        if any(name in primary_keys for name, _ in changed):
            # the row moves to a new key: drop it under the old one first
            logger.debug(f"Primary key changed in {record.full_table_name}, moving the row")
            old_key_values = tuple(by_name[key].old_value for key in primary_keys)
            return [
                (f"DELETE FROM {table} WHERE {where}", old_key_values),
                self._replace(table, names, record),
            ]
        assignments = ", ".join(f"{_quote(name)} = %s" for name, _ in changed)
        args = tuple(value for _, value in changed) + key_values
        return [(f"UPDATE {table} SET {assignments} WHERE {where}", args)]

    def _replace(self, table, names, record):
        column_list = ", ".join(_quote(name) for name in names)
        placeholders = ", ".join(["%s"] * len(names))
        return f"REPLACE INTO {table} ({column_list}) VALUES ({placeholders})", tuple(record.values)
