# Reads one full-sync slice of a table into a channel

import logging
import threading

import pymysql

from scaling_service.metadata import connect
from scaling_service.record import Column, DataRecord, RecordType

logger = logging.getLogger("table_reader")


class TableSliceReader:
    """
    Streams the rows of one table slice as insert records.

    The slice is the table bound to the reader configuration, optionally
    restricted to the inclusive primary key range [range_start, range_end].
    """

    def __init__(self, rdbms_configuration, connection_factory=connect):
        self.rdbms_configuration = rdbms_configuration
        self._connection_factory = connection_factory
        self._stopped = threading.Event()
        self.row_count = 0

    def build_query(self):
        config = self.rdbms_configuration
        sql = f"SELECT * FROM `{config.table_name}`"
        args = None
        if config.has_range:
            sql += f" WHERE `{config.primary_key}` BETWEEN %s AND %s"
            args = (config.range_start, config.range_end)
        if config.primary_key:
            sql += f" ORDER BY `{config.primary_key}`"
        return sql, args

    def read(self, channel):
        config = self.rdbms_configuration
        full_table_name = f"{config.database}.{config.table_name}"
        sql, args = self.build_query()

        conn = self._connection_factory(config, cursorclass=pymysql.cursors.SSCursor)
        try:
            logger.info(f"Reading {full_table_name} range [{config.range_start}, {config.range_end}]")
            with conn.cursor() as cursor:
                cursor.execute(sql, args)
                for row in cursor:
                    if self._stopped.is_set():
                        logger.info(f"Stopped reading {full_table_name} after {self.row_count} rows")
                        break
                    channel.push(DataRecord(
                        full_table_name=full_table_name,
                        type=RecordType.INSERT,
                        columns=[Column(value=value, changed=True) for value in row],
                    ))
                    self.row_count += 1
            logger.info(f"Read {self.row_count} rows from {full_table_name}")
        except Exception as e:
            logger.error(f"Error reading {full_table_name}: {str(e)}")
            raise
        finally:
            conn.close()

    def run(self, channel):
        try:
            self.read(channel)
        finally:
            channel.close()

    def stop(self):
        self._stopped.set()
