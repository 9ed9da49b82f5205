# CDC reader: streams binlog row events of the source database into a channel

import json
import logging
import threading
import time
from datetime import date, datetime, time as dt_time, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, List, NamedTuple, Optional, Tuple, Union

import pymysql
from pymysqlreplication import BinLogStreamReader
from pymysqlreplication.event import HeartbeatLogEvent
from pymysqlreplication.row_event import (
    DeleteRowsEvent,
    TableMapEvent,
    UpdateRowsEvent,
    WriteRowsEvent,
)

from scaling_service.errors import ColumnDecodeError, PositionMarkError, StreamConnectionError
from scaling_service.metadata import MetaDataUtil, connect
from scaling_service.position import BinlogPosition
from scaling_service.record import Column, DataRecord, RecordType

logger = logging.getLogger("binlog_reader")

CONNECTION_ERRORS = (pymysql.err.OperationalError, pymysql.err.InterfaceError, OSError)

JSON_TYPES = {"json"}

# rows event flag set on the last rows event of a statement
STMT_END_FLAG = 0x0001


class TableMapChange(NamedTuple):
    table_id: int
    schema: str
    table: str
    log_file: Optional[str] = None
    # start offset of the table map event
    log_pos: Optional[int] = None


class InsertChange(NamedTuple):
    table_id: int
    schema: str
    table: str
    rows: List[List[Any]]
    log_file: Optional[str] = None
    log_pos: Optional[int] = None
    statement_end: bool = True


class UpdateChange(NamedTuple):
    table_id: int
    schema: str
    table: str
    rows: List[Tuple[List[Any], List[Any]]]
    log_file: Optional[str] = None
    log_pos: Optional[int] = None
    statement_end: bool = True


class DeleteChange(NamedTuple):
    table_id: int
    schema: str
    table: str
    rows: List[List[Any]]
    log_file: Optional[str] = None
    log_pos: Optional[int] = None
    statement_end: bool = True


BinlogChange = Union[TableMapChange, InsertChange, UpdateChange, DeleteChange]


def translate_event(binlogevent, log_file) -> Optional[BinlogChange]:
    """
    Turn a pymysqlreplication event into the change it describes.

    Row changes carry the end offset of their event and whether the event
    closes its statement; table maps carry their start offset.
    """
    if isinstance(binlogevent, TableMapEvent):
        start = binlogevent.packet.log_pos - binlogevent.packet.event_size
        return TableMapChange(binlogevent.table_id, binlogevent.schema, binlogevent.table,
                              log_file, start)

    if isinstance(binlogevent, WriteRowsEvent):
        change_class, key = InsertChange, "values"
    elif isinstance(binlogevent, DeleteRowsEvent):
        change_class, key = DeleteChange, "values"
    elif isinstance(binlogevent, UpdateRowsEvent):
        change_class, key = UpdateChange, None
    else:
        return None

    if key is None:
        rows = [
            (list(row["before_values"].values()), list(row["after_values"].values()))
            for row in binlogevent.rows
        ]
    else:
        rows = [list(row[key].values()) for row in binlogevent.rows]
    statement_end = bool(binlogevent.flags & STMT_END_FLAG)
    return change_class(binlogevent.table_id, binlogevent.schema, binlogevent.table,
                        rows, log_file, binlogevent.packet.log_pos, statement_end)


class JsonValueEncoder(json.JSONEncoder):
    def default(self, obj):
        if isinstance(obj, (datetime, date, dt_time)):
            return obj.isoformat()
        if isinstance(obj, (Decimal, timedelta)):
            return str(obj)
        return super().default(obj)


def _text_keys(value):
    if isinstance(value, dict):
        return {_text_keys(k): _text_keys(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_text_keys(item) for item in value]
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    return value


def decode_json_value(value) -> Optional[str]:
    """Render a decoded JSON column value as JSON text."""
    if value is None:
        return None
    try:
        return json.dumps(_text_keys(value), cls=JsonValueEncoder, ensure_ascii=False)
    except (UnicodeDecodeError, TypeError, ValueError) as e:
        raise ColumnDecodeError(f"Malformed JSON column value {value!r}: {str(e)}") from e


class ReaderState(str, Enum):
    IDLE = "idle"
    POSITION_MARKED = "position_marked"
    STREAMING = "streaming"
    STOPPED = "stopped"
    FAILED = "failed"


class BinlogReader:
    """
    Reads row changes of one source database from the MySQL binlog.

    Call mark_position() (or resume_from()) before read(). The reader owns
    its position and its table id cache; neither is shared with any other
    reader.

    The position only ever rests where a new stream can pick up again: at
    the end of a statement, or at the first table map of the statement in
    progress. Rows of a partly handled statement are replayed after a
    reconnect or restart, which the idempotent writer absorbs.
    """

    def __init__(self, rdbms_configuration, server_id=1001, metadata=None,
                 connection_factory=connect, stream_factory=BinLogStreamReader,
                 max_reconnect_attempts=5, reconnect_delay=1.0, max_reconnect_delay=60.0,
                 heartbeat_interval=1.0, idle_interval=0.1, sleep=time.sleep):
        self.rdbms_configuration = rdbms_configuration
        self.server_id = server_id
        self.metadata = metadata or MetaDataUtil(rdbms_configuration, connection_factory)
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.heartbeat_interval = heartbeat_interval
        self.idle_interval = idle_interval
        self.position = BinlogPosition()
        self.state = ReaderState.IDLE
        self._connection_factory = connection_factory
        self._stream_factory = stream_factory
        self._sleep = sleep
        self._stopped = threading.Event()
        self._table_names = {}
        # (log_file, start offset) of the first table map of the open statement
        self._statement_start = None
        self.ignored_tables = set()

    def mark_position(self) -> BinlogPosition:
        """
        Record the source's current binlog coordinates as the start position.

        Raises:
            PositionMarkError: If the coordinates cannot be read
        """
        try:
            conn = self._connection_factory(self.rdbms_configuration, use_database=False)
            try:
                with conn.cursor() as cursor:
                    status = self._binlog_status(cursor)
                    cursor.execute("SHOW VARIABLES LIKE 'server_id'")
                    server = cursor.fetchone()
            finally:
                conn.close()
        except PositionMarkError:
            raise
        except Exception as e:
            logger.error(f"Failed to mark binlog position: {str(e)}")
            raise PositionMarkError("Failed to mark binlog position") from e

        self.position = BinlogPosition(
            log_file=status["File"],
            log_pos=int(status["Position"]),
            server_id=str(server["Value"]) if server else None,
        )
        self.state = ReaderState.POSITION_MARKED
        logger.info(f"Marked binlog position {self.position} on server {self.position.server_id}")
        return self.position

    def _binlog_status(self, cursor):
        try:
            cursor.execute("SHOW MASTER STATUS")
        except pymysql.err.ProgrammingError:
            # MySQL 8.4 removed SHOW MASTER STATUS
            cursor.execute("SHOW BINARY LOG STATUS")
        status = cursor.fetchone()
        if not status:
            raise PositionMarkError("Failed to get binlog status, is binary logging enabled?")
        return status

    def resume_from(self, position: BinlogPosition):
        """Start from a previously persisted position instead of marking one."""
        if not position.is_marked:
            raise PositionMarkError(f"Cannot resume from unmarked position {position}")
        self.position = position.model_copy()
        self.state = ReaderState.POSITION_MARKED
        logger.info(f"Resuming from binlog position {self.position}")

    def run(self, channel):
        try:
            self.read(channel)
        finally:
            channel.close()

    def stop(self):
        """Stop streaming after the event currently being handled."""
        self._stopped.set()

    def _open_stream(self):
        config = self.rdbms_configuration
        logger.info(f"Opening binlog stream for {config.database} at {self.position}")
        self._statement_start = None
        return self._stream_factory(
            connection_settings=config.connection_settings(),
            server_id=self.server_id,
            blocking=True,
            resume_stream=True,
            slave_heartbeat=self.heartbeat_interval,
            only_events=[TableMapEvent, WriteRowsEvent, UpdateRowsEvent, DeleteRowsEvent, HeartbeatLogEvent],
            only_schemas=[config.database],
            log_file=self.position.log_file,
            log_pos=self.position.log_pos,
        )

    def read(self, channel):
        """
        Stream changes into channel until stop() is called.

        The stream blocks while the source is idle; heartbeats hand control
        back often enough to notice stop(). Connection failures are retried
        with exponential backoff, resuming from the reader's position. Any
        other failure ends the read.

        Raises:
            PositionMarkError: If no start position was marked
            StreamConnectionError: If reconnecting failed too many times
            ColumnDecodeError: If a column value cannot be interpreted
        """
        if not self.position.is_marked:
            raise PositionMarkError("Binlog position must be marked before reading")

        self.state = ReaderState.STREAMING
        attempts = 0
        delay = self.reconnect_delay
        stream = None
        try:
            while not self._stopped.is_set():
                try:
                    if stream is None:
                        stream = self._open_stream()
                    binlogevent = stream.fetchone()
                    if binlogevent is None:
                        # a blocking stream only comes back empty once it was closed
                        self._sleep(self.idle_interval)
                        continue
                    change = translate_event(binlogevent, stream.log_file)
                    if change is not None:
                        self.handle(change, channel)
                    attempts = 0
                    delay = self.reconnect_delay
                except CONNECTION_ERRORS as e:
                    if stream is not None:
                        self._close_stream(stream)
                        stream = None
                    if self._stopped.is_set():
                        break
                    attempts += 1
                    if attempts > self.max_reconnect_attempts:
                        logger.error(f"Giving up on binlog stream after {self.max_reconnect_attempts} attempts")
                        raise StreamConnectionError(
                            f"Binlog stream lost at {self.position}: {str(e)}"
                        ) from e
                    logger.warning(f"Binlog stream error (attempt {attempts}/{self.max_reconnect_attempts}), "
                                   f"reconnecting in {delay:.1f}s: {str(e)}")
                    self._sleep(delay)
                    delay = min(delay * 2, self.max_reconnect_delay)
            self.state = ReaderState.STOPPED
            logger.info(f"Binlog reader stopped at {self.position}")
        except Exception:
            self.state = ReaderState.FAILED
            raise
        finally:
            if stream is not None:
                self._close_stream(stream)

    def _close_stream(self, stream):
        try:
            stream.close()
        except CONNECTION_ERRORS as e:
            logger.debug(f"Ignoring error while closing binlog stream: {str(e)}")

    def handle(self, change: BinlogChange, channel) -> int:
        """
        Apply one change to the reader: update the table cache or push records.

        Returns:
            int: number of records pushed to the channel
        """
        if isinstance(change, TableMapChange):
            self._table_names[change.table_id] = f"{change.schema}.{change.table}"
            if self._statement_start is None and change.log_file and change.log_pos is not None:
                self._statement_start = (change.log_file, change.log_pos)
            return 0

        if not isinstance(change, (InsertChange, UpdateChange, DeleteChange)):
            raise TypeError(f"Unhandled binlog change {change!r}")

        full_table_name = self._table_names.get(change.table_id)
        if full_table_name is None:
            full_table_name = f"{change.schema}.{change.table}"
            logger.debug(f"No table map seen for table id {change.table_id}, using {full_table_name}")
            self._table_names[change.table_id] = full_table_name

        resume_point = self.resume_point(change)
        if self.is_filtered(full_table_name):
            self._advance(change, resume_point)
            return 0

        records = self.build_records(full_table_name, change, resume_point)
        for record in records:
            channel.push(record)
        self._advance(change, resume_point)
        return len(records)

    def resume_point(self, change) -> Optional[Tuple[str, int]]:
        """
        Where a new stream may start once change has been handled.

        The end of a statement's last rows event, or else the first table
        map of the statement; a stream started between the two would lack
        the table maps it needs to decode the remaining rows.
        """
        if change.statement_end and change.log_file and change.log_pos is not None:
            return change.log_file, change.log_pos
        return self._statement_start

    def _advance(self, change, resume_point):
        if change.statement_end:
            self._statement_start = None
        if resume_point is not None:
            self.position.advance(*resume_point)

    def is_filtered(self, full_table_name) -> bool:
        """True for tables outside the configured source database, or ignored."""
        schema, table = full_table_name.split(".", 1)
        return schema != self.rdbms_configuration.database or table in self.ignored_tables

    def build_records(self, full_table_name, change, resume_point=None) -> List[DataRecord]:
        """
        Records for every row of change, stamped with resume_point (the
        reader's current position when None). Updates keep the before image
        of each column.
        """
        if resume_point is None:
            resume_point = (self.position.log_file, self.position.log_pos)
        records = []
        if isinstance(change, UpdateChange):
            for before, after in change.rows:
                columns = []
                for i, new_raw in enumerate(after):
                    old_value = self.resolve_column_value(full_table_name, i, before[i])
                    new_value = self.resolve_column_value(full_table_name, i, new_raw)
                    columns.append(Column(value=new_value, changed=new_value != old_value,
                                          old_value=old_value))
                records.append(self._record(full_table_name, RecordType.UPDATE, columns, resume_point))
            return records

        record_type = RecordType.INSERT if isinstance(change, InsertChange) else RecordType.DELETE
        for row in change.rows:
            columns = [
                Column(value=self.resolve_column_value(full_table_name, i, value), changed=True)
                for i, value in enumerate(row)
            ]
            records.append(self._record(full_table_name, record_type, columns, resume_point))
        return records

    def _record(self, full_table_name, record_type, columns, resume_point):
        log_file, log_pos = resume_point
        return DataRecord(
            full_table_name=full_table_name,
            type=record_type,
            columns=columns,
            log_file=log_file,
            log_pos=log_pos,
        )

    def resolve_column_value(self, full_table_name, index, value):
        columns = self.metadata.get_column_definitions(full_table_name)
        if index >= len(columns):
            raise ColumnDecodeError(
                f"Column {index} of {full_table_name} is not in the table metadata"
            )
        if columns[index].type_name in JSON_TYPES:
            return decode_json_value(value)
        return value
