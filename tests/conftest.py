# tests/conftest.py
import pytest

from scaling_service.config import RdbmsConfiguration, SyncConfiguration, SyncType
from scaling_service.errors import PrimaryKeyNotFoundError
from scaling_service.metadata import INTEGER_TYPES, ColumnDefinition


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self._result = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, args=None):
        self.conn.executed.append((sql, args))
        result = self.conn.results_for(sql)
        if isinstance(result, Exception):
            raise result
        self._result = list(result)

    def executemany(self, sql, args_list):
        self.conn.executed.append((sql, list(args_list)))

    def fetchone(self):
        return self._result.pop(0) if self._result else None

    def fetchall(self):
        result, self._result = self._result, []
        return result

    def __iter__(self):
        return iter(self.fetchall())


class FakeConnection:
    """pymysql connection stand-in; results maps SQL prefixes to rows or an exception."""

    def __init__(self, results=None, fail_on=None):
        self.results = results or {}
        self.fail_on = fail_on
        self.executed = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def results_for(self, sql):
        if self.fail_on and sql.startswith(self.fail_on):
            return RuntimeError(f"failed executing {sql}")
        for prefix, result in self.results.items():
            if sql.startswith(prefix):
                return result
        return []

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = True


class FakeMetadata:
    """
    In-memory MetaDataUtil. tables maps a table name to a dict with
    columns [(name, type)], primary_key [names] and key_range (min, max).
    """

    def __init__(self, tables):
        self.tables = tables

    def _entry(self, table_name):
        return self.tables[table_name.split(".", 1)[-1]]

    def get_table_names(self):
        return list(self.tables)

    def get_column_definitions(self, table_name):
        return [ColumnDefinition(name, type_name) for name, type_name in self._entry(table_name)["columns"]]

    def get_primary_keys(self, table_name):
        primary_key = self._entry(table_name).get("primary_key")
        if not primary_key:
            raise PrimaryKeyNotFoundError(f"Table {table_name} has no primary key")
        return list(primary_key)

    def get_key_range(self, table_name, key_column):
        return self._entry(table_name).get("key_range")

    def is_integer_column(self, table_name, column_name):
        for name, type_name in self._entry(table_name)["columns"]:
            if name == column_name:
                return type_name in INTEGER_TYPES
        return False


class RecordingChannel:
    def __init__(self):
        self.records = []
        self.closed = False

    def push(self, record):
        self.records.append(record)

    def close(self):
        self.closed = True


@pytest.fixture
def source_config():
    return RdbmsConfiguration(url="jdbc:mysql://source-db:3306/shop", username="repl", password="secret")


@pytest.fixture
def target_config():
    return RdbmsConfiguration(url="mysql://target-db:3307/shop", username="writer", password="secret")


@pytest.fixture
def job_configuration(source_config, target_config):
    return SyncConfiguration(
        sync_type=SyncType.TABLE_SLICE,
        concurrency=4,
        reader_configuration=source_config,
        writer_configuration=target_config,
        channel_capacity=100,
        batch_size=10,
    )


@pytest.fixture
def shop_tables():
    return {
        "orders": {
            "columns": [("id", "int"), ("status", "varchar"), ("amount", "int")],
            "primary_key": ["id"],
            "key_range": (1, 250),
        },
        "events": {
            "columns": [("id", "bigint"), ("payload", "json")],
            "primary_key": ["id"],
            "key_range": (1, 10),
        },
    }


@pytest.fixture
def shop_metadata(shop_tables):
    return FakeMetadata(shop_tables)


@pytest.fixture
def recording_channel():
    return RecordingChannel()
