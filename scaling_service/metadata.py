# Table metadata lookups against information_schema

import logging
import threading
from typing import Dict, List, NamedTuple, Optional, Tuple

import pymysql

from scaling_service.errors import PrimaryKeyNotFoundError

logger = logging.getLogger("metadata")

INTEGER_TYPES = {"tinyint", "smallint", "mediumint", "int", "integer", "bigint"}


class ColumnDefinition(NamedTuple):
    name: str
    type_name: str


def connect(rdbms_configuration, use_database=True, **kwargs):
    """Open a pymysql connection for a connection descriptor."""
    settings = {
        "host": rdbms_configuration.host,
        "port": rdbms_configuration.port,
        "user": rdbms_configuration.username,
        "password": rdbms_configuration.password,
        "cursorclass": pymysql.cursors.DictCursor,
    }
    if use_database and rdbms_configuration.database:
        settings["db"] = rdbms_configuration.database
    settings.update(kwargs)
    return pymysql.connect(**settings)


def split_table_name(table_name, default_schema):
    """Split an optionally schema-qualified name into (schema, table)."""
    if "." in table_name:
        schema, table = table_name.split(".", 1)
        return schema, table
    return default_schema, table_name


class MetaDataUtil:
    """
    Metadata of the tables behind one connection descriptor.

    Column definitions and primary keys are cached for the lifetime of the
    instance; schema changes while syncing are not tracked.
    """

    def __init__(self, rdbms_configuration, connection_factory=connect):
        self.rdbms_configuration = rdbms_configuration
        self._connection_factory = connection_factory
        self._columns: Dict[Tuple[str, str], List[ColumnDefinition]] = {}
        self._primary_keys: Dict[Tuple[str, str], List[str]] = {}
        self._lock = threading.Lock()

    def _query(self, sql, args=None):
        conn = self._connection_factory(self.rdbms_configuration, use_database=False)
        try:
            with conn.cursor() as cursor:
                cursor.execute(sql, args)
                return list(cursor.fetchall())
        finally:
            conn.close()

    def get_table_names(self) -> List[str]:
        rows = self._query(
            "SELECT TABLE_NAME FROM information_schema.TABLES "
            "WHERE TABLE_SCHEMA = %s AND TABLE_TYPE = 'BASE TABLE' ORDER BY TABLE_NAME",
            (self.rdbms_configuration.database,),
        )
        return [row["TABLE_NAME"] for row in rows]

    def get_column_definitions(self, table_name) -> List[ColumnDefinition]:
        """Ordered column definitions of a table, with lower-cased type names."""
        key = split_table_name(table_name, self.rdbms_configuration.database)
        with self._lock:
            if key in self._columns:
                return self._columns[key]
        rows = self._query(
            "SELECT COLUMN_NAME, DATA_TYPE FROM information_schema.COLUMNS "
            "WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s ORDER BY ORDINAL_POSITION",
            key,
        )
        columns = [ColumnDefinition(row["COLUMN_NAME"], row["DATA_TYPE"].lower()) for row in rows]
        if not columns:
            raise RuntimeError(f"No columns found for table {key[0]}.{key[1]}")
        with self._lock:
            self._columns[key] = columns
        return columns

    def get_primary_keys(self, table_name) -> List[str]:
        key = split_table_name(table_name, self.rdbms_configuration.database)
        with self._lock:
            if key in self._primary_keys:
                return self._primary_keys[key]
        rows = self._query(
            "SELECT COLUMN_NAME FROM information_schema.KEY_COLUMN_USAGE "
            "WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s AND CONSTRAINT_NAME = 'PRIMARY' "
            "ORDER BY ORDINAL_POSITION",
            key,
        )
        primary_keys = [row["COLUMN_NAME"] for row in rows]
        if not primary_keys:
            raise PrimaryKeyNotFoundError(f"Table {key[0]}.{key[1]} has no primary key")
        with self._lock:
            self._primary_keys[key] = primary_keys
        return primary_keys

    def get_key_range(self, table_name, key_column) -> Optional[Tuple[int, int]]:
        """
        Smallest and largest value of key_column.

        Returns:
            tuple of (min, max), or None for an empty table
        """
        schema, table = split_table_name(table_name, self.rdbms_configuration.database)
        rows = self._query(
            f"SELECT MIN(`{key_column}`) AS min_key, MAX(`{key_column}`) AS max_key "
            f"FROM `{schema}`.`{table}`"
        )
        if not rows or rows[0]["min_key"] is None:
            return None
        return rows[0]["min_key"], rows[0]["max_key"]

    def is_integer_column(self, table_name, column_name) -> bool:
        for column in self.get_column_definitions(table_name):
            if column.name == column_name:
                return column.type_name in INTEGER_TYPES
        return False
