# Durable storage of the incremental sync position in an Iceberg table

import logging
import os
from datetime import datetime
from typing import Any, Dict, Optional

import pyarrow as pa
from pyiceberg.catalog import load_catalog
from pyiceberg.exceptions import NoSuchTableError
from pyiceberg.expressions import EqualTo
from pyiceberg.schema import Schema
from pyiceberg.types import (
    BooleanType,
    LongType,
    NestedField,
    StringType,
    TimestampType,
)

from scaling_service.position import BinlogPosition

logger = logging.getLogger("iceberg_position_store")

ARROW_SCHEMA = pa.schema([
    pa.field("job_id", pa.string(), nullable=False),
    pa.field("log_file", pa.string(), nullable=True),
    pa.field("log_position", pa.int64(), nullable=True),
    pa.field("server_id", pa.string(), nullable=True),
    pa.field("full_sync_complete", pa.bool_(), nullable=True),
    pa.field("updated_at", pa.timestamp('us'), nullable=True),
])


class IcebergPositionStore:
    """
    Keeps job positions in the scaling_metadata.positions Iceberg table.

    Rows are keyed by job_id and written with upserts, so each job has at
    most one row.
    """

    table_id = "scaling_metadata.positions"

    def __init__(self, catalog=None, catalog_name="default"):
        self.catalog = catalog or load_catalog(catalog_name)
        try:
            self.iceberg_table = self.catalog.load_table(self.table_id)
            logger.info(f"Loaded existing position table: {self.table_id}")
        except NoSuchTableError:
            logger.info(f"Position table {self.table_id} not found, creating it")
            self._create_table()

    def _create_table(self):
        schema = Schema(
            NestedField(1, "job_id", StringType(), required=True),
            NestedField(2, "log_file", StringType()),
            NestedField(3, "log_position", LongType()),
            NestedField(4, "server_id", StringType()),
            NestedField(5, "full_sync_complete", BooleanType()),
            NestedField(6, "updated_at", TimestampType()),
            identifier_field_ids=[1],
        )
        kwargs = {}
        bucket = os.environ.get("S3_BUCKET")
        if bucket:
            kwargs["location"] = f"s3://{bucket}/scaling_metadata/positions/"
        self.iceberg_table = self.catalog.create_table(identifier=self.table_id, schema=schema, **kwargs)
        logger.info(f"Created position table: {self.table_id}")

    def _get_record(self, job_id) -> Optional[Dict[str, Any]]:
        scan = self.iceberg_table.scan(row_filter=EqualTo("job_id", job_id))
        records = scan.to_arrow().to_pylist()
        return records[0] if records else None

    def _upsert(self, record):
        record["updated_at"] = datetime.now()
        arrow_table = pa.Table.from_pylist([record], schema=ARROW_SCHEMA)
        result = self.iceberg_table.upsert(arrow_table)
        logger.debug(f"Upsert result: {result.rows_updated} rows updated, {result.rows_inserted} rows inserted")

    def get_position(self, job_id) -> Optional[BinlogPosition]:
        record = self._get_record(job_id)
        if not record or not record.get("log_file"):
            return None
        return BinlogPosition(
            log_file=record["log_file"],
            log_pos=record["log_position"],
            server_id=record.get("server_id"),
        )

    def set_position(self, job_id, position: BinlogPosition) -> bool:
        if not position.is_marked:
            logger.warning(f"Attempted to store an unmarked position for job {job_id}")
            return False
        record = self._get_record(job_id) or {"job_id": job_id, "full_sync_complete": False}
        if record.get("log_file"):
            current = BinlogPosition(log_file=record["log_file"], log_pos=record["log_position"])
            if not position.is_after(current):
                return False
        record.update({
            "log_file": position.log_file,
            "log_position": position.log_pos,
            "server_id": position.server_id,
        })
        self._upsert(record)
        logger.info(f"Stored position {position} for job {job_id}")
        return True

    def mark_full_sync_complete(self, job_id):
        record = self._get_record(job_id) or {"job_id": job_id}
        record["full_sync_complete"] = True
        self._upsert(record)
        logger.info(f"Marked full sync complete for job {job_id}")

    def is_full_sync_complete(self, job_id) -> bool:
        record = self._get_record(job_id)
        return bool(record and record.get("full_sync_complete"))
