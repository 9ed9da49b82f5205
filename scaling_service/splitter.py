# Splits a full-sync job into per-table, per-key-range slices

import logging
from typing import Dict, List, Optional, Tuple

from scaling_service.config import SyncConfiguration, SyncType
from scaling_service.errors import PrimaryKeyNotFoundError
from scaling_service.metadata import MetaDataUtil

logger = logging.getLogger("splitter")


def split_key_range(min_key: int, max_key: int, concurrency: int) -> List[Tuple[int, int]]:
    """
    Partition the inclusive range [min_key, max_key] into contiguous ranges.

    At most concurrency ranges are returned; fewer when the range holds
    fewer keys than that.
    """
    span = max_key - min_key + 1
    count = max(1, min(concurrency, span))
    step = -(-span // count)
    ranges = []
    start = min_key
    while start <= max_key:
        end = min(start + step - 1, max_key)
        ranges.append((start, end))
        start = end + 1
    return ranges


class TableSplitter:
    """
    Turns one job-level SyncConfiguration into slice configurations.

    Tables whose primary key cannot be determined are skipped and recorded
    in failed_tables; the other tables are still split.
    """

    def __init__(self, metadata_factory=MetaDataUtil):
        self.metadata_factory = metadata_factory
        self.failed_tables: Dict[str, Exception] = {}

    def split(self, sync_configuration: SyncConfiguration) -> List[SyncConfiguration]:
        reader_configuration = sync_configuration.reader_configuration
        metadata = self.metadata_factory(reader_configuration)
        self.failed_tables = {}

        slices = []
        for table_name in metadata.get_table_names():
            try:
                ranges = self._split_table(metadata, table_name, sync_configuration.concurrency)
            except PrimaryKeyNotFoundError as e:
                logger.error(f"Skipping table {table_name}: {e}")
                self.failed_tables[table_name] = e
                continue

            for index, (primary_key, key_range) in enumerate(ranges):
                range_start, range_end = key_range if key_range else (None, None)
                slices.append(SyncConfiguration(
                    sync_type=SyncType.TABLE_SLICE,
                    concurrency=sync_configuration.concurrency,
                    reader_configuration=reader_configuration.clone(
                        table_name=table_name,
                        primary_key=primary_key,
                        range_start=range_start,
                        range_end=range_end,
                    ),
                    writer_configuration=sync_configuration.writer_configuration.clone(
                        table_name=table_name,
                    ),
                    slice_id=f"{table_name}#{index}",
                    channel_capacity=sync_configuration.channel_capacity,
                    batch_size=sync_configuration.batch_size,
                ))
            logger.info(f"Split {table_name} into {len(ranges)} slice(s)")

        logger.info(f"Split {reader_configuration.database} into {len(slices)} slices, "
                    f"{len(self.failed_tables)} table(s) skipped")
        return slices

    def _split_table(self, metadata, table_name, concurrency) -> List[Tuple[str, Optional[Tuple[int, int]]]]:
        primary_keys = metadata.get_primary_keys(table_name)
        primary_key = primary_keys[0]
        if len(primary_keys) > 1 or not metadata.is_integer_column(table_name, primary_key):
            logger.info(f"Table {table_name} has a non-integer or composite key, copying it as one slice")
            return [(primary_key, None)]

        key_range = metadata.get_key_range(table_name, primary_key)
        if key_range is None:
            return [(primary_key, None)]
        return [(primary_key, r) for r in split_key_range(key_range[0], key_range[1], concurrency)]
