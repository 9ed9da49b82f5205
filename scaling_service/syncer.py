# Full and incremental sync supervisors, and the job chaining them

import logging
import threading

from scaling_service.binlog_reader import BinlogReader
from scaling_service.channel import Channel
from scaling_service.config import SyncConfiguration, SyncType
from scaling_service.errors import PrimaryKeyNotFoundError, SyncFailedError
from scaling_service.metadata import MetaDataUtil
from scaling_service.position import BinlogPosition
from scaling_service.runner import start_runner
from scaling_service.scheduler import InProcessScheduler, wait_slices_finished
from scaling_service.splitter import TableSplitter
from scaling_service.writer import TableWriter

logger = logging.getLogger("syncer")


class HistoryDataSyncer:
    """Copies the existing contents of every source table, slice by slice."""

    def __init__(self, sync_configuration, splitter=None, scheduler=None, join_timeout=30.0):
        self.sync_configuration = sync_configuration
        self.splitter = splitter or TableSplitter()
        self.scheduler = scheduler or InProcessScheduler()
        self.join_timeout = join_timeout
        self.cancel = threading.Event()
        self.reporter = None

    def run(self):
        configurations = self.splitter.split(self.sync_configuration)
        self.reporter = self.scheduler.schedule(configurations)
        summary = wait_slices_finished(self.reporter, len(configurations), cancel=self.cancel)
        self.reporter.join(self.join_timeout)
        summary.skipped = {table: str(e) for table, e in self.splitter.failed_tables.items()}
        if summary.is_complete:
            logger.info("history data sync finish")
        return summary

    def stop(self):
        self.cancel.set()
        if self.reporter is not None:
            self.reporter.stop()


class RealtimeDataSyncer:
    """
    Applies binlog changes to the destination until stopped.

    The position of the last committed change is persisted to the position
    store, so a restarted job resumes from there.
    """

    def __init__(self, sync_configuration, binlog_reader, position_store=None, job_id=None, writer=None):
        self.sync_configuration = sync_configuration
        self.binlog_reader = binlog_reader
        self.position_store = position_store
        self.job_id = job_id
        self.writer = writer or TableWriter(
            sync_configuration.writer_configuration,
            batch_size=sync_configuration.batch_size,
            on_commit=self._on_commit,
        )
        self.last_position = None

    def _on_commit(self, record):
        if not record.log_file:
            return
        self.last_position = BinlogPosition(
            log_file=record.log_file,
            log_pos=record.log_pos,
            server_id=self.binlog_reader.position.server_id,
        )
        if self.position_store is not None:
            self.position_store.set_position(self.job_id, self.last_position)

    def run(self):
        channel = Channel(capacity=self.sync_configuration.channel_capacity)
        logger.info(f"Starting incremental sync from {self.binlog_reader.position}")
        reader_thread = start_runner(self.binlog_reader, channel, name="binlog-reader")
        try:
            self.writer.run(channel)
        except Exception as e:
            logger.error(f"Incremental writer failed: {str(e)}")
            channel.abort()
            self.binlog_reader.stop()
            reader_thread.join()
            raise
        reader_thread.join()
        if reader_thread.error is not None:
            raise reader_thread.error
        logger.info(f"Incremental sync stopped, last confirmed position {self.last_position}")

    def stop(self):
        self.binlog_reader.stop()


class ScalingJob:
    """
    Full sync followed by incremental sync, resumable through a position store.

    The binlog position is marked and persisted before the full sync starts,
    so changes made while tables are copied are replayed afterwards.
    """

    def __init__(self, settings, position_store, binlog_reader=None, history_syncer=None,
                 metadata=None):
        self.settings = settings
        self.job_id = settings.job_id
        self.position_store = position_store
        self.binlog_reader = binlog_reader or BinlogReader(settings.source, server_id=settings.server_id)
        self.history_syncer = history_syncer or HistoryDataSyncer(settings.sync_configuration())
        self.metadata = metadata or MetaDataUtil(settings.source)
        self.realtime_syncer = None
        self._stopped = threading.Event()

    def run(self):
        mode = self.settings.mode
        if mode not in ("all", "full", "incremental"):
            raise RuntimeError(f"Unknown sync mode {mode}")

        full_sync_complete = self.position_store.is_full_sync_complete(self.job_id)
        if mode in ("all", "full") and not full_sync_complete:
            summary = self.run_full_sync()
            if mode == "full":
                return summary
            ignored_tables = set(summary.skipped)
        elif mode == "full":
            logger.info(f"Full sync already complete for job {self.job_id}")
            return None
        else:
            self._resume_position()
            ignored_tables = self._tables_without_primary_key()

        if self._stopped.is_set():
            return None
        self.binlog_reader.ignored_tables = ignored_tables
        self.realtime_syncer = RealtimeDataSyncer(
            self._incremental_configuration(),
            self.binlog_reader,
            position_store=self.position_store,
            job_id=self.job_id,
        )
        self.realtime_syncer.run()
        return None

    def run_full_sync(self):
        position = self.binlog_reader.mark_position().model_copy()
        self.position_store.set_position(self.job_id, position)

        logger.info(f"Starting full sync for job {self.job_id} at {position}")
        summary = self.history_syncer.run()
        summary.position = position
        for table, error in summary.skipped.items():
            logger.error(f"Table {table} was not synced: {error}")
        if not summary.is_complete:
            logger.error(f"Full sync failed for job {self.job_id}: {summary}")
            raise SyncFailedError(f"Full sync failed: {summary}", summary)
        self.position_store.mark_full_sync_complete(self.job_id)
        logger.info(f"Full sync complete for job {self.job_id}: {summary}")
        return summary

    def _resume_position(self):
        position = self.position_store.get_position(self.job_id)
        if position is None:
            logger.info(f"No stored position for job {self.job_id}, starting from the current one")
            position = self.binlog_reader.mark_position()
            self.position_store.set_position(self.job_id, position)
        else:
            self.binlog_reader.resume_from(position)

    def _tables_without_primary_key(self):
        tables = set()
        for table_name in self.metadata.get_table_names():
            try:
                self.metadata.get_primary_keys(table_name)
            except PrimaryKeyNotFoundError:
                tables.add(table_name)
        return tables

    def _incremental_configuration(self):
        return SyncConfiguration(
            sync_type=SyncType.INCREMENTAL,
            concurrency=1,
            reader_configuration=self.settings.source,
            writer_configuration=self.settings.target,
            slice_id=f"{self.job_id}-incremental",
            channel_capacity=self.settings.channel_capacity,
            batch_size=self.settings.batch_size,
        )

    def stop(self):
        self._stopped.set()
        self.history_syncer.stop()
        if self.realtime_syncer is not None:
            self.realtime_syncer.stop()
