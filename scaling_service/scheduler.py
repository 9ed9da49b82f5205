# Runs reader/writer pairs per slice and reports their lifecycle events

import logging
import queue
import threading
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from scaling_service.channel import Channel
from scaling_service.position import BinlogPosition
from scaling_service.runner import start_runner
from scaling_service.table_reader import TableSliceReader
from scaling_service.writer import TableWriter

logger = logging.getLogger("scheduler")


class EventType(str, Enum):
    STARTED = "started"
    FINISHED = "finished"
    FAILED = "failed"


class Event(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    event_type: EventType
    slice_id: str
    error: Optional[BaseException] = None


class SyncSummary(BaseModel):
    """Outcome of a batch of slices, as seen by the supervising job."""

    total: int
    finished: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)
    # tables left out of the split, with the reason
    skipped: Dict[str, str] = Field(default_factory=dict)
    position: Optional[BinlogPosition] = None

    @property
    def is_complete(self) -> bool:
        return len(self.finished) == self.total

    def __str__(self):
        return (f"{len(self.finished)}/{self.total} slices finished, {len(self.failed)} failed, "
                f"position {self.position}")


class Reporter:
    """Event stream of one scheduled batch, in the order slices report."""

    def __init__(self):
        self._events = queue.Queue()
        self._tasks = []

    def report(self, event: Event):
        self._events.put(event)

    def consume_event(self, timeout=None) -> Optional[Event]:
        """Block for the next event; None if none arrived within timeout."""
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def track(self, task):
        self._tasks.append(task)

    @property
    def slice_ids(self) -> List[str]:
        return [task.configuration.slice_id for task in self._tasks]

    def start(self):
        for task in self._tasks:
            task.start()

    def stop(self):
        """Ask every slice to stop; writers still apply what is queued."""
        for task in self._tasks:
            task.stop()

    def join(self, timeout=None):
        for task in self._tasks:
            task.join(timeout)


class SliceTask(threading.Thread):
    """
    One slice: a reader thread feeding a writer over a private channel.

    Reports STARTED, then FINISHED if both sides succeeded, FAILED otherwise.
    """

    def __init__(self, configuration, reader, writer, reporter):
        super().__init__(name=f"slice-{configuration.slice_id}", daemon=True)
        self.configuration = configuration
        self.reader = reader
        self.writer = writer
        self.reporter = reporter

    def run(self):
        slice_id = self.configuration.slice_id
        self.reporter.report(Event(event_type=EventType.STARTED, slice_id=slice_id))
        channel = Channel(capacity=self.configuration.channel_capacity)
        error = None
        try:
            reader_thread = start_runner(self.reader, channel, name=f"{slice_id}-reader")
        except Exception as e:
            logger.error(f"Failed to start reader of slice {slice_id}: {str(e)}")
            self.reporter.report(Event(event_type=EventType.FAILED, slice_id=slice_id, error=e))
            return

        try:
            self.writer.run(channel)
        except Exception as e:
            logger.error(f"Writer of slice {slice_id} failed: {str(e)}")
            error = e
            channel.abort()
            self.reader.stop()
        reader_thread.join()
        error = error or reader_thread.error

        if error is None:
            logger.info(f"Slice {slice_id} finished")
            self.reporter.report(Event(event_type=EventType.FINISHED, slice_id=slice_id))
        else:
            self.reporter.report(Event(event_type=EventType.FAILED, slice_id=slice_id, error=error))

    def stop(self):
        self.reader.stop()
        self.writer.stop()


def _default_reader(configuration):
    return TableSliceReader(configuration.reader_configuration)


def _default_writer(configuration):
    return TableWriter(configuration.writer_configuration, batch_size=configuration.batch_size)


class InProcessScheduler:
    """Schedules every slice at once on threads of the current process."""

    def __init__(self, reader_factory=_default_reader, writer_factory=_default_writer):
        self.reader_factory = reader_factory
        self.writer_factory = writer_factory

    def schedule(self, configurations) -> Reporter:
        reporter = Reporter()
        for configuration in configurations:
            task = SliceTask(
                configuration,
                self.reader_factory(configuration),
                self.writer_factory(configuration),
                reporter,
            )
            reporter.track(task)
        reporter.start()
        logger.info(f"Scheduled {len(reporter.slice_ids)} slices")
        return reporter


def wait_slices_finished(reporter: Reporter, total: int, cancel: Optional[threading.Event] = None,
                         poll_interval=1.0) -> SyncSummary:
    """
    Block until every one of total slices reported FINISHED or FAILED.

    Returns early, with the slices seen so far, once cancel is set. The
    returned summary is complete only if all slices finished.
    """
    summary = SyncSummary(total=total)
    while len(summary.finished) + len(summary.failed) < total:
        if cancel is not None and cancel.is_set():
            logger.warning(f"Stopped waiting for slices: {summary}")
            break
        event = reporter.consume_event(timeout=poll_interval if cancel is not None else None)
        if event is None:
            continue
        if event.event_type == EventType.FINISHED:
            summary.finished.append(event.slice_id)
        elif event.event_type == EventType.FAILED:
            logger.error(f"Slice {event.slice_id} failed: {event.error}")
            summary.failed[event.slice_id] = str(event.error)
    logger.info(f"Slices done: {summary}")
    return summary
