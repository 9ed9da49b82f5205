import threading

from scaling_service.channel import END_OF_STREAM
from scaling_service.config import SyncConfiguration, SyncType
from scaling_service.scheduler import (
    Event,
    EventType,
    InProcessScheduler,
    Reporter,
    wait_slices_finished,
)
from scaling_service.writer import TableWriter


class ListReader:
    def __init__(self, items, error=None):
        self.items = items
        self.error = error
        self.stopped = False

    def run(self, channel):
        try:
            for item in self.items:
                channel.push(item)
            if self.error:
                raise self.error
        finally:
            channel.close()

    def stop(self):
        self.stopped = True


class ListWriter:
    def __init__(self, error=None):
        self.items = []
        self.error = error

    def run(self, channel):
        while True:
            item = channel.pull(timeout=1)
            if item is END_OF_STREAM:
                break
            if self.error:
                channel.abort()
                raise self.error
            self.items.append(item)

    def stop(self):
        pass


def slice_configurations(source_config, target_config, count):
    return [
        SyncConfiguration(
            sync_type=SyncType.TABLE_SLICE,
            reader_configuration=source_config.clone(table_name="orders"),
            writer_configuration=target_config.clone(table_name="orders"),
            slice_id=f"orders#{i}",
            channel_capacity=2,
        )
        for i in range(count)
    ]


def test_all_slices_finishing_completes_batch(source_config, target_config):
    writers = {}

    def writer_factory(configuration):
        writers[configuration.slice_id] = ListWriter()
        return writers[configuration.slice_id]

    configurations = slice_configurations(source_config, target_config, 3)
    reporter = InProcessScheduler(
        reader_factory=lambda configuration: ListReader(list(range(5))),
        writer_factory=writer_factory,
    ).schedule(configurations)

    summary = wait_slices_finished(reporter, len(configurations))
    reporter.join(1)

    assert summary.is_complete
    assert sorted(summary.finished) == ["orders#0", "orders#1", "orders#2"]
    assert all(writer.items == [0, 1, 2, 3, 4] for writer in writers.values())


def test_failed_reader_is_reported_without_stopping_others(source_config, target_config):
    def reader_factory(configuration):
        if configuration.slice_id == "orders#1":
            return ListReader([1], error=RuntimeError("lost source"))
        return ListReader([1, 2])

    configurations = slice_configurations(source_config, target_config, 3)
    reporter = InProcessScheduler(reader_factory=reader_factory,
                                  writer_factory=lambda configuration: ListWriter()).schedule(configurations)

    summary = wait_slices_finished(reporter, len(configurations))

    assert not summary.is_complete
    assert sorted(summary.finished) == ["orders#0", "orders#2"]
    assert summary.failed == {"orders#1": "lost source"}


def test_failed_writer_releases_reader(source_config, target_config):
    reader = ListReader(list(range(50)))
    configurations = slice_configurations(source_config, target_config, 1)
    reporter = InProcessScheduler(
        reader_factory=lambda configuration: reader,
        writer_factory=lambda configuration: ListWriter(error=RuntimeError("disk full")),
    ).schedule(configurations)

    summary = wait_slices_finished(reporter, 1)

    assert summary.failed == {"orders#0": "disk full"}
    assert reader.stopped


def test_unreachable_destination_fails_slice_with_full_channel(source_config, target_config, shop_metadata):
    def refuse(config, **kwargs):
        raise ConnectionError("target-db unreachable")

    reader = ListReader(list(range(20)))
    configurations = slice_configurations(source_config, target_config, 1)
    reporter = InProcessScheduler(
        reader_factory=lambda configuration: reader,
        writer_factory=lambda configuration: TableWriter(
            configuration.writer_configuration, metadata=shop_metadata, connection_factory=refuse),
    ).schedule(configurations)

    events = [reporter.consume_event(timeout=5), reporter.consume_event(timeout=5)]

    assert [event.event_type for event in events] == [EventType.STARTED, EventType.FAILED]
    assert "target-db unreachable" in str(events[1].error)
    assert reader.stopped


def test_started_precedes_terminal_event_per_slice(source_config, target_config):
    configurations = slice_configurations(source_config, target_config, 2)
    reporter = InProcessScheduler(reader_factory=lambda configuration: ListReader([1]),
                                  writer_factory=lambda configuration: ListWriter()).schedule(configurations)

    events = [reporter.consume_event(timeout=5) for _ in range(4)]

    for slice_id in ("orders#0", "orders#1"):
        kinds = [e.event_type for e in events if e.slice_id == slice_id]
        assert kinds == [EventType.STARTED, EventType.FINISHED]


def feed(reporter, *events):
    for event_type, slice_id in events:
        reporter.report(Event(event_type=event_type, slice_id=slice_id))


def test_three_finished_events_unblock_wait():
    reporter = Reporter()
    feed(reporter, (EventType.STARTED, "a"), (EventType.FINISHED, "a"),
         (EventType.FINISHED, "b"), (EventType.FINISHED, "c"))

    summary = wait_slices_finished(reporter, 3)

    assert summary.is_complete
    assert summary.finished == ["a", "b", "c"]


def test_failed_event_does_not_report_full_completion():
    reporter = Reporter()
    feed(reporter, (EventType.FINISHED, "a"), (EventType.FINISHED, "b"))
    reporter.report(Event(event_type=EventType.FAILED, slice_id="c", error=RuntimeError("boom")))

    summary = wait_slices_finished(reporter, 3)

    assert not summary.is_complete
    assert summary.failed == {"c": "boom"}


def test_wait_returns_when_cancelled():
    reporter = Reporter()
    feed(reporter, (EventType.FINISHED, "a"))
    cancel = threading.Event()
    timer = threading.Timer(0.05, cancel.set)
    timer.start()

    summary = wait_slices_finished(reporter, 2, cancel=cancel, poll_interval=0.01)

    assert summary.finished == ["a"]
    assert not summary.is_complete


def test_consume_event_times_out():
    assert Reporter().consume_event(timeout=0.01) is None


def test_empty_batch_is_complete():
    assert wait_slices_finished(Reporter(), 0).is_complete
