# Bounded FIFO between one reader and one writer

import logging
import queue
import threading

from scaling_service.errors import ChannelClosedError

logger = logging.getLogger("channel")


class _EndOfStream:
    def __repr__(self):
        return "END_OF_STREAM"


END_OF_STREAM = _EndOfStream()


class Channel:
    """
    Single-producer, single-consumer record queue with backpressure.

    push() blocks while the channel is full. The producer calls close() once
    it is done; the consumer then sees END_OF_STREAM after the last record.
    """

    def __init__(self, capacity=10000, poll_interval=0.5):
        self.capacity = capacity
        self.poll_interval = poll_interval
        self._queue = queue.Queue(maxsize=capacity)
        self._aborted = threading.Event()

    def push(self, record):
        while True:
            if self._aborted.is_set():
                raise ChannelClosedError("Channel consumer has gone away")
            try:
                self._queue.put(record, timeout=self.poll_interval)
                return
            except queue.Full:
                continue

    def pull(self, timeout=None):
        """
        Take the next record.

        Returns:
            The next record, END_OF_STREAM once the producer closed the
            channel, or None if nothing arrived within timeout
        """
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self):
        if self._aborted.is_set():
            return
        self.push(END_OF_STREAM)

    def abort(self):
        """Release a producer blocked on a full channel."""
        self._aborted.set()

    def qsize(self):
        return self._queue.qsize()
