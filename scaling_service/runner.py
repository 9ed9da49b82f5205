# Capabilities shared by readers and writers, and the thread that runs them

import logging
import threading
from typing import Optional, Protocol

logger = logging.getLogger("runner")


class Runner(Protocol):
    """Anything the scheduler can run against a channel and ask to stop."""

    def run(self, channel) -> None:
        ...

    def stop(self) -> None:
        ...


class RunnerThread(threading.Thread):
    """Runs one runner and keeps the exception it failed with, if any."""

    def __init__(self, runner: Runner, channel, name: str):
        super().__init__(name=name, daemon=True)
        self.runner = runner
        self.channel = channel
        self.error: Optional[BaseException] = None

    def run(self):
        try:
            self.runner.run(self.channel)
        except Exception as e:
            logger.error(f"{self.name} failed: {str(e)}")
            self.error = e


def start_runner(runner: Runner, channel, name: str) -> RunnerThread:
    thread = RunnerThread(runner, channel, name)
    thread.start()
    return thread
