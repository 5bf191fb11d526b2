"""
Execution log delivery.

A log sink is any callable taking an ExecutionLog. LogChannel is a sink
backed by a bounded queue: producers block when it is full, so the consumer
must drain it (iterate, or call get()) for the job to make progress.
"""

import queue
from typing import Callable, Iterator, Optional

from fortress.config import Config
from .types import ExecutionLog


LogSink = Callable[[ExecutionLog], None]

_CLOSED = object()


class LogChannelClosed(Exception):
    """Raised when emitting into a closed channel."""
    pass


class LogChannel:
    """
    Bounded, ordered channel of ExecutionLog entries.

    Usage:
        channel = LogChannel()
        worker = threading.Thread(target=run_backup_job, args=(ssh, job, channel))
        worker.start()
        for entry in channel:   # ends once close() is called
            ...
    """

    def __init__(self, maxsize: Optional[int] = None, put_timeout: Optional[float] = None):
        """
        Args:
            maxsize: Queue bound (defaults to Config.LOG_QUEUE_SIZE)
            put_timeout: Seconds a producer waits for space before raising queue.Full
                (None = wait until the consumer drains)
        """
        self._queue = queue.Queue(maxsize=maxsize if maxsize is not None else Config.LOG_QUEUE_SIZE)
        self._put_timeout = put_timeout
        self._closed = False

    def __call__(self, entry: ExecutionLog):
        if self._closed:
            raise LogChannelClosed("Log channel is closed")
        self._queue.put(entry, timeout=self._put_timeout)

    def get(self, timeout: Optional[float] = None) -> Optional[ExecutionLog]:
        """
        Take the next entry.

        Returns:
            The next entry, or None once the channel is closed and drained

        Raises:
            queue.Empty: If timeout expires with nothing available
        """
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            # Keep the marker for other consumers
            self._queue.put(_CLOSED)
            return None
        return item

    def close(self):
        """Mark the end of the stream. Entries already queued are still delivered."""
        if not self._closed:
            self._closed = True
            self._queue.put(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> Iterator[ExecutionLog]:
        while True:
            entry = self.get()
            if entry is None:
                return
            yield entry
