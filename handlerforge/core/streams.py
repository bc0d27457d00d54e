"""In-process byte streams between threads.

``StreamPipe`` connects a producer thread to a consumer that expects a
regular binary file object (``tarfile``, ``boto3.upload_fileobj``). The
queue between them is bounded, so a slow consumer holds the producer back.
A producer failure travels through the pipe: the consumer's next ``read``
raises it. Closing the read side early makes further writes raise
``BrokenPipeError``.
"""

from __future__ import annotations

import io
import logging
import queue
import threading
from pathlib import Path
from typing import Any, BinaryIO

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

_EOF: Any = object()


class _Failure:
    def __init__(self, error: BaseException) -> None:
        self.error = error


class PipeReader(io.RawIOBase):
    """Read side of a ``StreamPipe``."""

    def __init__(self, pipe: StreamPipe) -> None:
        self._pipe = pipe
        self._pending = b""
        self._finished = False

    def readable(self) -> bool:
        return True

    def readinto(self, buffer: Any) -> int:
        if not self._pending and not self._finished:
            item = self._pipe._queue.get()
            if item is _EOF:
                self._finished = True
            elif isinstance(item, _Failure):
                self._finished = True
                raise item.error
            else:
                self._pending = item

        if not self._pending:
            return 0
        size = min(len(buffer), len(self._pending))
        buffer[:size] = self._pending[:size]
        self._pending = self._pending[size:]
        return size

    def close(self) -> None:
        if not self.closed:
            self._pipe._reader_closed.set()
            # unblock a producer waiting on a full queue
            while True:
                try:
                    self._pipe._queue.get_nowait()
                except queue.Empty:
                    break
        super().close()


class PipeWriter(io.RawIOBase):
    """Write side of a ``StreamPipe``. Not seekable; ``tell`` is unsupported."""

    def __init__(self, pipe: StreamPipe) -> None:
        self._pipe = pipe

    def writable(self) -> bool:
        return True

    def write(self, data: Any) -> int:
        chunk = bytes(data)
        if chunk:
            self._pipe._put(chunk)
        return len(chunk)

    def fail(self, error: BaseException) -> None:
        """Deliver ``error`` to the reader instead of a clean end of stream."""
        if not self.closed:
            self._pipe._put(_Failure(error), ignore_closed_reader=True)
            super().close()

    def close(self) -> None:
        if not self.closed:
            self._pipe._put(_EOF, ignore_closed_reader=True)
        super().close()


class StreamPipe:
    """A bounded, thread-safe byte pipe with an error channel.

    Parameters
    ----------
    max_chunks:
        Number of written chunks buffered before writers block.
    """

    def __init__(self, max_chunks: int = 16) -> None:
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=max_chunks)
        self._reader_closed = threading.Event()
        self.reader = PipeReader(self)
        self.writer = PipeWriter(self)

    def _put(self, item: Any, *, ignore_closed_reader: bool = False) -> None:
        while True:
            if self._reader_closed.is_set():
                if ignore_closed_reader:
                    return
                raise BrokenPipeError("Reader side of the pipe was closed")
            try:
                self._queue.put(item, timeout=0.1)
                return
            except queue.Full:
                continue


def tee_to_file(source: BinaryIO, destination: Path, branch: PipeWriter) -> None:
    """Copy ``source`` to ``destination`` while also feeding ``branch``.

    The branch may be abandoned by its reader at any time; the file copy
    continues to the end of ``source``. A read or write failure is delivered
    to the branch (if still attached) and re-raised.
    """
    branch_attached = True
    try:
        with open(destination, "wb") as out:
            while True:
                chunk = source.read(CHUNK_SIZE)
                if not chunk:
                    break
                out.write(chunk)
                if branch_attached:
                    try:
                        branch.write(chunk)
                    except BrokenPipeError:
                        branch_attached = False
    except BaseException as exc:
        branch.fail(exc)
        raise
    branch.close()
