"""A request body wrapper that records read errors instead of raising them."""

from __future__ import annotations

import threading
from typing import BinaryIO, Optional


class _EndOfStream(Exception):
    """Marks that the wrapped reader has been exhausted."""


_EOF = _EndOfStream()


class BodyReader:
    """Wraps a binary reader, counting bytes and storing the first failure.

    When reading the wrapped stream fails, the error is kept and the reader
    behaves as if the stream had ended, so stores only ever see a clean end
    of data and the caller can inspect :meth:`error` afterwards.
    """

    def __init__(self, reader: BinaryIO) -> None:
        self._reader = reader
        self._error: Optional[BaseException] = None
        self._count = 0
        self._lock = threading.Lock()

    def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes; return ``b""`` once the stream ended or failed."""
        if self._error is not None:
            return b""
        try:
            data = self._reader.read(size)
        except Exception as exc:  # any failure of the body ends the stream
            self._error = exc
            return b""
        data = data or b""
        with self._lock:
            self._count += len(data)
        if not data and size != 0:
            self._error = _EOF
        return data

    def error(self) -> Optional[BaseException]:
        """Return the error that ended the stream, or None for a normal end."""
        if self._error is _EOF:
            return None
        return self._error

    def bytes_read(self) -> int:
        """Return the number of bytes read so far."""
        with self._lock:
            return self._count