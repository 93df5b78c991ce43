"""
Generic helpers for fuzzloop: timestamps for status lines and a tee logger
that mirrors console output into a log file.
"""

from datetime import datetime
from pathlib import Path
from typing import TextIO


def timestamp() -> str:
    """Return the current local time in the format used by status lines."""
    return datetime.now().strftime("%a %b %d %H:%M:%S %Y")


class TeeLogger:
    """
    A file-like object that writes to both a file and another stream
    (like the original stdout), and flushes immediately.

    Runner threads print concurrently, so every write is flushed straight
    through instead of being buffered.
    """

    def __init__(self, file_path: str | Path, original_stream: TextIO) -> None:
        """Initialize the logger with a file path and an existing stream.

        Args:
            file_path: Path to the log file. It is opened in append mode so a
                restarted session keeps the previous output.
            original_stream: The original stream (e.g., sys.stdout) to tee to.
        """
        self.original_stream = original_stream
        self.log_file = open(file_path, "a", encoding="utf-8")

    def write(self, message: str) -> None:
        """Write a message to both the original stream and the log file."""
        self.original_stream.write(message)
        if not self.log_file.closed:
            self.log_file.write(message)
        self.flush()

    def flush(self) -> None:
        """Flush both underlying streams."""
        self.original_stream.flush()
        if not self.log_file.closed:
            self.log_file.flush()

    def close(self) -> None:
        """Flush and close the log file. The original stream stays open."""
        self.flush()
        self.log_file.close()

    @property
    def encoding(self) -> str:
        """Return the encoding of the original stream."""
        return getattr(self.original_stream, "encoding", "utf-8")

    def isatty(self) -> bool:
        """Return whether the original stream is a TTY."""
        return hasattr(self.original_stream, "isatty") and self.original_stream.isatty()

    def fileno(self) -> int:
        """Return the file descriptor of the original stream.

        Raises OSError if the original stream doesn't have a file descriptor.
        """
        if hasattr(self.original_stream, "fileno"):
            return self.original_stream.fileno()
        raise OSError("TeeLogger does not have a file descriptor")
