"""
file_log.py
-----------
FhirMan — FHIR Patient CLI — Durable log file
---------------------------------------------
Append-only plain-text log that accumulates across runs.  Each call opens
the file (creating it, and its parent directory, when missing), appends one
line and closes it again; nothing is buffered between calls.

I/O and permission failures are logged and swallowed: losing a log line
never aborts the command that produced it.

Project: FhirMan — FHIR Patient CLI
"""

import logging
import os

logger = logging.getLogger(__name__)


def append_log_line(path: str, text: str) -> bool:
    """
    Append *text* plus a newline to the log file at *path*.

    Args:
        path: Log file path, absolute or relative to the working directory.
        text: Line content (without trailing newline).

    Returns:
        True when the line was written, False when the write failed (the
        failure has already been logged).
    """
    try:
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(path, "a", encoding="utf-8") as fh:
            fh.write(text + "\n")
        return True
    except OSError as exc:
        logger.error("append_log_line: could not write to %s: %s", path, exc, exc_info=True)
        return False


class LogFileWriter:
    """Binds ``append_log_line`` to one path so handlers need not carry it."""

    def __init__(self, path: str) -> None:
        self.path = path

    def __call__(self, text: str) -> bool:
        return append_log_line(self.path, text)
