"""
Append-only backup log for the in-memory URL repository.

Format:
    One JSON object per line, in creation order:
        {"key": "3f1a9", "value": "https://example.com/a"}

Responsibilities:
    - Replay every stored record at startup (stops at end of file or at the
      first record that does not decode; the latter is logged, not raised)
    - Cut an undecodable tail off the file after replay, so records appended
      from now on start on a fresh line and survive the next restart
    - Append one record per newly created URL, serialized behind a dedicated
      lock because the file position is shared by all writers

The file is opened once in binary read+append mode and kept open for the
lifetime of the repository; `close()` releases it. Lines are decoded as UTF-8
one at a time, so a corrupt byte only ends the replay at its own line.
"""

import logging
import threading
from typing import IO, List, Optional, Union

from pydantic import BaseModel, ValidationError

__all__ = ["BackupRecord", "BackupLog"]

log = logging.getLogger("hashlink.backup")


class BackupRecord(BaseModel):
    """One persisted (id, url) pair."""
    key: str
    value: str


def _reason(exc: Union[UnicodeDecodeError, ValidationError]) -> str:
    if isinstance(exc, ValidationError):
        return exc.errors()[0].get("msg", str(exc))
    return str(exc)


class BackupLog:
    def __init__(self, path: str) -> None:
        """
        Open (creating if needed) the backup file at `path`.

        Raises:
            OSError: If the file cannot be opened.
        """
        self.path = path
        self._lock = threading.Lock()
        self._file: Optional[IO[bytes]] = open(path, "a+b")

    def replay(self) -> List[BackupRecord]:
        """
        Return stored records from the beginning of the file, in order.

        Everything from the first undecodable line on is truncated away, and a
        last record missing its newline gets one.

        Raises:
            OSError: If the file cannot be read or repaired.
        """
        records: List[BackupRecord] = []
        with self._lock:
            fh = self._handle()
            fh.seek(0)
            good_end = 0
            torn = False
            for lineno, line in enumerate(fh, start=1):
                if line.strip():
                    try:
                        records.append(BackupRecord.model_validate_json(line.decode("utf-8")))
                    except (UnicodeDecodeError, ValidationError) as exc:
                        log.warning(
                            "backup log %s: stopping replay at line %d: %s",
                            self.path, lineno, _reason(exc),
                        )
                        torn = True
                        break
                good_end += len(line)
                last_line = line

            if torn:
                fh.truncate(good_end)
                log.warning("backup log %s: truncated to %d bytes", self.path, good_end)
            if good_end and not last_line.endswith(b"\n"):
                fh.write(b"\n")
                fh.flush()
        return records

    def append(self, key: str, value: str) -> None:
        """
        Persist one record and flush it to the OS.

        Raises:
            OSError: If the write fails (the caller decides how to report it).
        """
        line = BackupRecord(key=key, value=value).model_dump_json() + "\n"
        with self._lock:
            fh = self._handle()
            fh.write(line.encode("utf-8"))
            fh.flush()

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    def _handle(self) -> IO[bytes]:
        if self._file is None:
            raise OSError(f"backup log {self.path} is closed")
        return self._file

    def __enter__(self) -> "BackupLog":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
