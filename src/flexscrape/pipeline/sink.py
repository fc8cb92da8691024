"""Append-only newline-delimited JSON output.

Every ``write`` is flushed before it returns, so a crash loses at most the
line being written. ``read_jsonl`` tolerates exactly that: a truncated final
line is skipped with a warning.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import IO, Any

from flexscrape.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class JsonlSink:
    """Lazily opened JSONL appender.

    Args:
        path: Output file; parent directories are created on first write.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self.written = 0
        self._fh: IO[str] | None = None

    @property
    def is_open(self) -> bool:
        return self._fh is not None

    def open(self) -> None:
        if self._fh is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self.path, "a", encoding="utf-8")
            logger.debug("Opened output %s", self.path)

    def write(self, record: dict[str, Any]) -> None:
        """Append *record* as one line and flush."""
        self.open()
        assert self._fh is not None
        self._fh.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
        self._fh.flush()
        self.written += 1

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None
            logger.info("Wrote %d record(s) to %s", self.written, self.path)

    def __enter__(self) -> "JsonlSink":
        self.open()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def read_jsonl(path: Path | str, limit: int | None = None) -> list[dict[str, Any]]:
    """Read up to *limit* records from a JSONL file.

    A missing file yields an empty list. Blank lines are ignored and a
    malformed final line (an interrupted write) is skipped.

    Raises:
        ConfigurationError: If a line other than the last is not valid JSON.
    """
    p = Path(path)
    if not p.is_file():
        logger.warning("File not found: %s", p)
        return []

    lines = [line for line in p.read_text(encoding="utf-8").splitlines() if line.strip()]
    if limit is not None:
        lines = lines[:limit]

    records: list[dict[str, Any]] = []
    for lineno, line in enumerate(lines, start=1):
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError as e:
            if lineno == len(lines):
                logger.warning("Skipping truncated last line %d of %s", lineno, p)
                break
            raise ConfigurationError(f"Malformed JSON on line {lineno} of {p}: {e}") from e
    logger.info("Loaded %d records from %s", len(records), p)
    return records
