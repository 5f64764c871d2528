"""
MicroSense — NDJSON stream decoder

Turns an arbitrary chunking of a newline-delimited JSON byte stream into
complete records. Chunk boundaries may fall anywhere, including inside a
multi-byte UTF-8 character.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, Dict, List

logger = logging.getLogger("microsense.ndjson")


class NDJSONDecoder:
    """
    Incremental decoder. Feed raw chunks, get back the records completed
    by each one; the unterminated tail is held until the next newline.

    Usage:
        decoder = NDJSONDecoder()
        for chunk in stream:
            for record in decoder.feed(chunk):
                ...
    """

    def __init__(self) -> None:
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.skipped = 0

    @property
    def pending(self) -> str:
        """Partial line still waiting for its newline."""
        return self._buffer

    def feed(self, chunk: bytes) -> List[Dict[str, Any]]:
        self._buffer += self._text.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")

        records: List[Dict[str, Any]] = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except ValueError:
                self.skipped += 1
                logger.debug(f"Skipping malformed line: {line[:80]!r}")
                continue
            if isinstance(record, dict):
                records.append(record)
            else:
                self.skipped += 1
        return records
