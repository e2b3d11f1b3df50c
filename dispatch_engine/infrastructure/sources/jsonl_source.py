"""
JSON Lines Source

Reads records from a file with one JSON object per line:

    {"id": "order-1", "payload": {"sku": "A-1", "qty": 2}}
    {"id": "order-2", "payload": "raw text payload"}

- ``id`` is optional; missing ids default to ``<file name>:<line number>``
- ``payload`` strings are sent as UTF-8 bytes, any other JSON value is
  re-serialized with orjson
- Lines that are not valid JSON objects become MalformedRecord entries
- Blank lines are skipped

The file is read lazily. Iterating again restarts from the top of the file.
Async iteration (what the dispatch loop uses) does the file reads in a
worker thread through asyncio.to_thread, a chunk of lines at a time.
"""

import asyncio
from collections.abc import AsyncIterator, Iterator
from pathlib import Path

import orjson

from dispatch_engine.core.config.constants import Stage
from dispatch_engine.core.logging.logger import get_logger
from dispatch_engine.core.models import MalformedRecord, Record

logger = get_logger(__name__)

# Approximate bytes of complete lines read per worker-thread hop
READ_CHUNK_BYTES = 64 * 1024


class JsonLinesSource:
    """Lazy, restartable Source over a JSON-lines file."""

    def __init__(self, path: str | Path, encoding: str = "utf-8"):
        self.path = Path(path)
        self.encoding = encoding

    def __iter__(self) -> Iterator[Record | MalformedRecord]:
        logger.info("Reading source file", stage=Stage.SOURCE_READ, path=str(self.path))
        sequence = 0
        with self.path.open("rb") as fh:
            for line_number, raw in enumerate(fh, start=1):
                line = raw.strip()
                if not line:
                    continue
                yield self.parse_line(line, line_number, sequence)
                sequence += 1

    async def __aiter__(self) -> AsyncIterator[Record | MalformedRecord]:
        logger.info("Reading source file", stage=Stage.SOURCE_READ, path=str(self.path), mode="async")
        fh = await asyncio.to_thread(self.path.open, "rb")
        try:
            line_number = 0
            sequence = 0
            while True:
                chunk = await asyncio.to_thread(fh.readlines, READ_CHUNK_BYTES)
                if not chunk:
                    return
                for raw in chunk:
                    line_number += 1
                    line = raw.strip()
                    if not line:
                        continue
                    yield self.parse_line(line, line_number, sequence)
                    sequence += 1
        finally:
            fh.close()

    def default_id(self, line_number: int) -> str:
        return f"{self.path.name}:{line_number}"

    def parse_line(self, line: bytes, line_number: int, sequence: int) -> Record | MalformedRecord:
        record_id = self.default_id(line_number)

        try:
            data = orjson.loads(line)
        except orjson.JSONDecodeError as e:
            return MalformedRecord(record_id=record_id, sequence=sequence, reason=f"invalid JSON: {e}")

        if not isinstance(data, dict):
            return MalformedRecord(record_id=record_id, sequence=sequence, reason="line is not a JSON object")

        if "id" in data:
            if not isinstance(data["id"], (str, int)) or isinstance(data["id"], bool):
                return MalformedRecord(record_id=record_id, sequence=sequence, reason="id must be a string or integer")
            record_id = str(data["id"])

        if "payload" not in data:
            return MalformedRecord(record_id=record_id, sequence=sequence, reason="missing payload")

        payload = data["payload"]
        if isinstance(payload, str):
            body = payload.encode(self.encoding)
        else:
            body = orjson.dumps(payload)

        return Record(record_id=record_id, payload=body, sequence=sequence)
