"""Append-only conversation logs.

One JSONL file per (agent, topic) pair under ``conversations/<agent>/<topic>.jsonl``.
Every line is one immutable :class:`Message` record; the byte offset of its
first character is its address. The structured store keeps a
``MessageIndexEntry`` per record so readers can seek straight to a record.

Write ordering per topic: the record is written, flushed and fsynced, and only
then is its index entry inserted. Appends on the same topic are serialized by
a per-topic ``asyncio.Lock``; appends on different topics never wait on each
other.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
from pathlib import Path
from typing import Iterator

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import NotFoundError, StorageError, ValidationError
from ..models import Message, MessageIndexEntry, RecoveryReport
from .sqlite_store import SQLiteStore

_SAFE_NAME = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def _safe_component(name: str) -> str:
    """Make an id safe to use as a single path component."""
    safe = _SAFE_NAME.sub("_", name).strip(". ")
    if not safe:
        raise ValidationError("id", f"cannot be used as a file name: {name!r}")
    return safe[:200]


def _parse_record(line: bytes) -> Message | None:
    """Parse one complete log line; ``None`` when it is not a valid record."""
    if not line.endswith(b"\n"):
        return None
    try:
        return Message.model_validate_json(line)
    except (PydanticValidationError, ValueError):
        return None


class LogRange:
    """Lazy, finite, restartable view over a slice of one topic log.

    Each iteration reopens the file and reads forward from ``start``, so the
    same range can be iterated any number of times. Iteration stops at the
    first incomplete or malformed line.
    """

    def __init__(self, path: Path, start: int = 0, limit: int | None = None):
        self.path = path
        self.start = start
        self.limit = limit

    def __iter__(self) -> Iterator[Message]:
        for _, _, message in self.records():
            yield message

    def records(self) -> Iterator[tuple[int, int, Message]]:
        """Yield ``(offset, end, message)``; ``end`` is the next record's offset."""
        if not self.path.exists() or (self.limit is not None and self.limit <= 0):
            return
        yielded = 0
        with open(self.path, "rb") as f:
            offset = f.seek(self.start)
            for line in f:
                end = offset + len(line)
                if line.strip():
                    message = _parse_record(line)
                    if message is None:
                        break
                    yield offset, end, message
                    yielded += 1
                    if self.limit is not None and yielded >= self.limit:
                        break
                offset = end

    def to_list(self) -> list[Message]:
        return list(self)

    def page(self) -> tuple[list[Message], int]:
        """Messages in the range and the offset the next page starts at."""
        messages: list[Message] = []
        next_offset = self.start
        for _, end, message in self.records():
            messages.append(message)
            next_offset = end
        return messages, next_offset


class ConversationLog:
    """Append-only per-topic message logs with an offset index."""

    def __init__(self, base_path: str | Path, store: SQLiteStore):
        """
        Args:
            base_path: Directory holding one sub-directory per agent
            store: Structured store receiving the message index entries
        """
        self._base_path = Path(base_path)
        self._base_path.mkdir(parents=True, exist_ok=True)
        self._store = store
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._recovered: set[tuple[str, str]] = set()

    def log_path(self, agent_id: str, topic_id: str) -> Path:
        return (
            self._base_path
            / _safe_component(agent_id)
            / f"{_safe_component(topic_id)}.jsonl"
        )

    def _lock_for(self, agent_id: str, topic_id: str) -> asyncio.Lock:
        key = (agent_id, topic_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    async def append(self, agent_id: str, topic_id: str, message: Message) -> int:
        """Append one record and index it; returns the record's offset.

        Raises:
            ValidationError: if the message names a different agent/topic
            StorageError: if the write or the index insert fails
        """
        offset, _ = await self.append_after(agent_id, topic_id, message)
        return offset

    async def append_after(
        self, agent_id: str, topic_id: str, message: Message
    ) -> tuple[int, Message | None]:
        """Append like :meth:`append`, also returning the record it follows.

        The previous record is read under the same lock as the write, so it
        is exactly the message before this one in the log.
        """
        if message.agent_id != agent_id or message.topic_id != topic_id:
            raise ValidationError(
                "message", "agent_id/topic_id do not match the target log"
            )

        path = self.log_path(agent_id, topic_id)
        async with self._lock_for(agent_id, topic_id):
            await self._recover_locked(agent_id, topic_id)

            last = await self._store.last_index_entry(topic_id)
            prior = (
                await self.read_at(agent_id, topic_id, last.file_offset) if last else None
            )

            line = message.model_dump_json().encode("utf-8") + b"\n"
            try:
                offset = await asyncio.to_thread(self._write_record, path, line)
            except OSError as e:
                raise StorageError(f"Log append failed: {e}", str(path)) from e

            # A crash between the write and this insert leaves an unindexed
            # record; recovery on the next open re-indexes it.
            await self._store.insert_index_entry(
                MessageIndexEntry(
                    id=message.id,
                    agent_id=agent_id,
                    topic_id=topic_id,
                    role=message.role,
                    tokens=message.tokens,
                    timestamp=message.timestamp,
                    file_offset=offset,
                )
            )

        logger.debug(
            f"Appended message {message.id} to {agent_id}/{topic_id} at offset {offset}"
        )
        return offset, prior

    @staticmethod
    def _write_record(path: Path, line: bytes) -> int:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "ab") as f:
            offset = f.seek(0, os.SEEK_END)
            f.write(line)
            f.flush()
            os.fsync(f.fileno())
        return offset

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def recover(self, agent_id: str, topic_id: str) -> RecoveryReport:
        """Validate the tail of a topic log, truncating a torn final record."""
        async with self._lock_for(agent_id, topic_id):
            self._recovered.discard((agent_id, topic_id))
            return await self._recover_locked(agent_id, topic_id)

    async def _recover_locked(self, agent_id: str, topic_id: str) -> RecoveryReport:
        key = (agent_id, topic_id)
        report = RecoveryReport(agent_id=agent_id, topic_id=topic_id)
        if key in self._recovered:
            return report

        path = self.log_path(agent_id, topic_id)
        last = await self._store.last_index_entry(topic_id)
        start = last.file_offset if last else 0

        try:
            size, valid_end, unindexed = await asyncio.to_thread(
                self._scan_tail, path, start
            )
        except OSError as e:
            raise StorageError(f"Log recovery failed: {e}", str(path)) from e

        rescanned = False
        if valid_end < start:
            # The index points past the end of the file; re-scan from the top
            size, valid_end, unindexed = await asyncio.to_thread(
                self._scan_tail, path, 0
            )
            rescanned = True

        if valid_end < size:
            await asyncio.to_thread(self._truncate, path, valid_end)
            report.truncated_bytes = size - valid_end
            logger.warning(
                f"Truncated {report.truncated_bytes} bytes of malformed tail from "
                f"{path} (valid end at offset {valid_end})"
            )

        report.dropped_index_entries = await self._store.delete_index_entries_from(
            topic_id, valid_end
        )

        if rescanned:
            indexed_offsets = {
                e.file_offset for e in await self._store.get_index_entries(topic_id)
            }
        elif last is not None:
            indexed_offsets = {last.file_offset}
        else:
            indexed_offsets = set()

        for offset, message in unindexed:
            if offset in indexed_offsets:
                continue
            await self._store.insert_index_entry(
                MessageIndexEntry(
                    id=message.id,
                    agent_id=agent_id,
                    topic_id=topic_id,
                    role=message.role,
                    tokens=message.tokens,
                    timestamp=message.timestamp,
                    file_offset=offset,
                )
            )
            report.reindexed += 1

        if report.reindexed:
            logger.warning(
                f"Re-indexed {report.reindexed} unindexed records in {path}"
            )
        self._recovered.add(key)
        return report

    @staticmethod
    def _scan_tail(path: Path, start: int) -> tuple[int, int, list[tuple[int, Message]]]:
        """Walk records from ``start``; return (size, valid_end, records)."""
        if not path.exists():
            return 0, 0, []
        size = path.stat().st_size
        if start > size:
            return size, -1, []

        records: list[tuple[int, Message]] = []
        with open(path, "rb") as f:
            f.seek(start)
            offset = start
            valid_end = start
            for line in f:
                message = _parse_record(line) if line.strip() else None
                if message is None and line.strip():
                    break
                if message is not None:
                    records.append((offset, message))
                offset += len(line)
                valid_end = offset

        return size, valid_end, records

    @staticmethod
    def _truncate(path: Path, length: int) -> None:
        with open(path, "r+b") as f:
            f.truncate(length)
            f.flush()
            os.fsync(f.fileno())

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    async def read_range(
        self,
        agent_id: str,
        topic_id: str,
        from_offset: int | None = None,
        limit: int | None = None,
    ) -> LogRange:
        """Messages in file order, starting at a record boundary.

        Raises:
            ValidationError: if ``from_offset`` is neither the start of a record
                nor the end of the log
        """
        async with self._lock_for(agent_id, topic_id):
            await self._recover_locked(agent_id, topic_id)

        path = self.log_path(agent_id, topic_id)
        start = from_offset or 0
        if start < 0:
            raise ValidationError("from_offset", "must be >= 0")
        if start > 0 and not await asyncio.to_thread(self._is_boundary, path, start):
            raise ValidationError(
                "from_offset", f"{start} is not the start of a log record"
            )
        return LogRange(path, start, limit)

    @staticmethod
    def _is_boundary(path: Path, offset: int) -> bool:
        if not path.exists() or offset > path.stat().st_size:
            return False
        with open(path, "rb") as f:
            f.seek(offset - 1)
            return f.read(1) == b"\n"

    async def read_page(
        self,
        agent_id: str,
        topic_id: str,
        from_offset: int | None = None,
        limit: int | None = None,
        last: int | None = None,
    ) -> tuple[list[Message], int]:
        """One page of history plus the offset the following page starts at.

        Passing the returned offset back as ``from_offset`` continues the
        walk; at the end of the log the page is empty and the offset stays
        put. ``last`` selects the final ``last`` records instead.
        """
        if last is not None:
            if last <= 0:
                return [], self.file_size(agent_id, topic_id)
            async with self._lock_for(agent_id, topic_id):
                await self._recover_locked(agent_id, topic_id)
            entries = await self._store.get_index_entries(topic_id, last=last)
            if not entries:
                return [], self.file_size(agent_id, topic_id)
            from_offset, limit = entries[0].file_offset, len(entries)

        log_range = await self.read_range(agent_id, topic_id, from_offset, limit)
        return await asyncio.to_thread(log_range.page)

    async def read_last(self, agent_id: str, topic_id: str, n: int) -> list[Message]:
        """The last ``n`` messages, found by seeking through the index."""
        if n <= 0:
            return []
        async with self._lock_for(agent_id, topic_id):
            await self._recover_locked(agent_id, topic_id)
        entries = await self._store.get_index_entries(topic_id, last=n)
        if not entries:
            return []
        log_range = await self.read_range(
            agent_id, topic_id, from_offset=entries[0].file_offset, limit=len(entries)
        )
        return await asyncio.to_thread(log_range.to_list)

    async def read_at(self, agent_id: str, topic_id: str, offset: int) -> Message:
        """Read the single record starting at ``offset``."""
        path = self.log_path(agent_id, topic_id)

        def _read() -> Message | None:
            if not path.exists():
                return None
            with open(path, "rb") as f:
                f.seek(offset)
                return _parse_record(f.readline())

        message = await asyncio.to_thread(_read)
        if message is None:
            raise NotFoundError("message", f"{agent_id}/{topic_id}@{offset}")
        return message

    async def read_indexed(
        self, agent_id: str, topic_id: str, limit: int | None = None
    ) -> list[Message]:
        """Read records one by one through their index offsets."""
        async with self._lock_for(agent_id, topic_id):
            await self._recover_locked(agent_id, topic_id)
        entries = await self._store.get_index_entries(topic_id, limit=limit)
        return [await self.read_at(agent_id, topic_id, e.file_offset) for e in entries]

    async def read_all(self, agent_id: str, topic_id: str) -> list[Message]:
        log_range = await self.read_range(agent_id, topic_id)
        return await asyncio.to_thread(log_range.to_list)

    async def search(self, agent_id: str, topic_id: str, query: str) -> list[Message]:
        """Case-insensitive substring search over a topic's messages."""
        needle = query.lower()
        return [
            m for m in await self.read_all(agent_id, topic_id)
            if needle in m.content.lower()
        ]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def export_topic(self, agent_id: str, topic_id: str, output_path: str | Path) -> int:
        """Write a topic's messages to a single pretty-printed JSON file."""
        messages = await self.read_all(agent_id, topic_id)
        payload = [m.model_dump(mode="json") for m in messages]

        def _write() -> None:
            with open(output_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2)

        await asyncio.to_thread(_write)
        return len(messages)

    async def import_topic(self, agent_id: str, topic_id: str, input_path: str | Path) -> int:
        """Append messages from an exported JSON file to the target topic."""

        def _read() -> list[dict]:
            with open(input_path, encoding="utf-8") as f:
                return json.load(f)

        try:
            raw = await asyncio.to_thread(_read)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Import failed: {e}", str(input_path)) from e

        count = 0
        for item in raw:
            # Fresh ids: message ids are unique across topics
            item.pop("id", None)
            item.update(agent_id=agent_id, topic_id=topic_id)
            await self.append(agent_id, topic_id, Message.model_validate(item))
            count += 1
        return count

    async def delete_topic(self, agent_id: str, topic_id: str) -> None:
        path = self.log_path(agent_id, topic_id)
        async with self._lock_for(agent_id, topic_id):
            if path.exists():
                await asyncio.to_thread(path.unlink)
            self._recovered.discard((agent_id, topic_id))
        self._locks.pop((agent_id, topic_id), None)

    async def delete_agent(self, agent_id: str) -> None:
        self._recovered = {k for k in self._recovered if k[0] != agent_id}
        self._locks = {k: v for k, v in self._locks.items() if k[0] != agent_id}
        agent_dir = self._base_path / _safe_component(agent_id)
        if not agent_dir.exists():
            return
        for path in agent_dir.glob("*.jsonl"):
            await asyncio.to_thread(path.unlink)
        await asyncio.to_thread(agent_dir.rmdir)

    def file_size(self, agent_id: str, topic_id: str) -> int:
        path = self.log_path(agent_id, topic_id)
        return path.stat().st_size if path.exists() else 0
