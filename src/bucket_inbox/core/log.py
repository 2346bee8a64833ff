"""
Append-only Inbox Logs

A user's inbox is a sequence of hourly segment objects named
``inbox-YYYYMMDDHH.log`` (UTC). Each segment holds newline-delimited JSON
message records and only ever grows. Writers signal append intent through
object metadata; readers follow the log by last-modified time, using it as
a logical clock for their offsets.
"""

from typing import Awaitable, Callable, List, Optional, Dict, NamedTuple, TypeVar
from datetime import datetime, timezone
import asyncio
import logging
import re
import uuid

from .models import utc_now, from_millis
from .storage import (
    Clock,
    ObjectInfo,
    ObjectNotFoundError,
    ObjectStore,
    Sleep,
    StorageError,
    StoredObject,
    with_retries,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')

SEGMENT_PREFIX = "inbox-"
SEGMENT_PATTERN = re.compile(r'^inbox-(\d{10})\.log$')


class LogBatch(NamedTuple):
    lines: List[str]
    new_offset: int


def segment_key_for(dt: datetime) -> str:
    """Segment key for the UTC hour containing ``dt``"""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return f"{SEGMENT_PREFIX}{dt.astimezone(timezone.utc).strftime('%Y%m%d%H')}.log"


def segment_hour(key: str) -> Optional[str]:
    """The ``YYYYMMDDHH`` part of a segment key, or None for other keys"""
    match = SEGMENT_PATTERN.match(key)
    return match.group(1) if match else None


def split_lines(text: str) -> List[str]:
    return [line.strip() for line in text.split('\n') if line.strip()]


class ObjectLogStore:
    """Hour-segmented append-only log writer and reader"""

    def __init__(self, store: ObjectStore, clock: Clock = utc_now,
                 retry_attempts: int = 3, retry_base_delay: float = 0.3,
                 sleep: Sleep = asyncio.sleep):
        self.store = store
        self.clock = clock
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.sleep = sleep

    async def _retry(self, operation: Callable[[], Awaitable[T]], label: str) -> T:
        return await with_retries(operation, label, attempts=self.retry_attempts,
                                  base_delay=self.retry_base_delay, sleep=self.sleep)

    async def _probe_version(self, bucket: str, key: str) -> str:
        try:
            head = await self._retry(lambda: self.store.head_object(bucket, key),
                                     f"HeadObject {key}")
            return head.metadata.get('append-version', '0')
        except ObjectNotFoundError:
            logger.debug("Creating empty segment %s/%s", bucket, key)
            await self._retry(lambda: self.store.put_object(bucket, key, b''),
                              f"PutObject {key} (create)")
            return '0'

    async def append_line(self, bucket: str, line: str) -> str:
        """
        Append one line to the current segment of ``bucket``.

        The segment's ``append-version`` is probed first (creating an empty
        segment when none exists) and the write carries it together with a
        unique ``append-id``; a retried write reuses that id. Returns the
        segment key written.
        """
        body = line if line.endswith('\n') else f"{line}\n"
        key = segment_key_for(self.clock())
        version = await self._probe_version(bucket, key)

        metadata = {
            'append': 'true',
            'append-if-version': str(version),
            'append-id': str(uuid.uuid4()),
        }
        await self._retry(
            lambda: self.store.put_object(bucket, key, body.encode('utf-8'), metadata=metadata),
            f"PutObject {key} (append)",
        )
        logger.debug("Appended %d bytes to %s/%s at version %s", len(body), bucket, key, version)
        return key

    async def _list_segments(self, bucket: str) -> List[ObjectInfo]:
        listed = await self._retry(lambda: self.store.list_objects(bucket, prefix=SEGMENT_PREFIX),
                                   f"ListObjects {SEGMENT_PREFIX}")
        return [obj for obj in listed if segment_hour(obj.key) is not None]

    async def _fetch(self, bucket: str, key: str) -> StoredObject:
        return await self._retry(lambda: self.store.get_object(bucket, key), f"GetObject {key}")

    async def tail_since(self, bucket: str, from_offset_ms: int) -> LogBatch:
        """
        Read every segment that may hold content newer than ``from_offset_ms``.

        Listed segments within ``[hour(from_offset), hour(now)]`` that were
        modified after the offset are fetched in key order, followed by the
        current-hour segment, which is always fetched because a stale listing
        may not show it yet. A segment that does not exist reads as empty.
        """
        since = max(0, int(from_offset_ms or 0))
        now = self.clock()
        first_hour = segment_hour(segment_key_for(from_millis(since)))
        current_key = segment_key_for(now)
        current_hour = segment_hour(current_key)

        listed = await self._list_segments(bucket)
        by_key: Dict[str, ObjectInfo] = {obj.key: obj for obj in listed}

        keys_to_fetch = sorted(
            obj.key for obj in listed
            if first_hour <= segment_hour(obj.key) <= current_hour and obj.last_modified_ms > since
        )
        if current_key not in keys_to_fetch:
            keys_to_fetch.append(current_key)

        lines: List[str] = []
        new_offset = since
        for key in keys_to_fetch:
            try:
                obj = await self._fetch(bucket, key)
            except ObjectNotFoundError:
                logger.debug("[tail] segment not found (ok): %s/%s", bucket, key)
                continue

            lines.extend(split_lines(obj.text()))
            listed_lm = by_key[key].last_modified_ms if key in by_key else 0
            new_offset = max(new_offset, obj.last_modified_ms, listed_lm)

        logger.debug("[tail] %s since=%d fetched=%d lines=%d new_offset=%d",
                     bucket, since, len(keys_to_fetch), len(lines), new_offset)
        return LogBatch(lines, new_offset)

    async def recent_lines(self, bucket: str, max_lines: int) -> LogBatch:
        """
        Read up to ``max_lines`` of the most recent lines, in chronological order.

        Segments are fetched newest-first until enough lines are gathered;
        a segment that fails to fetch is skipped. The returned offset is the
        newest last-modified time among all listed segments.
        """
        listed = await self._list_segments(bucket)
        if not listed:
            return LogBatch([], 0)

        newest_first = sorted(listed, key=lambda obj: obj.last_modified_ms, reverse=True)
        max_offset = newest_first[0].last_modified_ms

        fetched: List[List[str]] = []
        total = 0
        for info in newest_first:
            if total >= max_lines:
                break
            try:
                obj = await self._fetch(bucket, info.key)
            except StorageError as e:
                logger.warning("[recent] failed to fetch %s/%s (skip): %s", bucket, info.key, e)
                continue
            segment_lines = split_lines(obj.text())
            fetched.append(segment_lines)
            total += len(segment_lines)

        chronological: List[str] = []
        for segment_lines in reversed(fetched):
            chronological.extend(segment_lines)

        if len(chronological) > max_lines:
            chronological = chronological[len(chronological) - max_lines:]
        return LogBatch(chronological, max_offset)
