"""
Conversation Polling

Each open conversation runs one poll loop: ``Idle -> InitialLoad ->
SteadyPoll <-> Backoff/Burst -> Stopped``. The next poll is only scheduled
after the current one has finished, so polls for a contact never overlap.
"""

from typing import Callable, List, Optional, Any
import asyncio
import logging
import random

from ..core.models import DecryptedMessage, to_millis, utc_now
from ..core.storage import Clock, Sleep
from .sync import MessageSyncService

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str, List[DecryptedMessage]], Any]


class PollSchedule:
    """
    Delay bookkeeping for one poll loop.

    The prevailing interval is ``base_ms`` after a success and
    ``backoff_ms + random(0, jitter_ms)`` after a failure. A burst makes the
    next ``burst_polls`` delays ``burst_ms`` whatever the prevailing interval.
    """

    def __init__(self, base_ms: int = 3000, burst_ms: int = 1000, burst_polls: int = 3,
                 backoff_ms: int = 5000, jitter_ms: int = 1000,
                 rng: Callable[[], float] = random.random):
        self.base_ms = base_ms
        self.burst_ms = burst_ms
        self.burst_polls = burst_polls
        self.backoff_ms = backoff_ms
        self.jitter_ms = jitter_ms
        self.rng = rng
        self.interval_ms = base_ms
        self.burst_remaining = 0

    def record_success(self) -> None:
        self.interval_ms = self.base_ms

    def record_failure(self) -> None:
        self.interval_ms = int(self.backoff_ms + self.rng() * self.jitter_ms)

    def start_burst(self) -> None:
        self.burst_remaining = max(self.burst_remaining, self.burst_polls)

    def next_delay_ms(self) -> int:
        """Delay before the next poll; consumes one burst slot when bursting"""
        if self.burst_remaining > 0:
            self.burst_remaining -= 1
            return self.burst_ms
        return self.interval_ms


class ConversationPoller:
    """Timer-driven poll loop for the conversation with one contact"""

    def __init__(self, service: MessageSyncService, contact: str,
                 schedule: Optional[PollSchedule] = None,
                 on_messages: Optional[MessageCallback] = None,
                 initial_history_lines: int = 100, backfill_history_lines: int = 150,
                 recent_incoming_lookback_ms: int = 10 * 60 * 1000,
                 clock: Clock = utc_now, sleep: Sleep = asyncio.sleep):
        self.service = service
        self.contact = contact
        self.schedule = schedule or PollSchedule()
        self.on_messages = on_messages
        self.initial_history_lines = initial_history_lines
        self.backfill_history_lines = backfill_history_lines
        self.recent_incoming_lookback_ms = recent_incoming_lookback_ms
        self.clock = clock
        self.sleep = sleep
        self.offset: int = 0
        self.state = "idle"
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self._cancelled

    def notify_activity(self) -> None:
        """New messages were appended locally (e.g. a send); poll fast for a while"""
        self.schedule.start_burst()

    async def _deliver(self, messages: List[DecryptedMessage]) -> None:
        if not messages or self.on_messages is None:
            return
        result = self.on_messages(self.contact, messages)
        if asyncio.iscoroutine(result):
            await result

    def _incoming_in_cache(self, since_ms: int) -> bool:
        return any(
            m.sender == self.contact and m.timestamp_ms >= since_ms
            for m in self.service.conversations.messages(self.contact)
        )

    async def open(self) -> None:
        """
        Initial load for the conversation.

        Loads history when no offset is saved yet, backfills when a recent
        incoming message exists that the cache has not seen, and starts in
        burst mode after recent incoming activity.
        """
        self.state = "initial_load"
        conversations = self.service.conversations

        if conversations.offset(self.contact) is None:
            try:
                await self._deliver(await self.service.load_initial_history(
                    self.contact, self.initial_history_lines))
            except Exception as e:
                logger.error("Failed initial history load for %s: %s", self.contact, e)

        lookback = self.recent_incoming_lookback_ms
        try:
            recent_incoming = await self.service.has_recent_incoming(self.contact, lookback)
        except Exception as e:
            logger.error("Recent incoming check failed for %s: %s", self.contact, e)
            recent_incoming = False

        if recent_incoming:
            threshold = to_millis(self.clock()) - lookback
            if not self._incoming_in_cache(threshold):
                try:
                    await self._deliver(await self.service.load_initial_history(
                        self.contact, self.backfill_history_lines, force=True))
                except Exception as e:
                    logger.error("Backfill after recent incoming failed for %s: %s", self.contact, e)
            self.schedule.start_burst()

        saved = conversations.offset(self.contact)
        self.offset = saved if saved is not None else to_millis(self.clock())
        self.state = "steady_poll"

    async def poll_once(self) -> int:
        """Run one poll cycle and return the delay in ms before the next one"""
        try:
            new_messages = await self.service.poll_messages(self.contact, self.offset)
            if new_messages:
                self.schedule.start_burst()
                await self._deliver(new_messages)
            saved = self.service.conversations.offset(self.contact)
            if saved is not None:
                self.offset = saved
            self.schedule.record_success()
            self.state = "burst" if self.schedule.burst_remaining else "steady_poll"
        except Exception as e:
            logger.error("Failed to poll messages for %s: %s", self.contact, e)
            self.schedule.record_failure()
            self.state = "backoff"
        return self.schedule.next_delay_ms()

    async def run(self) -> None:
        await self.open()
        delay = 0
        while not self._cancelled:
            await self.sleep(delay / 1000)
            if self._cancelled:
                break
            delay = await self.poll_once()
        self.state = "stopped"

    def start(self) -> asyncio.Task:
        if self._task is None:
            logger.info("Opening conversation with %s", self.contact)
            self._task = asyncio.ensure_future(self.run())
        return self._task

    async def close(self) -> None:
        """Stop polling; a poll in flight is cancelled and never reschedules"""
        self._cancelled = True
        self.state = "stopped"
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Closed conversation with %s", self.contact)
