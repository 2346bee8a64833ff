"""
Message Synchronization

Sends messages into the recipient's and the sender's own inbox logs, loads
recent history when a conversation is first opened and follows the log
tail afterwards. Deduplication is by content-addressed message id; offsets
are per-contact last-modified high-water marks.
"""

from typing import Dict, List, Optional, Set
import asyncio
import logging

from ..core.envelope import EnvelopeError, decrypt_from, encrypt_for, generate_message_id
from ..core.keys import KeyPair
from ..core.log import ObjectLogStore
from ..core.models import (
    DecryptedMessage,
    MalformedLineError,
    Message,
    MessageKinds,
    MessageMeta,
    UserProfile,
    iso_timestamp,
    to_millis,
    utc_now,
)
from ..core.profiles import ProfileStore
from ..core.storage import Clock, StorageError
from .state import ConversationStore

logger = logging.getLogger(__name__)


class RecipientProfileNotFound(Exception):
    """The recipient has not published a profile, so no key to encrypt for"""

    def __init__(self, address: str):
        super().__init__(f"Recipient profile not found: {address}")
        self.address = address


class SyncContext:
    """
    Per-session synchronization state.

    Owns the local conversation store, the in-flight initial history loads
    keyed by contact address and the set of contacts whose initial load has
    completed. Built at login and torn down at logout.
    """

    def __init__(self, conversations: Optional[ConversationStore] = None):
        self.conversations = conversations or ConversationStore()
        self.in_flight: Dict[str, asyncio.Task] = {}
        self.completed: Set[str] = set()

    def reset(self) -> None:
        for task in self.in_flight.values():
            task.cancel()
        self.in_flight.clear()
        self.completed.clear()
        self.conversations.clear()


class MessageSyncService:
    """Send, initial history load and tail polling for one logged-in user"""

    def __init__(self, keypair: KeyPair, log_store: ObjectLogStore, profile_store: ProfileStore,
                 context: Optional[SyncContext] = None, chat_bucket_prefix: str = "chat-",
                 profile_bucket_prefix: str = "profile-", clock: Clock = utc_now,
                 recent_incoming_sample: int = 50):
        self.keypair = keypair
        self.log_store = log_store
        self.profile_store = profile_store
        self.context = context or SyncContext()
        self.chat_bucket_prefix = chat_bucket_prefix
        self.profile_bucket_prefix = profile_bucket_prefix
        self.clock = clock
        self.recent_incoming_sample = recent_incoming_sample

    @property
    def address(self) -> str:
        return self.keypair.address

    @property
    def conversations(self) -> ConversationStore:
        return self.context.conversations

    def chat_bucket(self, address: str) -> str:
        return f"{self.chat_bucket_prefix}{address}"

    def profile_bucket(self, address: str) -> str:
        return f"{self.profile_bucket_prefix}{address}"

    async def lookup_profile(self, address: str) -> Optional[UserProfile]:
        return await self.profile_store.get_profile(self.profile_bucket(address))

    def _build_message(self, ts: str, to: str, nonce: str, ciphertext: str, kind: str) -> Message:
        return Message(
            msg_id=generate_message_id(ts, self.address, to, nonce, ciphertext),
            ts=ts,
            sender=self.address,
            to=to,
            nonce=nonce,
            ciphertext=ciphertext,
            media=None,
            meta=MessageMeta(t=kind),
        )

    async def send_message(self, to: str, content: str, kind: str = MessageKinds.TEXT) -> DecryptedMessage:
        """
        Seal ``content`` for ``to`` and for ourselves, and append both lines.

        The recipient-bound line goes to the recipient's log, the self-copy
        to our own. Both appends are attempted; the first failure is
        re-raised afterwards. Returns the self-copy with its plaintext for
        immediate local echo.
        """
        logger.debug("[send] to=%s kind=%s", to, kind)
        recipient = await self.lookup_profile(to)
        if recipient is None:
            raise RecipientProfileNotFound(to)

        plaintext = content.encode('utf-8')
        for_recipient = encrypt_for(recipient.public_key_bytes(), plaintext)
        for_self = encrypt_for(self.keypair.public_key, plaintext)

        ts = iso_timestamp(self.clock())
        recipient_message = self._build_message(ts, to, for_recipient.nonce, for_recipient.ciphertext, kind)
        self_message = self._build_message(ts, to, for_self.nonce, for_self.ciphertext, kind)

        results = await asyncio.gather(
            self.log_store.append_line(self.chat_bucket(to), recipient_message.to_line()),
            self.log_store.append_line(self.chat_bucket(self.address), self_message.to_line()),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                logger.error("Failed to send message to %s: %s", to, result)
                raise result

        echo = DecryptedMessage.from_message(self_message, content)
        self.conversations.add_messages(to, [echo])
        return echo

    async def _sender_profile(self, address: str,
                              cache: Dict[str, Optional[UserProfile]]) -> Optional[UserProfile]:
        if address not in cache:
            cache[address] = await self.lookup_profile(address)
        return cache[address]

    async def _decode_lines(self, contact: str, lines: List[str]) -> List[DecryptedMessage]:
        """
        Parse, filter, decrypt and deduplicate raw log lines for ``contact``.

        Malformed lines and lines whose sender has no profile are skipped.
        A line that fails to decrypt is kept with ``content=None``.
        """
        known_ids = self.conversations.message_ids(contact)
        profiles: Dict[str, Optional[UserProfile]] = {}
        messages: List[DecryptedMessage] = []

        for line in lines:
            try:
                message = Message.from_line(line)
            except MalformedLineError as e:
                logger.warning("Skipping malformed line: %s", e)
                continue

            if not message.is_between(self.address, contact):
                continue
            if message.msg_id in known_ids:
                continue

            try:
                sender = await self._sender_profile(message.sender, profiles)
            except StorageError as e:
                logger.warning("Skipping %s: sender profile lookup failed: %s", message.msg_id, e)
                continue
            if sender is None:
                logger.warning("Skipping %s: sender profile not found for %s", message.msg_id, message.sender)
                continue

            try:
                content = decrypt_from(self.keypair.secret_key, message.encrypted).decode('utf-8')
            except (EnvelopeError, UnicodeDecodeError) as e:
                logger.warning("Could not decrypt %s from %s: %s", message.msg_id, message.sender, e)
                content = None

            messages.append(DecryptedMessage.from_message(message, content))
            known_ids.add(message.msg_id)

        messages.sort(key=lambda m: m.timestamp_ms)
        return messages

    async def load_initial_history(self, contact: str, max_lines: int,
                                   force: bool = False) -> List[DecryptedMessage]:
        """
        Load the recent history of the conversation with ``contact``.

        Runs at most once per contact per session unless ``force`` is set;
        concurrent callers for the same contact share one fetch.
        """
        context = self.context
        if not force and contact in context.completed:
            logger.debug("[history] already loaded for %s", contact)
            return []

        task = context.in_flight.get(contact)
        if task is None:
            task = asyncio.ensure_future(self._load_history(contact, max_lines))
            context.in_flight[contact] = task
            task.add_done_callback(lambda t: context.in_flight.pop(contact, None)
                                   if context.in_flight.get(contact) is t else None)
        return await asyncio.shield(task)

    async def _load_history(self, contact: str, max_lines: int) -> List[DecryptedMessage]:
        try:
            batch = await self.log_store.recent_lines(self.chat_bucket(self.address), max_lines)
            messages = await self._decode_lines(contact, batch.lines)
            added = self.conversations.add_messages(contact, messages)
            self.conversations.update_offset(contact, batch.new_offset)
            self.context.completed.add(contact)
            logger.debug("[history] %s lines=%d added=%d offset=%d",
                         contact, len(batch.lines), len(added), batch.new_offset)
            return added
        except Exception as e:
            logger.error("Failed to load initial history for %s: %s", contact, e)
            raise

    async def poll_messages(self, contact: str, from_offset: int) -> List[DecryptedMessage]:
        """
        Fetch lines newer than ``from_offset`` and return the new messages.

        The persisted offset folds in the newest message timestamp, so clock
        skew between the store and the writers cannot move it backward.
        """
        batch = await self.log_store.tail_since(self.chat_bucket(self.address), from_offset)
        messages = await self._decode_lines(contact, batch.lines)

        max_message_ts = max((m.timestamp_ms for m in messages), default=0)
        best_offset = max(batch.new_offset or 0, max_message_ts, from_offset or 0)

        added = self.conversations.add_messages(contact, messages)
        persisted = self.conversations.update_offset(contact, best_offset)
        logger.debug("[poll] %s lines=%d new=%d offset=%d", contact, len(batch.lines), len(added), persisted)
        return added

    async def has_recent_incoming(self, contact: str, lookback_ms: int) -> bool:
        """True when a message from ``contact`` to us arrived within the last ``lookback_ms``"""
        try:
            batch = await self.log_store.recent_lines(self.chat_bucket(self.address),
                                                      self.recent_incoming_sample)
        except StorageError as e:
            logger.error("[recent-incoming] failed: %s", e)
            return False

        now_ms = to_millis(self.clock())
        threshold = now_ms - max(0, lookback_ms)
        found = False
        for line in batch.lines:
            try:
                message = Message.from_line(line)
            except MalformedLineError:
                continue
            if message.to != self.address or message.sender != contact:
                continue
            if threshold <= message.timestamp_ms <= now_ms:
                found = True
                break

        logger.debug("[recent-incoming] contact=%s lookback=%d found=%s", contact, lookback_ms, found)
        return found
