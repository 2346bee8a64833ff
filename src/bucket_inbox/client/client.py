"""
Bucket Inbox Client

Session facade over the protocol core: login derives the keypair and
bootstraps the user's containers and profile, conversations get their own
poll loops, and logout tears every piece of session state down again.
"""

from typing import Optional, List, Dict, Any
import asyncio
import logging

from ..config import Settings, get_settings
from ..core.keys import KeyPair, derive_keypair, ss58_decode
from ..core.log import ObjectLogStore
from ..core.models import DecryptedMessage, MessageKinds, UserProfile, iso_timestamp, utc_now
from ..core.profiles import ProfileStore
from ..core.storage import Clock, ObjectStore, Sleep, ensure_container, open_object_store
from .poller import ConversationPoller, MessageCallback, PollSchedule
from .sync import MessageSyncService, SyncContext

logger = logging.getLogger(__name__)


class NotLoggedInError(Exception):
    """An operation that needs a session was called before login"""
    pass


class BucketInboxClient:
    """One user's messaging session"""

    def __init__(self, settings: Optional[Settings] = None, store: Optional[ObjectStore] = None,
                 clock: Clock = utc_now, sleep: Sleep = asyncio.sleep):
        self.settings = settings or get_settings()
        self.clock = clock
        self.sleep = sleep
        self._store = store
        self.keypair: Optional[KeyPair] = None
        self.store: Optional[ObjectStore] = None
        self.profiles: Optional[ProfileStore] = None
        self.context: Optional[SyncContext] = None
        self.service: Optional[MessageSyncService] = None
        self.pollers: Dict[str, ConversationPoller] = {}

    @property
    def is_logged_in(self) -> bool:
        return self.service is not None

    def _require_session(self) -> MessageSyncService:
        if self.service is None:
            raise NotLoggedInError("Client not logged in")
        return self.service

    async def login(self, seed: str, address: Optional[str] = None,
                    display_name: Optional[str] = None) -> KeyPair:
        """
        Start a session for ``seed``.

        Ensures the chat and profile containers exist and publishes a
        profile when none exists or the published key no longer matches.
        """
        settings = self.settings
        keypair = derive_keypair(seed, address, settings.ss58_prefix)

        store = self._store or open_object_store(
            settings.storage_uri,
            credentials=keypair.storage_credentials(),
            endpoint_url=settings.s3_endpoint_url,
            region=settings.s3_region,
            clock=self.clock,
        )
        retry_delay = settings.retry_base_delay_ms / 1000
        log_store = ObjectLogStore(store, clock=self.clock, retry_attempts=settings.retry_attempts,
                                   retry_base_delay=retry_delay, sleep=self.sleep)
        profiles = ProfileStore(store, retry_attempts=settings.retry_attempts,
                                retry_base_delay=retry_delay, sleep=self.sleep)

        await ensure_container(store, settings.chat_bucket(keypair.address))
        await ensure_container(store, settings.profile_bucket(keypair.address))

        profile_bucket = settings.profile_bucket(keypair.address)
        current = await profiles.get_profile(profile_bucket)
        if current is None:
            await profiles.put_profile(profile_bucket, UserProfile(
                address=keypair.address,
                pk=keypair.public_key_hex(),
                display_name=display_name or keypair.address[:8],
                updated_at=iso_timestamp(self.clock()),
            ))
        elif current.pk != keypair.public_key_hex():
            logger.warning("Published key for %s is stale, republishing profile", keypair.address)
            await profiles.put_profile(profile_bucket, current.model_copy(update={
                'pk': keypair.public_key_hex(),
                'updated_at': iso_timestamp(self.clock()),
            }))

        self.keypair = keypair
        self.store = store
        self.profiles = profiles
        self.context = SyncContext()
        self.service = MessageSyncService(
            keypair, log_store, profiles, self.context,
            chat_bucket_prefix=settings.chat_bucket_prefix,
            profile_bucket_prefix=settings.profile_bucket_prefix,
            clock=self.clock,
            recent_incoming_sample=settings.recent_incoming_sample,
        )
        logger.info("Logged in as %s", keypair.address)
        return keypair

    async def logout(self) -> None:
        for contact in list(self.pollers):
            await self.close_conversation(contact)
        if self.context is not None:
            self.context.reset()
        self.keypair = None
        self.store = None
        self.profiles = None
        self.context = None
        self.service = None

    async def send_message(self, to: str, content: str,
                           kind: str = MessageKinds.TEXT) -> DecryptedMessage:
        service = self._require_session()
        message = await service.send_message(to, content, kind)
        poller = self.pollers.get(to)
        if poller is not None:
            poller.notify_activity()
        return message

    async def open_conversation(self, contact: str,
                                on_messages: Optional[MessageCallback] = None) -> ConversationPoller:
        """Start the poll loop for ``contact`` (idempotent while open)"""
        service = self._require_session()
        ss58_decode(contact)
        if contact in self.pollers:
            return self.pollers[contact]

        settings = self.settings
        poller = ConversationPoller(
            service,
            contact,
            schedule=PollSchedule(
                base_ms=settings.poll_interval_ms,
                burst_ms=settings.burst_interval_ms,
                burst_polls=settings.burst_polls,
                backoff_ms=settings.error_backoff_ms,
                jitter_ms=settings.error_jitter_ms,
            ),
            on_messages=on_messages,
            initial_history_lines=settings.initial_history_lines,
            backfill_history_lines=settings.backfill_history_lines,
            recent_incoming_lookback_ms=settings.recent_incoming_lookback_ms,
            clock=self.clock,
            sleep=self.sleep,
        )
        self.pollers[contact] = poller
        poller.start()
        return poller

    async def close_conversation(self, contact: str) -> None:
        poller = self.pollers.pop(contact, None)
        if poller is not None:
            await poller.close()

    async def history(self, contact: str, limit: int = 50) -> List[DecryptedMessage]:
        """Recent messages with ``contact``, oldest first"""
        service = self._require_session()
        await service.load_initial_history(contact, max(limit, self.settings.initial_history_lines))
        return service.conversations.messages(contact)[-limit:]

    def messages(self, contact: str) -> List[DecryptedMessage]:
        return self._require_session().conversations.messages(contact)

    async def get_profile(self, address: Optional[str] = None) -> Optional[UserProfile]:
        service = self._require_session()
        return await service.lookup_profile(address or service.address)

    async def update_profile(self, display_name: Optional[str] = None, about: Optional[str] = None,
                             avatar_url: Optional[str] = None) -> UserProfile:
        """Publish a new profile version with the given fields changed"""
        service = self._require_session()
        current = await service.lookup_profile(service.address)
        updates: Dict[str, Any] = {
            'pk': self.keypair.public_key_hex(),
            'updated_at': iso_timestamp(self.clock()),
        }
        if display_name is not None:
            updates['display_name'] = display_name
        if about is not None:
            updates['about'] = about
        if avatar_url is not None:
            updates['avatar_url'] = avatar_url

        if current is None:
            profile = UserProfile(address=service.address,
                                  display_name=updates.pop('display_name', service.address[:8]),
                                  **updates)
        else:
            profile = current.model_copy(update=updates)
        return await self.profiles.put_profile(self.settings.profile_bucket(service.address), profile)

    def get_user_info(self) -> Dict[str, Any]:
        """Get current user information"""
        return {
            'address': self.keypair.address if self.keypair else None,
            'public_key': self.keypair.public_key_hex() if self.keypair else None,
            'storage_uri': self.settings.storage_uri,
            'open_conversations': sorted(self.pollers),
            'logged_in': self.is_logged_in,
        }
