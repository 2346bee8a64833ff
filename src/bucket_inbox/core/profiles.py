"""
Versioned Profile Storage

Every profile update is written as a new ``profile-<updatedAt>.json``
object; nothing is overwritten. The current profile is whichever object was
modified most recently.
"""

from typing import Awaitable, Callable, Optional, TypeVar
import asyncio
import logging

from pydantic import ValidationError

from .models import UserProfile, iso_timestamp, parse_timestamp, utc_now
from .storage import ObjectNotFoundError, ObjectStore, Sleep, with_retries

logger = logging.getLogger(__name__)

T = TypeVar('T')

PROFILE_PREFIX = "profile-"


def profile_key_for(updated_at: str) -> str:
    return f"{PROFILE_PREFIX}{updated_at}.json"


class ProfileStore:
    """Publishes and resolves user profiles"""

    def __init__(self, store: ObjectStore, retry_attempts: int = 3,
                 retry_base_delay: float = 0.3, sleep: Sleep = asyncio.sleep):
        self.store = store
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.sleep = sleep

    async def _retry(self, operation: Callable[[], Awaitable[T]], label: str) -> T:
        return await with_retries(operation, label, attempts=self.retry_attempts,
                                  base_delay=self.retry_base_delay, sleep=self.sleep)

    async def get_profile(self, bucket: str) -> Optional[UserProfile]:
        """Latest profile in ``bucket``, or None when none has been published"""
        try:
            listed = await self._retry(lambda: self.store.list_objects(bucket, prefix=PROFILE_PREFIX),
                                       f"ListObjects {bucket}/{PROFILE_PREFIX}")
        except ObjectNotFoundError:
            logger.debug("No profile container %s", bucket)
            return None
        if not listed:
            return None

        latest = max(listed, key=lambda obj: obj.last_modified_ms)
        obj = await self._retry(lambda: self.store.get_object(bucket, latest.key),
                                f"GetObject {bucket}/{latest.key}")
        try:
            return UserProfile.from_json(obj.text())
        except ValidationError as e:
            logger.warning("Unusable profile %s/%s: %s", bucket, latest.key, e)
            return None

    async def put_profile(self, bucket: str, profile: UserProfile) -> UserProfile:
        """Write ``profile`` as a new version keyed by its normalized ``updatedAt``"""
        try:
            updated_at = iso_timestamp(parse_timestamp(profile.updated_at))
        except ValueError:
            updated_at = iso_timestamp(utc_now())

        stored = profile.model_copy(update={'updated_at': updated_at})
        key = profile_key_for(updated_at)
        body = stored.to_json().encode('utf-8')
        await self._retry(
            lambda: self.store.put_object(bucket, key, body,
                                          content_type='application/json; charset=utf-8'),
            f"PutObject {bucket}/{key}",
        )
        logger.info("Published profile %s for %s", key, profile.address)
        return stored
