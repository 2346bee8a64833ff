from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from bucket_inbox.client.sync import MessageSyncService, SyncContext
from bucket_inbox.core.keys import KeyPair, derive_keypair
from bucket_inbox.core.log import ObjectLogStore
from bucket_inbox.core.models import UserProfile, iso_timestamp
from bucket_inbox.core.profiles import ProfileStore
from bucket_inbox.core.storage import LocalObjectStore, ensure_container

T0 = datetime(2024, 3, 5, 14, 30, tzinfo=timezone.utc)


class FakeClock:
    """Controllable UTC clock"""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, when: datetime) -> None:
        self.now = when


class RecordingSleep:
    """Async sleep replacement that only records the requested delays"""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class ScriptedStore:
    """
    Wraps an object store, recording calls and raising scripted errors.

    ``fail(method, *errors, match=...)`` queues errors for calls of ``method``
    whose bucket or key equals ``match`` (any call when ``match`` is None).
    """

    def __init__(self, inner):
        self.inner = inner
        self.calls: List[Tuple] = []
        self._failures: Dict[Tuple[str, Optional[str]], List[Exception]] = {}

    def fail(self, method: str, *errors: Exception, match: Optional[str] = None) -> None:
        self._failures.setdefault((method, match), []).extend(errors)

    def count(self, method: str, **filters) -> int:
        return sum(
            1 for call in self.calls
            if call[0] == method and all(call[1].get(k) == v for k, v in filters.items())
        )

    def _record(self, method: str, **kwargs) -> None:
        self.calls.append((method, kwargs))
        for target in (kwargs.get('bucket'), kwargs.get('key'), None):
            queue = self._failures.get((method, target))
            if queue:
                raise queue.pop(0)

    async def head_container(self, bucket):
        self._record('head_container', bucket=bucket)
        return await self.inner.head_container(bucket)

    async def create_container(self, bucket):
        self._record('create_container', bucket=bucket)
        return await self.inner.create_container(bucket)

    async def put_object(self, bucket, key, body, content_type="application/octet-stream", metadata=None):
        self._record('put_object', bucket=bucket, key=key, metadata=metadata)
        return await self.inner.put_object(bucket, key, body, content_type=content_type, metadata=metadata)

    async def get_object(self, bucket, key):
        self._record('get_object', bucket=bucket, key=key)
        return await self.inner.get_object(bucket, key)

    async def list_objects(self, bucket, prefix=""):
        self._record('list_objects', bucket=bucket, prefix=prefix)
        return await self.inner.list_objects(bucket, prefix=prefix)

    async def head_object(self, bucket, key):
        self._record('head_object', bucket=bucket, key=key)
        return await self.inner.head_object(bucket, key)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def local_store(tmp_path, clock) -> LocalObjectStore:
    return LocalObjectStore(str(tmp_path / "storage"), clock=clock)


@pytest.fixture
def store(local_store) -> ScriptedStore:
    return ScriptedStore(local_store)


@pytest.fixture
def log_store(store, clock, sleeps) -> ObjectLogStore:
    return ObjectLogStore(store, clock=clock, sleep=sleeps)


@pytest.fixture
def profile_store(store, sleeps) -> ProfileStore:
    return ProfileStore(store, sleep=sleeps)


async def publish_user(store, clock, keypair: KeyPair, display_name: str) -> None:
    await ensure_container(store, f"chat-{keypair.address}")
    await ensure_container(store, f"profile-{keypair.address}")
    await ProfileStore(store).put_profile(f"profile-{keypair.address}", UserProfile(
        address=keypair.address,
        pk=keypair.public_key_hex(),
        display_name=display_name,
        updated_at=iso_timestamp(clock()),
    ))


def make_service(store, clock, sleeps, keypair: KeyPair) -> MessageSyncService:
    return MessageSyncService(
        keypair,
        ObjectLogStore(store, clock=clock, sleep=sleeps),
        ProfileStore(store, sleep=sleeps),
        SyncContext(),
        clock=clock,
    )


@pytest.fixture
def alice_keys() -> KeyPair:
    return derive_keypair("alice test seed")


@pytest.fixture
def bob_keys() -> KeyPair:
    return derive_keypair("bob test seed")


@pytest_asyncio.fixture
async def alice(store, clock, sleeps, alice_keys) -> MessageSyncService:
    await publish_user(store, clock, alice_keys, "Alice")
    return make_service(store, clock, sleeps, alice_keys)


@pytest_asyncio.fixture
async def bob(store, clock, sleeps, bob_keys) -> MessageSyncService:
    await publish_user(store, clock, bob_keys, "Bob")
    return make_service(store, clock, sleeps, bob_keys)
