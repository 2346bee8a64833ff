import asyncio
from datetime import timedelta

import pytest

from bucket_inbox.client.sync import RecipientProfileNotFound
from bucket_inbox.core.envelope import encrypt_for, generate_message_id
from bucket_inbox.core.keys import derive_keypair
from bucket_inbox.core.models import Message, iso_timestamp, to_millis
from bucket_inbox.core.storage import AccessDeniedError

from conftest import T0, make_service, publish_user

pytestmark = pytest.mark.asyncio


def sealed_line(clock, sender: str, to: str, recipient_pk: bytes, text: str) -> str:
    ts = iso_timestamp(clock())
    sealed = encrypt_for(recipient_pk, text.encode('utf-8'))
    return Message(
        msg_id=generate_message_id(ts, sender, to, sealed.nonce, sealed.ciphertext),
        ts=ts,
        sender=sender,
        to=to,
        nonce=sealed.nonce,
        ciphertext=sealed.ciphertext,
    ).to_line()


@pytest.fixture
def carol_keys():
    return derive_keypair("carol test seed")


async def test_sent_message_reaches_recipient(alice, bob, clock):
    echo = await alice.send_message(bob.address, "hi")
    assert echo.content == "hi"
    assert echo.sender == alice.address
    assert alice.conversations.messages(bob.address) == [echo]

    clock.advance(seconds=2)
    received = await bob.poll_messages(alice.address, 0)

    assert len(received) == 1
    assert received[0].content == "hi"
    assert received[0].sender == alice.address
    assert received[0].to == bob.address
    assert received[0].msg_id != echo.msg_id
    assert bob.conversations.offset(alice.address) == to_millis(T0)


async def test_self_copy_is_readable_from_own_log(alice, bob, store, clock, sleeps, alice_keys):
    echo = await alice.send_message(bob.address, "hi")

    other_session = make_service(store, clock, sleeps, alice_keys)
    history = await other_session.load_initial_history(bob.address, 100)

    assert [m.msg_id for m in history] == [echo.msg_id]
    assert history[0].content == "hi"


async def test_polling_twice_adds_nothing_new(alice, bob):
    await alice.send_message(bob.address, "hi")
    assert len(await bob.poll_messages(alice.address, 0)) == 1
    assert await bob.poll_messages(alice.address, 0) == []
    assert len(bob.conversations.messages(alice.address)) == 1


async def test_offset_never_moves_backward(alice, bob, clock):
    await alice.send_message(bob.address, "one")
    await bob.poll_messages(alice.address, 0)
    first = bob.conversations.offset(alice.address)

    clock.advance(minutes=3)
    await alice.send_message(bob.address, "two")
    await bob.poll_messages(alice.address, first)
    second = bob.conversations.offset(alice.address)
    assert second == first + 3 * 60 * 1000

    await bob.poll_messages(alice.address, 0)
    assert bob.conversations.offset(alice.address) == second


async def test_send_to_user_without_profile(alice, store, carol_keys):
    with pytest.raises(RecipientProfileNotFound) as excinfo:
        await alice.send_message(carol_keys.address, "hello?")
    assert excinfo.value.address == carol_keys.address
    assert store.count('put_object', bucket=f"chat-{alice.address}") == 0
    assert alice.conversations.messages(carol_keys.address) == []


async def test_partial_send_failure_is_reported(alice, bob, store):
    store.fail('put_object', AccessDeniedError("denied"), match=f"chat-{bob.address}")

    with pytest.raises(AccessDeniedError):
        await alice.send_message(bob.address, "hi")

    own_log = await alice.log_store.recent_lines(f"chat-{alice.address}", 10)
    assert len(own_log.lines) == 1
    assert alice.conversations.messages(bob.address) == []


async def test_history_is_filtered_by_contact(alice, bob, store, clock, sleeps, bob_keys, carol_keys):
    await publish_user(store, clock, carol_keys, "Carol")
    carol = make_service(store, clock, sleeps, carol_keys)
    await alice.send_message(bob.address, "from alice")
    clock.advance(seconds=1)
    await carol.send_message(bob.address, "from carol")
    clock.advance(seconds=1)
    await bob.send_message(alice.address, "to alice")

    reader = make_service(store, clock, sleeps, bob_keys)
    history = await reader.load_initial_history(alice.address, 100)

    assert [m.content for m in history] == ["from alice", "to alice"]
    assert all(m.is_between(bob.address, alice.address) for m in history)


async def test_initial_history_loads_once_per_contact(alice, bob, store):
    await alice.send_message(bob.address, "hi")
    bucket = f"chat-{bob.address}"

    assert len(await bob.load_initial_history(alice.address, 100)) == 1
    assert alice.address in bob.context.completed
    lists = store.count('list_objects', bucket=bucket, prefix="inbox-")

    assert await bob.load_initial_history(alice.address, 100) == []
    assert store.count('list_objects', bucket=bucket, prefix="inbox-") == lists

    assert await bob.load_initial_history(alice.address, 100, force=True) == []
    assert store.count('list_objects', bucket=bucket, prefix="inbox-") == lists + 1


async def test_concurrent_initial_loads_share_one_fetch(alice, bob, store):
    await alice.send_message(bob.address, "hi")
    bucket = f"chat-{bob.address}"
    before = store.count('list_objects', bucket=bucket, prefix="inbox-")

    first, second = await asyncio.gather(
        bob.load_initial_history(alice.address, 100),
        bob.load_initial_history(alice.address, 100),
    )

    assert store.count('list_objects', bucket=bucket, prefix="inbox-") == before + 1
    assert [m.msg_id for m in first] == [m.msg_id for m in second]
    assert len(bob.conversations.messages(alice.address)) == 1
    assert bob.context.in_flight == {}


async def test_malformed_lines_are_skipped(alice, bob):
    await bob.log_store.append_line(f"chat-{bob.address}", "not json at all")
    await bob.log_store.append_line(f"chat-{bob.address}", '{"v":1,"from":"x"}')
    await alice.send_message(bob.address, "still works")

    received = await bob.poll_messages(alice.address, 0)
    assert [m.content for m in received] == ["still works"]


async def test_undecryptable_message_is_kept_with_no_content(alice, bob, clock, carol_keys):
    line = sealed_line(clock, alice.address, bob.address, carol_keys.public_key, "not for bob")
    await bob.log_store.append_line(f"chat-{bob.address}", line)

    received = await bob.poll_messages(alice.address, 0)

    assert len(received) == 1
    assert received[0].undecryptable
    assert received[0].content is None


async def test_sender_without_profile_is_skipped(bob, clock, carol_keys, bob_keys):
    line = sealed_line(clock, carol_keys.address, bob.address, bob_keys.public_key, "hi bob")
    await bob.log_store.append_line(f"chat-{bob.address}", line)

    assert await bob.poll_messages(carol_keys.address, 0) == []


async def test_recent_incoming_detection(alice, bob, clock, carol_keys):
    await alice.send_message(bob.address, "ping")

    clock.advance(minutes=5)
    assert await bob.has_recent_incoming(alice.address, 10 * 60 * 1000) is True
    assert await bob.has_recent_incoming(carol_keys.address, 10 * 60 * 1000) is False
    # our own outgoing messages do not count
    assert await alice.has_recent_incoming(bob.address, 10 * 60 * 1000) is False

    clock.advance(minutes=20)
    assert await bob.has_recent_incoming(alice.address, 10 * 60 * 1000) is False


async def test_recent_incoming_on_storage_failure(bob, store, alice_keys):
    store.fail('list_objects', AccessDeniedError("denied"), match=f"chat-{bob.address}")
    assert await bob.has_recent_incoming(alice_keys.address, 60000) is False


async def test_undecodable_bytes_in_segment_are_skipped(alice, bob, store, clock, sleeps, bob_keys):
    await store.put_object(f"chat-{bob.address}", "inbox-2024030514.log", b"\xff\n",
                           metadata={'append': 'true', 'append-id': 'garbage'})
    await alice.send_message(bob.address, "hi")

    received = await bob.poll_messages(alice.address, 0)
    assert [m.content for m in received] == ["hi"]

    history = await make_service(store, clock, sleeps, bob_keys).load_initial_history(alice.address, 10)
    assert [m.content for m in history] == ["hi"]


async def test_sender_with_invalid_profile_is_skipped(bob, store, clock, carol_keys, bob_keys):
    await store.create_container(f"profile-{carol_keys.address}")
    await store.put_object(f"profile-{carol_keys.address}", "profile-2024-03-05T14:30:00.000Z.json",
                           b'{"v":1,"address":"carol","pk":"abcd","displayName":"Carol"}')
    line = sealed_line(clock, carol_keys.address, bob.address, bob_keys.public_key, "hi bob")
    await bob.log_store.append_line(f"chat-{bob.address}", line)

    assert await bob.poll_messages(carol_keys.address, 0) == []
