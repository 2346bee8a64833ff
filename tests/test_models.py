import json

import pytest
from pydantic import ValidationError

from bucket_inbox.core.models import (
    DecryptedMessage,
    MalformedLineError,
    Message,
    MessageKinds,
    UserProfile,
    iso_timestamp,
    parse_timestamp,
    to_millis,
)

from conftest import T0

LINE = ('{"v":1,"msg_id":"abc","ts":"2024-03-05T14:30:00.000Z","from":"alice","to":"bob",'
        '"nonce":"bm9uY2U=","ciphertext":"Y2lwaGVy","media":null,"meta":{"t":"text"}}')


def test_message_line_preserves_wire_format():
    message = Message.from_line(LINE)
    assert message.sender == "alice"
    assert message.kind == MessageKinds.TEXT
    assert message.to_line() == LINE


def test_message_direction_filter():
    message = Message.from_line(LINE)
    assert message.is_between("bob", "alice")
    assert message.is_between("alice", "bob")
    assert not message.is_between("bob", "carol")
    assert not message.is_between("carol", "alice")


def test_malformed_lines():
    for line in ("not json", '{"v":1}', LINE.replace("2024-03-05T14:30:00.000Z", "yesterday")):
        with pytest.raises(MalformedLineError):
            Message.from_line(line)


def test_timestamps():
    assert iso_timestamp(T0) == "2024-03-05T14:30:00.000Z"
    assert parse_timestamp("2024-03-05T14:30:00.000Z") == T0
    assert to_millis(T0) == 1709649000000
    assert Message.from_line(LINE).timestamp_ms == 1709649000000


def test_decrypted_message_keeps_content_off_the_wire():
    message = DecryptedMessage.from_message(Message.from_line(LINE), "hi")
    assert message.content == "hi"
    assert not message.undecryptable
    assert "content" not in json.loads(message.to_line())
    assert DecryptedMessage.from_message(message, None).undecryptable


def test_profile_uses_camel_case_on_the_wire():
    profile = UserProfile(address="alice", pk="ab" * 32, display_name="Alice",
                          updated_at="2024-03-05T14:30:00.000Z")
    data = json.loads(profile.to_json())
    assert data == {
        "v": 1,
        "address": "alice",
        "pk": "ab" * 32,
        "displayName": "Alice",
        "updatedAt": "2024-03-05T14:30:00.000Z",
    }
    assert UserProfile.from_json(profile.to_json()) == profile
    assert profile.public_key_bytes() == b"\xab" * 32


def test_profile_rejects_bad_public_key():
    with pytest.raises(ValidationError):
        UserProfile(address="alice", pk="abcd", display_name="Alice")
    with pytest.raises(ValidationError):
        UserProfile(address="alice", pk="zz" * 32, display_name="Alice")
