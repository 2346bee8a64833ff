"""
Wire Models for the Bucket Inbox Protocol

This module defines the persisted and transmitted JSON records: inbox
message lines, user profiles and sealed payloads. Field names and key order
follow the wire format exactly so that lines written by other clients parse
and re-serialize unchanged.
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
import json

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class MalformedLineError(ValueError):
    """A log line that is not a valid message record"""
    pass


class MessageKinds:
    """Constants for the message kind carried in ``meta.t``"""

    TEXT = "text"
    IMAGE = "image"


# Timestamp helpers

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_timestamp(dt: datetime) -> str:
    """Format as ISO-8601 with millisecond precision and a ``Z`` suffix"""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC"""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_millis(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def from_millis(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


class EncryptedMessage(BaseModel):
    """Sealed payload: base64 nonce and base64 (ephemeral public key || box)"""

    nonce: str
    ciphertext: str


class MessageMeta(BaseModel):
    t: str = Field(default=MessageKinds.TEXT, description="Message kind")


class Message(BaseModel):
    """
    One inbox line.

    ``msg_id`` is the content hash of ``ts|from|to|nonce|ciphertext`` so two
    lines with identical fields always carry the same id.
    """

    model_config = ConfigDict(populate_by_name=True)

    v: int = 1
    msg_id: str
    ts: str
    sender: str = Field(..., alias="from")
    to: str
    nonce: str
    ciphertext: str
    media: Optional[str] = None
    meta: MessageMeta = Field(default_factory=MessageMeta)

    @field_validator('ts')
    @classmethod
    def validate_ts(cls, v):
        parse_timestamp(v)
        return v

    @property
    def timestamp_ms(self) -> int:
        return to_millis(parse_timestamp(self.ts))

    @property
    def kind(self) -> str:
        return self.meta.t

    @property
    def encrypted(self) -> EncryptedMessage:
        return EncryptedMessage(nonce=self.nonce, ciphertext=self.ciphertext)

    def is_between(self, self_address: str, contact: str) -> bool:
        """True for lines exchanged between ``self_address`` and ``contact`` in either direction"""
        incoming = self.to == self_address and self.sender == contact
        outgoing = self.sender == self_address and self.to == contact
        return incoming or outgoing

    def to_line(self) -> str:
        """Serialize as a compact JSON line (no trailing newline)"""
        return json.dumps(self.to_wire(), separators=(',', ':'), ensure_ascii=False)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "v": self.v,
            "msg_id": self.msg_id,
            "ts": self.ts,
            "from": self.sender,
            "to": self.to,
            "nonce": self.nonce,
            "ciphertext": self.ciphertext,
            "media": self.media,
            "meta": self.meta.model_dump(),
        }

    @classmethod
    def from_line(cls, line: str) -> 'Message':
        try:
            return cls.model_validate_json(line.strip())
        except (ValidationError, ValueError) as e:
            raise MalformedLineError(f"Malformed inbox line: {e}") from e


class DecryptedMessage(Message):
    """A message with its plaintext attached; ``content`` is None when undecryptable"""

    content: Optional[str] = Field(default=None, exclude=True)

    @property
    def undecryptable(self) -> bool:
        return self.content is None

    @classmethod
    def from_message(cls, message: Message, content: Optional[str]) -> 'DecryptedMessage':
        return cls.model_validate({**message.to_wire(), "content": content})


class UserProfile(BaseModel):
    """
    Public profile of a user.

    Profiles are immutable once written; each update is stored as a new
    object and the current profile is the most recently modified one.
    """

    model_config = ConfigDict(populate_by_name=True)

    v: int = 1
    address: str
    pk: str = Field(..., description="Hex-encoded X25519 public key")
    display_name: str = Field(..., alias="displayName")
    avatar_key: Optional[str] = Field(None, alias="avatarKey")
    avatar_url: Optional[str] = Field(None, alias="avatarUrl")
    about: Optional[str] = None
    updated_at: str = Field(default_factory=lambda: iso_timestamp(utc_now()), alias="updatedAt")

    @field_validator('pk')
    @classmethod
    def validate_pk(cls, v):
        try:
            raw = bytes.fromhex(v)
        except ValueError:
            raise ValueError("pk must be hex encoded")
        if len(raw) != 32:
            raise ValueError("pk must encode 32 bytes")
        return v.lower()

    @field_validator('updated_at')
    @classmethod
    def validate_updated_at(cls, v):
        parse_timestamp(v)
        return v

    def public_key_bytes(self) -> bytes:
        return bytes.fromhex(self.pk)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, text: str) -> 'UserProfile':
        return cls.model_validate_json(text)
