"""
Local Conversation State

In-memory messages per contact and the per-contact read offsets. One poll
task owns writes for each contact, so no locking is needed here.
"""

from typing import Dict, List, Optional, Set, Iterable

from ..core.models import DecryptedMessage


class ConversationStore:
    """Messages and offsets for the contacts of one session"""

    def __init__(self):
        self._messages: Dict[str, List[DecryptedMessage]] = {}
        self._ids: Dict[str, Set[str]] = {}
        self._offsets: Dict[str, int] = {}

    def messages(self, contact: str) -> List[DecryptedMessage]:
        return list(self._messages.get(contact, []))

    def message_ids(self, contact: str) -> Set[str]:
        return set(self._ids.get(contact, set()))

    def has_message(self, contact: str, msg_id: str) -> bool:
        return msg_id in self._ids.get(contact, set())

    def add_messages(self, contact: str, messages: Iterable[DecryptedMessage]) -> List[DecryptedMessage]:
        """Add messages not already stored; returns the ones actually added"""
        ids = self._ids.setdefault(contact, set())
        stored = self._messages.setdefault(contact, [])
        added = []
        for message in messages:
            if message.msg_id in ids:
                continue
            ids.add(message.msg_id)
            added.append(message)
        if added:
            stored.extend(added)
            stored.sort(key=lambda m: m.timestamp_ms)
        return added

    def offset(self, contact: str) -> Optional[int]:
        return self._offsets.get(contact)

    def update_offset(self, contact: str, offset: int) -> int:
        """Advance the offset for ``contact``; it never moves backward"""
        current = self._offsets.get(contact)
        value = int(offset) if current is None else max(current, int(offset))
        self._offsets[contact] = value
        return value

    def contacts(self) -> List[str]:
        return sorted(set(self._messages) | set(self._offsets))

    def clear(self) -> None:
        self._messages.clear()
        self._ids.clear()
        self._offsets.clear()
