"""
Bucket Inbox Client Module

This module contains the client implementation including:
- Session facade
- Message synchronization (send, history, tail polling)
- Per-conversation poll scheduling
- Local conversation state
"""

from .client import BucketInboxClient, NotLoggedInError
from .poller import ConversationPoller, PollSchedule
from .state import ConversationStore
from .sync import MessageSyncService, RecipientProfileNotFound, SyncContext

__all__ = [
    'BucketInboxClient',
    'NotLoggedInError',
    'ConversationPoller',
    'PollSchedule',
    'ConversationStore',
    'MessageSyncService',
    'RecipientProfileNotFound',
    'SyncContext',
]
