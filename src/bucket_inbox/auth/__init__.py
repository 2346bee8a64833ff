"""
Seed storage for Bucket Inbox

Keys are always derived from the login seed and never stored. The seed
itself can optionally be kept in the operating system keyring so the
command-line client does not have to prompt for it on every run.
"""

from typing import Optional
import logging

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

logger = logging.getLogger(__name__)


class SeedVault:
    """Stores the login seed for one local profile in the OS keyring"""

    def __init__(self, profile: str = "default"):
        self.profile = profile
        self.service_name = "bucket-inbox"
        self.key_name = f"seed_{profile}"

    def save_seed(self, seed: str) -> bool:
        """Save seed to secure storage"""
        try:
            keyring.set_password(self.service_name, self.key_name, seed)
            return True
        except KeyringError as e:
            logger.error("Error saving seed for %s: %s", self.profile, e)
            return False

    def load_seed(self) -> Optional[str]:
        """Load seed from secure storage"""
        try:
            return keyring.get_password(self.service_name, self.key_name)
        except KeyringError as e:
            logger.error("Error loading seed for %s: %s", self.profile, e)
            return None

    def delete_seed(self) -> bool:
        """Delete seed from secure storage"""
        try:
            keyring.delete_password(self.service_name, self.key_name)
            return True
        except PasswordDeleteError:
            return False
        except KeyringError as e:
            logger.error("Error deleting seed for %s: %s", self.profile, e)
            return False


__all__ = ['SeedVault']
