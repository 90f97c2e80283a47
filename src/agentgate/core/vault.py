"""
Secret vault — OS keyring storage for policy credentials.

The policy sync manager never holds the remote-policy auth token itself;
it stores the token here and resolves it for the duration of one request.

Usage::

    vault = KeyringVault()
    vault.set_secret("policy_auth_token", token)
    token = vault.get_secret("policy_auth_token")
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from agentgate.core.constants import VAULT_SERVICE_NAME
from agentgate.core.exceptions import VaultError

logger = logging.getLogger(__name__)


class VaultService(ABC):
    """Get/set/delete secrets by account key."""

    @abstractmethod
    def get_secret(self, account: str) -> str | None:
        """Return the stored secret, or None if the account has none."""
        ...

    @abstractmethod
    def set_secret(self, account: str, secret: str) -> None: ...

    @abstractmethod
    def delete_secret(self, account: str) -> bool:
        """Delete the secret. Returns True if something was removed."""
        ...


class KeyringVault(VaultService):
    """Vault backed by the ``keyring`` library (macOS Keychain, Secret Service, ...).

    Backend errors are raised as :class:`VaultError`.
    """

    def __init__(self, service_name: str = VAULT_SERVICE_NAME) -> None:
        self.service_name = service_name

    def get_secret(self, account: str) -> str | None:
        import keyring

        try:
            return keyring.get_password(self.service_name, account)
        except Exception as exc:
            raise VaultError(f"Cannot read {account!r} from keyring: {exc}") from exc

    def set_secret(self, account: str, secret: str) -> None:
        import keyring

        try:
            keyring.set_password(self.service_name, account, secret)
        except Exception as exc:
            raise VaultError(f"Cannot write {account!r} to keyring: {exc}") from exc
        logger.debug("Stored secret for %s/%s", self.service_name, account)

    def delete_secret(self, account: str) -> bool:
        import keyring
        from keyring.errors import PasswordDeleteError

        try:
            keyring.delete_password(self.service_name, account)
        except PasswordDeleteError:
            return False
        except Exception as exc:
            raise VaultError(f"Cannot delete {account!r} from keyring: {exc}") from exc
        return True
