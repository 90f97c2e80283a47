"""AgentGate exception hierarchy."""

from __future__ import annotations


class AgentGateError(Exception):
    """Base exception for all AgentGate errors."""


class ConfigError(AgentGateError):
    """Raised when the configuration is invalid or cannot be read."""


class ConfigNotFoundError(ConfigError):
    """Raised when the configuration file does not exist."""


class PolicySyncError(AgentGateError):
    """Raised when a remote policy bundle cannot be fetched."""


class BundleValidationError(PolicySyncError):
    """Raised when a fetched policy bundle does not match the schema."""


class VaultError(AgentGateError):
    """Raised when the secret vault cannot be read or written."""
