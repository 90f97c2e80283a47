"""AgentGate constants: filesystem layout, sync timing, and limits."""

from __future__ import annotations

from enum import IntEnum

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------


class ExitCode(IntEnum):
    SUCCESS = 0
    ERROR = 1
    CONFIG_ERROR = 2
    NETWORK_ERROR = 4
    POLICY_DENIED = 6


# ---------------------------------------------------------------------------
# Filesystem layout
# ---------------------------------------------------------------------------

AGENTGATE_DIR_NAME = ".agentgate"
CONFIG_FILENAME = "config.toml"
AUDIT_FILENAME = "policy_audit.jsonl"
TELEMETRY_FILENAME = "policy_events.jsonl"

# ---------------------------------------------------------------------------
# Remote policy sync
# ---------------------------------------------------------------------------

DEFAULT_REFRESH_INTERVAL_SECONDS = 300.0  # used when the bundle sets none
MIN_REFRESH_INTERVAL_SECONDS = 10.0  # floor for bundle-supplied refreshIntervalMs
RETRY_BACKOFF_BASE_SECONDS = 5.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0

# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------

VAULT_SERVICE_NAME = "agentgate"
POLICY_AUTH_TOKEN_KEY = "policy_auth_token"
DEV_OVERRIDE_TOKEN_KEY = "policy_dev_override_token"

# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------

MAX_ARG_VALUE_CHARS = 10_000  # longer `value` args escalate to MEDIUM
