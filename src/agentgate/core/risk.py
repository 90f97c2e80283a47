"""
Deterministic risk classifier for agent tool calls.

Classifies a requested action from static lookup tables only:
  - the tool being invoked
  - the target domain
  - (optionally) the shape of the call arguments

No heuristics learned from data, no I/O. Given identical inputs the
classifier always produces identical output, so it is safe to call on
every evaluation without caching.
"""

from __future__ import annotations

import json
import re
from enum import StrEnum
from typing import Any
from urllib.parse import urlsplit

from agentgate.core.constants import MAX_ARG_VALUE_CHARS


class RiskLevel(StrEnum):
    """Risk classification levels, ordered LOW → HIGH."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_ORDER[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank >= other.rank


_RISK_ORDER: dict[RiskLevel, int] = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
}


def risk_from_str(value: str) -> RiskLevel:
    """Parse a risk level string (case-insensitive). Raises ValueError if unknown."""
    try:
        return RiskLevel(value.strip().lower())
    except ValueError:
        raise ValueError(f"Unknown risk level {value!r} (expected low, medium, high)") from None


# ---------------------------------------------------------------------------
# Static tables
# ---------------------------------------------------------------------------

TOOL_RISK_LEVELS: dict[str, RiskLevel] = {
    # Observation
    "browser_observe": RiskLevel.LOW,
    "browser_get_page_info": RiskLevel.LOW,
    # Navigation
    "browser_navigate": RiskLevel.LOW,
    "browser_go_back": RiskLevel.LOW,
    "browser_go_forward": RiskLevel.LOW,
    "browser_reload": RiskLevel.LOW,
    # Page interaction
    "browser_click": RiskLevel.MEDIUM,
    "browser_type": RiskLevel.MEDIUM,
    "browser_select": RiskLevel.MEDIUM,
    "browser_scroll": RiskLevel.MEDIUM,
    "browser_hover": RiskLevel.MEDIUM,
    "browser_drag": RiskLevel.MEDIUM,
    "browser_take_screenshot": RiskLevel.MEDIUM,
    # Forms
    "browser_fill_form": RiskLevel.MEDIUM,
    "browser_submit_form": RiskLevel.MEDIUM,
    "browser_clear_form": RiskLevel.MEDIUM,
    "browser_upload_file": RiskLevel.HIGH,
    # Multi-step / scripted
    "browser_execute_plan": RiskLevel.HIGH,
    "browser_execute_script": RiskLevel.HIGH,
    # SaaS connectors
    "jira_create_issue": RiskLevel.HIGH,
    "jira_update_issue": RiskLevel.MEDIUM,
    "jira_delete_issue": RiskLevel.HIGH,
    "confluence_create_page": RiskLevel.HIGH,
    "confluence_update_page": RiskLevel.MEDIUM,
    "confluence_delete_page": RiskLevel.HIGH,
    "trello_create_card": RiskLevel.MEDIUM,
    "trello_move_card": RiskLevel.MEDIUM,
    "trello_delete_card": RiskLevel.HIGH,
    # Code and files
    "code_read_file": RiskLevel.LOW,
    "code_list_files": RiskLevel.LOW,
    "code_search": RiskLevel.LOW,
    "code_execute": RiskLevel.HIGH,
    "code_write_file": RiskLevel.HIGH,
    "code_delete_file": RiskLevel.HIGH,
    # System
    "system_execute": RiskLevel.HIGH,
    "system_write_file": RiskLevel.HIGH,
    "system_delete_file": RiskLevel.HIGH,
}

DOMAIN_RISK_LEVELS: dict[str, RiskLevel] = {
    # Local development
    "localhost": RiskLevel.LOW,
    "127.0.0.1": RiskLevel.LOW,
    "0.0.0.0": RiskLevel.LOW,
    "localhost:3000": RiskLevel.LOW,
    # Sandboxed mock SaaS
    "mock-saas.com": RiskLevel.LOW,
    # Documentation
    "docs.example.com": RiskLevel.LOW,
    "help.example.com": RiskLevel.LOW,
    "stackoverflow.com": RiskLevel.LOW,
    "google.com": RiskLevel.LOW,
    # Production surfaces
    "app.example.com": RiskLevel.MEDIUM,
    "api.example.com": RiskLevel.MEDIUM,
    "github.com": RiskLevel.MEDIUM,
    "admin.example.com": RiskLevel.HIGH,
}

_SENSITIVE_ARG_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"password",
        r"token",
        r"secret",
        r"api[_-]?key",
        r"drop\s+table",
        r"rm\s+-rf",
        r"\bsudo\b",
    )
)


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


class RiskClassifier:
    """Static-table risk classification.

    Unknown tools and unknown (or empty) domains classify as MEDIUM.

    The default tables can be replaced per instance; the module-level
    tables are never mutated.
    """

    def __init__(
        self,
        tool_risks: dict[str, RiskLevel] | None = None,
        domain_risks: dict[str, RiskLevel] | None = None,
    ) -> None:
        self._tool_risks = dict(TOOL_RISK_LEVELS if tool_risks is None else tool_risks)
        self._domain_risks = dict(DOMAIN_RISK_LEVELS if domain_risks is None else domain_risks)

    def tool_risk(self, tool_name: str) -> RiskLevel:
        return self._tool_risks.get(tool_name, RiskLevel.MEDIUM)

    def domain_risk(self, domain: str) -> RiskLevel:
        if not domain:
            return RiskLevel.MEDIUM
        return self._domain_risks.get(domain.strip().lower(), RiskLevel.MEDIUM)

    def effective_risk(self, tool_name: str, domain: str) -> RiskLevel:
        """Return ``max(tool_risk, domain_risk)``."""
        return max(self.tool_risk(tool_name), self.domain_risk(domain))

    def args_risk(self, tool_name: str, args: dict[str, Any] | None) -> RiskLevel:
        """Escalation level derived from the call arguments.

        Rules (highest wins):
          1. HIGH   — navigation (direct or as a plan step) to an unknown or
                      HIGH-risk host, or to an unparseable URL
          2. HIGH   — serialized args contain a sensitive pattern
          3. MEDIUM — a ``value`` argument longer than MAX_ARG_VALUE_CHARS
          4. LOW    — everything else
        """
        if not isinstance(args, dict) or not args:
            return RiskLevel.LOW

        if tool_name == "browser_navigate" and isinstance(args.get("url"), str):
            if self._risky_navigation(args["url"]):
                return RiskLevel.HIGH

        if tool_name == "browser_execute_plan":
            steps = args.get("steps")
            if isinstance(steps, list):
                for step in steps:
                    if not isinstance(step, dict) or step.get("action") != "navigate":
                        continue
                    url = step.get("url")
                    if isinstance(url, str) and self._risky_navigation(url):
                        return RiskLevel.HIGH

        try:
            serialized = json.dumps(args, default=str, sort_keys=True)
        except (TypeError, ValueError, RecursionError):
            serialized = repr(args)
        if any(p.search(serialized) for p in _SENSITIVE_ARG_PATTERNS):
            return RiskLevel.HIGH

        value = args.get("value")
        if isinstance(value, str) and len(value) > MAX_ARG_VALUE_CHARS:
            return RiskLevel.MEDIUM

        return RiskLevel.LOW

    def _risky_navigation(self, url: str) -> bool:
        host = host_from_url(url)
        if host is None:
            return True
        known = self._domain_risks.get(host)
        return known is None or known == RiskLevel.HIGH


def host_from_url(url: str) -> str | None:
    """Return ``hostname[:port]`` for an absolute URL, or None if unparseable."""
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
        port = parts.port
    except ValueError:
        return None
    if not parts.scheme or not hostname:
        return None
    return f"{hostname}:{port}" if port else hostname
