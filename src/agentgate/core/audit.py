"""
Policy audit log — append-only JSONL record of every evaluation.

Every EvaluationResult the engine produces (ALLOW, DENY and
NEEDS_APPROVAL alike) is handed to an :class:`AuditService`. The default
file-backed implementation writes one JSON object per line to
``~/.agentgate/policy_audit.jsonl``. Entries are never modified or deleted.

Usage::

    audit = JsonlAuditLog(path)
    audit.log({"action": "policy_evaluation", "decision": "deny", ...})

    for entry in audit.tail(n=20):
        print(entry)
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class AuditService(ABC):
    """Fire-and-forget audit sink.

    ``log()`` must not raise and must not block on anything slower than a
    local append; the evaluation path calls it inline.
    """

    @abstractmethod
    def log(self, entry: dict[str, Any]) -> None: ...


class DisabledAuditLog(AuditService):
    """No-op audit sink used when auditing is disabled."""

    def log(self, entry: dict[str, Any]) -> None:
        pass


class JsonlAuditLog(AuditService):
    """
    Append-only JSONL writer for policy evaluations.

    Thread-safe within one process (appends are serialised by a lock).
    Not safe for concurrent multi-process writes without an external lock.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    def log(self, entry: dict[str, Any]) -> None:
        """Append one entry to the audit file."""
        try:
            line = json.dumps(entry, default=str, sort_keys=True)
            with self._lock, self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        except (OSError, TypeError, ValueError) as exc:
            # Audit write failure must never affect the decision
            logger.error("JsonlAuditLog: failed to write to %s: %s", self.path, exc)

    def tail(self, n: int = 50) -> list[dict[str, Any]]:
        """Return the last ``n`` entries as dicts (oldest first)."""
        if not self.path.exists():
            return []
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                lines = fh.readlines()
        except OSError as exc:
            logger.error("JsonlAuditLog: cannot read %s: %s", self.path, exc)
            return []

        entries: list[dict[str, Any]] = []
        for line in lines[-n:]:
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return entries

    def __iter__(self) -> Iterator[dict[str, Any]]:
        """Iterate over all entries (oldest first)."""
        if not self.path.exists():
            return
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                for line in fh:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        yield json.loads(line)
                    except json.JSONDecodeError:
                        continue
        except OSError as exc:
            logger.error("JsonlAuditLog: cannot iterate %s: %s", self.path, exc)
