"""
Policy engine — the admission gate every tool call passes through.

Usage::

    engine = PolicyEngine(policy_source=sync_manager, audit=audit_log)
    result = engine.evaluate(
        EvaluationRequest(tool_name="browser_click", domain="github.com")
    )
    if result.decision is PolicyDecision.ALLOW:
        ...

``evaluate()`` is synchronous and never performs I/O beyond the
fire-and-forget audit/telemetry sinks. It reads the current bundle from
the policy source (an atomic reference copy) and never waits on a sync.
It never raises: malformed input and internal failures resolve to DENY.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
import uuid
from collections import Counter
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from agentgate.core.audit import AuditService, DisabledAuditLog, JsonlAuditLog
from agentgate.core.policy.model import (
    INTERNAL_ERROR,
    MALFORMED_REQUEST,
    EvaluationRequest,
    EvaluationResult,
    PolicyDecision,
    RemotePolicyBundle,
    RuleKind,
)
from agentgate.core.policy.rules import (
    DefaultDecisionTable,
    RuleContext,
    run_pipeline,
    trace_pipeline,
)
from agentgate.core.policy.sync import PolicySnapshot, PolicySource
from agentgate.core.risk import RiskClassifier, RiskLevel
from agentgate.core.telemetry import DisabledTelemetry, JsonlTelemetrySink, TelemetryService

if TYPE_CHECKING:
    from agentgate.core.config import AgentGateConfig

logger = logging.getLogger(__name__)


def _local_now() -> datetime:
    return datetime.now().astimezone()


def hash_args(args: Mapping[str, Any] | None) -> str:
    """Short stable digest of the call arguments (audit correlation, not secrecy)."""
    if not args:
        return ""
    try:
        canonical = json.dumps(args, sort_keys=True, default=str, separators=(",", ":"))
    except (TypeError, ValueError, RecursionError):
        # mixed-type keys or circular references
        canonical = repr(args)
    return hashlib.sha256(canonical.encode("utf-8", "backslashreplace")).hexdigest()[:16]


class PolicyEngine:
    """
    Orchestrates the rule pipeline and records every outcome.

    Parameters
    ----------
    policy_source:
        Anything with a ``snapshot()`` method (normally the
        :class:`~agentgate.core.policy.sync.PolicySyncManager`). ``None``
        means built-in rules and risk defaults only.
    defaults:
        User-mode → auto-allow threshold table for the risk default.
    inspect_args:
        Escalate effective risk from argument inspection
        (:meth:`RiskClassifier.args_risk`).
    clock:
        Returns the current local time (time windows, expiry checks).
    """

    def __init__(
        self,
        policy_source: PolicySource | None = None,
        audit: AuditService | None = None,
        telemetry: TelemetryService | None = None,
        classifier: RiskClassifier | None = None,
        defaults: DefaultDecisionTable | None = None,
        inspect_args: bool = False,
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        self._source = policy_source
        self._audit = audit or DisabledAuditLog()
        self._telemetry = telemetry or DisabledTelemetry()
        self.classifier = classifier or RiskClassifier()
        self.defaults = defaults or DefaultDecisionTable()
        self.inspect_args = inspect_args
        self._clock = clock
        self._counts: Counter[str] = Counter()
        self._counts_lock = threading.Lock()

    @classmethod
    def from_config(
        cls, config: AgentGateConfig, policy_source: PolicySource | None = None
    ) -> PolicyEngine:
        """Wire an engine from config: audit/telemetry sinks and the mode table."""
        audit: AuditService = (
            JsonlAuditLog(config.audit_path) if config.audit.enabled else DisabledAuditLog()
        )
        telemetry: TelemetryService = (
            JsonlTelemetrySink(config.telemetry_path)
            if config.telemetry.enabled
            else DisabledTelemetry()
        )
        return cls(
            policy_source=policy_source,
            audit=audit,
            telemetry=telemetry,
            defaults=DefaultDecisionTable(config.risk.auto_allow, config.risk.fallback_mode),
            inspect_args=config.risk.inspect_args,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def evaluate(self, request: EvaluationRequest | Mapping[str, Any]) -> EvaluationResult:
        """Decide ALLOW / DENY / NEEDS_APPROVAL for one requested action."""
        started = time.monotonic()
        req = self._coerce(request)
        policy_version: int | None = None

        if req is None:
            result = EvaluationResult(
                decision=PolicyDecision.DENY,
                risk_level=RiskLevel.HIGH,
                reason="malformed request",
                matched_rule=MALFORMED_REQUEST,
            )
        else:
            try:
                ctx = self.build_context(req)
                policy_version = ctx.bundle.version if ctx.bundle else None
                result = run_pipeline(ctx)
            except Exception:  # noqa: BLE001
                logger.exception("Policy evaluation failed for tool %r", req.tool_name)
                result = EvaluationResult(
                    decision=PolicyDecision.DENY,
                    risk_level=RiskLevel.HIGH,
                    reason="internal policy error",
                    matched_rule=INTERNAL_ERROR,
                )

        duration_ms = round((time.monotonic() - started) * 1000, 3)
        try:
            self._record(req, request, result, duration_ms, policy_version)
        except Exception:  # noqa: BLE001
            logger.exception("Recording policy decision failed (rule %s)", result.matched_rule)
        return result

    def explain(
        self, request: EvaluationRequest
    ) -> tuple[RuleContext, list[tuple[RuleKind, EvaluationResult | None]]]:
        """Evaluate without side effects, returning the per-stage trace."""
        ctx = self.build_context(request)
        return ctx, trace_pipeline(ctx)

    def build_context(self, request: EvaluationRequest) -> RuleContext:
        now = self._clock()
        tool_risk = self.classifier.tool_risk(request.tool_name)
        domain_risk = self.classifier.domain_risk(request.domain)
        effective = max(tool_risk, domain_risk)
        if self.inspect_args:
            args_risk = self.classifier.args_risk(request.tool_name, dict(request.args))
            effective = max(effective, args_risk)
        return RuleContext(
            request=request,
            bundle=self._active_bundle(now),
            now=now,
            tool_risk=tool_risk,
            domain_risk=domain_risk,
            effective_risk=effective,
            defaults=self.defaults,
        )

    def decision_counts(self) -> dict[str, int]:
        """Decisions made by this engine so far, keyed by decision value."""
        with self._counts_lock:
            return {d.value: self._counts.get(d.value, 0) for d in PolicyDecision}

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _coerce(request: object) -> EvaluationRequest | None:
        if isinstance(request, EvaluationRequest):
            req = request
        elif isinstance(request, Mapping):
            try:
                req = EvaluationRequest.from_mapping(request)
            except ValueError:
                return None
        else:
            return None
        if not isinstance(req.tool_name, str) or not req.tool_name.strip():
            return None
        return req

    def _active_bundle(self, now: datetime) -> RemotePolicyBundle | None:
        if self._source is None:
            return None
        snapshot: PolicySnapshot = self._source.snapshot()
        if snapshot.bundle is None:
            return None
        if snapshot.dev_override:
            return None
        if snapshot.bundle.is_expired(now):
            logger.debug("Remote policy v%d expired; ignoring", snapshot.bundle.version)
            return None
        return snapshot.bundle

    def _record(
        self,
        req: EvaluationRequest | None,
        raw: object,
        result: EvaluationResult,
        duration_ms: float,
        policy_version: int | None,
    ) -> None:
        with self._counts_lock:
            self._counts[result.decision.value] += 1

        tool = req.tool_name if req else _raw_tool_name(raw)
        domain = req.domain if req else ""

        logger.debug(
            "Policy decision: tool=%s domain=%s decision=%s rule=%s",
            tool,
            domain,
            result.decision.value,
            result.matched_rule,
        )

        entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "actor": "system",
            "action": "policy_evaluation",
            "run_id": req.run_id if req else "",
            "tool": tool,
            "domain": domain,
            "user_mode": req.user_mode if req else "",
            "observe_only": req.observe_only if req else False,
            "decision": result.decision.value,
            "risk_level": result.risk_level.value,
            "reason": result.reason,
            "matched_rule": result.matched_rule,
            "duration_ms": duration_ms,
            "args_hash": hash_args(req.args) if req else "",
            "policy_version": policy_version,
        }
        try:
            self._audit.log(entry)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Audit log failed: %s", exc)

        event = {
            "event_id": str(uuid.uuid4()),
            "ts": entry["timestamp"],
            "type": "policy_evaluation",
            "name": "PolicyEngine",
            "run_id": entry["run_id"],
            "data": {
                "tool": tool,
                "decision": result.decision.value,
                "risk_level": result.risk_level.value,
                "matched_rule": result.matched_rule,
                "duration_ms": duration_ms,
                "decision_counts": self.decision_counts(),
            },
        }
        try:
            self._telemetry.emit(event)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Telemetry emit failed: %s", exc)


def _raw_tool_name(raw: object) -> str:
    if isinstance(raw, Mapping):
        value = raw.get("tool_name", raw.get("toolName"))
        return value if isinstance(value, str) else ""
    return ""
