"""Unit tests for PolicyEngine: pipeline wiring, bundle gating, and recording."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from agentgate.core.audit import AuditService
from agentgate.core.config import AgentGateConfig, AuditConfig, RiskConfig, TelemetryConfig
from agentgate.core.policy.engine import PolicyEngine, hash_args
from agentgate.core.policy.model import (
    EvaluationRequest,
    PolicyDecision,
    RemotePolicyBundle,
    parse_bundle,
)
from agentgate.core.policy.sync import PolicySnapshot, StaticPolicySource
from agentgate.core.risk import RiskClassifier, RiskLevel
from agentgate.core.telemetry import TelemetryService

NOW = datetime(2026, 3, 4, 14, 30, tzinfo=UTC)


class RecordingAudit(AuditService):
    def __init__(self) -> None:
        self.entries: list[dict[str, Any]] = []

    def log(self, entry: dict[str, Any]) -> None:
        self.entries.append(entry)


class RecordingTelemetry(TelemetryService):
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def emit(self, event: dict[str, Any]) -> None:
        self.events.append(event)


class ExplodingAudit(AuditService):
    def log(self, entry: dict[str, Any]) -> None:
        raise RuntimeError("disk on fire")


class ExplodingTelemetry(TelemetryService):
    def emit(self, event: dict[str, Any]) -> None:
        raise RuntimeError("collector down")


class OverrideSource:
    def __init__(self, bundle: RemotePolicyBundle) -> None:
        self._snapshot = PolicySnapshot(bundle=bundle, dev_override=True)

    def snapshot(self) -> PolicySnapshot:
        return self._snapshot


def _bundle(**fields: Any) -> RemotePolicyBundle:
    return parse_bundle({"version": 3, **fields}, fetched_at=NOW - timedelta(minutes=5))


def _engine(bundle: RemotePolicyBundle | None = None, **kwargs: Any) -> PolicyEngine:
    source = StaticPolicySource(bundle) if bundle is not None else None
    return PolicyEngine(policy_source=source, clock=lambda: NOW, **kwargs)


class TestBuiltinRules:
    def test_observe_only_read_tool_allowed(self) -> None:
        result = _engine().evaluate(EvaluationRequest("browser_observe", observe_only=True))
        assert result.decision == PolicyDecision.ALLOW
        assert result.matched_rule == "observe-only"

    def test_observe_only_write_tool_denied(self) -> None:
        result = _engine().evaluate(
            EvaluationRequest("browser_click", domain="localhost", observe_only=True)
        )
        assert result.decision == PolicyDecision.DENY
        assert result.risk_level == RiskLevel.HIGH

    @pytest.mark.parametrize("mode", ["standard", "developer", "admin"])
    def test_dangerous_tool_denied_in_every_mode(self, mode: str) -> None:
        result = _engine().evaluate(
            EvaluationRequest("system_execute", domain="localhost", user_mode=mode)
        )
        assert result.decision == PolicyDecision.DENY
        assert result.matched_rule == "dangerous-tool"

    def test_standard_mode_medium_needs_approval(self) -> None:
        result = _engine().evaluate(EvaluationRequest("browser_click", domain="localhost"))
        assert result.decision == PolicyDecision.NEEDS_APPROVAL
        assert result.risk_level == RiskLevel.MEDIUM

    def test_developer_mode_medium_allowed(self) -> None:
        result = _engine().evaluate(
            EvaluationRequest("browser_click", domain="localhost", user_mode="developer")
        )
        assert result.decision == PolicyDecision.ALLOW

    def test_high_domain_escalates(self) -> None:
        result = _engine().evaluate(
            EvaluationRequest("browser_observe", domain="admin.example.com", user_mode="admin")
        )
        assert result.decision == PolicyDecision.NEEDS_APPROVAL
        assert result.risk_level == RiskLevel.HIGH

    def test_unknown_mode_behaves_like_standard(self) -> None:
        result = _engine().evaluate(
            EvaluationRequest("browser_click", domain="localhost", user_mode="root")
        )
        assert result.decision == PolicyDecision.NEEDS_APPROVAL


class TestRemotePolicy:
    def test_allowlist_denies_unlisted_domain(self) -> None:
        engine = _engine(_bundle(domainAllowlist=["localhost"]))
        result = engine.evaluate(EvaluationRequest("browser_observe", domain="google.com"))
        assert result.decision == PolicyDecision.DENY
        assert result.matched_rule == "domain-list"

    def test_tool_restriction_requires_approval(self) -> None:
        engine = _engine(
            _bundle(toolRestrictions=[{"tool": "browser_type", "action": "require_approval"}])
        )
        result = engine.evaluate(
            EvaluationRequest("browser_type", domain="localhost", user_mode="developer")
        )
        assert result.decision == PolicyDecision.NEEDS_APPROVAL
        assert result.matched_rule == "tool-restriction"

    def test_expired_bundle_is_ignored(self) -> None:
        bundle = _bundle(
            expiresAt=(NOW - timedelta(seconds=1)).isoformat(),
            toolRestrictions=[{"tool": "*", "action": "deny"}],
        )
        result = _engine(bundle).evaluate(EvaluationRequest("browser_observe", domain="localhost"))
        assert result.decision == PolicyDecision.ALLOW
        assert result.matched_rule == "risk-default"

    def test_unexpired_bundle_applies(self) -> None:
        bundle = _bundle(
            expiresAt=(NOW + timedelta(hours=1)).isoformat(),
            toolRestrictions=[{"tool": "*", "action": "deny"}],
        )
        result = _engine(bundle).evaluate(EvaluationRequest("browser_observe", domain="localhost"))
        assert result.decision == PolicyDecision.DENY

    def test_dev_override_bypasses_remote_policy(self) -> None:
        bundle = _bundle(toolRestrictions=[{"tool": "*", "action": "deny"}])
        engine = PolicyEngine(policy_source=OverrideSource(bundle), clock=lambda: NOW)
        result = engine.evaluate(EvaluationRequest("browser_observe", domain="localhost"))
        assert result.decision == PolicyDecision.ALLOW
        assert result.matched_rule == "risk-default"

    def test_dev_override_never_unlocks_dangerous_tools(self) -> None:
        bundle = _bundle(toolRestrictions=[{"tool": "code_execute", "action": "allow"}])
        engine = PolicyEngine(policy_source=OverrideSource(bundle), clock=lambda: NOW)
        result = engine.evaluate(EvaluationRequest("code_execute", user_mode="admin"))
        assert result.decision == PolicyDecision.DENY

    def test_time_window_uses_engine_clock(self) -> None:
        bundle = _bundle(timeBasedRules=[{"startHour": 14, "endHour": 15, "action": "deny"}])
        result = _engine(bundle).evaluate(EvaluationRequest("browser_observe", domain="localhost"))
        assert result.decision == PolicyDecision.DENY
        assert result.matched_rule == "time-window"


class TestArgsInspection:
    def test_disabled_by_default(self) -> None:
        request = EvaluationRequest(
            "browser_navigate",
            args={"url": "https://evil.test/"},
            domain="localhost",
        )
        assert _engine().evaluate(request).decision == PolicyDecision.ALLOW

    def test_enabled_escalates_risk(self) -> None:
        request = EvaluationRequest(
            "browser_navigate",
            args={"url": "https://evil.test/"},
            domain="localhost",
        )
        result = _engine(inspect_args=True).evaluate(request)
        assert result.decision == PolicyDecision.NEEDS_APPROVAL
        assert result.risk_level == RiskLevel.HIGH


class TestFailClosed:
    def test_missing_tool_name(self) -> None:
        result = _engine().evaluate({"domain": "localhost"})
        assert result.decision == PolicyDecision.DENY
        assert result.matched_rule == "malformed-request"

    def test_blank_tool_name(self) -> None:
        result = _engine().evaluate(EvaluationRequest(tool_name="   "))
        assert result.decision == PolicyDecision.DENY
        assert result.matched_rule == "malformed-request"

    def test_non_request_input(self) -> None:
        result = _engine().evaluate(42)  # type: ignore[arg-type]
        assert result.decision == PolicyDecision.DENY

    def test_internal_error_denies(self, caplog: pytest.LogCaptureFixture) -> None:
        class BrokenClassifier(RiskClassifier):
            def tool_risk(self, tool_name: str) -> RiskLevel:
                raise RuntimeError("table corrupted")

        engine = _engine(classifier=BrokenClassifier())
        with caplog.at_level(logging.ERROR, logger="agentgate.core.policy.engine"):
            result = engine.evaluate(EvaluationRequest("browser_observe"))
        assert result.decision == PolicyDecision.DENY
        assert result.matched_rule == "internal-error"
        assert "Policy evaluation failed" in caplog.text

    def test_mapping_input(self) -> None:
        result = _engine().evaluate(
            {"toolName": "browser_observe", "domain": "localhost", "observeOnly": True}
        )
        assert result.decision == PolicyDecision.ALLOW


class TestRecording:
    def test_every_decision_is_audited(self) -> None:
        audit = RecordingAudit()
        engine = _engine(audit=audit)
        engine.evaluate(EvaluationRequest("browser_observe", domain="localhost"))
        engine.evaluate(EvaluationRequest("system_execute"))
        engine.evaluate({"nope": True})
        assert [e["decision"] for e in audit.entries] == ["allow", "deny", "deny"]

    def test_audit_entry_fields(self) -> None:
        audit = RecordingAudit()
        engine = _engine(_bundle(), audit=audit)
        engine.evaluate(
            EvaluationRequest(
                "browser_type",
                args={"value": "hello"},
                domain="localhost",
                user_mode="developer",
                run_id="run-42",
            )
        )
        entry = audit.entries[0]
        assert entry["action"] == "policy_evaluation"
        assert entry["tool"] == "browser_type"
        assert entry["domain"] == "localhost"
        assert entry["run_id"] == "run-42"
        assert entry["matched_rule"] == "risk-default"
        assert entry["policy_version"] == 3
        assert entry["args_hash"] == hash_args({"value": "hello"})
        assert "hello" not in json.dumps(entry)

    def test_malformed_request_audit_keeps_raw_tool_name(self) -> None:
        audit = RecordingAudit()
        _engine(audit=audit).evaluate({"toolName": ""})
        assert audit.entries[0]["matched_rule"] == "malformed-request"
        assert audit.entries[0]["tool"] == ""

    def test_telemetry_event(self) -> None:
        telemetry = RecordingTelemetry()
        engine = _engine(telemetry=telemetry)
        engine.evaluate(EvaluationRequest("browser_observe", domain="localhost"))
        event = telemetry.events[0]
        assert event["type"] == "policy_evaluation"
        assert event["data"]["decision"] == "allow"
        assert event["data"]["decision_counts"]["allow"] == 1

    def test_sink_failures_never_change_the_decision(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        engine = _engine(audit=ExplodingAudit(), telemetry=ExplodingTelemetry())
        with caplog.at_level(logging.WARNING):
            result = engine.evaluate(EvaluationRequest("browser_observe", domain="localhost"))
        assert result.decision == PolicyDecision.ALLOW
        assert "Audit log failed" in caplog.text
        assert "Telemetry emit failed" in caplog.text

    def test_decision_counts(self) -> None:
        engine = _engine()
        engine.evaluate(EvaluationRequest("browser_observe", domain="localhost"))
        engine.evaluate(EvaluationRequest("browser_click", domain="localhost"))
        engine.evaluate(EvaluationRequest("code_execute"))
        assert engine.decision_counts() == {"allow": 1, "deny": 1, "needs_approval": 1}

    def test_mixed_key_args_still_decided_and_audited(self) -> None:
        audit = RecordingAudit()
        request = EvaluationRequest(
            "browser_type", args={"payload": {1: "a", "b": "c"}}, domain="localhost"
        )
        result = _engine(audit=audit).evaluate(request)
        assert result.decision == PolicyDecision.NEEDS_APPROVAL
        assert len(audit.entries[0]["args_hash"]) == 16

    def test_circular_args_with_inspection(self) -> None:
        audit = RecordingAudit()
        args: dict[str, Any] = {"value": "x"}
        args["self"] = args
        request = EvaluationRequest("browser_type", args=args, domain="localhost")
        result = _engine(audit=audit, inspect_args=True).evaluate(request)
        assert result.decision == PolicyDecision.NEEDS_APPROVAL
        assert result.matched_rule == "risk-default"
        assert audit.entries[0]["args_hash"]

    def test_recording_failure_never_escapes(self, caplog: pytest.LogCaptureFixture) -> None:
        class BrokenCountsEngine(PolicyEngine):
            def decision_counts(self) -> dict[str, int]:
                raise RuntimeError("counter broken")

        engine = BrokenCountsEngine(clock=lambda: NOW)
        with caplog.at_level(logging.ERROR, logger="agentgate.core.policy.engine"):
            result = engine.evaluate(EvaluationRequest("browser_observe", domain="localhost"))
        assert result.decision == PolicyDecision.ALLOW
        assert "Recording policy decision failed" in caplog.text


class TestHashArgs:
    def test_empty(self) -> None:
        assert hash_args({}) == ""
        assert hash_args(None) == ""

    def test_key_order_independent(self) -> None:
        assert hash_args({"a": 1, "b": 2}) == hash_args({"b": 2, "a": 1})

    def test_length(self) -> None:
        assert len(hash_args({"a": 1})) == 16

    def test_unsortable_keys(self) -> None:
        digest = hash_args({"payload": {1: "a", "b": "c"}})
        assert len(digest) == 16
        assert digest == hash_args({"payload": {1: "a", "b": "c"}})

    def test_circular_reference(self) -> None:
        args: dict[str, Any] = {}
        args["loop"] = args
        assert len(hash_args(args)) == 16


class TestExplain:
    def test_explain_has_no_side_effects(self) -> None:
        audit = RecordingAudit()
        engine = _engine(audit=audit)
        ctx, steps = engine.explain(EvaluationRequest("browser_click", domain="localhost"))
        assert ctx.effective_risk == RiskLevel.MEDIUM
        assert steps[-1][1] is not None
        assert audit.entries == []
        assert engine.decision_counts()["needs_approval"] == 0


class TestFromConfig:
    def test_sinks_written_to_configured_paths(self, tmp_path: Path) -> None:
        audit_path = tmp_path / "audit.jsonl"
        telemetry_path = tmp_path / "events.jsonl"
        config = AgentGateConfig(
            audit=AuditConfig(enabled=True, path=str(audit_path)),
            telemetry=TelemetryConfig(enabled=True, path=str(telemetry_path)),
        )
        engine = PolicyEngine.from_config(config)
        engine.evaluate(EvaluationRequest("browser_observe", domain="localhost"))

        audit_lines = audit_path.read_text().splitlines()
        assert json.loads(audit_lines[0])["decision"] == "allow"
        assert telemetry_path.exists()

    def test_risk_table_from_config(self) -> None:
        config = AgentGateConfig(
            audit=AuditConfig(enabled=False),
            risk=RiskConfig(auto_allow={"standard": RiskLevel.MEDIUM}),
        )
        engine = PolicyEngine.from_config(config)
        result = engine.evaluate(EvaluationRequest("browser_click", domain="localhost"))
        assert result.decision == PolicyDecision.ALLOW


class TestEndToEnd:
    def test_tool_restriction_on_unknown_domain(self) -> None:
        engine = _engine(
            _bundle(toolRestrictions=[{"tool": "browser_type", "action": "require_approval"}])
        )
        result = engine.evaluate(
            EvaluationRequest("browser_type", domain="example.com", observe_only=False)
        )
        assert result.decision == PolicyDecision.NEEDS_APPROVAL
        assert result.matched_rule == "tool-restriction"

    def test_allowlist_rejects_other_domain(self) -> None:
        engine = _engine(_bundle(domainAllowlist=["example.com"]))
        result = engine.evaluate(EvaluationRequest("browser_click", domain="not-allowed.example"))
        assert result.decision == PolicyDecision.DENY
