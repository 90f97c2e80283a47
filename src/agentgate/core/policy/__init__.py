"""
AgentGate policy pipeline — admission decisions for agent tool calls.

Public API::

    from agentgate.core.policy import EvaluationRequest, PolicyEngine, PolicySyncManager

    manager = PolicySyncManager(url="https://policy.example.com/bundle")
    engine = PolicyEngine(policy_source=manager)
    result = engine.evaluate(EvaluationRequest(tool_name="browser_type", domain="example.com"))
"""

from agentgate.core.policy.engine import PolicyEngine
from agentgate.core.policy.model import (
    EvaluationRequest,
    EvaluationResult,
    PolicyDecision,
    RemotePolicyBundle,
    TimeBasedRule,
    ToolRestriction,
    is_expired,
    parse_bundle,
)
from agentgate.core.policy.rules import (
    DefaultDecisionTable,
    evaluate_restriction,
    is_time_in_range,
)
from agentgate.core.policy.sync import (
    PolicyStatus,
    PolicySyncManager,
    StaticPolicySource,
    SyncState,
    SyncStatus,
)

__all__ = [
    "DefaultDecisionTable",
    "EvaluationRequest",
    "EvaluationResult",
    "PolicyDecision",
    "PolicyEngine",
    "PolicyStatus",
    "PolicySyncManager",
    "RemotePolicyBundle",
    "StaticPolicySource",
    "SyncState",
    "SyncStatus",
    "TimeBasedRule",
    "ToolRestriction",
    "evaluate_restriction",
    "is_expired",
    "is_time_in_range",
    "parse_bundle",
]
