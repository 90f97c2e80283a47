"""
Rule evaluators — deterministic, first-decisive-wins pipeline.

Each evaluator looks at a :class:`RuleContext` and returns either an
:class:`EvaluationResult` (decisive) or ``None`` ("no opinion", the
pipeline continues). The order is fixed by :data:`PIPELINE`:

    1. dangerous-tool     fixed deny-list; cannot be weakened by anything
    2. observe-only       read-only sessions may only run read-only tools
    3. domain-list        remote allowlist / blocklist
    4. tool-restriction   remote per-tool rules, exact name before "*"
    5. time-window        remote hour/day windows
    6. risk-default       effective risk vs. the user-mode threshold

Stages 3-5 only run against the *active* bundle: present, not expired,
and not bypassed by a developer override. Without one they have no
opinion and the built-in rules plus risk defaults decide.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime

from agentgate.core.policy.model import (
    EvaluationRequest,
    EvaluationResult,
    PolicyDecision,
    RemotePolicyBundle,
    RestrictionAction,
    RuleKind,
    TimeBasedRule,
    TimeRuleAction,
    ToolRestriction,
)
from agentgate.core.risk import RiskLevel

# Never admitted, regardless of remote policy, user mode or developer override.
DANGEROUS_TOOLS: frozenset[str] = frozenset(
    {"system_execute", "system_delete_file", "code_execute"}
)

# The only tools an observe-only session may run.
READ_ONLY_TOOLS: frozenset[str] = frozenset(
    {
        "browser_observe",
        "browser_get_page_info",
        "code_read_file",
        "code_list_files",
        "code_search",
    }
)

STANDARD_MODE = "standard"


# ---------------------------------------------------------------------------
# Default decision table
# ---------------------------------------------------------------------------


class DefaultDecisionTable:
    """Maps a user mode to the highest risk level allowed without approval.

    Built-in rows::

        standard   → LOW      (MEDIUM and HIGH need approval)
        developer  → MEDIUM   (HIGH needs approval)
        admin      → MEDIUM   (HIGH needs approval)

    Unknown or empty modes use the ``fallback_mode`` row. HIGH is never
    auto-allowed; a table that tries is rejected.
    """

    BUILTIN: Mapping[str, RiskLevel] = {
        "standard": RiskLevel.LOW,
        "developer": RiskLevel.MEDIUM,
        "admin": RiskLevel.MEDIUM,
    }

    def __init__(
        self,
        thresholds: Mapping[str, RiskLevel] | None = None,
        fallback_mode: str = STANDARD_MODE,
    ) -> None:
        rows = dict(self.BUILTIN if thresholds is None else thresholds)
        for mode, level in rows.items():
            if level == RiskLevel.HIGH:
                raise ValueError(f"User mode {mode!r} cannot auto-allow HIGH risk")
        if fallback_mode not in rows:
            raise ValueError(f"Fallback mode {fallback_mode!r} has no threshold row")
        self._rows = rows
        self.fallback_mode = fallback_mode

    def threshold(self, user_mode: str) -> RiskLevel:
        return self._rows.get(user_mode, self._rows[self.fallback_mode])

    def decide(self, risk: RiskLevel, user_mode: str) -> PolicyDecision:
        if risk == RiskLevel.HIGH:
            return PolicyDecision.NEEDS_APPROVAL
        if risk <= self.threshold(user_mode):
            return PolicyDecision.ALLOW
        return PolicyDecision.NEEDS_APPROVAL

    def as_dict(self) -> dict[str, str]:
        return {mode: level.value for mode, level in self._rows.items()}


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RuleContext:
    """Everything an evaluator may look at. Built once per evaluation."""

    request: EvaluationRequest
    bundle: RemotePolicyBundle | None  # active bundle only
    now: datetime  # local wall-clock time, used for time windows
    tool_risk: RiskLevel
    domain_risk: RiskLevel
    effective_risk: RiskLevel
    defaults: DefaultDecisionTable


Evaluator = Callable[[RuleContext], EvaluationResult | None]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def is_time_in_range(start_hour: int, end_hour: int, hour: int) -> bool:
    """Same-day window ``[start, end)`` when start <= end, else wraps midnight."""
    if start_hour <= end_hour:
        return start_hour <= hour < end_hour
    return hour >= start_hour or hour < end_hour


def js_weekday(now: datetime) -> int:
    """Day of week with 0 = Sunday … 6 = Saturday (the bundle's convention)."""
    return (now.weekday() + 1) % 7


def time_rule_matches(rule: TimeBasedRule, now: datetime) -> bool:
    if rule.days_of_week is not None and js_weekday(now) not in rule.days_of_week:
        return False
    return is_time_in_range(rule.start_hour, rule.end_hour, now.hour)


def find_tool_restriction(
    tool_name: str, restrictions: Iterable[ToolRestriction]
) -> ToolRestriction | None:
    """Return the first exact-name restriction, else the first ``"*"`` entry, else None."""
    wildcard: ToolRestriction | None = None
    for restriction in restrictions:
        if restriction.tool == tool_name:
            return restriction
        if wildcard is None and restriction.is_wildcard:
            wildcard = restriction
    return wildcard


_RESTRICTION_DECISIONS: dict[RestrictionAction, PolicyDecision] = {
    RestrictionAction.DENY: PolicyDecision.DENY,
    RestrictionAction.REQUIRE_APPROVAL: PolicyDecision.NEEDS_APPROVAL,
    RestrictionAction.ALLOW: PolicyDecision.ALLOW,
}

_TIME_RULE_DECISIONS: dict[TimeRuleAction, PolicyDecision] = {
    TimeRuleAction.DENY: PolicyDecision.DENY,
    TimeRuleAction.REQUIRE_APPROVAL: PolicyDecision.NEEDS_APPROVAL,
}


def evaluate_restriction(
    tool_name: str, restrictions: Iterable[ToolRestriction]
) -> PolicyDecision | None:
    """Decision of the applicable restriction, or None when none applies."""
    match = find_tool_restriction(tool_name, restrictions)
    if match is None:
        return None
    return _RESTRICTION_DECISIONS[match.action]


# ---------------------------------------------------------------------------
# Evaluators
# ---------------------------------------------------------------------------


def dangerous_tool_rule(ctx: RuleContext) -> EvaluationResult | None:
    if ctx.request.tool_name not in DANGEROUS_TOOLS:
        return None
    return EvaluationResult(
        decision=PolicyDecision.DENY,
        risk_level=RiskLevel.HIGH,
        reason=f"Tool {ctx.request.tool_name!r} is a dangerous operation and is never allowed",
        matched_rule=RuleKind.DANGEROUS_TOOL.value,
    )


def observe_only_rule(ctx: RuleContext) -> EvaluationResult | None:
    if not ctx.request.observe_only:
        return None
    tool = ctx.request.tool_name
    if tool in READ_ONLY_TOOLS:
        return EvaluationResult(
            decision=PolicyDecision.ALLOW,
            risk_level=ctx.tool_risk,
            reason=f"Read-only tool {tool!r} allowed in observe-only mode",
            matched_rule=RuleKind.OBSERVE_ONLY.value,
        )
    return EvaluationResult(
        decision=PolicyDecision.DENY,
        risk_level=RiskLevel.HIGH,
        reason=f"Observe-only mode: state-modifying tool {tool!r} is not allowed",
        matched_rule=RuleKind.OBSERVE_ONLY.value,
    )


def domain_list_rule(ctx: RuleContext) -> EvaluationResult | None:
    bundle = ctx.bundle
    domain = ctx.request.domain.strip().lower()
    if bundle is None or not domain:
        return None

    if bundle.domain_allowlist:
        if domain not in bundle.domain_allowlist:
            return EvaluationResult(
                decision=PolicyDecision.DENY,
                risk_level=ctx.effective_risk,
                reason=f"Domain {domain!r} is not in the organisation allowlist",
                matched_rule=RuleKind.DOMAIN_LIST.value,
            )
        return None

    if bundle.domain_blocklist and domain in bundle.domain_blocklist:
        return EvaluationResult(
            decision=PolicyDecision.DENY,
            risk_level=ctx.effective_risk,
            reason=f"Domain {domain!r} is blocked by organisation policy",
            matched_rule=RuleKind.DOMAIN_LIST.value,
        )
    return None


def tool_restriction_rule(ctx: RuleContext) -> EvaluationResult | None:
    if ctx.bundle is None or not ctx.bundle.tool_restrictions:
        return None
    restriction = find_tool_restriction(ctx.request.tool_name, ctx.bundle.tool_restrictions)
    if restriction is None:
        return None

    decision = _RESTRICTION_DECISIONS[restriction.action]
    scope = "all tools" if restriction.is_wildcard else f"tool {ctx.request.tool_name!r}"
    return EvaluationResult(
        decision=decision,
        risk_level=ctx.effective_risk,
        reason=restriction.reason or f"Organisation restriction on {scope}: {restriction.action}",
        matched_rule=RuleKind.TOOL_RESTRICTION.value,
    )


def time_window_rule(ctx: RuleContext) -> EvaluationResult | None:
    if ctx.bundle is None or not ctx.bundle.time_based_rules:
        return None
    for rule in ctx.bundle.time_based_rules:
        if not time_rule_matches(rule, ctx.now):
            continue
        return EvaluationResult(
            decision=_TIME_RULE_DECISIONS[rule.action],
            risk_level=ctx.effective_risk,
            reason=rule.reason
            or (
                f"Time-based restriction {rule.start_hour:02d}:00-{rule.end_hour:02d}:00: "
                f"{rule.action}"
            ),
            matched_rule=RuleKind.TIME_WINDOW.value,
        )
    return None


def risk_default_rule(ctx: RuleContext) -> EvaluationResult:
    risk = ctx.effective_risk
    mode = ctx.request.user_mode
    decision = ctx.defaults.decide(risk, mode)
    if decision == PolicyDecision.ALLOW:
        reason = f"{risk.value.capitalize()} risk operation allowed in {mode!r} mode"
    else:
        reason = f"{risk.value.capitalize()} risk operation requires approval in {mode!r} mode"
    return EvaluationResult(
        decision=decision,
        risk_level=risk,
        reason=reason,
        matched_rule=RuleKind.RISK_DEFAULT.value,
    )


PIPELINE: tuple[tuple[RuleKind, Evaluator], ...] = (
    (RuleKind.DANGEROUS_TOOL, dangerous_tool_rule),
    (RuleKind.OBSERVE_ONLY, observe_only_rule),
    (RuleKind.DOMAIN_LIST, domain_list_rule),
    (RuleKind.TOOL_RESTRICTION, tool_restriction_rule),
    (RuleKind.TIME_WINDOW, time_window_rule),
    (RuleKind.RISK_DEFAULT, risk_default_rule),
)


def run_pipeline(ctx: RuleContext) -> EvaluationResult:
    """Return the result of the first decisive evaluator."""
    for _kind, evaluator in PIPELINE:
        result = evaluator(ctx)
        if result is not None:
            return result
    # risk_default_rule is always decisive
    raise AssertionError("policy pipeline produced no decision")


def trace_pipeline(ctx: RuleContext) -> list[tuple[RuleKind, EvaluationResult | None]]:
    """Walk the pipeline, recording each stage's opinion up to the decisive one."""
    steps: list[tuple[RuleKind, EvaluationResult | None]] = []
    for kind, evaluator in PIPELINE:
        result = evaluator(ctx)
        steps.append((kind, result))
        if result is not None:
            break
    return steps
