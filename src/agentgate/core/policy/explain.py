"""
Policy explain — human-readable output for ``agentgate policy check --explain``.

Usage::

    print(explain_result(result))

    # Or walk every pipeline stage for a request:
    print(explain_request(engine, request))
"""

from __future__ import annotations

from agentgate.core.policy.engine import PolicyEngine
from agentgate.core.policy.model import EvaluationRequest, EvaluationResult


def explain_result(result: EvaluationResult) -> str:
    """Format an EvaluationResult as a multi-line string suitable for CLI output."""
    lines: list[str] = []
    lines.append(f"Decision:      {result.decision.value.upper()}")
    lines.append(f"Risk level:    {result.risk_level.value}")
    lines.append(f"Matched rule:  {result.matched_rule}")
    lines.append("")
    lines.append(f"Reason:        {result.reason}")
    return "\n".join(lines)


def explain_request(engine: PolicyEngine, request: EvaluationRequest) -> str:
    """
    Walk the pipeline stage by stage and show which had an opinion.

    Has no audit/telemetry side effects.
    """
    ctx, steps = engine.explain(request)

    lines: list[str] = []
    lines.append(
        f"Input:   tool={request.tool_name!r}  domain={request.domain or '(none)'!r}  "
        f"mode={request.user_mode!r}  observe_only={request.observe_only}"
    )
    lines.append(
        f"Risk:    tool={ctx.tool_risk.value}  domain={ctx.domain_risk.value}  "
        f"effective={ctx.effective_risk.value}"
    )
    if ctx.bundle is not None:
        lines.append(f"Policy:  remote v{ctx.bundle.version}")
    else:
        lines.append("Policy:  built-in rules only (no active remote bundle)")
    lines.append("")

    for kind, result in steps:
        if result is None:
            lines.append(f"  {kind.value:<18} [no opinion]")
            continue
        lines.append(f"  {kind.value:<18} [{result.decision.value.upper()}]")
        lines.append(f"      {result.reason}")
        lines.append("")
        lines.append("  (Remaining stages not evaluated — first decisive stage wins)")
    return "\n".join(lines)
