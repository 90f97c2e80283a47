"""
Policy data model — requests, results, and the remote policy bundle schema.

Requests and results are frozen dataclasses (built on every tool call).
The remote bundle is a frozen Pydantic model: it is the wire schema the
sync manager validates fetched JSON against, so its aliases follow the
camelCase keys the policy server sends (``domainAllowlist``,
``toolRestrictions``, ...). Python code uses the snake_case names.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from agentgate.core.risk import RiskLevel


class PolicyDecision(StrEnum):
    """Admission decision. DENY and NEEDS_APPROVAL are both "not auto-executed"."""

    ALLOW = "allow"
    DENY = "deny"
    NEEDS_APPROVAL = "needs_approval"


class RuleKind(StrEnum):
    """Identifiers of the pipeline stages, in precedence order.

    The value is what ends up in ``EvaluationResult.matched_rule``.
    """

    DANGEROUS_TOOL = "dangerous-tool"
    OBSERVE_ONLY = "observe-only"
    DOMAIN_LIST = "domain-list"
    TOOL_RESTRICTION = "tool-restriction"
    TIME_WINDOW = "time-window"
    RISK_DEFAULT = "risk-default"


# matched_rule values for results that never reached the pipeline
MALFORMED_REQUEST = "malformed-request"
INTERNAL_ERROR = "internal-error"


# ---------------------------------------------------------------------------
# Request / result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EvaluationRequest:
    """One requested agent action.

    ``args`` is opaque to the engine apart from optional risk inspection.
    ``domain`` may be empty for tools that do not target a host.
    """

    tool_name: str
    args: Mapping[str, Any] = field(default_factory=dict)
    domain: str = ""
    observe_only: bool = False
    user_mode: str = "standard"
    run_id: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> EvaluationRequest:
        """Build a request from a dict using either snake_case or camelCase keys.

        Raises:
            ValueError: if ``tool_name``/``toolName`` is missing or not a string.
        """

        def pick(snake: str, camel: str, default: Any) -> Any:
            if snake in data:
                return data[snake]
            return data.get(camel, default)

        tool_name = pick("tool_name", "toolName", None)
        if not isinstance(tool_name, str):
            raise ValueError("tool_name is required")
        args = pick("args", "args", None)
        return cls(
            tool_name=tool_name,
            args=args if isinstance(args, Mapping) else {},
            domain=str(pick("domain", "domain", "") or ""),
            observe_only=bool(pick("observe_only", "observeOnly", False)),
            user_mode=str(pick("user_mode", "userMode", "standard") or "standard"),
            run_id=str(pick("run_id", "runId", "") or ""),
        )


@dataclass(frozen=True)
class EvaluationResult:
    """Engine output.

    ``risk_level`` is the effective risk the decision was based on, which
    can differ from the tool's baseline (e.g. observe-only violations are
    always HIGH).
    """

    decision: PolicyDecision
    risk_level: RiskLevel
    reason: str
    matched_rule: str

    @property
    def allowed(self) -> bool:
        return self.decision == PolicyDecision.ALLOW

    def to_dict(self) -> dict[str, str]:
        return {
            "decision": self.decision.value,
            "risk_level": self.risk_level.value,
            "reason": self.reason,
            "matched_rule": self.matched_rule,
        }


# ---------------------------------------------------------------------------
# Remote bundle schema
# ---------------------------------------------------------------------------


class _WireModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class RestrictionAction(StrEnum):
    DENY = "deny"
    REQUIRE_APPROVAL = "require_approval"
    ALLOW = "allow"


class TimeRuleAction(StrEnum):
    DENY = "deny"
    REQUIRE_APPROVAL = "require_approval"


class ToolRestriction(_WireModel):
    """Restriction on one tool name, or on every unlisted tool with ``"*"``."""

    tool: str = Field(min_length=1)
    action: RestrictionAction
    reason: str | None = None

    @property
    def is_wildcard(self) -> bool:
        return self.tool == "*"


class TimeBasedRule(_WireModel):
    """Hour window (optionally restricted to weekdays, 0 = Sunday).

    ``start_hour <= end_hour`` is a same-day window ``[start, end)``;
    ``start_hour > end_hour`` wraps midnight.
    """

    start_hour: int = Field(ge=0, le=23)
    end_hour: int = Field(ge=0, le=23)
    days_of_week: frozenset[int] | None = None
    action: TimeRuleAction
    reason: str | None = None

    @field_validator("days_of_week")
    @classmethod
    def validate_days(cls, v: frozenset[int] | None) -> frozenset[int] | None:
        if v is not None and any(d < 0 or d > 6 for d in v):
            raise ValueError("daysOfWeek entries must be between 0 (Sunday) and 6 (Saturday)")
        return v


class RemotePolicyBundle(_WireModel):
    """A versioned, immutable snapshot of organisation policy.

    Created by a successful sync and replaced wholesale by the next one.
    """

    version: int = Field(ge=0)
    fetched_at: datetime
    expires_at: datetime | None = None
    refresh_interval_ms: int | None = Field(default=None, gt=0)
    domain_allowlist: frozenset[str] | None = None
    domain_blocklist: frozenset[str] | None = None
    tool_restrictions: tuple[ToolRestriction, ...] | None = None
    time_based_rules: tuple[TimeBasedRule, ...] | None = None
    message: str | None = None

    @field_validator("fetched_at", "expires_at")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    @field_validator("domain_allowlist", "domain_blocklist")
    @classmethod
    def normalise_domains(cls, v: frozenset[str] | None) -> frozenset[str] | None:
        if v is None:
            return None
        return frozenset(d.strip().lower() for d in v if d.strip())

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(UTC)) > self.expires_at


def is_expired(bundle: RemotePolicyBundle | None, now: datetime | None = None) -> bool:
    """True only when a bundle exists, has ``expires_at``, and it has passed."""
    if bundle is None:
        return False
    return bundle.is_expired(now)


def parse_bundle(data: Any, fetched_at: datetime | None = None) -> RemotePolicyBundle:
    """Validate a decoded JSON document as a bundle, stamping ``fetched_at`` locally.

    Raises:
        pydantic.ValidationError: on any schema violation.
        TypeError: if ``data`` is not a JSON object.
    """
    if not isinstance(data, Mapping):
        raise TypeError(f"Policy bundle must be a JSON object (got {type(data).__name__})")
    payload = {k: v for k, v in data.items() if k not in ("fetchedAt", "fetched_at")}
    payload["fetched_at"] = fetched_at or datetime.now(UTC)
    return RemotePolicyBundle.model_validate(payload)
