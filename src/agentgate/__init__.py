"""
AgentGate — runtime policy decision engine for autonomous agents.

Every action an agent attempts (browser automation, code execution,
navigation) is gated by AgentGate before it runs. The engine answers
ALLOW, DENY or NEEDS_APPROVAL from built-in safety rules, a static risk
classification and an optional organisation-supplied remote policy bundle.

Package layout (src/agentgate/):
  core/          — risk classifier, config, vault, audit, telemetry
  core/policy/   — decision pipeline, remote bundle sync
  cli/           — Click CLI entry point
"""

__version__ = "0.3.0"
__all__ = ["__version__"]
