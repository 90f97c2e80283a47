"""
AgentGate test suite.

Tests are organized by layer:
    tests/unit/     Unit tests (no network, tmp_path only)
    tests/policy/   Rule pipeline and explain output
    tests/safety/   Guards on safety-critical defaults

Run all tests:
    pytest

Run unit tests only:
    pytest tests/unit/
"""
