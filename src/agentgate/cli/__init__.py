"""AgentGate command-line interface."""
