"""AgentGate core: risk classification, configuration, and collaborators."""
