"""Live trading engine: orchestrator, collaborators and configuration."""
