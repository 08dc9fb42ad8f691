"""Agent modules for homework extraction: routing, subject agents and orchestration."""
