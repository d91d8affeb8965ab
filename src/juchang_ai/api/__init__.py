"""HTTP surface for the orchestration engine."""
