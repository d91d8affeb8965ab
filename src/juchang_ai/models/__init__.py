"""Database and runtime models."""
