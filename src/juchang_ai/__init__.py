"""Juchang AI - conversation orchestration engine for the Juchang meetup assistant."""

__version__ = "0.1.0"
