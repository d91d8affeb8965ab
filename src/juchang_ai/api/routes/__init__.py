"""
API routes for Juchang AI.
"""

from juchang_ai.api.routes import chat, threads

__all__ = ["chat", "threads"]
