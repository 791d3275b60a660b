"""Tutor orchestration core.

Accepts learner messages, resolves an LLM backend, builds bounded
conversation context, dispatches to one or more tutor agents and logs every
exchange for audit and analytics.
"""

__version__ = "0.1.0"
