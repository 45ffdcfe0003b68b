"""
chatkeep: local-first chat client core.

A versioned SQLite conversation store, a streaming inference client for
OpenAI-compatible providers, and an orchestrator that ties the two
together behind a small FastAPI service.
"""

__version__ = "0.1.0"
