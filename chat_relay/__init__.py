"""Streaming chat orchestrator: context assembly, provider adapters, relay and persistence."""

__version__ = "0.1.0"
