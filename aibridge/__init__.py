"""Uniform adapter layer between an orchestrator and third-party AI backends."""

__version__ = "0.1.0"
