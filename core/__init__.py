"""Shared errors, logging, configuration and metrics."""
