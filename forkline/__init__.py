"""Forkline: branching conversations with a coding-agent engine."""

__version__ = "0.1.0"
