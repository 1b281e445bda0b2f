"""Engine providers."""
from .base import EngineRequest, Provider
from .claude_provider import ClaudeProvider

__all__ = ["ClaudeProvider", "EngineRequest", "Provider"]
