"""Forkline engine: exchanges, streaming, tool policy and engine selection."""
from .models import (
    ActiveExecution,
    Attachment,
    CancellationToken,
    ConversationMode,
    CustomEngineConfig,
    Message,
    MessageRole,
    ResumeDirective,
    ResumeKind,
    SubConversation,
    Thread,
)
from .config import EngineConfig
from .errors import (
    ApprovalTimeoutError,
    ConfigurationError,
    EngineProtocolError,
    ErrorCategory,
    ForklineError,
    NormalizedError,
    TransportError,
)

__all__ = [
    # Orchestrator (lazy import to keep the SDK out of light imports)
    "SessionOrchestrator",
    "Exchange",
    # Models
    "ActiveExecution",
    "Attachment",
    "CancellationToken",
    "ConversationMode",
    "CustomEngineConfig",
    "Message",
    "MessageRole",
    "ResumeDirective",
    "ResumeKind",
    "SubConversation",
    "Thread",
    # Config
    "EngineConfig",
    "ForklineConfig",
    "load_yaml_config",
    # Store
    "ConversationStore",
    # Errors
    "ApprovalTimeoutError",
    "ConfigurationError",
    "EngineProtocolError",
    "ErrorCategory",
    "ForklineError",
    "NormalizedError",
    "TransportError",
]


def __getattr__(name: str):
    if name == "SessionOrchestrator":
        from .orchestrator import SessionOrchestrator
        return SessionOrchestrator
    if name == "Exchange":
        from .orchestrator import Exchange
        return Exchange
    if name == "ForklineConfig":
        from .yaml_config import ForklineConfig
        return ForklineConfig
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "ConversationStore":
        from .conversation_store import ConversationStore
        return ConversationStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
