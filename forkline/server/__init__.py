"""HTTP + SSE surface."""
from .server import ForklineServer

__all__ = ["ForklineServer"]
