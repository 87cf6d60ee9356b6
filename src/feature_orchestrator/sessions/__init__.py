from .manager import WorkerSessionManager
from .registry import OutputFeed, SessionHandle, SessionRegistry

__all__ = ["OutputFeed", "SessionHandle", "SessionRegistry", "WorkerSessionManager"]
