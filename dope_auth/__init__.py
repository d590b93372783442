from .bus import SessionBus, Subscription
from .session import AuthSession
from .storage import FileBackend, MemoryBackend, TokenStore
from .verification import Phase, VerificationMachine

__all__ = [
    "AuthSession",
    "FileBackend",
    "MemoryBackend",
    "Phase",
    "SessionBus",
    "Subscription",
    "TokenStore",
    "VerificationMachine",
]
