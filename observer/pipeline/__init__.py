from .commands import Command
from .orchestrator import Orchestrator
from .runtime import Runtime
from .session import CancelScope, SearchSession, TokenIssuer
from .views import PersistedViews

__all__ = [
    "CancelScope",
    "Command",
    "Orchestrator",
    "PersistedViews",
    "Runtime",
    "SearchSession",
    "TokenIssuer",
]
