"""tmux command client, session manager and layout stabilizer."""

from .client import FakeTmuxClient, TmuxClient, TmuxCommandError, TmuxResult, TmuxUnavailableError
from .layout import LayoutStabilizer, LayoutState
from .session import LeaderIdentityError, PaneLaunchSpec, SessionManager, WorkerSession

__all__ = [
    "FakeTmuxClient",
    "LayoutStabilizer",
    "LayoutState",
    "LeaderIdentityError",
    "PaneLaunchSpec",
    "SessionManager",
    "TmuxClient",
    "TmuxCommandError",
    "TmuxResult",
    "TmuxUnavailableError",
    "WorkerSession",
]
