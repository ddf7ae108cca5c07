"""Workspace arbitration module.

This module handles:
- The per-project workspace lock shared by polls and builds
- Isolated workspaces for projects with concurrent builds
- Pluggable change-detection polling strategies
"""

from buildkeep.workspace.lock import (
    LockCancelledError,
    LockStateError,
    WorkspaceLease,
    WorkspaceLock,
    WorkspaceLockRegistry,
)
from buildkeep.workspace.polling import (
    CommandPolling,
    NullPolling,
    PollingStrategy,
    strategy_for_command,
)

__all__ = [
    "CommandPolling",
    "LockCancelledError",
    "LockStateError",
    "NullPolling",
    "PollingStrategy",
    "WorkspaceLease",
    "WorkspaceLock",
    "WorkspaceLockRegistry",
    "strategy_for_command",
]
