"""butler-sync: keeps multi-agent coding sessions in sync with virtual branches.

Every edit a coding agent makes is attributed to the root conversation
that caused it and attached to a branch of the workspace's branch tool;
once a session goes idle its branches get conventional commit messages,
readable names and empty-branch cleanup.
"""

# Core entry point
from butler_sync.plugin import ButlerSyncEngine

# Configuration
from butler_sync.config import PluginConfig, load_config

# Components
from butler_sync.engine.butler import ButlerCli, CleanupResult
from butler_sync.engine.cache import AssignmentCache, StatusCache
from butler_sync.engine.classifier import FailureClass, classify_command_failure
from butler_sync.engine.executor import (
    CommandExecutor,
    CommandOutcome,
    CommandResult,
    CommandRunner,
    RetryPolicy,
    SubprocessRunner,
)
from butler_sync.engine.hashing import branch_seed, conversation_id, is_conversation_id
from butler_sync.engine.inference import has_multi_branch_hunks, infer_file_branch
from butler_sync.engine.locks import LockCoordinator
from butler_sync.notifications import NotificationManager
from butler_sync.reconcile import Reconciler, ReconcileSummary
from butler_sync.session import SessionResolver

# Host platform
from butler_sync.host import HostClient, HttpHostClient

# Models
from butler_sync.models import BranchInference, Confidence, PluginState, WorkspaceStatus

# Exceptions
from butler_sync.exceptions import (
    ButlerSyncError,
    CommandError,
    CommandFatalError,
    HostClientError,
    HostTimeoutError,
)

__version__ = "0.3.0"

__all__ = [
    "__version__",
    "ButlerSyncEngine",
    "PluginConfig",
    "load_config",
    "ButlerCli",
    "CleanupResult",
    "AssignmentCache",
    "StatusCache",
    "FailureClass",
    "classify_command_failure",
    "CommandExecutor",
    "CommandOutcome",
    "CommandResult",
    "CommandRunner",
    "RetryPolicy",
    "SubprocessRunner",
    "branch_seed",
    "conversation_id",
    "is_conversation_id",
    "has_multi_branch_hunks",
    "infer_file_branch",
    "LockCoordinator",
    "NotificationManager",
    "Reconciler",
    "ReconcileSummary",
    "SessionResolver",
    "HostClient",
    "HttpHostClient",
    "BranchInference",
    "Confidence",
    "PluginState",
    "WorkspaceStatus",
    "ButlerSyncError",
    "CommandError",
    "CommandFatalError",
    "HostClientError",
    "HostTimeoutError",
]
