"""Local-first revision history and autosave coordination for podcast scripts."""

from .coordinator import (
    ConfigurationError,
    CoordinatorConfig,
    SaveCoordinator,
    SessionClosedError,
    hash_divergence,
)
from .hashing import content_hash
from .remote import ProjectApiClient, ProjectApiError, RemoteRecord, RemoteSaveResult
from .scheduler import InlineExecutor, ManualScheduler, Scheduler, ThreadingScheduler
from .status import SaveState, SaveStatus
from .storage import SINGLE_EPISODE, RevisionEntry, RevisionStore

__all__ = [
    "ConfigurationError",
    "CoordinatorConfig",
    "InlineExecutor",
    "ManualScheduler",
    "ProjectApiClient",
    "ProjectApiError",
    "RemoteRecord",
    "RemoteSaveResult",
    "RevisionEntry",
    "RevisionStore",
    "SINGLE_EPISODE",
    "SaveCoordinator",
    "SaveState",
    "SaveStatus",
    "Scheduler",
    "SessionClosedError",
    "ThreadingScheduler",
    "content_hash",
    "hash_divergence",
]
