from identity_core.services.directory.client import (
    BindOutcome,
    ConnectionTestResult,
    DirectoryClient,
    DirectorySnapshot,
    DirectoryUser,
    NotFound,
    Unreachable,
    Verified,
    WrongPassword,
    escape_filter_value,
)
from identity_core.services.directory.scheduler import DirectorySyncScheduler
from identity_core.services.directory.sync import DirectorySyncEngine, SyncResult, resolve_directory_role

__all__ = [
    "BindOutcome",
    "ConnectionTestResult",
    "DirectoryClient",
    "DirectorySnapshot",
    "DirectoryUser",
    "NotFound",
    "Unreachable",
    "Verified",
    "WrongPassword",
    "escape_filter_value",
    "DirectorySyncScheduler",
    "DirectorySyncEngine",
    "SyncResult",
    "resolve_directory_role",
]
