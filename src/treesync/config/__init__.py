from .loader import load_config
from .models import (
    RemoteConfig,
    RetryConfig,
    StateConfig,
    SyncSettings,
    TreeSyncConfig,
    WorkspaceConfig,
)

__all__ = [
    "RemoteConfig",
    "RetryConfig",
    "StateConfig",
    "SyncSettings",
    "TreeSyncConfig",
    "WorkspaceConfig",
    "load_config",
]
