from .connectivity import ConnectivityMonitor
from .credentials import StaticCredentialProvider, StoredCredentialProvider
from .reconciler import EntryOutcome, SyncReconciler, SyncReport
from .runner import SyncRunner

__all__ = [
    "ConnectivityMonitor",
    "EntryOutcome",
    "StaticCredentialProvider",
    "StoredCredentialProvider",
    "SyncReconciler",
    "SyncReport",
    "SyncRunner",
]
