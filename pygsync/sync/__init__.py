"""Sync engine for PyGSync - scan, reconcile and apply backup plans."""

from .engine import SyncEngine
from .executor import PlanExecutor, classify_error
from .ignore import IgnoreFileReader, IgnoreRule, PatternLayer, PatternMatcher
from .operations import (
    ErrorCategory,
    FailedOperation,
    Operation,
    OperationKind,
    RunSummary,
    SyncPlan,
)
from .protocols import CredentialProvider, StorageClient
from .ratelimit import NullRateLimiter, TokenBucket
from .reconciler import Reconciler
from .scanner import DirectoryScanner, EntryKind, LocalEntry
from .state import RemoteMapping, StateStore, StateStoreManager

__all__ = [
    "SyncEngine",
    "PlanExecutor",
    "classify_error",
    "IgnoreFileReader",
    "IgnoreRule",
    "PatternLayer",
    "PatternMatcher",
    "ErrorCategory",
    "FailedOperation",
    "Operation",
    "OperationKind",
    "RunSummary",
    "SyncPlan",
    "CredentialProvider",
    "StorageClient",
    "NullRateLimiter",
    "TokenBucket",
    "Reconciler",
    "DirectoryScanner",
    "EntryKind",
    "LocalEntry",
    "RemoteMapping",
    "StateStore",
    "StateStoreManager",
]
