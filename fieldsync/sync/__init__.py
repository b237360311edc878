"""
Resilient request/sync subsystem.

This package provides the components that keep field data flowing to the
collection API under unreliable connectivity:
- RequestOrchestrator: caching, deduplication, retry and token refresh
- LocalDurableStore: durable queue of records captured offline
- SyncCoordinator: replays the queue when connectivity allows
"""

from .connectivity import ConnectivityObserver, HealthCheckConnectivity, ManualConnectivity
from .credentials import CredentialStore
from .kv_store import KeyValueStore, MemoryKeyValueStore, SqliteKeyValueStore
from .local_store import LocalDurableStore
from .request_orchestrator import AuthState, RequestOptions, RequestOrchestrator
from .sync_coordinator import SyncCoordinator, SyncReport, SyncState
from .transport import AiohttpTransport, HttpTransport, TransportResponse, UploadFile

__all__ = [
    'AiohttpTransport', 'AuthState', 'ConnectivityObserver', 'CredentialStore',
    'HealthCheckConnectivity', 'HttpTransport', 'KeyValueStore', 'LocalDurableStore',
    'ManualConnectivity', 'MemoryKeyValueStore', 'RequestOptions', 'RequestOrchestrator',
    'SqliteKeyValueStore', 'SyncCoordinator', 'SyncReport', 'SyncState',
    'TransportResponse', 'UploadFile',
]
