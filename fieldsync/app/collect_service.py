"""
Field collection service.

Builds the request/sync components once and exposes the operations UI code
needs: submit a record, sign in and out, observe sync, read status.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from ..config.app_config import AppConfig
from ..sync.connectivity import ConnectivityObserver, HealthCheckConnectivity
from ..sync.credentials import CredentialStore
from ..sync.errors import ApiError, ServerError, SessionExpiredError, TransientNetworkError
from ..sync.kv_store import KeyValueStore, SqliteKeyValueStore
from ..sync.local_store import LocalDurableStore
from ..sync.request_orchestrator import RequestOrchestrator
from ..sync.sync_coordinator import SyncCoordinator, SyncObserver, SyncReport
from ..sync.transport import AiohttpTransport, HttpTransport


class ServiceStatus(Enum):
    """Status states for the collection service."""
    STARTING = "starting"
    ONLINE = "online"
    OFFLINE = "offline"
    STOPPED = "stopped"


@dataclass
class ServiceState:
    """Current state of the collection service."""
    status: ServiceStatus = ServiceStatus.STOPPED
    message: str = ""
    last_sync: Optional[datetime] = None
    pending_records: int = 0
    error_count: int = 0
    errors: list = field(default_factory=list)


@dataclass
class SubmissionResult:
    """Where a submitted record ended up."""
    queued: bool
    local_id: Optional[str] = None
    server_id: Optional[str] = None
    error: Optional[str] = None


class CollectService:
    """
    Composition root for the field client.

    Every collaborator can be injected; anything not injected is built from
    the configuration. One instance is meant to live for the whole session.
    """

    # Errors after which a submission is kept locally for a later sync pass
    QUEUEABLE_ERRORS = (TransientNetworkError, ServerError, SessionExpiredError)

    def __init__(
        self,
        config: AppConfig,
        kv_store: Optional[KeyValueStore] = None,
        transport: Optional[HttpTransport] = None,
        connectivity: Optional[ConnectivityObserver] = None,
        notifier: Optional[Callable[[str], None]] = None,
        on_sign_out: Optional[Callable[[], Any]] = None,
        on_status_change: Optional[Callable[[ServiceState], None]] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the collection service.

        Args:
            config: Application configuration
            kv_store: Persistence substrate (SQLite file by default)
            transport: Network transport (aiohttp by default)
            connectivity: Online/offline source (API health check by default)
            notifier: Receives user-facing error messages
            on_sign_out: Called when the session expires or the user logs out
            on_status_change: Callback for status updates
            logger: Optional logger instance
        """
        self.config = config
        self.on_status_change = on_status_change
        self.logger = logger or logging.getLogger(__name__)

        self.kv_store = kv_store or SqliteKeyValueStore(config.storage.path, config.storage.namespace)
        self.transport = transport or AiohttpTransport(user_agent=config.api.user_agent)
        self.credentials = CredentialStore(self.kv_store, on_sign_out=on_sign_out)
        self.orchestrator = RequestOrchestrator.from_config(
            config.api, self.transport, self.credentials, notifier=notifier
        )
        self.store = LocalDurableStore(
            self.kv_store,
            retention_days=config.storage.retention_days,
            max_attempts=config.sync.max_record_attempts
        )
        self.connectivity = connectivity or HealthCheckConnectivity(
            self.transport,
            self.orchestrator.build_url(config.api.health_endpoint),
            interval=config.sync.health_check_interval
        )
        self.coordinator = SyncCoordinator.from_config(
            config.sync, self.store, self.orchestrator, self.connectivity
        )

        self._state = ServiceState()
        self._housekeeping_task: Optional[asyncio.Task] = None
        self._unsubscribers: List[Callable[[], None]] = []
        self._running = False

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    def _update_status(
        self,
        status: ServiceStatus,
        message: str = "",
        error: Optional[Union[Exception, str]] = None
    ) -> None:
        """
        Update service status and notify callback.

        Args:
            status: New status
            message: Optional status message
            error: Optional error that occurred
        """
        self._state.status = status
        self._state.message = message

        if error:
            self._state.error_count += 1
            self._state.errors.append({
                'time': datetime.now(),
                'error': str(error)
            })
            # Keep only last 10 errors
            self._state.errors = self._state.errors[-10:]

        self.logger.info(f"Status: {status.value} - {message}")

        if self.on_status_change:
            try:
                self.on_status_change(self._state)
            except Exception as e:
                self.logger.error(f"Error in status callback: {e}")

    def _status_for_connectivity(self) -> ServiceStatus:
        return ServiceStatus.ONLINE if self.connectivity.is_online else ServiceStatus.OFFLINE

    def _on_connectivity_change(self, online: bool) -> None:
        if self._running and not self.coordinator.is_syncing:
            self._update_status(self._status_for_connectivity(), "Connected" if online else "Working offline")

    async def _on_sync_complete(self, report: SyncReport) -> None:
        self._state.last_sync = report.finished_at
        self._state.pending_records = await self.store.get_unsynced_count()
        if report.failed:
            self._update_status(
                self._status_for_connectivity(),
                f"{report.failed} record(s) could not be synchronized",
                error=next(iter(report.errors.values()))
            )
        else:
            self._update_status(self._status_for_connectivity(), f"{report.synced} record(s) synchronized")

    async def start(self) -> None:
        """Restore credentials, start connectivity observation, sync and housekeeping."""
        if self._running:
            self.logger.warning("Service is already running")
            return

        self._update_status(ServiceStatus.STARTING, "Loading stored credentials...")
        await self.credentials.load()
        self._state.pending_records = await self.store.get_unsynced_count()

        self._unsubscribers.append(self.connectivity.subscribe(self._on_connectivity_change))
        self._unsubscribers.append(self.coordinator.on_sync(self._on_sync_complete))

        self._running = True
        await self.store.cleanup_old_records()
        if self.config.sync.enabled:
            await self.coordinator.start()
        self._housekeeping_task = asyncio.create_task(self._housekeeping_loop())

        self._update_status(self._status_for_connectivity(), "Collection service running")

    async def stop(self) -> None:
        """Stop background work and release resources."""
        if self._running:
            self.logger.info("Stopping collection service...")
            self._running = False

            if self._housekeeping_task is not None:
                self._housekeeping_task.cancel()
                try:
                    await self._housekeeping_task
                except asyncio.CancelledError:
                    pass
                self._housekeeping_task = None

            if self.config.sync.enabled:
                await self.coordinator.stop()
            for unsubscribe in self._unsubscribers:
                unsubscribe()
            self._unsubscribers.clear()

        await self.orchestrator.close()
        self.kv_store.close()
        self._update_status(ServiceStatus.STOPPED, "Service stopped")

    async def sync_once(self) -> Optional[SyncReport]:
        """
        Check connectivity and run a single sync pass without starting the service.

        Raises:
            OfflineError: If the API cannot be reached
        """
        await self.credentials.load()
        await self.connectivity.poll()
        return await self.coordinator.force_sync()

    async def _housekeeping_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sync.housekeeping_interval)
            self.orchestrator.purge_expired()
            await self.store.cleanup_old_records()

    async def submit(self, payload: Dict[str, Any]) -> SubmissionResult:
        """
        Submit a survey record, straight to the server when online.

        Offline submissions, and online ones that fail for a reason a later
        sync pass can fix, are kept in the local store.

        Args:
            payload: Survey form data

        Returns:
            SubmissionResult describing where the record went

        Raises:
            ApiError: When the server rejected the record outright
        """
        if not self.connectivity.is_online:
            local_id = await self.store.save_record(payload)
            self._state.pending_records += 1
            return SubmissionResult(queued=True, local_id=local_id)

        endpoint = self.coordinator.endpoint_for(payload)
        try:
            result = await self.orchestrator.post(endpoint, {"formData": payload}, skip_cache=True)
        except self.QUEUEABLE_ERRORS as e:
            self.logger.warning(f"Submission failed, keeping it locally: {e}")
            local_id = await self.store.save_record(payload)
            self._state.pending_records += 1
            return SubmissionResult(queued=True, local_id=local_id, error=str(e))

        server_id = result.get("id") if isinstance(result, dict) else None
        return SubmissionResult(queued=False, server_id=str(server_id) if server_id is not None else None)

    async def login(self, username: str, password: str) -> Optional[Dict[str, Any]]:
        """
        Sign in and store the returned access token.

        Returns:
            The user object returned by the server, if any

        Raises:
            InvalidCredentialsError: If the server rejects the credentials
            ApiError: For other failures
        """
        data = await self.orchestrator.post(
            self.config.api.login_endpoint,
            {"username": username, "password": password},
            skip_auth=True,
            skip_cache=True
        )
        token = (data.get("access_token") or data.get("token")) if isinstance(data, dict) else None
        if not token:
            raise ApiError("No token in login response")

        await self.credentials.set_token(token)
        user = data.get("user")
        await self.credentials.set_user(user)
        self.logger.info("User signed in")

        reset = await self.store.reset_attempts()
        if reset:
            self.logger.info(f"{reset} held-back record(s) returned to the sync queue")

        if self.connectivity.is_online and self.config.sync.enabled:
            self.coordinator.request_sync()
        return user

    async def logout(self) -> None:
        self.orchestrator.clear()
        await self.credentials.sign_out()

    def on_sync(self, callback: SyncObserver) -> Callable[[], None]:
        return self.coordinator.on_sync(callback)

    async def get_local_stats(self) -> Dict[str, Any]:
        return await self.store.get_local_stats()

    async def get_status_summary(self) -> Dict[str, Any]:
        """
        Get a summary of current service status.

        Returns:
            Dictionary with status information
        """
        state = self._state
        sync_status = await self.coordinator.get_sync_status()
        return {
            'status': state.status.value,
            'message': state.message,
            'running': self._running,
            'online': sync_status['is_online'],
            'syncing': sync_status['is_syncing'],
            'authenticated': self.credentials.is_authenticated,
            'auth_state': self.orchestrator.auth_state.value,
            'last_sync': sync_status['last_sync'].isoformat() if sync_status['last_sync'] else None,
            'pending_records': sync_status['unsynced_count'],
            'error_count': state.error_count,
            'recent_errors': state.errors[-3:] if state.errors else []
        }
