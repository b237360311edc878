"""
Pytest configuration and shared fixtures for the field sync tests.
"""
import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from fieldsync.config.app_config import ApiConfig, AppConfig, StorageConfig, SyncConfig
from fieldsync.sync.connectivity import ManualConnectivity
from fieldsync.sync.credentials import CredentialStore
from fieldsync.sync.kv_store import MemoryKeyValueStore
from fieldsync.sync.local_store import LocalDurableStore
from fieldsync.sync.request_orchestrator import RequestOrchestrator
from fieldsync.sync.sync_coordinator import SyncCoordinator
from fieldsync.sync.transport import HttpTransport, TransportResponse

BASE_URL = "https://api.test"


def json_response(status: int, data: Any = None, headers: Optional[Dict[str, str]] = None) -> TransportResponse:
    """Build a TransportResponse with a JSON body."""
    text = json.dumps(data) if data is not None else ""
    return TransportResponse(
        status=status,
        headers={k.lower(): v for k, v in (headers or {}).items()},
        text=text
    )


class FakeTransport(HttpTransport):
    """
    Scripted transport.

    Responses are served per "METHOD path" route, in order; the last one is
    repeated once the script runs out. A scripted exception is raised instead
    of returned. Every call is recorded.
    """

    def __init__(self):
        self.routes: Dict[str, List[Any]] = {}
        self.calls: List[Dict[str, Any]] = []
        self.gate: Optional[asyncio.Event] = None
        self.closed = False

    def script(self, method: str, path: str, *outcomes: Any) -> None:
        self.routes[f"{method.upper()} {path}"] = list(outcomes)

    def calls_to(self, method: str, path: str) -> List[Dict[str, Any]]:
        url = BASE_URL + path
        return [c for c in self.calls if c["method"] == method.upper() and c["url"] == url]

    async def send(self, method, url, headers, body=None, timeout=None):
        self.calls.append({
            "method": method,
            "url": url,
            "headers": dict(headers),
            "body": body,
            "timeout": timeout,
        })
        if self.gate is not None:
            await self.gate.wait()

        path = url[len(BASE_URL):] if url.startswith(BASE_URL) else url
        outcomes = self.routes.get(f"{method.upper()} {path}")
        if not outcomes:
            return json_response(404, {"message": "Not found"})
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(method, url, headers, body)
        return outcome

    async def close(self):
        self.closed = True


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Stand-in for asyncio.sleep that records delays without waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def transport():
    """Create a scripted fake transport."""
    return FakeTransport()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def kv_store():
    """Create an in-memory key-value store."""
    return MemoryKeyValueStore()


@pytest.fixture
def notifications():
    """Collects messages handed to the user notifier."""
    return []


@pytest.fixture
def sign_outs():
    return []


@pytest_asyncio.fixture
async def credentials(kv_store, sign_outs):
    """Create a credential store holding a valid token."""
    store = CredentialStore(kv_store, on_sign_out=lambda: sign_outs.append(True))
    await store.set_token("token-1")
    return store


@pytest.fixture
def orchestrator(transport, credentials, notifications, clock, sleeper):
    """Create an orchestrator wired to fakes."""
    return RequestOrchestrator(
        transport=transport,
        credentials=credentials,
        base_url=BASE_URL,
        timeout=5.0,
        notifier=notifications.append,
        clock=clock,
        sleep=sleeper
    )


@pytest.fixture
def local_store(kv_store):
    """Create a durable store over the in-memory backend."""
    return LocalDurableStore(kv_store, max_attempts=3)


@pytest.fixture
def connectivity():
    return ManualConnectivity(initially_online=True)


@pytest.fixture
def coordinator(local_store, orchestrator, connectivity):
    """Create a sync coordinator over the fakes."""
    return SyncCoordinator(local_store, orchestrator, connectivity, interval=3600)


@pytest.fixture
def test_app_config():
    """Create a test application configuration."""
    return AppConfig(
        api=ApiConfig(base_url=BASE_URL, timeout=5.0, retry_delay=0.0),
        storage=StorageConfig(path=":memory:"),
        sync=SyncConfig(interval=3600, health_check_interval=3600, housekeeping_interval=3600)
    )
