import asyncio
from dataclasses import dataclass
from typing import Any


@dataclass
class CacheEntry:
    """Cached response body. Timestamps come from the orchestrator clock."""
    data: Any
    captured_at: float
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


@dataclass
class PendingRequest:
    task: asyncio.Future
    started_at: float
