import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOCAL_ID_PREFIX = "local_"

_KNOWN_FIELDS = (
    "id", "formData", "createdAt", "synced", "syncedAt",
    "serverId", "attempts", "lastError",
)
_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_local_id() -> str:
    """Build an id that can never be mistaken for a server-issued one."""
    suffix = ''.join(random.choices(_ID_ALPHABET, k=9))
    return f"{LOCAL_ID_PREFIX}{int(time.time() * 1000)}_{suffix}"


def is_local_id(record_id: str) -> bool:
    return isinstance(record_id, str) and record_id.startswith(LOCAL_ID_PREFIX)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class LocalRecord:
    """A survey submission captured on the device and waiting for upload."""
    id: str
    payload: Any
    created_at: datetime
    synced: bool = False
    synced_at: Optional[datetime] = None
    server_id: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the persisted representation."""
        data = dict(self.extra)
        data.update({
            "id": self.id,
            "formData": self.payload,
            "createdAt": self.created_at.isoformat(),
            "synced": self.synced,
            "attempts": self.attempts,
        })
        if self.synced_at is not None:
            data["syncedAt"] = self.synced_at.isoformat()
        if self.server_id is not None:
            data["serverId"] = self.server_id
        if self.last_error is not None:
            data["lastError"] = self.last_error
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LocalRecord':
        """Create from the persisted representation, keeping unknown fields."""
        server_id = data.get("serverId")
        return cls(
            id=data["id"],
            payload=data.get("formData"),
            created_at=_parse_datetime(data.get("createdAt")) or datetime.now(timezone.utc),
            synced=bool(data.get("synced", False)),
            synced_at=_parse_datetime(data.get("syncedAt")),
            server_id=str(server_id) if server_id is not None else None,
            attempts=int(data.get("attempts", 0)),
            last_error=data.get("lastError"),
            extra={k: v for k, v in data.items() if k not in _KNOWN_FIELDS},
        )
