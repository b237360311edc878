"""
Network transport used by the request orchestrator.

A transport performs exactly one HTTP exchange and reports the raw outcome.
Status-code interpretation, retries and authentication belong to the
orchestrator; the transport only turns low-level failures into
TransientNetworkError / RequestTimeoutError.
"""

import asyncio
import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import aiohttp

from .errors import RequestTimeoutError, TransientNetworkError

logger = logging.getLogger(__name__)


@dataclass
class TransportResponse:
    """Raw response. Header names are stored lower-cased."""
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    text: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


@dataclass
class UploadFile:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass
class MultipartBody:
    """Form fields and files sent as multipart/form-data."""
    fields: Dict[str, str] = field(default_factory=dict)
    files: Dict[str, UploadFile] = field(default_factory=dict)

    def fingerprint(self) -> str:
        """Stable description used to build request keys."""
        parts = [f"{name}={value}" for name, value in sorted(self.fields.items())]
        parts.extend(
            f"{name}@{upload.filename}:{len(upload.content)}:"
            f"{hashlib.sha256(upload.content).hexdigest()[:16]}"
            for name, upload in sorted(self.files.items())
        )
        return "multipart(" + "&".join(parts) + ")"

    def to_form_data(self) -> aiohttp.FormData:
        form = aiohttp.FormData()
        for name, value in self.fields.items():
            form.add_field(name, value)
        for name, upload in self.files.items():
            form.add_field(
                name,
                upload.content,
                filename=upload.filename,
                content_type=upload.content_type
            )
        return form


class HttpTransport(ABC):
    """Single HTTP exchange."""

    @abstractmethod
    async def send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: Any = None,
        timeout: Optional[float] = None
    ) -> TransportResponse:
        """
        Perform one request.

        Raises:
            TransientNetworkError: On connection-level failures
            RequestTimeoutError: When the exchange exceeds ``timeout``
        """

    async def close(self) -> None:
        """Release network resources."""


class AiohttpTransport(HttpTransport):
    """
    HttpTransport backed by a lazily created aiohttp.ClientSession.

    A session passed in by the caller is used as-is and left open on close().
    """

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        user_agent: str = "FieldSync/1.0",
        connection_limit: int = 20
    ):
        self._session = session
        self._owns_session = session is None
        self.user_agent = user_agent
        self.connection_limit = connection_limit

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=self.connection_limit)
            self._session = aiohttp.ClientSession(
                connector=connector,
                headers={"User-Agent": self.user_agent}
            )
            self._owns_session = True
            logger.debug("Created aiohttp client session")
        return self._session

    @staticmethod
    def _encode_body(body: Any) -> Any:
        if isinstance(body, MultipartBody):
            return body.to_form_data()
        if isinstance(body, str):
            return body.encode('utf-8')
        return body

    async def send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: Any = None,
        timeout: Optional[float] = None
    ) -> TransportResponse:
        session = await self._get_session()
        client_timeout = aiohttp.ClientTimeout(total=timeout)

        try:
            async with session.request(
                method,
                url,
                headers=dict(headers),
                data=self._encode_body(body),
                timeout=client_timeout
            ) as response:
                text = await response.text(errors='replace')
                return TransportResponse(
                    status=response.status,
                    headers={k.lower(): v for k, v in response.headers.items()},
                    text=text
                )
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError(f"Request timed out after {timeout}s") from e
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"Network error: {e}") from e

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
            logger.debug("Closed aiohttp client session")
        self._session = None
