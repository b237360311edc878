"""
Request orchestrator for every outbound call to the collection API.

This module wraps a network transport with:
- In-memory response caching for GET requests (TTL, Cache-Control aware)
- Deduplication of identical in-flight requests
- Linear-backoff retry for transient failures
- Single-flight access token refresh on 401
- One user-facing notification per terminal error
"""

import asyncio
import email.utils
import functools
import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from ..config.app_config import ApiConfig
from ..models.cache_entry import CacheEntry, PendingRequest
from .credentials import CredentialStore
from .errors import (
    ApiError,
    InvalidCredentialsError,
    InvalidResponseError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitedError,
    RequestTimeoutError,
    ServerError,
    SessionExpiredError,
    ValidationError,
)
from .transport import HttpTransport, MultipartBody, TransportResponse, UploadFile

logger = logging.getLogger(__name__)

SESSION_EXPIRED_MESSAGE = "Session expired. Please sign in again."

_MAX_AGE_PATTERN = re.compile(r"max-age=(\d+)")


class AuthState(Enum):
    """Credential lifecycle as seen by the orchestrator."""
    AUTHENTICATED = "authenticated"
    REFRESH_IN_FLIGHT = "refresh_in_flight"
    EXPIRED = "expired"


@dataclass
class RequestOptions:
    """Per-call options. ``None`` retry settings fall back to the orchestrator defaults."""
    method: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    timeout: Optional[float] = None
    skip_auth: bool = False
    skip_cache: bool = False
    retry_limit: Optional[int] = None
    retry_delay: Optional[float] = None
    notify_errors: bool = True


def json_serialize_fallback(obj: Any) -> Any:
    """
    JSON serialization fallback for non-standard types.

    Args:
        obj: Object to serialize

    Returns:
        Serializable representation of the object

    Raises:
        TypeError: If object is not serializable
    """
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, date):
        return obj.isoformat()
    raise TypeError(f"Object of type {obj.__class__.__name__} is not JSON serializable")


def serialize_body(body: Any) -> str:
    """Render a request body as the string used inside request keys."""
    if body is None:
        return ""
    if isinstance(body, str):
        return body
    if isinstance(body, bytes):
        return hashlib.sha256(body).hexdigest()
    if isinstance(body, MultipartBody):
        return body.fingerprint()
    return json.dumps(body, sort_keys=True, default=json_serialize_fallback)


def build_request_key(method: str, url: str, body: Any = None) -> str:
    """Key shared by the response cache and the in-flight request map."""
    return f"{method.upper()}:{url}:{serialize_body(body)}"


class RequestOrchestrator:
    """
    Single entry point for calls to the remote service.

    One instance is built at the composition root and shared; it owns the
    response cache, the pending-request map and the refresh handle. All of
    that state is touched only from the event loop thread, and never across
    an await between a check and the matching update.
    """

    CACHE_TTL = 300.0  # seconds
    DEDUP_WINDOW = 1.0  # seconds
    MAX_RETRIES = 3
    RETRY_DELAY = 1.0  # seconds
    DEFAULT_TIMEOUT = 30.0  # seconds
    RATE_LIMIT_DEFAULT_WAIT = 5.0  # seconds
    PENDING_STALE_FACTOR = 10

    def __init__(
        self,
        transport: HttpTransport,
        credentials: CredentialStore,
        base_url: str,
        timeout: Optional[float] = None,
        cache_ttl: Optional[float] = None,
        dedup_window: Optional[float] = None,
        retry_limit: Optional[int] = None,
        retry_delay: Optional[float] = None,
        refresh_endpoint: str = "/auth/refresh",
        notifier: Optional[Callable[[str], None]] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            transport: Network transport performing single exchanges
            credentials: Holder of the current access token
            base_url: Prefix for relative endpoints
            timeout: Hard per-call timeout in seconds
            cache_ttl: Default cache lifetime for GET responses
            dedup_window: How long an in-flight request can be joined
            retry_limit: Retries allowed after the first attempt
            retry_delay: Base delay for linear backoff
            refresh_endpoint: Token refresh endpoint
            notifier: Receives the message of every terminal error once
            clock: Monotonic time source (seconds)
            sleep: Coroutine used for backoff waits
        """
        self.transport = transport
        self.credentials = credentials
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.cache_ttl = self.CACHE_TTL if cache_ttl is None else cache_ttl
        self.dedup_window = self.DEDUP_WINDOW if dedup_window is None else dedup_window
        self.retry_limit = self.MAX_RETRIES if retry_limit is None else retry_limit
        self.retry_delay = self.RETRY_DELAY if retry_delay is None else retry_delay
        self.refresh_endpoint = refresh_endpoint
        self.notifier = notifier
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep

        self._cache: Dict[str, CacheEntry] = {}
        self._pending: Dict[str, PendingRequest] = {}
        self._refresh_task: Optional[asyncio.Future] = None

    @classmethod
    def from_config(
        cls,
        config: ApiConfig,
        transport: HttpTransport,
        credentials: CredentialStore,
        notifier: Optional[Callable[[str], None]] = None
    ) -> 'RequestOrchestrator':
        """
        Create an orchestrator from the API configuration.

        Args:
            config: API section of the application configuration
            transport: HTTP transport used for every exchange
            credentials: Source of the bearer token
            notifier: Receives the message of every terminal error once

        Returns:
            RequestOrchestrator instance
        """
        return cls(
            transport=transport,
            credentials=credentials,
            base_url=config.base_url,
            timeout=config.timeout,
            cache_ttl=config.cache_ttl,
            dedup_window=config.dedup_window,
            retry_limit=config.retry_limit,
            retry_delay=config.retry_delay,
            refresh_endpoint=config.refresh_endpoint,
            notifier=notifier
        )

    @property
    def auth_state(self) -> AuthState:
        """Authentication state derived from the held token and any running refresh."""
        if self._refresh_task is not None:
            return AuthState.REFRESH_IN_FLIGHT
        if self.credentials.token:
            return AuthState.AUTHENTICATED
        return AuthState.EXPIRED

    def build_url(self, endpoint: str) -> str:
        """Resolve an endpoint against the base URL unless it is already absolute."""
        if endpoint.startswith('http://') or endpoint.startswith('https://'):
            return endpoint
        if not endpoint.startswith('/'):
            endpoint = '/' + endpoint
        return f"{self.base_url}{endpoint}"

    async def request(
        self,
        endpoint: str,
        options: Optional[RequestOptions] = None,
        **overrides: Any
    ) -> Any:
        """
        Issue a request through cache, deduplication, retry and auth handling.

        Args:
            endpoint: Path relative to the base URL, or an absolute URL
            options: Request options
            **overrides: Individual RequestOptions fields to override

        Returns:
            The decoded JSON body, or None for an empty body

        Raises:
            ApiError: A terminal error (already reported to the notifier)
        """
        opts = options or RequestOptions()
        if overrides:
            opts = replace(opts, **overrides)

        url = self.build_url(endpoint)
        method = (opts.method or "GET").upper()
        key = build_request_key(method, url, opts.body)
        cacheable = method == "GET" and not opts.skip_cache

        if cacheable:
            entry = self._cache.get(key)
            if entry is not None and entry.is_valid(self._clock()):
                logger.debug(f"Cache hit: {method} {url}")
                return entry.data

        now = self._clock()
        pending = self._pending.get(key)
        if pending is not None and now - pending.started_at < self.dedup_window:
            logger.debug(f"Joining in-flight request: {method} {url}")
            return await asyncio.shield(pending.task)

        task = asyncio.ensure_future(self._execute(method, url, key, opts, cacheable))
        handle = PendingRequest(task=task, started_at=now)
        self._pending[key] = handle
        task.add_done_callback(functools.partial(self._release_pending, key, handle))
        return await asyncio.shield(task)

    def _release_pending(self, key: str, handle: PendingRequest, task: asyncio.Future) -> None:
        if self._pending.get(key) is handle:
            del self._pending[key]
        # The error was already logged and reported inside the task.
        if not task.cancelled():
            task.exception()

    async def _execute(
        self,
        method: str,
        url: str,
        key: str,
        opts: RequestOptions,
        cacheable: bool
    ) -> Any:
        retry_limit = self.retry_limit if opts.retry_limit is None else opts.retry_limit
        retry_delay = self.retry_delay if opts.retry_delay is None else opts.retry_delay
        attempt = 0
        auth_retried = False

        while True:
            try:
                response, token_used = await self._send_once(method, url, opts)

                if response.status == 401 and not opts.skip_auth:
                    if auth_retried:
                        await self._expire_session()
                        raise SessionExpiredError(SESSION_EXPIRED_MESSAGE, status=401)
                    auth_retried = True
                    await self._refresh_after_unauthorized(token_used)
                    logger.info(f"Retrying {method} {url} with refreshed credentials")
                    continue

                data = self._handle_response(response)
            except ApiError as e:
                if e.retryable and attempt < retry_limit:
                    attempt += 1
                    delay = retry_delay * attempt
                    logger.warning(
                        f"{method} {url} failed: {e.message}. "
                        f"Retry {attempt}/{retry_limit} in {delay:.1f}s"
                    )
                    await self._sleep(delay)
                    continue

                logger.error(f"API error [{method} {url}]: {e.message}")
                if opts.notify_errors:
                    self._report(e)
                raise

            if attempt > 0:
                logger.info(f"{method} {url} succeeded after {attempt + 1} attempts")
            if cacheable:
                self._store_in_cache(key, data, response)
            return data

    async def _send_once(
        self,
        method: str,
        url: str,
        opts: RequestOptions
    ) -> Tuple[TransportResponse, Optional[str]]:
        """Send one attempt and return the response with the token it carried."""
        if isinstance(opts.body, MultipartBody):
            headers: Dict[str, str] = {}
        else:
            headers = {"Content-Type": "application/json"}
        headers.update(opts.headers)

        token = None
        if not opts.skip_auth:
            token = self.credentials.token
            if token:
                headers["Authorization"] = f"Bearer {token}"

        body = opts.body
        if isinstance(body, (dict, list)):
            body = json.dumps(body, default=json_serialize_fallback)

        timeout = opts.timeout or self.timeout
        try:
            response = await asyncio.wait_for(
                self.transport.send(method, url, headers, body, timeout=timeout),
                timeout
            )
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError(f"Request timed out after {timeout:g}s") from e
        return response, token

    async def _refresh_after_unauthorized(self, token_used: Optional[str]) -> None:
        current = self.credentials.token
        if current and current != token_used:
            # Someone else refreshed while this request was in flight.
            return

        if self._refresh_task is None:
            if not current:
                # Already signed out; the sign-out hook has fired once.
                raise SessionExpiredError(SESSION_EXPIRED_MESSAGE, status=401)
            logger.info("Access token rejected, refreshing")
            self._refresh_task = asyncio.ensure_future(self._refresh_token())
        await asyncio.shield(self._refresh_task)

    async def _refresh_token(self) -> str:
        url = self.build_url(self.refresh_endpoint)
        try:
            current = self.credentials.token
            if not current:
                raise SessionExpiredError("No token to refresh")

            headers = {
                "Content-Type": "application/json",
                "Authorization": f"Bearer {current}"
            }
            response = await asyncio.wait_for(
                self.transport.send("POST", url, headers, None, timeout=self.timeout),
                self.timeout
            )
            if not response.ok:
                raise SessionExpiredError(f"Token refresh failed ({response.status})", response.status)

            data = json.loads(response.text) if response.text.strip() else {}
            new_token = (data.get("access_token") or data.get("token")) if isinstance(data, dict) else None
            if not new_token:
                raise SessionExpiredError("No token in refresh response")

            await self.credentials.set_token(new_token)
            logger.info("Access token refreshed")
            return new_token
        except (ApiError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"Token refresh failed: {e}")
            await self._expire_session()
            raise SessionExpiredError(SESSION_EXPIRED_MESSAGE, status=401) from e
        finally:
            self._refresh_task = None

    async def _expire_session(self) -> None:
        if self.credentials.is_authenticated:
            await self.credentials.sign_out()

    def _handle_response(self, response: TransportResponse) -> Any:
        """Decode a successful response or raise the matching ApiError."""
        if response.ok:
            return self._parse_body(response)

        status = response.status
        message = self._error_message(response)

        if status == 401:
            raise InvalidCredentialsError(message or "Invalid credentials", status)
        if status == 403:
            raise PermissionDeniedError(
                message or "Access denied. You do not have the required permissions.", status
            )
        if status == 404:
            raise NotFoundError("Resource not found", status)
        if status == 429:
            retry_after = self._parse_retry_after(response.header("Retry-After"))
            raise RateLimitedError(
                f"Too many requests. Try again in {retry_after:g} seconds.", retry_after
            )
        if status >= 500:
            raise ServerError(message or f"Server error ({status}). Please try again later.", status)
        raise ValidationError(message or f"HTTP error {status}", status)

    @staticmethod
    def _parse_body(response: TransportResponse) -> Any:
        if not response.text or not response.text.strip():
            return None
        try:
            return json.loads(response.text)
        except ValueError as e:
            logger.error(f"Invalid JSON in response: {response.text[:200]!r}")
            raise InvalidResponseError("Invalid response from server", response.status) from e

    @staticmethod
    def _error_message(response: TransportResponse) -> Optional[str]:
        try:
            data = json.loads(response.text) if response.text else None
        except ValueError:
            return None
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
        return None

    def _parse_retry_after(self, value: Optional[str]) -> float:
        """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
        if not value:
            return self.RATE_LIMIT_DEFAULT_WAIT
        value = value.strip()
        try:
            return max(0.0, float(value))
        except ValueError:
            pass
        try:
            when = email.utils.parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return self.RATE_LIMIT_DEFAULT_WAIT
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())

    def _store_in_cache(self, key: str, data: Any, response: TransportResponse) -> None:
        ttl = self.cache_ttl
        cache_control = response.header("Cache-Control")
        if cache_control:
            match = _MAX_AGE_PATTERN.search(cache_control)
            if match:
                ttl = float(match.group(1))

        now = self._clock()
        self._cache[key] = CacheEntry(data=data, captured_at=now, expires_at=now + ttl)

    def _report(self, error: ApiError) -> None:
        """Hand a terminal error to the notifier, at most once per error."""
        if error.reported:
            return
        error.reported = True
        if self.notifier is None:
            return
        try:
            self.notifier(error.message)
        except Exception as e:
            logger.error(f"Error in notification callback: {e}")

    async def get(self, endpoint: str, options: Optional[RequestOptions] = None, **overrides: Any) -> Any:
        """GET request."""
        return await self.request(endpoint, options, **{**overrides, 'method': 'GET'})

    async def post(
        self,
        endpoint: str,
        data: Any = None,
        options: Optional[RequestOptions] = None,
        **overrides: Any
    ) -> Any:
        """POST request with a JSON body."""
        return await self.request(endpoint, options, **{**overrides, 'method': 'POST', 'body': data})

    async def put(
        self,
        endpoint: str,
        data: Any = None,
        options: Optional[RequestOptions] = None,
        **overrides: Any
    ) -> Any:
        """PUT request with a JSON body."""
        return await self.request(endpoint, options, **{**overrides, 'method': 'PUT', 'body': data})

    async def patch(
        self,
        endpoint: str,
        data: Any = None,
        options: Optional[RequestOptions] = None,
        **overrides: Any
    ) -> Any:
        """PATCH request with a JSON body."""
        return await self.request(endpoint, options, **{**overrides, 'method': 'PATCH', 'body': data})

    async def delete(self, endpoint: str, options: Optional[RequestOptions] = None, **overrides: Any) -> Any:
        """DELETE request."""
        return await self.request(endpoint, options, **{**overrides, 'method': 'DELETE'})

    async def upload(
        self,
        endpoint: str,
        fields: Optional[Dict[str, str]] = None,
        files: Optional[Dict[str, UploadFile]] = None,
        options: Optional[RequestOptions] = None,
        **overrides: Any
    ) -> Any:
        """
        Upload files as multipart/form-data. Uploads are never cached.

        Args:
            endpoint: Target endpoint
            fields: Plain form fields
            files: Files keyed by form field name
            options: Request options
        """
        body = MultipartBody(fields=dict(fields or {}), files=dict(files or {}))
        return await self.request(
            endpoint,
            options,
            **{**overrides, 'method': 'POST', 'body': body, 'skip_cache': True}
        )

    def invalidate_cache(self, endpoint: Optional[str] = None) -> int:
        """
        Drop cached responses.

        Args:
            endpoint: Only drop entries for this endpoint; everything if None

        Returns:
            Number of entries removed
        """
        if endpoint is None:
            removed = len(self._cache)
            self._cache.clear()
            return removed

        url = self.build_url(endpoint)
        stale = [key for key in self._cache if key.partition(":")[2].startswith(f"{url}:")]
        for key in stale:
            del self._cache[key]
        return len(stale)

    def purge_expired(self) -> int:
        """Remove expired cache entries and long-forgotten pending handles."""
        now = self._clock()
        expired = [key for key, entry in self._cache.items() if not entry.is_valid(now)]
        for key in expired:
            del self._cache[key]

        stale_after = self.dedup_window * self.PENDING_STALE_FACTOR
        stale = [key for key, pending in self._pending.items() if now - pending.started_at > stale_after]
        for key in stale:
            del self._pending[key]

        if expired or stale:
            logger.debug(f"Purged {len(expired)} cache entries and {len(stale)} pending requests")
        return len(expired) + len(stale)

    def clear(self) -> None:
        """Forget every cached response and pending request."""
        self._cache.clear()
        self._pending.clear()

    async def close(self) -> None:
        self.clear()
        await self.transport.close()
