"""HTTP transport for Shelly devices.

Gen2+ devices take JSON-RPC envelopes POSTed to ``/rpc``; Gen1 devices
expose a REST API of literal paths fetched with GET.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Final
from urllib.parse import urlsplit

import aiohttp

from .auth import build_digest_authorization, parse_digest_challenge
from .errors import (
    MaxRetriesExceededError,
    ShellyAuthError,
    ShellyClientError,
    ShellyClosedError,
    ShellyConnectionError,
    ShellyInvalidRequestError,
    ShellyNotFoundError,
    ShellyResponseError,
    ShellyTimeout,
)
from .options import AuthType, TransportOptions, calculate_backoff_delay, resolve_options
from .protocol import Request, build_envelope, encode_envelope

_LOGGER = logging.getLogger(__name__)

RPC_PATH: Final = "/rpc"
POOL_SIZE: Final = 10
KEEPALIVE_TIMEOUT: Final = 90.0

# Failures that will not change on a second attempt
_NOT_RETRIED: Final = (
    ShellyAuthError,
    ShellyNotFoundError,
    ShellyInvalidRequestError,
    ShellyClosedError,
)


def normalize_base_url(base_url: str) -> str:
    """Add ``http://`` when no scheme is given and strip the trailing slash."""
    if not base_url.startswith(("http://", "https://")):
        base_url = f"http://{base_url}"
    return base_url.rstrip("/")


def status_error(status: int, body: bytes) -> ShellyClientError:
    """Translate an HTTP error status into a typed error."""
    if status == 401:
        return ShellyAuthError(f"authentication failed: HTTP {status}")
    if status == 404:
        return ShellyNotFoundError(f"resource not found: HTTP {status}")
    if status == 408:
        return ShellyTimeout(f"request timed out: HTTP {status}")
    text = body.decode(errors="replace")
    return ShellyResponseError(status, f"HTTP error {status}: {text}", body)


class HttpTransport:
    """HTTP transport with pooled connections, retries and Basic/Digest auth.

    Each call is retried up to ``max_retries`` times with exponential
    backoff, except for failures that cannot succeed on a retry
    (authentication, not found, malformed requests).
    """

    def __init__(
        self,
        base_url: str,
        *,
        options: TransportOptions | None = None,
        **overrides: Any,
    ) -> None:
        self._options = resolve_options(options, **overrides)
        self._base_url = normalize_base_url(base_url)
        self._session: aiohttp.ClientSession | None = self._options.session
        self._owns_session = self._session is None
        self._closed = False

    async def __aenter__(self) -> HttpTransport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def timeout(self) -> float:
        """Timeout of a single HTTP attempt, in seconds."""
        return self._options.timeout

    @timeout.setter
    def timeout(self, value: float) -> None:
        self._options.timeout = value

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            ssl_context = self._options.build_ssl_context()
            connector = aiohttp.TCPConnector(
                limit=POOL_SIZE,
                limit_per_host=POOL_SIZE,
                keepalive_timeout=KEEPALIVE_TIMEOUT,
                ssl=ssl_context if ssl_context is not None else True,
            )
            self._session = aiohttp.ClientSession(connector=connector)
        return self._session

    def _client_timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self._options.timeout)

    async def call(self, request: Request, *, timeout: float | None = None) -> bytes:
        """Execute ``request`` and return the raw response body.

        Args:
            request: RPC or REST request.
            timeout: Overall deadline covering every attempt and backoff.
                Hitting it is never retried.

        Raises:
            ShellyClosedError: If the transport is closed.
            ShellyTimeout: If the overall deadline expires.
            MaxRetriesExceededError: If every attempt failed.
        """
        if self._closed:
            raise ShellyClosedError("HTTP transport is closed")
        try:
            async with asyncio.timeout(timeout):
                return await self._call_with_retry(request)
        except TimeoutError as err:
            raise ShellyTimeout("HTTP call deadline exceeded") from err

    async def _call_with_retry(self, request: Request) -> bytes:
        retries = self._options.max_retries
        attempt = 0
        while True:
            try:
                return await self._do_call(request)
            except _NOT_RETRIED:
                raise
            except ShellyClientError as err:
                if self._closed:
                    raise ShellyClosedError("HTTP transport is closed") from err
                _LOGGER.warning(
                    "[%s] %s failed (attempt %d/%d): %s",
                    self._base_url,
                    request.method,
                    attempt + 1,
                    retries + 1,
                    err,
                )
                if attempt >= retries:
                    raise MaxRetriesExceededError(err) from err

            delay = calculate_backoff_delay(
                self._options.retry_delay, attempt, self._options.retry_backoff
            )
            attempt += 1
            _LOGGER.debug(
                "[%s] Retrying %s in %.2fs (attempt %d/%d)",
                self._base_url,
                request.method,
                delay,
                attempt + 1,
                retries + 1,
            )
            await asyncio.sleep(delay)

    def _build(self, request: Request) -> tuple[str, str, bytes | None]:
        if request.is_rest:
            return "GET", f"{self._base_url}{request.method}", None
        body = encode_envelope(build_envelope(request))
        return "POST", f"{self._base_url}{RPC_PATH}", body

    async def _do_call(self, request: Request) -> bytes:
        """Perform a single HTTP attempt."""
        if self._closed:
            raise ShellyClosedError("HTTP transport is closed")

        method, url, body = self._build(request)
        headers = dict(self._options.headers)
        if body is not None:
            headers["Content-Type"] = "application/json"

        session = self._get_session()
        auth: aiohttp.BasicAuth | None = None
        credentials = self._options.credentials
        if credentials is not None:
            if self._options.auth_type is AuthType.BASIC:
                auth = aiohttp.BasicAuth(*credentials)
            else:
                authorization = await self._digest_authorization(session, method, url)
                if authorization is not None:
                    headers["Authorization"] = authorization

        try:
            async with session.request(
                method,
                url,
                data=body,
                headers=headers,
                auth=auth,
                timeout=self._client_timeout(),
            ) as resp:
                payload = await resp.read()
                status = resp.status
        except TimeoutError as err:
            raise ShellyTimeout("HTTP request timed out") from err
        except aiohttp.ClientError as err:
            raise ShellyConnectionError(f"HTTP request failed: {err}") from err

        if status >= 400:
            raise status_error(status, payload)
        return payload

    async def _digest_authorization(
        self, session: aiohttp.ClientSession, method: str, url: str
    ) -> str | None:
        """Probe ``url`` without credentials and answer its digest challenge.

        Returns:
            The ``Authorization`` header value, or None if the device did not
            ask for authentication.
        """
        try:
            async with session.request(
                method,
                url,
                headers=self._options.headers,
                timeout=self._client_timeout(),
            ) as resp:
                status = resp.status
                challenge_header = resp.headers.get("WWW-Authenticate", "")
        except TimeoutError as err:
            raise ShellyTimeout("Digest challenge request timed out") from err
        except aiohttp.ClientError as err:
            raise ShellyConnectionError(f"Digest challenge request failed: {err}") from err

        if status != 401:
            return None

        challenge = parse_digest_challenge(challenge_header)
        parts = urlsplit(url)
        uri = parts.path or "/"
        if parts.query:
            uri = f"{uri}?{parts.query}"

        username, password = self._options.digest_auth or ("", "")
        _LOGGER.debug(
            "[%s] Answering digest challenge (realm=%s, algorithm=%s)",
            self._base_url,
            challenge.realm,
            challenge.algorithm,
        )
        return build_digest_authorization(username, password, challenge, method, uri)

    async def close(self) -> None:
        """Close the transport and its connection pool."""
        if self._closed:
            return
        self._closed = True
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None
        _LOGGER.debug("[%s] HTTP transport closed", self._base_url)
