"""
Unseal service client — aiohttp client for a remote unseal boundary.

Authentication is either an mTLS client certificate (through ``ssl_context``)
or a bearer token. Error responses are mapped back onto the exception
taxonomy; HTTP 429, 5xx and connection failures become ``TransientError``.
"""
import asyncio
import logging
from typing import Optional

import orjson
import aiohttp

from ..crypto.engine import Envelope, load_public_key_pem
from ..data import ScopeClaim
from ..exceptions import (
    ForbiddenError,
    SealedError,
    TransientError,
    error_from_category,
)
from .messages import decode_plaintext, unseal_request

logger = logging.getLogger("navigator.sealed")

_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class ServiceClient:
    """Shared session handling for unseal service clients."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        ssl_context=None,
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._ssl = ssl_context
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._own_session = session is None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._own_session:
            await self._session.close()
            self._session = None

    async def _raise_for_error(self, response: aiohttp.ClientResponse) -> None:
        if response.status < 400:
            return
        if response.status in _RETRYABLE_STATUS:
            raise TransientError(
                f"Unseal service returned HTTP {response.status}"
            )
        if response.status == 401:
            raise ForbiddenError("Unseal service rejected the client credentials")
        try:
            body = orjson.loads(await response.read())
            category = body.get("error", "")
            message = body.get("message", "")
        except (orjson.JSONDecodeError, AttributeError):
            category, message = "", f"HTTP {response.status}"
        raise error_from_category(category, message)


class RemoteUnsealer(ServiceClient):
    """Unsealer calling ``POST /v1/unseal`` on a remote unseal service."""

    async def unseal(self, envelope: Envelope, claim: ScopeClaim) -> bytes:
        url = f"{self.base_url}/v1/unseal"
        payload = orjson.dumps(unseal_request(envelope, claim))
        try:
            async with self._get_session().post(
                url,
                data=payload,
                headers={**self._headers(), "Content-Type": "application/json"},
                ssl=self._ssl,
            ) as response:
                await self._raise_for_error(response)
                body = orjson.loads(await response.read())
        except SealedError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as err:
            raise TransientError(f"Unseal service unreachable: {err}") from err
        try:
            return decode_plaintext(body)
        except ValueError as err:
            raise TransientError(str(err)) from err


class CertificateClient(ServiceClient):
    """Fetches the active public key, revalidating with ETag on every call."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._etag: Optional[str] = None
        self._pem: Optional[bytes] = None

    @property
    def fingerprint(self) -> Optional[str]:
        return self._etag.strip('"') if self._etag else None

    async def fetch_pem(self) -> bytes:
        headers = self._headers()
        headers["Accept"] = "application/x-pem-file"
        if self._etag and self._pem is not None:
            headers["If-None-Match"] = self._etag
        url = f"{self.base_url}/v1/cert.pem"
        try:
            async with self._get_session().get(url, headers=headers, ssl=self._ssl) as response:
                if response.status == 304 and self._pem is not None:
                    logger.debug("Public key unchanged (%s)", self._etag)
                    return self._pem
                await self._raise_for_error(response)
                self._pem = await response.read()
                self._etag = response.headers.get("ETag")
        except SealedError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as err:
            raise TransientError(f"Unseal service unreachable: {err}") from err
        logger.info("Fetched public key %s", self.fingerprint)
        return self._pem

    async def public_key(self):
        return load_public_key_pem(await self.fetch_pem())
