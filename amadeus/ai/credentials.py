"""
Credential providers - Short-lived bearer tokens for Vertex AI.

Every provider exposes ``get_valid_access_token()``. Tokens are cached with
their expiry; when several turns need a token at the same moment only one of
them refreshes and the others reuse its result.
"""

import asyncio
import json
import logging
import os
import shutil
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

import httpx
import jwt

from ..core.config import AIConfig
from .errors import ErrorKind, ProviderError

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

GCLOUD_CANDIDATES = ("gcloud", "/usr/local/bin/gcloud", "/usr/bin/gcloud")
GCLOUD_TOKEN_TTL = 50 * 60
REFRESH_MARGIN = 5 * 60

# (token, lifetime in seconds)
TokenFetcher = Callable[[], Awaitable[Tuple[str, float]]]


class AccessTokenCache:
    """A cached token plus its expiry, refreshed by one caller at a time."""

    def __init__(self, margin: float = 0.0, clock: Callable[[], float] = time.monotonic):
        self.margin = margin
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    def valid(self) -> bool:
        return bool(self._token) and self._clock() < self._expires_at - self.margin

    def invalidate(self):
        self._token = None
        self._expires_at = 0.0

    async def get(self, fetch: TokenFetcher) -> str:
        if self.valid():
            return self._token

        async with self._lock:
            # Another caller may have refreshed while we waited
            if self.valid():
                return self._token

            token, lifetime = await fetch()
            self.refresh_count += 1
            self._token = token
            self._expires_at = self._clock() + lifetime
            logger.debug(f"Access token refreshed, valid for {int(lifetime)}s")
            return token


class CredentialProvider(ABC):
    """Produces a valid bearer credential or raises ProviderError."""

    @abstractmethod
    async def get_valid_access_token(self) -> str:
        """Return a usable access token."""

    async def aclose(self):
        pass


class StaticCredentialProvider(CredentialProvider):
    """A token entered by hand, used as-is."""

    def __init__(self, token: Optional[str]):
        self.token = token

    async def get_valid_access_token(self) -> str:
        if not self.token:
            raise ProviderError("No access token configured", kind=ErrorKind.MISSING_CREDENTIAL)
        return self.token


class GcloudCredentialProvider(CredentialProvider):
    """Asks the gcloud CLI for a token; falls back to a manually entered one."""

    def __init__(self, fallback_token: Optional[str] = None,
                 candidates: Sequence[str] = GCLOUD_CANDIDATES,
                 ttl: float = GCLOUD_TOKEN_TTL,
                 cache: Optional[AccessTokenCache] = None):
        self.fallback_token = fallback_token
        self.candidates = list(candidates)
        self.ttl = ttl
        self.cache = cache or AccessTokenCache()

    async def get_valid_access_token(self) -> str:
        try:
            return await self.cache.get(self._fetch)
        except ProviderError:
            if self.fallback_token:
                logger.warning("gcloud token unavailable, using the configured access token")
                return self.fallback_token
            raise

    async def _fetch(self) -> Tuple[str, float]:
        for candidate in self.candidates:
            executable = shutil.which(candidate) or (candidate if os.path.isfile(candidate) else None)
            if not executable:
                continue

            token = await self._run(executable)
            if token:
                logger.info(f"Access token obtained from gcloud (cached {int(self.ttl // 60)} min)")
                return token, self.ttl

        raise ProviderError("Could not get an access token from gcloud. "
                            "Is the Cloud SDK installed and 'gcloud auth login' done?",
                            kind=ErrorKind.MISSING_CREDENTIAL)

    async def _run(self, executable: str) -> Optional[str]:
        try:
            process = await asyncio.create_subprocess_exec(
                executable, "auth", "print-access-token",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=30)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"gcloud failed ({executable}): {e}")
            return None

        token = stdout.decode("utf-8", errors="replace").strip()
        if process.returncode == 0 and token.startswith("ya29."):
            return token

        logger.warning(f"gcloud returned no token ({executable}): "
                       f"{stderr.decode('utf-8', errors='replace').strip()[:200]}")
        return None


class RefreshTokenCredentialProvider(CredentialProvider):
    """OAuth refresh-token grant against Google's token endpoint."""

    def __init__(self, client_id: str, client_secret: Optional[str], refresh_token: Optional[str],
                 token_url: str = GOOGLE_TOKEN_URL,
                 http_client: Optional[httpx.AsyncClient] = None,
                 cache: Optional[AccessTokenCache] = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.token_url = token_url
        self._http = http_client or httpx.AsyncClient(timeout=30.0)
        self._owns_http = http_client is None
        self.cache = cache or AccessTokenCache(margin=REFRESH_MARGIN)

    async def get_valid_access_token(self) -> str:
        if not self.refresh_token:
            raise ProviderError("Not signed in to Google", kind=ErrorKind.MISSING_CREDENTIAL)
        return await self.cache.get(self._refresh)

    async def _refresh(self) -> Tuple[str, float]:
        form = {
            "grant_type": "refresh_token",
            "client_id": self.client_id,
            "refresh_token": self.refresh_token,
        }
        if self.client_secret:
            form["client_secret"] = self.client_secret

        try:
            response = await self._http.post(self.token_url, data=form)
        except httpx.TimeoutException as e:
            raise ProviderError(f"Token refresh timed out: {e}", kind=ErrorKind.TIMEOUT) from e
        except httpx.TransportError as e:
            raise ProviderError(f"Token refresh failed: {e}", kind=ErrorKind.NETWORK_UNREACHABLE) from e

        if response.status_code != 200:
            # The refresh token is no good any more; the user has to sign in again
            logger.error(f"Token refresh rejected ({response.status_code}): {response.text[:200]}")
            self.refresh_token = None
            self.cache.invalidate()
            raise ProviderError("Token refresh rejected", status=response.status_code,
                                raw_body=response.text, kind=ErrorKind.INVALID_CREDENTIAL)

        return _parse_token_response(response)

    async def aclose(self):
        if self._owns_http:
            await self._http.aclose()


class ServiceAccountCredentialProvider(CredentialProvider):
    """JWT-bearer grant signed with a service account key (RS256)."""

    def __init__(self, key_file: Optional[str] = None, key_info: Optional[dict] = None,
                 scopes: Sequence[str] = (CLOUD_PLATFORM_SCOPE,),
                 http_client: Optional[httpx.AsyncClient] = None,
                 cache: Optional[AccessTokenCache] = None,
                 clock: Callable[[], float] = time.time):
        if key_info is None:
            if not key_file:
                raise ProviderError("No service account key configured",
                                    kind=ErrorKind.MISSING_CREDENTIAL)
            with open(Path(key_file), 'r', encoding='utf-8') as f:
                key_info = json.load(f)

        self.client_email = key_info.get("client_email")
        self.private_key = key_info.get("private_key")
        self.private_key_id = key_info.get("private_key_id")
        self.token_url = key_info.get("token_uri", GOOGLE_TOKEN_URL)
        self.scopes: List[str] = list(scopes)
        self._http = http_client or httpx.AsyncClient(timeout=30.0)
        self._owns_http = http_client is None
        self._clock = clock
        self.cache = cache or AccessTokenCache(margin=REFRESH_MARGIN)

        if not self.client_email or not self.private_key:
            raise ProviderError("Service account key is missing client_email or private_key",
                                kind=ErrorKind.INVALID_CREDENTIAL)

    def build_assertion(self) -> str:
        now = int(self._clock())
        claims = {
            "iss": self.client_email,
            "scope": " ".join(self.scopes),
            "aud": self.token_url,
            "iat": now,
            "exp": now + 3600,
        }
        headers = {"kid": self.private_key_id} if self.private_key_id else None
        return jwt.encode(claims, self.private_key, algorithm="RS256", headers=headers)

    async def get_valid_access_token(self) -> str:
        return await self.cache.get(self._exchange)

    async def _exchange(self) -> Tuple[str, float]:
        form = {
            "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
            "assertion": self.build_assertion(),
        }
        try:
            response = await self._http.post(self.token_url, data=form)
        except httpx.TimeoutException as e:
            raise ProviderError(f"Token request timed out: {e}", kind=ErrorKind.TIMEOUT) from e
        except httpx.TransportError as e:
            raise ProviderError(f"Token request failed: {e}", kind=ErrorKind.NETWORK_UNREACHABLE) from e

        if response.status_code != 200:
            logger.error(f"Service account token rejected ({response.status_code}): {response.text[:200]}")
            raise ProviderError("Service account token rejected", status=response.status_code,
                                raw_body=response.text, kind=ErrorKind.INVALID_CREDENTIAL)

        return _parse_token_response(response)

    async def aclose(self):
        if self._owns_http:
            await self._http.aclose()


def _parse_token_response(response: httpx.Response) -> Tuple[str, float]:
    try:
        data = response.json()
    except ValueError as e:
        raise ProviderError("Token endpoint returned invalid JSON", raw_body=response.text,
                            kind=ErrorKind.DECODE_FAILURE) from e

    token = data.get("access_token")
    if not token:
        raise ProviderError("Token endpoint returned no access_token", raw_body=response.text,
                            kind=ErrorKind.DECODE_FAILURE)
    return token, float(data.get("expires_in", 3600))


def create_credential_provider(config: AIConfig) -> CredentialProvider:
    """Build the Vertex credential provider selected by ``vertex_auth``."""
    mode = (config.vertex_auth or "gcloud").lower()

    if mode == "static":
        return StaticCredentialProvider(config.vertex_access_token or config.key_for("vertex"))
    if mode == "refresh_token":
        return RefreshTokenCredentialProvider(
            client_id=config.oauth_client_id or "",
            client_secret=config.oauth_client_secret,
            refresh_token=config.oauth_refresh_token,
        )
    if mode == "service_account":
        if config.google_credentials_path and Path(config.google_credentials_path).exists():
            return ServiceAccountCredentialProvider(key_file=config.google_credentials_path)
        logger.warning("Service account key not found, falling back to gcloud")
        mode = "gcloud"
    if mode == "gcloud":
        return GcloudCredentialProvider(
            fallback_token=config.vertex_access_token or config.key_for("vertex") or None
        )

    logger.warning(f"Unknown vertex_auth mode: {mode}, using gcloud")
    return GcloudCredentialProvider(fallback_token=config.vertex_access_token)
