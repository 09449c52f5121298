"""Outbound access-token management for the platform API.

Two acquisition strategies are supported:

- Stored refresh token: an SFDX auth URL of the form
  ``force://<clientId>:<clientSecret>:<refreshToken>@<instanceUrl>`` is exchanged
  with ``grant_type=refresh_token``.
- JWT bearer: an RS256 assertion signed with the connected app's private key is
  exchanged with ``grant_type=urn:ietf:params:oauth:grant-type:jwt-bearer``.

When both are configured the refresh-token strategy wins.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum

import httpx
import jwt

from docgen.core.errors import AuthError, ConfigurationError

logger = logging.getLogger(__name__)

_AUTH_URL_PATTERN = re.compile(r"^force://([^:]+):([^:]*):([^@]+)@(.+)$")
_JWT_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:jwt-bearer"
_DEFAULT_EXPIRES_IN_SECONDS = 7200
_ASSERTION_TTL_SECONDS = 300
# Refresh proactively when the cached token is this close to expiry.
REFRESH_WINDOW_SECONDS = 60


class TokenSource(str, Enum):
  REFRESH_TOKEN = "REFRESH_TOKEN"
  JWT_BEARER = "JWT_BEARER"


@dataclass(frozen=True)
class AuthToken:
  value: str
  expires_at: float
  source: TokenSource
  instance_url: str

  def is_fresh(self, now: float) -> bool:
    return now < self.expires_at - REFRESH_WINDOW_SECONDS


@dataclass(frozen=True)
class RefreshTokenCredentials:
  client_id: str
  client_secret: str | None
  refresh_token: str
  instance_url: str


@dataclass(frozen=True)
class JwtCredentials:
  client_id: str
  username: str
  private_key: str
  domain: str


def parse_sfdx_auth_url(auth_url: str) -> RefreshTokenCredentials:
  """Parse an SFDX auth URL into refresh-token credentials."""
  match = _AUTH_URL_PATTERN.match(auth_url.strip())
  if match is None:
    raise ConfigurationError("SFDX auth URL is malformed; expected force://<clientId>:<clientSecret>:<refreshToken>@<instanceUrl>")

  client_id, client_secret, refresh_token, instance = match.groups()
  instance_url = instance if instance.startswith("http") else f"https://{instance}"
  return RefreshTokenCredentials(client_id=client_id, client_secret=client_secret or None, refresh_token=refresh_token, instance_url=instance_url.rstrip("/"))


def login_audience(domain: str) -> str:
  """Return the JWT audience for the org's login domain."""
  if "sandbox" in domain.lower() or domain.lower().startswith("test."):
    return "https://test.salesforce.com"
  return "https://login.salesforce.com"


def _normalize_domain(domain: str) -> str:
  return domain.removeprefix("https://").removeprefix("http://").rstrip("/")


class TokenManager:
  """Cache one access token per process and refresh it single-flight."""

  def __init__(
    self,
    *,
    http_client: httpx.AsyncClient,
    refresh_credentials: RefreshTokenCredentials | None = None,
    jwt_credentials: JwtCredentials | None = None,
    clock=time.time,
  ) -> None:
    if refresh_credentials is None and jwt_credentials is None:
      raise ConfigurationError("No platform authentication configured: set SFDX_AUTH_URL or SF_DOMAIN/SF_USERNAME/SF_CLIENT_ID/SF_PRIVATE_KEY")

    if refresh_credentials is not None and jwt_credentials is not None:
      logger.warning("Both SFDX auth URL and JWT credentials are configured; using the refresh token.")
      jwt_credentials = None

    self._http = http_client
    self._refresh = refresh_credentials
    self._jwt = jwt_credentials
    self._clock = clock
    self._token: AuthToken | None = None
    self._inflight: asyncio.Task[AuthToken] | None = None
    self._lock = asyncio.Lock()

  @classmethod
  def from_settings(cls, settings, *, http_client: httpx.AsyncClient) -> TokenManager:
    """Build a manager from Settings, choosing the strategy by what is configured."""
    refresh_credentials = parse_sfdx_auth_url(settings.sfdx_auth_url) if settings.sfdx_auth_url else None

    jwt_credentials = None
    jwt_fields = (settings.sf_domain, settings.sf_username, settings.sf_client_id, settings.sf_private_key)
    if all(jwt_fields):
      jwt_credentials = JwtCredentials(client_id=settings.sf_client_id, username=settings.sf_username, private_key=settings.sf_private_key, domain=_normalize_domain(settings.sf_domain))
    elif any(jwt_fields) and refresh_credentials is None:
      raise ConfigurationError("JWT authentication requires SF_DOMAIN, SF_USERNAME, SF_CLIENT_ID and SF_PRIVATE_KEY")

    return cls(http_client=http_client, refresh_credentials=refresh_credentials, jwt_credentials=jwt_credentials)

  @property
  def source(self) -> TokenSource:
    return TokenSource.REFRESH_TOKEN if self._refresh is not None else TokenSource.JWT_BEARER

  @property
  def cached_token(self) -> AuthToken | None:
    return self._token

  async def get_token(self) -> AuthToken:
    """Return a valid token, exchanging credentials when the cache is stale."""
    token = self._token
    if token is not None and token.is_fresh(self._clock()):
      return token

    # Concurrent callers share one exchange.
    async with self._lock:
      token = self._token
      if token is not None and token.is_fresh(self._clock()):
        return token
      if self._inflight is None:
        self._inflight = asyncio.create_task(self._exchange())
      inflight = self._inflight

    try:
      return await asyncio.shield(inflight)
    finally:
      if inflight.done() and self._inflight is inflight:
        self._inflight = None

  def invalidate(self) -> None:
    """Drop the cached token so the next call re-authenticates."""
    if self._token is not None:
      logger.info("Access token invalidated (source=%s).", self._token.source.value)
    self._token = None

  async def _exchange(self) -> AuthToken:
    if self._refresh is not None:
      token = await self._exchange_refresh_token(self._refresh)
    else:
      assert self._jwt is not None
      token = await self._exchange_jwt(self._jwt)
    self._token = token
    return token

  async def _exchange_refresh_token(self, credentials: RefreshTokenCredentials) -> AuthToken:
    form = {"grant_type": "refresh_token", "client_id": credentials.client_id, "refresh_token": credentials.refresh_token}
    if credentials.client_secret:
      form["client_secret"] = credentials.client_secret
    token_url = f"{credentials.instance_url}/services/oauth2/token"
    return await self._post_token_request(token_url, form, TokenSource.REFRESH_TOKEN, credentials.instance_url)

  async def _exchange_jwt(self, credentials: JwtCredentials) -> AuthToken:
    now = int(self._clock())
    claims = {"iss": credentials.client_id, "sub": credentials.username, "aud": login_audience(credentials.domain), "exp": now + _ASSERTION_TTL_SECONDS}
    try:
      assertion = jwt.encode(claims, credentials.private_key, algorithm="RS256")
    except (ValueError, TypeError, jwt.PyJWTError) as exc:
      raise AuthError(f"Failed to sign JWT assertion: {exc}", retryable=False) from exc

    token_url = f"https://{credentials.domain}/services/oauth2/token"
    form = {"grant_type": _JWT_GRANT_TYPE, "assertion": assertion}
    return await self._post_token_request(token_url, form, TokenSource.JWT_BEARER, f"https://{credentials.domain}")

  async def _post_token_request(self, token_url: str, form: dict[str, str], source: TokenSource, default_instance_url: str) -> AuthToken:
    started = self._clock()
    try:
      response = await self._http.post(token_url, data=form, headers={"Accept": "application/json"})
      response.raise_for_status()
    except httpx.HTTPStatusError as exc:
      detail = exc.response.text[:500]
      logger.error("Token exchange failed source=%s status=%s body=%s", source.value, exc.response.status_code, detail)
      raise AuthError(f"Token exchange failed with HTTP {exc.response.status_code}: {detail}") from exc
    except httpx.RequestError as exc:
      logger.error("Token exchange request error source=%s: %s", source.value, exc)
      raise AuthError(f"Token exchange request failed: {exc}") from exc

    payload = response.json()
    access_token = payload.get("access_token")
    if not access_token:
      raise AuthError("Token response did not include an access_token")

    expires_in = int(payload.get("expires_in") or _DEFAULT_EXPIRES_IN_SECONDS)
    instance_url = (payload.get("instance_url") or default_instance_url).rstrip("/")
    logger.info("Access token acquired source=%s expires_in=%ss", source.value, expires_in)
    return AuthToken(value=access_token, expires_at=started + expires_in, source=source, instance_url=instance_url)
