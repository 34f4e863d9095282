# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Provider credential lifecycle: OAuth2 token exchange and refresh.

A :class:`TokenManager` owns the access token of one provider credential and
moves through the states::

    UNINITIALIZED -> REFRESHING -> VALID -> REFRESHING -> VALID | FAILED

Refresh is lazy: it happens when a send asks for a token and the current one
expires within ``refresh_margin`` seconds. Only one exchange runs at a time
per credential; every caller arriving while it runs awaits the same future
and receives the same token or the same error. A failed exchange is not
retried by the manager, the next caller simply starts a new one.

Tokens are published as immutable :class:`TokenState` snapshots, so a sender
holding a snapshot is never affected by a concurrent refresh.

Two exchangers are provided:

- :class:`ServiceAccountExchanger`: Google service account, RS256-signed JWT
  assertion exchanged at the Google token endpoint.
- :class:`DelegatedTokenExchanger`: OAuth2 client-credentials grant at an
  Auth0 tenant, optionally followed by a lookup of the user's Google
  identity token through the management API.

Example:
    Wiring a manager for Gmail::

        manager = TokenManager(ServiceAccountExchanger(credential), name="gmail")
        token = await manager.get_token()
        smtp_auth(user, token.access_token)
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any
from urllib.parse import quote

import aiohttp
import jwt

from .errors import TokenRefreshError
from .logger import get_logger
from .prometheus import GatewayMetrics

logger = get_logger("TokenManager")

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GMAIL_SEND_SCOPE = "https://www.googleapis.com/auth/gmail.send"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"

DEFAULT_REFRESH_MARGIN = 300
DEFAULT_EXCHANGE_TIMEOUT = 15.0
DEFAULT_TOKEN_LIFETIME = 3600


class TokenStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    VALID = "valid"
    REFRESHING = "refreshing"
    FAILED = "failed"


@dataclass(frozen=True)
class TokenState:
    """An access token and the epoch second it stops being valid."""

    access_token: str
    expires_at: float

    def needs_refresh(self, now: float, margin: float) -> bool:
        return now >= self.expires_at - margin


@dataclass(frozen=True)
class ServiceAccountCredential:
    """Google service account key material.

    Attributes:
        client_email: Service account e-mail (JWT issuer).
        private_key: PEM-encoded RSA private key.
        user_email: Mailbox to impersonate through domain-wide delegation;
            when None the service account acts as itself.
    """

    client_email: str
    private_key: str
    user_email: str | None = None
    token_uri: str = GOOGLE_TOKEN_URL
    scope: str = GMAIL_SEND_SCOPE


@dataclass(frozen=True)
class DelegatedTokenCredential:
    """Auth0 machine-to-machine application used to obtain Gmail tokens.

    Attributes:
        domain: Auth0 tenant domain, e.g. ``acme.eu.auth0.com``.
        client_id: Application client id.
        client_secret: Application client secret.
        audience: API identifier the token is requested for.
        user_email: Default mailbox the resulting token sends as.
        user_id: Auth0 user whose linked Google identity token is used; when
            None the client-credentials token itself is used.
    """

    domain: str
    client_id: str
    client_secret: str
    audience: str
    user_email: str | None = None
    user_id: str | None = None


@dataclass(frozen=True)
class StaticKeyCredential:
    """Long-lived API key. Never refreshed."""

    api_key: str


class TokenExchanger(ABC):
    """Obtains a fresh access token from an identity provider."""

    @abstractmethod
    async def exchange(self) -> TokenState:
        """Perform one exchange.

        Raises:
            TokenRefreshError: The identity provider refused or could not be
                reached within the timeout.
        """
        ...


async def _request_json(
    method: str,
    url: str,
    *,
    timeout: float,
    **kwargs: Any,
) -> dict[str, Any]:
    """Issue one HTTP call and return its JSON body, mapping failures to TokenRefreshError."""
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.request(method, url, **kwargs) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise TokenRefreshError(
                        f"Token endpoint {url} returned {resp.status}: {body[:200]}"
                    )
                return await resp.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise TokenRefreshError(f"Token endpoint {url} unreachable: {str(exc) or type(exc).__name__}") from exc
    except ValueError as exc:
        raise TokenRefreshError(f"Token endpoint {url} returned invalid JSON") from exc


def _token_from_payload(payload: dict[str, Any], now: float) -> TokenState:
    token = payload.get("access_token")
    if not token:
        raise TokenRefreshError("Token response did not contain an access_token")
    expires_in = payload.get("expires_in") or DEFAULT_TOKEN_LIFETIME
    return TokenState(access_token=token, expires_at=now + int(expires_in))


class ServiceAccountExchanger(TokenExchanger):
    """JWT-bearer grant for a Google service account."""

    def __init__(
        self,
        credential: ServiceAccountCredential,
        *,
        timeout: float = DEFAULT_EXCHANGE_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ):
        self.credential = credential
        self.timeout = timeout
        self._clock = clock

    def build_assertion(self, now: float) -> str:
        """Sign the JWT assertion presented to the token endpoint."""
        cred = self.credential
        claims = {
            "iss": cred.client_email,
            "scope": cred.scope,
            "aud": cred.token_uri,
            "iat": int(now),
            "exp": int(now) + DEFAULT_TOKEN_LIFETIME,
        }
        if cred.user_email:
            claims["sub"] = cred.user_email
        try:
            return jwt.encode(claims, cred.private_key, algorithm="RS256")
        except (jwt.PyJWTError, ValueError, TypeError) as exc:
            raise TokenRefreshError(f"Cannot sign service account assertion: {exc}") from exc

    async def exchange(self) -> TokenState:
        now = self._clock()
        payload = await _request_json(
            "POST",
            self.credential.token_uri,
            timeout=self.timeout,
            data={"grant_type": JWT_BEARER_GRANT, "assertion": self.build_assertion(now)},
        )
        return _token_from_payload(payload, now)


class DelegatedTokenExchanger(TokenExchanger):
    """Client-credentials grant against an Auth0 tenant."""

    def __init__(
        self,
        credential: DelegatedTokenCredential,
        *,
        timeout: float = DEFAULT_EXCHANGE_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ):
        self.credential = credential
        self.timeout = timeout
        self._clock = clock

    @property
    def base_url(self) -> str:
        domain = self.credential.domain.rstrip("/")
        if not domain.startswith(("http://", "https://")):
            domain = f"https://{domain}"
        return domain

    async def exchange(self) -> TokenState:
        cred = self.credential
        now = self._clock()
        payload = await _request_json(
            "POST",
            f"{self.base_url}/oauth/token",
            timeout=self.timeout,
            json={
                "grant_type": "client_credentials",
                "client_id": cred.client_id,
                "client_secret": cred.client_secret,
                "audience": cred.audience,
            },
        )
        management = _token_from_payload(payload, now)
        if not cred.user_id:
            return management
        return await self._identity_token(management, now)

    async def _identity_token(self, management: TokenState, now: float) -> TokenState:
        """Read the user's linked Google identity and return its access token."""
        user = await _request_json(
            "GET",
            f"{self.base_url}/api/v2/users/{quote(self.credential.user_id, safe='')}",
            timeout=self.timeout,
            headers={"Authorization": f"Bearer {management.access_token}"},
        )
        for identity in user.get("identities") or []:
            if identity.get("provider") == "google-oauth2" and identity.get("access_token"):
                state = _token_from_payload(identity, now)
                # The identity token cannot outlive the grant that exposed it
                return TokenState(state.access_token, min(state.expires_at, management.expires_at))
        raise TokenRefreshError(
            f"Auth0 user {self.credential.user_id} has no linked Google identity token"
        )


class TokenManager:
    """Single-flight owner of one provider credential's access token.

    Attributes:
        exchanger: The TokenExchanger performing the actual exchange.
        name: Provider label used in logs and metrics.
        refresh_margin: Seconds before expiry at which a token is renewed.
    """

    def __init__(
        self,
        exchanger: TokenExchanger,
        *,
        name: str = "provider",
        refresh_margin: float = DEFAULT_REFRESH_MARGIN,
        metrics: GatewayMetrics | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.exchanger = exchanger
        self.name = name
        self.refresh_margin = refresh_margin
        self.metrics = metrics
        self._clock = clock
        self._state: TokenState | None = None
        self._status = TokenStatus.UNINITIALIZED
        self._inflight: asyncio.Future[TokenState] | None = None
        self._lock = asyncio.Lock()

    @property
    def status(self) -> TokenStatus:
        return self._status

    @property
    def current(self) -> TokenState | None:
        """Last published token, possibly stale."""
        return self._state

    def _is_fresh(self, state: TokenState | None) -> bool:
        return state is not None and not state.needs_refresh(self._clock(), self.refresh_margin)

    async def get_token(self) -> TokenState:
        """Return a token valid for at least ``refresh_margin`` seconds.

        Starts an exchange when needed, or joins the one already running.

        Raises:
            TokenRefreshError: The exchange this caller waited on failed.
        """
        state = self._state
        if self._is_fresh(state):
            return state
        async with self._lock:
            state = self._state
            if self._is_fresh(state):
                return state
            if self._inflight is None:
                self._status = TokenStatus.REFRESHING
                self._inflight = asyncio.ensure_future(self._refresh())
                self._inflight.add_done_callback(_consume_exception)
            inflight = self._inflight
        # shield: a cancelled waiter must not cancel the exchange others share
        return await asyncio.shield(inflight)

    def invalidate(self) -> None:
        """Drop the current token so the next caller refreshes."""
        self._state = None
        if self._inflight is None:
            self._status = TokenStatus.UNINITIALIZED

    async def _refresh(self) -> TokenState:
        logger.info("Refreshing %s access token", self.name)
        try:
            state = await self.exchanger.exchange()
        except Exception as exc:
            self._status = TokenStatus.FAILED
            if self.metrics:
                self.metrics.inc_token_refresh(self.name, ok=False)
            logger.error("Token refresh for %s failed: %s", self.name, exc)
            if isinstance(exc, TokenRefreshError):
                raise
            raise TokenRefreshError(f"Token refresh for {self.name} failed: {exc}") from exc
        finally:
            self._inflight = None
        self._state = state
        self._status = TokenStatus.VALID
        if self.metrics:
            self.metrics.inc_token_refresh(self.name, ok=True)
        return state


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()
