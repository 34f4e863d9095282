import asyncio

import jwt
import pytest
from aioresponses import aioresponses
from yarl import URL

from mail_gateway.errors import TokenRefreshError
from mail_gateway.prometheus import GatewayMetrics
from mail_gateway.tokens import (
    GMAIL_SEND_SCOPE,
    GOOGLE_TOKEN_URL,
    JWT_BEARER_GRANT,
    DelegatedTokenCredential,
    DelegatedTokenExchanger,
    ServiceAccountCredential,
    ServiceAccountExchanger,
    TokenExchanger,
    TokenManager,
    TokenState,
    TokenStatus,
)


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class CountingExchanger(TokenExchanger):
    """Returns tokens token-1, token-2, ... after a short delay."""

    def __init__(self, clock, lifetime=3600, delay=0.01, failures=0, error=None):
        self.clock = clock
        self.lifetime = lifetime
        self.delay = delay
        self.failures = failures
        self.error = error or TokenRefreshError("identity provider down")
        self.calls = 0

    async def exchange(self) -> TokenState:
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.failures:
            self.failures -= 1
            raise self.error
        return TokenState(f"token-{self.calls}", self.clock() + self.lifetime)


# --- TokenManager -----------------------------------------------------------

@pytest.mark.asyncio
async def test_hundred_concurrent_callers_trigger_one_exchange():
    clock = FakeClock()
    exchanger = CountingExchanger(clock)
    manager = TokenManager(exchanger, name="gmail", clock=clock)

    tokens = await asyncio.gather(*[manager.get_token() for _ in range(100)])

    assert exchanger.calls == 1
    assert {t.access_token for t in tokens} == {"token-1"}
    assert manager.status is TokenStatus.VALID


@pytest.mark.asyncio
async def test_near_expiry_triggers_a_single_refresh():
    clock = FakeClock()
    exchanger = CountingExchanger(clock)
    manager = TokenManager(exchanger, name="gmail", refresh_margin=300, clock=clock)
    first = await manager.get_token()

    clock.now += 3600 - 299
    tokens = await asyncio.gather(*[manager.get_token() for _ in range(100)])

    assert exchanger.calls == 2
    assert {t.access_token for t in tokens} == {"token-2"}
    assert first.access_token == "token-1"


@pytest.mark.asyncio
async def test_fresh_token_is_served_without_exchange():
    clock = FakeClock()
    exchanger = CountingExchanger(clock)
    manager = TokenManager(exchanger, clock=clock)
    await manager.get_token()

    clock.now += 3600 - 301
    await manager.get_token()

    assert exchanger.calls == 1


@pytest.mark.asyncio
async def test_failure_reaches_every_waiter_and_does_not_poison():
    clock = FakeClock()
    metrics = GatewayMetrics()
    exchanger = CountingExchanger(clock, failures=1)
    manager = TokenManager(exchanger, name="gmail", metrics=metrics, clock=clock)

    results = await asyncio.gather(*[manager.get_token() for _ in range(10)], return_exceptions=True)

    assert exchanger.calls == 1
    assert all(isinstance(r, TokenRefreshError) for r in results)
    assert manager.status is TokenStatus.FAILED

    token = await manager.get_token()
    assert token.access_token == "token-2"
    assert manager.status is TokenStatus.VALID

    output = metrics.generate_latest()
    assert b'mgw_token_refresh_total{provider="gmail",outcome="error"} 1.0' in output
    assert b'mgw_token_refresh_total{provider="gmail",outcome="ok"} 1.0' in output


@pytest.mark.asyncio
async def test_unexpected_exchange_errors_are_wrapped():
    clock = FakeClock()
    manager = TokenManager(CountingExchanger(clock, failures=1, error=RuntimeError("boom")), clock=clock)

    with pytest.raises(TokenRefreshError, match="boom"):
        await manager.get_token()


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_shared_exchange():
    clock = FakeClock()
    exchanger = CountingExchanger(clock, delay=0.05)
    manager = TokenManager(exchanger, clock=clock)

    impatient = asyncio.create_task(manager.get_token())
    patient = asyncio.create_task(manager.get_token())
    await asyncio.sleep(0.01)
    impatient.cancel()

    token = await patient
    assert token.access_token == "token-1"
    assert exchanger.calls == 1
    with pytest.raises(asyncio.CancelledError):
        await impatient


@pytest.mark.asyncio
async def test_invalidate_forces_refresh():
    clock = FakeClock()
    exchanger = CountingExchanger(clock)
    manager = TokenManager(exchanger, clock=clock)
    await manager.get_token()

    manager.invalidate()
    assert manager.current is None
    assert manager.status is TokenStatus.UNINITIALIZED

    token = await manager.get_token()
    assert token.access_token == "token-2"


def test_token_state_is_immutable():
    state = TokenState("abc", 100.0)
    with pytest.raises(Exception):
        state.access_token = "other"
    assert state.needs_refresh(now=0, margin=100) is True
    assert state.needs_refresh(now=0, margin=99) is False


# --- Service account ----------------------------------------------------------

def _service_account(private_pem, user_email="sender@example.com"):
    return ServiceAccountCredential(
        client_email="robot@project.iam.gserviceaccount.com",
        private_key=private_pem,
        user_email=user_email,
    )


def test_service_account_assertion_claims(rsa_keypair):
    private_pem, public_pem = rsa_keypair
    exchanger = ServiceAccountExchanger(_service_account(private_pem))

    assertion = exchanger.build_assertion(now=1_700_000_000)
    claims = jwt.decode(
        assertion,
        public_pem,
        algorithms=["RS256"],
        audience=GOOGLE_TOKEN_URL,
        options={"verify_exp": False, "verify_iat": False},
    )

    assert claims["iss"] == "robot@project.iam.gserviceaccount.com"
    assert claims["sub"] == "sender@example.com"
    assert claims["scope"] == GMAIL_SEND_SCOPE
    assert claims["exp"] - claims["iat"] == 3600


def test_service_account_without_user_has_no_subject(rsa_keypair):
    private_pem, public_pem = rsa_keypair
    exchanger = ServiceAccountExchanger(_service_account(private_pem, user_email=None))
    claims = jwt.decode(
        exchanger.build_assertion(now=1_700_000_000),
        public_pem,
        algorithms=["RS256"],
        audience=GOOGLE_TOKEN_URL,
        options={"verify_exp": False, "verify_iat": False},
    )
    assert "sub" not in claims


def test_invalid_private_key_raises_token_refresh_error():
    exchanger = ServiceAccountExchanger(_service_account("not a key"))
    with pytest.raises(TokenRefreshError):
        exchanger.build_assertion(now=0)


@pytest.mark.asyncio
async def test_service_account_exchange(rsa_keypair):
    private_pem, _ = rsa_keypair
    clock = FakeClock(1_700_000_000.0)
    exchanger = ServiceAccountExchanger(_service_account(private_pem), clock=clock)

    with aioresponses() as m:
        m.post(GOOGLE_TOKEN_URL, status=200, payload={"access_token": "ya29.abc", "expires_in": 3599})
        state = await exchanger.exchange()

        request = m.requests[("POST", URL(GOOGLE_TOKEN_URL))][0]
        assert request.kwargs["data"]["grant_type"] == JWT_BEARER_GRANT
        assert request.kwargs["data"]["assertion"].count(".") == 2

    assert state == TokenState("ya29.abc", 1_700_000_000.0 + 3599)


@pytest.mark.asyncio
async def test_service_account_exchange_error_status(rsa_keypair):
    private_pem, _ = rsa_keypair
    exchanger = ServiceAccountExchanger(_service_account(private_pem))

    with aioresponses() as m:
        m.post(GOOGLE_TOKEN_URL, status=400, body='{"error": "invalid_grant"}')
        with pytest.raises(TokenRefreshError, match="400"):
            await exchanger.exchange()


@pytest.mark.asyncio
async def test_exchange_timeout_is_token_refresh_error(rsa_keypair):
    private_pem, _ = rsa_keypair
    exchanger = ServiceAccountExchanger(_service_account(private_pem))

    with aioresponses() as m:
        m.post(GOOGLE_TOKEN_URL, exception=asyncio.TimeoutError())
        with pytest.raises(TokenRefreshError, match="unreachable"):
            await exchanger.exchange()


@pytest.mark.asyncio
async def test_response_without_access_token(rsa_keypair):
    private_pem, _ = rsa_keypair
    exchanger = ServiceAccountExchanger(_service_account(private_pem))

    with aioresponses() as m:
        m.post(GOOGLE_TOKEN_URL, status=200, payload={"token_type": "Bearer"})
        with pytest.raises(TokenRefreshError, match="access_token"):
            await exchanger.exchange()


# --- Auth0 delegated tokens ---------------------------------------------------

AUTH0_TOKEN_URL = "https://tenant.eu.auth0.com/oauth/token"
AUTH0_USER_URL = "https://tenant.eu.auth0.com/api/v2/users/auth0-user-1"


def _delegated(user_id=None):
    return DelegatedTokenCredential(
        domain="tenant.eu.auth0.com",
        client_id="client",
        client_secret="secret",
        audience=GMAIL_SEND_SCOPE,
        user_email="sender@example.com",
        user_id=user_id,
    )


@pytest.mark.asyncio
async def test_delegated_client_credentials_grant():
    clock = FakeClock(1000.0)
    exchanger = DelegatedTokenExchanger(_delegated(), clock=clock)

    with aioresponses() as m:
        m.post(AUTH0_TOKEN_URL, status=200, payload={"access_token": "m2m", "expires_in": 86400})
        state = await exchanger.exchange()

        body = m.requests[("POST", URL(AUTH0_TOKEN_URL))][0].kwargs["json"]
        assert body == {
            "grant_type": "client_credentials",
            "client_id": "client",
            "client_secret": "secret",
            "audience": GMAIL_SEND_SCOPE,
        }

    assert state == TokenState("m2m", 1000.0 + 86400)


@pytest.mark.asyncio
async def test_delegated_reads_google_identity_token():
    clock = FakeClock(1000.0)
    exchanger = DelegatedTokenExchanger(_delegated(user_id="auth0-user-1"), clock=clock)

    with aioresponses() as m:
        m.post(AUTH0_TOKEN_URL, status=200, payload={"access_token": "m2m", "expires_in": 86400})
        m.get(
            AUTH0_USER_URL,
            status=200,
            payload={
                "identities": [
                    {"provider": "auth0", "access_token": "ignored"},
                    {"provider": "google-oauth2", "access_token": "ya29.user", "expires_in": 3600},
                ]
            },
        )
        state = await exchanger.exchange()

        headers = m.requests[("GET", URL(AUTH0_USER_URL))][0].kwargs["headers"]
        assert headers["Authorization"] == "Bearer m2m"

    assert state == TokenState("ya29.user", 1000.0 + 3600)


@pytest.mark.asyncio
async def test_delegated_user_without_google_identity():
    exchanger = DelegatedTokenExchanger(_delegated(user_id="auth0-user-1"))

    with aioresponses() as m:
        m.post(AUTH0_TOKEN_URL, status=200, payload={"access_token": "m2m", "expires_in": 86400})
        m.get(AUTH0_USER_URL, status=200, payload={"identities": []})
        with pytest.raises(TokenRefreshError, match="no linked Google identity"):
            await exchanger.exchange()
