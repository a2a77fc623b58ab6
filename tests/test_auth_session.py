# tests/test_auth_session.py
import asyncio
import json

import pytest

from conftest import CHAIN_ID, make_jwt, until
from infra.http_client import HttpError, ParadexApiError
from trading.config import AuthSettings
from trading.enums import KeyRole, Phase
from trading.errors import CredentialExpired, NetworkError, SignatureVerificationFailed
from trading.models import Signature
from trading.services.auth_session import AuthSession, jwt_expiry
from trading.services.typed_data import build_auth_typed_data

T0 = 1_700_000_000.0


class Clock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def auth(fake_http, endpoints, keys, clock):
    fake_http.route("POST", "/auth", lambda **kw: {"jwt_token": make_jwt(clock.now + 300, sub="acct")})
    return AuthSession(fake_http, endpoints, keys, AuthSettings(refresh_check_s=0.01), clock=clock)


@pytest.mark.asyncio
async def test_authenticate_records_credential(auth, fake_http, keys):
    cred = await auth.authenticate()
    assert cred.issued_at == T0
    assert cred.expires_at == T0 + 300
    assert auth.is_valid()

    _, path, kw = fake_http.calls[-1]
    assert path == "/auth"
    h = kw["headers"]
    assert h["PARADEX-STARKNET-ACCOUNT"] == keys.address(KeyRole.SUBKEY)
    assert h["PARADEX-TIMESTAMP"] == str(int(T0))
    assert h["PARADEX-SIGNATURE-EXPIRATION"] == str(int(T0) + 24 * 60 * 60)

    r, s = (int(x) for x in json.loads(h["PARADEX-STARKNET-SIGNATURE"]))
    typed = build_auth_typed_data(CHAIN_ID, int(T0), int(T0) + 24 * 60 * 60, path="/v1/auth")
    keys.verify(typed, Signature(r=r, s=s, role=KeyRole.SUBKEY))


@pytest.mark.asyncio
async def test_token_without_exp_uses_default_ttl(auth, fake_http):
    fake_http.route("POST", "/auth", {"jwt_token": "opaque-token"})
    cred = await auth.authenticate()
    assert cred.expires_at == T0 + 300


@pytest.mark.asyncio
async def test_refresh_only_near_expiry(auth, fake_http, clock):
    first = await auth.ensure_valid()
    clock.now = T0 + 200
    assert await auth.ensure_valid() is first
    assert fake_http.count("POST", "/auth") == 1

    clock.now = T0 + 250
    second = await auth.ensure_valid()
    assert second.token != first.token
    assert second.expires_at == T0 + 550
    assert fake_http.count("POST", "/auth") == 2
    assert auth.refresh_count == 2


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh(auth, fake_http, clock):
    async def slow(**kw):
        await asyncio.sleep(0.05)
        return {"jwt_token": make_jwt(clock.now + 300)}

    fake_http.route("POST", "/auth", slow)
    creds = await asyncio.gather(*(auth.ensure_valid() for _ in range(5)))
    assert len({c.token for c in creds}) == 1
    assert fake_http.count("POST", "/auth") == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    ParadexApiError(401, "INVALID_SIGNATURE", "bad signature"),
    HttpError(400, "bad request"),
])
async def test_rejected_signature_is_not_retried(auth, fake_http, error):
    fake_http.route("POST", "/auth", error)
    with pytest.raises(SignatureVerificationFailed) as e:
        await auth.authenticate()
    assert e.value.phase is Phase.AUTH
    assert fake_http.count("POST", "/auth") == 1


@pytest.mark.asyncio
async def test_transport_failure_retried_once(auth, fake_http):
    fake_http.route("POST", "/auth", HttpError(599, "timeout"))
    with pytest.raises(NetworkError) as e:
        await auth.authenticate()
    assert e.value.phase is Phase.AUTH
    assert fake_http.count("POST", "/auth") == 2


@pytest.mark.asyncio
async def test_transport_failure_then_success(auth, fake_http, clock):
    fake_http.route("POST", "/auth", HttpError(503, "busy"), {"jwt_token": make_jwt(clock.now + 300)})
    cred = await auth.authenticate()
    assert cred.token
    assert fake_http.count("POST", "/auth") == 2


@pytest.mark.asyncio
async def test_missing_token_in_response(auth, fake_http):
    fake_http.route("POST", "/auth", {})
    with pytest.raises(NetworkError):
        await auth.authenticate()


@pytest.mark.asyncio
async def test_failed_refresh_keeps_valid_credential(auth, fake_http, clock):
    first = await auth.authenticate()
    fake_http.route("POST", "/auth", HttpError(599, "down"))
    clock.now = T0 + 250
    assert await auth.ensure_valid() is first


@pytest.mark.asyncio
async def test_expired_and_refresh_failed(auth, fake_http, clock):
    await auth.authenticate()
    fake_http.route("POST", "/auth", HttpError(599, "down"))
    clock.now = T0 + 400
    with pytest.raises(CredentialExpired):
        await auth.ensure_valid()


@pytest.mark.asyncio
async def test_invalidate_forces_reauth(auth, fake_http):
    await auth.authenticate()
    auth.invalidate()
    assert not auth.is_valid()
    assert auth.credential.revoked
    cred = await auth.ensure_valid()
    assert not cred.revoked
    assert fake_http.count("POST", "/auth") == 2


@pytest.mark.asyncio
async def test_release_revokes(auth):
    await auth.authenticate()
    await auth.release()
    assert auth.credential.revoked
    with pytest.raises(CredentialExpired):
        await auth.ensure_valid()
    with pytest.raises(CredentialExpired):
        await auth.bearer()


@pytest.mark.asyncio
async def test_refresh_loop_renews_before_expiry(auth, fake_http, clock):
    await auth.authenticate()
    stop = asyncio.Event()
    task = asyncio.create_task(auth.run_refresh_loop(stop))

    await asyncio.sleep(0.1)
    assert fake_http.count("POST", "/auth") == 1

    clock.now = T0 + 250
    await until(lambda: fake_http.count("POST", "/auth") == 2)
    stop.set()
    await asyncio.wait_for(task, timeout=1)
    assert auth.credential.expires_at == T0 + 550


@pytest.mark.asyncio
async def test_refresh_loop_fails_when_expired(auth, fake_http, clock):
    await auth.authenticate()
    fake_http.route("POST", "/auth", HttpError(599, "down"))
    clock.now = T0 + 400
    task = asyncio.create_task(auth.run_refresh_loop(asyncio.Event()))
    with pytest.raises(CredentialExpired):
        await asyncio.wait_for(task, timeout=1)


def test_jwt_expiry():
    assert jwt_expiry(make_jwt(1234)) == 1234.0
    assert jwt_expiry("not-a-jwt") is None
    assert jwt_expiry("a.!!!.c") is None
