import base64
import json

import pytest

from authkernel.config import Settings
from authkernel.service.errors import (
    InvalidTokenError,
    SessionRevokedError,
    StoreUnavailableError,
    TokenExpiredError,
)
from authkernel.service.sessions import DeviceInfo, SessionStore
from authkernel.service.tokens import Principal, TokenIssuer
from authkernel.storage.local_cache import LocalCache


class FakeClock:
    def __init__(self):
        self.now = 1_700_000_000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        jwt_access_secret="token-test-access-secret-0123456789abcdef",
        jwt_refresh_secret="token-test-refresh-secret-0123456789abcdef",
        access_token_ttl_minutes=60,
        refresh_token_ttl_minutes=60 * 24,
    )


@pytest.fixture
def sessions(clock):
    return SessionStore(LocalCache(clock=clock))


@pytest.fixture
def issuer(settings, sessions, clock):
    return TokenIssuer(settings, sessions, clock=clock)


DEVICE = DeviceInfo(user_agent="pytest", ip_addr="127.0.0.1")


def _tamper_payload(token: str, **changes) -> str:
    header, payload, signature = token.split(".")
    data = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
    data.update(changes)
    forged = base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")
    return f"{header}.{forged}.{signature}"


async def _resolver(user_id: str) -> Principal:
    return Principal(id=user_id, role="normal")


class TestAccessTokens:
    def test_round_trip(self, issuer):
        token = issuer.issue_access_token(Principal(id="42", role="creator"))
        principal = issuer.verify_access_token(token)
        assert principal == Principal(id="42", role="creator", is_anonymous=False)

    def test_anonymous_principal_round_trip(self, issuer):
        anon = Principal.anonymous()
        assert anon.id.startswith("anon_")
        principal = issuer.verify_access_token(issuer.issue_access_token(anon))
        assert principal.is_anonymous
        assert principal.role == "anonymous"

    def test_tampered_payload_rejected(self, issuer):
        token = issuer.issue_access_token(Principal(id="42", role="normal"))
        with pytest.raises(InvalidTokenError):
            issuer.verify_access_token(_tamper_payload(token, role="admin"))

    def test_garbage_rejected(self, issuer):
        for token in ("", "abc", "a.b.c", "a.b"):
            with pytest.raises(InvalidTokenError):
                issuer.verify_access_token(token)

    def test_refresh_token_not_accepted_as_access(self, issuer):
        refresh = issuer.issue_refresh_token(Principal(id="42", role="normal"))
        with pytest.raises(InvalidTokenError):
            issuer.verify_access_token(refresh)

    def test_alg_none_rejected(self, issuer):
        token = issuer.issue_access_token(Principal(id="42", role="normal"))
        _header, payload, _sig = token.split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        with pytest.raises(InvalidTokenError):
            issuer.verify_access_token(f"{header}.{payload}.")

    def test_expired_token_reports_expiry(self, issuer, clock):
        token = issuer.issue_access_token(Principal(id="42", role="normal"))
        clock.now += 3600 + issuer.leeway_seconds + 1
        with pytest.raises(TokenExpiredError) as exc_info:
            issuer.verify_access_token(token)
        assert exc_info.value.detail["reason"] == "TokenExpired"

    def test_within_leeway_still_valid(self, issuer, clock):
        token = issuer.issue_access_token(Principal(id="42", role="normal"))
        clock.now += 3600 + issuer.leeway_seconds - 1
        assert issuer.verify_access_token(token).id == "42"


class TestRefreshRotation:
    async def test_issue_pair_records_session(self, issuer, sessions):
        pair = await issuer.issue_pair(Principal(id="7", role="normal"), DEVICE)
        assert await sessions.is_active("7", pair.refresh_token)
        assert pair.as_dict()["token_type"] == "bearer"

    async def test_rotate_once(self, issuer, sessions):
        pair = await issuer.issue_pair(Principal(id="7", role="normal"), DEVICE)
        principal, new_pair = await issuer.rotate(pair.refresh_token, DEVICE, _resolver)

        assert principal.id == "7"
        assert new_pair.refresh_token != pair.refresh_token
        assert not await sessions.is_active("7", pair.refresh_token)
        assert await sessions.is_active("7", new_pair.refresh_token)

    async def test_second_rotation_of_same_token_fails(self, issuer):
        pair = await issuer.issue_pair(Principal(id="7", role="normal"), DEVICE)
        await issuer.rotate(pair.refresh_token, DEVICE, _resolver)
        with pytest.raises(SessionRevokedError):
            await issuer.rotate(pair.refresh_token, DEVICE, _resolver)

    async def test_revoke_all_blocks_rotation(self, issuer, sessions):
        first = await issuer.issue_pair(Principal(id="7", role="normal"), DEVICE)
        second = await issuer.issue_pair(Principal(id="7", role="normal"), DEVICE)
        assert await sessions.revoke_all("7") == 2

        for pair in (first, second):
            with pytest.raises(SessionRevokedError):
                await issuer.rotate(pair.refresh_token, DEVICE, _resolver)

    async def test_access_token_rejected_for_rotation(self, issuer):
        pair = await issuer.issue_pair(Principal(id="7", role="normal"), DEVICE)
        with pytest.raises(InvalidTokenError):
            await issuer.rotate(pair.access_token, DEVICE, _resolver)

    async def test_expired_refresh_rejected(self, issuer, clock):
        pair = await issuer.issue_pair(Principal(id="7", role="normal"), DEVICE)
        clock.now += 60 * 60 * 24 + issuer.leeway_seconds + 1
        with pytest.raises(TokenExpiredError):
            await issuer.rotate(pair.refresh_token, DEVICE, _resolver)

    async def test_resolver_error_propagates_after_consume(self, issuer, sessions):
        pair = await issuer.issue_pair(Principal(id="7", role="normal"), DEVICE)

        async def blocked(_user_id):
            raise InvalidTokenError("account gone")

        with pytest.raises(InvalidTokenError):
            await issuer.rotate(pair.refresh_token, DEVICE, blocked)
        assert not await sessions.is_active("7", pair.refresh_token)

    async def test_store_failure_withholds_tokens(self, settings, clock):
        class BrokenCache(LocalCache):
            async def save_session(self, *args, **kwargs):
                raise ConnectionError("store down")

        issuer = TokenIssuer(settings, SessionStore(BrokenCache(clock=clock)), clock=clock)
        with pytest.raises(StoreUnavailableError):
            await issuer.issue_pair(Principal(id="7", role="normal"), DEVICE)
