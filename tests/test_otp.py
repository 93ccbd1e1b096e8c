"""Tests for one-time passcode issuance and verification."""

import pytest

from authkernel.config import Settings
from authkernel.service.otp import OtpManager, OtpStatus
from authkernel.storage.local_cache import LocalCache


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        jwt_access_secret="otp-test-access-secret-0123456789abcdef",
        jwt_refresh_secret="otp-test-refresh-secret-0123456789abcdef",
    )


@pytest.fixture
def manager(settings, clock):
    return OtpManager(LocalCache(clock=clock), settings, clock=clock)


def _wrong(code: str) -> str:
    return "0" * len(code) if code != "0" * len(code) else "1" * len(code)


class TestGenerate:
    async def test_code_is_numeric_with_configured_length(self, manager):
        code = await manager.generate("a@b.com", "signup")
        assert code.isdigit()
        assert len(code) == 5

    async def test_length_follows_settings(self, tmp_path, clock):
        for length in (4, 6):
            settings = Settings(
                shared_fs_root=str(tmp_path),
                otp_length=length,
                jwt_access_secret="otp-test-access-secret-0123456789abcdef",
                jwt_refresh_secret="otp-test-refresh-secret-0123456789abcdef",
            )
            manager = OtpManager(LocalCache(clock=clock), settings, clock=clock)
            code = await manager.generate("a@b.com", "login")
            assert len(code) == length

    def test_length_outside_range_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            Settings(shared_fs_root=str(tmp_path), otp_length=3)

    async def test_unknown_purpose_rejected(self, manager):
        with pytest.raises(ValueError):
            await manager.generate("a@b.com", "newsletter")

    async def test_regenerate_replaces_code_and_resets_attempts(self, manager):
        first = await manager.generate("a@b.com", "signup")
        await manager.verify("a@b.com", _wrong(first), "signup")
        assert await manager.attempts("a@b.com", "signup") == 1

        second = await manager.generate("a@b.com", "signup")
        assert await manager.attempts("a@b.com", "signup") == 0
        if first != second:
            assert await manager.verify("a@b.com", first, "signup") == OtpStatus.INVALID_CODE
        assert await manager.verify("a@b.com", second, "signup") == OtpStatus.OK


class TestVerify:
    async def test_correct_code_accepted_once(self, manager):
        code = await manager.generate("a@b.com", "signup")
        assert await manager.verify("a@b.com", code, "signup") == OtpStatus.OK
        assert await manager.verify("a@b.com", code, "signup") == OtpStatus.NOT_FOUND

    async def test_identifier_is_case_insensitive(self, manager):
        code = await manager.generate("A@B.com", "signup")
        assert await manager.verify("a@b.COM", code, "signup") == OtpStatus.OK

    async def test_never_requested_is_not_found(self, manager):
        assert await manager.verify("nobody@b.com", "12345", "login") == OtpStatus.NOT_FOUND

    async def test_wrong_purpose_is_not_found(self, manager):
        code = await manager.generate("a@b.com", "signup")
        assert await manager.verify("a@b.com", code, "login") == OtpStatus.NOT_FOUND
        assert await manager.verify("a@b.com", code, "signup") == OtpStatus.OK

    async def test_mismatch_increments_attempts(self, manager):
        code = await manager.generate("a@b.com", "login")
        assert await manager.verify("a@b.com", _wrong(code), "login") == OtpStatus.INVALID_CODE
        assert await manager.attempts("a@b.com", "login") == 1
        assert await manager.verify("a@b.com", code, "login") == OtpStatus.OK

    async def test_sixth_attempt_rejected_even_when_correct(self, manager):
        code = await manager.generate("a@b.com", "login")
        for _ in range(5):
            assert await manager.verify("a@b.com", _wrong(code), "login") == OtpStatus.INVALID_CODE
        assert await manager.verify("a@b.com", code, "login") == OtpStatus.TOO_MANY_ATTEMPTS
        # The record stays until it expires or is regenerated
        assert await manager.attempts("a@b.com", "login") == 5
        assert await manager.verify("a@b.com", code, "login") == OtpStatus.TOO_MANY_ATTEMPTS

    async def test_accepted_up_to_ttl(self, manager, clock):
        code = await manager.generate("a@b.com", "signup")
        clock.advance(600)
        assert await manager.verify("a@b.com", code, "signup") == OtpStatus.OK

    async def test_expired_code_rejected_and_removed(self, manager, clock):
        code = await manager.generate("a@b.com", "signup")
        clock.advance(601)
        assert await manager.verify("a@b.com", code, "signup") == OtpStatus.EXPIRED
        assert await manager.verify("a@b.com", code, "signup") == OtpStatus.NOT_FOUND

    async def test_malformed_code_counts_as_attempt(self, manager):
        await manager.generate("a@b.com", "signup")
        assert await manager.verify("a@b.com", "not-a-code", "signup") == OtpStatus.INVALID_CODE
        assert await manager.verify("a@b.com", "", "signup") == OtpStatus.INVALID_CODE
        assert await manager.attempts("a@b.com", "signup") == 2

    async def test_codes_are_stored_hashed(self, manager):
        code = await manager.generate("a@b.com", "signup")
        record = await manager.cache.get_otp("otp:signup:a@b.com")
        assert code not in record.values()
        assert record["code_hash"] != code


class TestPurposeIsolation:
    async def test_reset_code_leaves_pending_signup_code(self, manager):
        signup = await manager.generate("a@b.com", "signup")
        reset = await manager.generate("a@b.com", "forgot_password")

        assert await manager.verify("a@b.com", signup, "signup") == OtpStatus.OK
        assert await manager.verify("a@b.com", reset, "forgot_password") == OtpStatus.OK

    async def test_attempts_counted_per_purpose(self, manager):
        login = await manager.generate("a@b.com", "login")
        await manager.generate("a@b.com", "forgot_password")
        await manager.verify("a@b.com", _wrong(login), "login")

        assert await manager.attempts("a@b.com", "login") == 1
        assert await manager.attempts("a@b.com", "forgot_password") == 0
